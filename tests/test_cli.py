"""Tests for the CLI entry point using Click's CliRunner."""

import json

import pytest
from click.testing import CliRunner

from lyrion import fulfillment
from lyrion.cli import cli
from tests.conftest import WEBHOOK_SECRET, completed_event, stripe_signature


@pytest.fixture()
def runner():
    return CliRunner()


class TestCLIBasics:
    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "storefront and order-broker" in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_unknown_command(self, runner):
        assert runner.invoke(cli, ["nonexistent"]).exit_code != 0


class TestTotalsCommand:
    def test_reference_cart(self, runner):
        result = runner.invoke(cli, ["totals", "55.00"])
        assert result.exit_code == 0
        assert "£4.95" in result.output
        assert "£11.99" in result.output
        assert "£71.94" in result.output

    def test_with_discount(self, runner):
        result = runner.invoke(cli, ["totals", "55", "--discount", "15"])
        assert result.exit_code == 0
        assert "-£8.25" in result.output
        assert "£62.04" in result.output

    def test_free_shipping(self, runner):
        result = runner.invoke(cli, ["totals", "80", "--free-shipping-over", "75"])
        assert "FREE" in result.output

    def test_not_a_number(self, runner):
        result = runner.invoke(cli, ["totals", "lots"])
        assert result.exit_code != 0

    def test_negative(self, runner):
        result = runner.invoke(cli, ["totals", "--", "-5"])
        assert result.exit_code == 1


class TestCartCommands:
    def test_add_show_set_remove(self, runner, tmp_path):
        store = str(tmp_path / "storage.json")
        base = ["cart", "--store", store]

        result = runner.invoke(cli, [*base, "add", "TEE-ARIES", "--title", "Aries Tee", "--price", "30", "--size", "M"])
        assert result.exit_code == 0
        runner.invoke(cli, [*base, "add", "TEE-ARIES", "--title", "Aries Tee", "--price", "30", "--size", "M"])

        result = runner.invoke(cli, [*base, "show"])
        assert "2 x TEE-ARIES [M]" in result.output
        assert "£60.00" in result.output

        result = runner.invoke(cli, [*base, "set", "TEE-ARIES", "5", "--size", "M"])
        assert "£150.00" in result.output

        result = runner.invoke(cli, [*base, "remove", "TEE-ARIES", "--size", "M"])
        assert result.exit_code == 0
        assert "Your cart is empty" in result.output
        assert json.loads((tmp_path / "storage.json").read_text())["lyrion_cart"]["items"] == []

    def test_remove_missing(self, runner, tmp_path):
        result = runner.invoke(cli, ["cart", "--store", str(tmp_path / "s.json"), "remove", "NOPE"])
        assert result.exit_code == 1

    def test_clear(self, runner, tmp_path):
        store = str(tmp_path / "s.json")
        runner.invoke(cli, ["cart", "--store", store, "add", "A", "--title", "A", "--price", "1"])
        result = runner.invoke(cli, ["cart", "--store", store, "clear"])
        assert "Your cart is empty" in result.output


class TestValidateCodeCommand:
    @pytest.fixture()
    def codes_file(self, tmp_path, code_document):
        path = tmp_path / "codes.json"
        path.write_text(json.dumps(code_document))
        return str(path)

    def test_valid(self, runner, codes_file):
        result = runner.invoke(cli, ["validate-code", "stella15", "--file", codes_file])
        assert result.exit_code == 0
        assert "STELLA15: valid, 15% off (Stella)" in result.output

    def test_expired(self, runner, codes_file):
        result = runner.invoke(cli, ["validate-code", "OLD20", "--file", codes_file])
        assert result.exit_code == 1
        assert "expired" in result.output


class TestRoutingCommand:
    @pytest.fixture()
    def routing_file(self, tmp_path, routing_data):
        path = tmp_path / "routing.json"
        path.write_text(json.dumps(routing_data))
        return str(path)

    def test_sized_sku(self, runner, routing_file):
        result = runner.invoke(cli, ["routing", "TEE-ARIES", "--size", "l", "--file", routing_file])
        assert result.exit_code == 0
        assert "printful" in result.output
        assert "4013" in result.output

    def test_unknown_sku(self, runner, routing_file):
        result = runner.invoke(cli, ["routing", "NOPE", "--file", routing_file])
        assert result.exit_code == 1
        assert "No routing found" in result.output


class TestVariantsCommand:
    @pytest.fixture(autouse=True)
    def fake_store(self, monkeypatch):
        products = [
            {
                "product_id": 1,
                "product_name": "Aries Tee",
                "external_id": "TEE-ARIES",
                "variants": [
                    {"variant_id": 4011, "size": "S", "color": "Black", "sku": "a"},
                    {"variant_id": 4012, "size": "M", "color": "Black", "sku": "b"},
                ],
            }
        ]
        monkeypatch.setattr(fulfillment.PrintfulClient, "list_store_variants", lambda self: products)

    def test_listing(self, runner):
        result = runner.invoke(cli, ["variants"])
        assert result.exit_code == 0
        assert "Aries Tee (ID: 1)" in result.output
        assert "4012  size=M" in result.output

    def test_routing_entries(self, runner):
        result = runner.invoke(cli, ["variants", "--routing"])
        entries = json.loads(result.output)
        assert entries == [
            {"sku": "TEE-ARIES", "provider": "printful", "variants": {"S": "4011", "M": "4012"}}
        ]


class TestVerifySignatureCommand:
    def test_good_and_bad(self, runner, tmp_path):
        payload = json.dumps(completed_event())
        path = tmp_path / "event.json"
        path.write_text(payload)

        ok = runner.invoke(
            cli,
            ["verify-signature", str(path), "--header", stripe_signature(payload), "--secret", WEBHOOK_SECRET],
        )
        assert ok.exit_code == 0
        assert "checkout.session.completed evt_test_1" in ok.output

        bad = runner.invoke(
            cli,
            ["verify-signature", str(path), "--header", stripe_signature(payload), "--secret", "whsec_wrong"],
        )
        assert bad.exit_code == 1

"""Tests for the webhook dispatcher: verification, idempotency, fulfillment."""

import http.client
import json
import time
from decimal import Decimal

import pytest

from lyrion import http as lyrion_http
from lyrion.access_codes import AccessCodeService, MemoryCodeStore
from lyrion.errors import ReferenceDataError, SignatureError
from lyrion.routing import parse_routing_table
from lyrion.schema import CartItem
from lyrion.storage import ProcessedEventStore
from lyrion.webhook import WebhookDispatcher, paid_order_from_session, verify_event
from tests.conftest import (
    WEBHOOK_SECRET,
    RecordingFulfillment,
    RecordingMailer,
    completed_event,
    signed,
    stripe_signature,
)


@pytest.fixture()
def mailer():
    return RecordingMailer()


@pytest.fixture()
def providers():
    return RecordingFulfillment()


@pytest.fixture()
def code_store(code_document):
    return MemoryCodeStore(code_document)


@pytest.fixture()
def dispatcher(settings, routing_data, mailer, providers, code_store):
    return WebhookDispatcher(
        settings,
        events=ProcessedEventStore(settings.processed_events_path),
        codes=AccessCodeService(code_store),
        mailer=mailer,
        routing_loader=lambda url: parse_routing_table(routing_data),
        client_factory=providers,
    )


class TestVerifyEvent:
    def test_valid_signature(self):
        body, header = signed({"id": "evt_1", "type": "ping"})
        assert verify_event(body, header, WEBHOOK_SECRET)["id"] == "evt_1"

    def test_wrong_secret(self):
        body, header = signed({"id": "evt_1"}, secret="whsec_other")
        with pytest.raises(SignatureError):
            verify_event(body, header, WEBHOOK_SECRET)

    def test_tampered_body(self):
        body, header = signed({"id": "evt_1", "amount": 1})
        with pytest.raises(SignatureError):
            verify_event(body.replace(b"1}", b"9}"), header, WEBHOOK_SECRET)

    def test_stale_timestamp(self):
        payload = json.dumps({"id": "evt_1"})
        header = stripe_signature(payload, timestamp=int(time.time()) - 3600)
        with pytest.raises(SignatureError):
            verify_event(payload, header, WEBHOOK_SECRET)

    @pytest.mark.parametrize("header", ["", "garbage", "t=abc"])
    def test_malformed_header(self, header):
        with pytest.raises(SignatureError):
            verify_event(b"{}", header, WEBHOOK_SECRET)

    def test_missing_secret_rejects_everything(self):
        body, header = signed({"id": "evt_1"})
        with pytest.raises(SignatureError, match="not configured"):
            verify_event(body, header, "")


class TestSignatureGate:
    def test_bad_signature_has_no_side_effects(self, dispatcher, mailer, providers, code_store):
        body, _ = signed(completed_event(access_code="STELLA15"))
        before = code_store.document
        with pytest.raises(SignatureError):
            dispatcher.handle(body, "t=1,v1=deadbeef")
        assert mailer.sent == []
        assert providers.orders == []
        assert code_store.document == before
        assert not dispatcher.events.seen("evt_test_1")


class TestClassification:
    def test_other_event_types_ignored(self, dispatcher, mailer):
        body, header = signed({"id": "evt_2", "type": "payment_intent.created", "data": {}})
        result = dispatcher.handle(body, header)
        assert result.outcome == "ignored"
        assert mailer.sent == []

    def test_unpaid_session_ignored(self, dispatcher, providers):
        body, header = signed(completed_event(payment_status="unpaid"))
        assert dispatcher.handle(body, header).outcome == "ignored"
        assert providers.orders == []

    def test_duplicate_delivery(self, dispatcher, mailer, providers):
        body, header = signed(completed_event())
        assert dispatcher.handle(body, header).outcome == "handled"
        sent = len(mailer.sent)
        result = dispatcher.handle(body, header)
        assert result.outcome == "duplicate"
        assert len(mailer.sent) == sent
        assert len(providers.orders) == 1

    def test_duplicate_survives_new_dispatcher(self, dispatcher, settings, mailer):
        body, header = signed(completed_event())
        dispatcher.handle(body, header)
        fresh = WebhookDispatcher(
            settings,
            events=ProcessedEventStore(settings.processed_events_path),
            mailer=mailer,
        )
        assert fresh.handle(body, header).outcome == "duplicate"


class TestProductPath:
    def test_printful_order_and_emails(self, dispatcher, mailer, providers):
        body, header = signed(completed_event())
        result = dispatcher.handle(body, header)
        assert result.outcome == "handled"
        assert result.order_type == "product"
        provider, external_id, customer, lines = providers.orders[0]
        assert provider == "printful"
        assert external_id == "cs_test_1"
        assert customer.address.postal_code == "N1 1AA"
        assert lines[0].variant_id == "4012"
        assert mailer.subjects() == ["New LYRĪON order cs_test_1", "Order Confirmed - LYRĪON"]

    def test_manual_items_alert_studio(self, dispatcher, mailer, providers):
        items = [CartItem(sku="CANDLE-LEO", title="Leo Candle", price=Decimal("12.50"), quantity=2)]
        body, header = signed(completed_event(items))
        assert dispatcher.handle(body, header).outcome == "handled"
        assert providers.orders == []
        assert "Manual Order Notification" in mailer.subjects()
        alert = next(m for m in mailer.sent if m.subject == "Manual Order Notification")
        assert "2 x Leo Candle" in alert.text

    def test_mixed_cart_splits_by_provider(self, dispatcher, providers):
        items = [
            CartItem(sku="TEE-ARIES", title="Aries Tee", price=Decimal("30"), variant="S"),
            CartItem(sku="PRINT-VIRGO", title="Virgo Print", price=Decimal("18")),
        ]
        body, header = signed(completed_event(items))
        dispatcher.handle(body, header)
        assert sorted(p for p, *_ in providers.orders) == ["printful", "printify"]

    def test_unknown_sku_degrades(self, dispatcher, mailer):
        items = [CartItem(sku="MYSTERY", title="?", price=Decimal("5"))]
        body, header = signed(completed_event(items))
        result = dispatcher.handle(body, header)
        assert result.outcome == "degraded"
        assert result.needs_follow_up
        assert any("MYSTERY" in n for n in result.notes)
        assert "Order Processing Error" in mailer.subjects()
        assert dispatcher.events.seen("evt_test_1")

    def test_routing_unavailable_degrades(self, settings, mailer, providers):
        def down(url):
            raise ReferenceDataError("routing table unavailable: timed out")

        dispatcher = WebhookDispatcher(
            settings, mailer=mailer, routing_loader=down, client_factory=providers
        )
        body, header = signed(completed_event())
        result = dispatcher.handle(body, header)
        assert result.outcome == "degraded"
        assert "Order Confirmed - LYRĪON" in mailer.subjects()

    def test_provider_failure_degrades(self, settings, routing_data, mailer):
        dispatcher = WebhookDispatcher(
            settings,
            mailer=mailer,
            routing_loader=lambda url: parse_routing_table(routing_data),
            client_factory=RecordingFulfillment(failing={"printful"}),
        )
        body, header = signed(completed_event())
        result = dispatcher.handle(body, header)
        assert result.outcome == "degraded"
        assert any("printful order failed" in n for n in result.notes)

    def test_dropped_connection_degrades_and_is_recorded(self, settings, routing_data, mailer, monkeypatch):
        attempts = []

        def truncated(req, timeout):
            attempts.append(req.full_url)
            raise http.client.IncompleteRead(b'{"code": 200')

        monkeypatch.setattr(lyrion_http, "urlopen", truncated)
        dispatcher = WebhookDispatcher(
            settings,
            events=ProcessedEventStore(settings.processed_events_path),
            mailer=mailer,
            routing_loader=lambda url: parse_routing_table(routing_data),
        )
        body, header = signed(completed_event())
        first = dispatcher.handle(body, header)
        again = dispatcher.handle(body, header)
        assert first.outcome == "degraded"
        assert any("printful order failed" in n for n in first.notes)
        assert "Order Processing Error" in mailer.subjects()
        assert again.outcome == "duplicate"
        assert len(attempts) == 1

    def test_unexpected_provider_exception_degrades(self, settings, routing_data, mailer):
        def broken_client(provider, settings):
            raise KeyError("sync_variant_id")

        dispatcher = WebhookDispatcher(
            settings,
            mailer=mailer,
            routing_loader=lambda url: parse_routing_table(routing_data),
            client_factory=broken_client,
        )
        body, header = signed(completed_event())
        result = dispatcher.handle(body, header)
        assert result.outcome == "degraded"
        assert "Order Confirmed - LYRĪON" in mailer.subjects()

    def test_unexpected_email_exception_degrades(self, settings, routing_data, providers):
        class FlakyMailer(RecordingMailer):
            def send(self, message):
                if "Order Confirmed" in message.subject:
                    raise ConnectionResetError("reset by peer")
                return super().send(message)

        mailer = FlakyMailer()
        dispatcher = WebhookDispatcher(
            settings,
            mailer=mailer,
            routing_loader=lambda url: parse_routing_table(routing_data),
            client_factory=providers,
        )
        body, header = signed(completed_event())
        result = dispatcher.handle(body, header)
        assert result.outcome == "degraded"
        assert len(providers.orders) == 1
        assert "Order Processing Error" in mailer.subjects()

    def test_email_failure_degrades(self, settings, routing_data, providers):
        mailer = RecordingMailer(fail_subjects=["Order Confirmed"])
        dispatcher = WebhookDispatcher(
            settings,
            mailer=mailer,
            routing_loader=lambda url: parse_routing_table(routing_data),
            client_factory=providers,
        )
        body, header = signed(completed_event())
        result = dispatcher.handle(body, header)
        assert result.outcome == "degraded"
        assert len(providers.orders) == 1

    def test_no_customer_email_skips_receipt(self, dispatcher, mailer):
        event = completed_event(email="")
        event["data"]["object"]["customer_details"] = {}
        body, header = signed(event)
        dispatcher.handle(body, header)
        assert mailer.subjects() == ["New LYRĪON order cs_test_1"]

    def test_corrupt_item_metadata_still_notifies(self, dispatcher, mailer):
        event = completed_event()
        event["data"]["object"]["metadata"]["items_0"] = "[{not json"
        body, header = signed(event)
        result = dispatcher.handle(body, header)
        assert result.outcome == "degraded"
        assert "New LYRĪON order cs_test_1" in mailer.subjects()

    def test_unexpected_crash_is_failed_and_not_recorded(self, settings, mailer):
        def explode(url):
            raise RuntimeError("boom")

        dispatcher = WebhookDispatcher(settings, mailer=mailer, routing_loader=explode)
        body, header = signed(completed_event())
        result = dispatcher.handle(body, header)
        assert result.outcome == "failed"
        assert not dispatcher.events.seen("evt_test_1")


class TestAccessCodeRedemption:
    def test_code_redeemed_after_payment(self, dispatcher, code_store):
        body, header = signed(completed_event(access_code="ONCE10", amount_total=6204))
        assert dispatcher.handle(body, header).outcome == "handled"
        entry = code_store.document["codes"]["ONCE10"]
        assert entry["uses_remaining"] == 0
        assert entry["status"] == "exhausted"
        assert entry["conversions"][0] == {
            "session_id": "cs_test_1",
            "amount": 62.04,
            "redeemed_at": entry["conversions"][0]["redeemed_at"],
        }

    def test_redelivery_after_lost_event_log_is_clean(self, dispatcher, settings, mailer, providers, code_store, tmp_path):
        body, header = signed(completed_event(access_code="ONCE10", amount_total=6204))
        assert dispatcher.handle(body, header).outcome == "handled"

        fresh = WebhookDispatcher(
            settings,
            events=ProcessedEventStore(str(tmp_path / "cold-start.json")),
            codes=AccessCodeService(code_store),
            mailer=mailer,
            routing_loader=dispatcher.routing_loader,
            client_factory=providers,
        )
        result = fresh.handle(body, header)
        assert result.outcome == "handled"
        assert "Order Processing Error" not in mailer.subjects()
        assert len(code_store.document["codes"]["ONCE10"]["conversions"]) == 1

    def test_redemption_failure_degrades_but_ships(self, dispatcher, providers):
        body, header = signed(completed_event(access_code="USEDUP"))
        result = dispatcher.handle(body, header)
        assert result.outcome == "degraded"
        assert len(providers.orders) == 1

    def test_store_not_configured(self, settings, routing_data, mailer, providers):
        dispatcher = WebhookDispatcher(
            settings,
            mailer=mailer,
            routing_loader=lambda url: parse_routing_table(routing_data),
            client_factory=providers,
        )
        body, header = signed(completed_event(access_code="STELLA15"))
        result = dispatcher.handle(body, header)
        assert result.outcome == "degraded"
        assert any("not recorded" in n for n in result.notes)


class TestOraclePath:
    @pytest.fixture()
    def oracle_event(self):
        return {
            "id": "evt_oracle",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_oracle",
                    "amount_total": 5500,
                    "currency": "gbp",
                    "payment_status": "paid",
                    "customer_details": {"email": "ada@example.com"},
                    "metadata": {
                        "order_type": "oracle_reading",
                        "tier": "detailed",
                        "customer_name": "Ada",
                        "customer_email": "ada@example.com",
                        "question": "Will it ship?",
                        "birth_date": "1815-12-10",
                        "birth_city": "London",
                    },
                }
            },
        }

    def test_no_fulfillment_call(self, dispatcher, mailer, providers, oracle_event):
        body, header = signed(oracle_event)
        result = dispatcher.handle(body, header)
        assert result.outcome == "handled"
        assert result.order_type == "oracle_reading"
        assert providers.orders == []
        assert mailer.subjects() == ["New Oracle Reading Request", "Your Oracle Reading is On Its Way"]
        assert "Will it ship?" in mailer.sent[0].text
        assert "48 hours" in mailer.sent[1].text


class TestPaidOrderFromSession:
    def test_falls_back_to_stripe_shipping_details(self):
        session = {
            "id": "cs_1",
            "amount_total": 1000,
            "metadata": {},
            "customer_details": {"email": "b@example.com", "name": "Bea"},
            "shipping_details": {"address": {"line1": "2 Moon Rd", "city": "Leeds", "postal_code": "LS1"}},
        }
        order = paid_order_from_session(session, "studio@example.com")
        assert order.customer_name == "Bea"
        assert order.address.line1 == "2 Moon Rd"
        assert order.amount == Decimal("10")
        assert order.items == []

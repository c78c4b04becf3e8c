"""Shared fixtures for lyrion tests."""

import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

from lyrion.checkout import pack_items
from lyrion.config import Settings
from lyrion.errors import ProviderError
from lyrion.schema import CartItem

WEBHOOK_SECRET = "whsec_test_secret"


# -- Stripe signatures ------------------------------------------------------


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header the way Stripe signs deliveries."""
    t = int(time.time()) if timestamp is None else timestamp
    signed = f"{t}.{payload}".encode()
    v1 = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={t},v1={v1}"


def completed_event(
    items=None,
    *,
    event_id="evt_test_1",
    session_id="cs_test_1",
    access_code=None,
    email="ada@example.com",
    amount_total=7194,
    payment_status="paid",
    extra_metadata=None,
):
    """A checkout.session.completed event for a product order."""
    items = items if items is not None else [
        CartItem(sku="TEE-ARIES", title="Aries Tee", price=Decimal("30.00"), variant="M"),
    ]
    metadata = {
        "order_type": "product",
        "customer_name": "Ada Lovelace",
        "customer_email": email,
        "ship_line1": "1 Star Lane",
        "ship_line2": "",
        "ship_city": "London",
        "ship_postal_code": "N1 1AA",
        "ship_country": "GB",
        **pack_items(items),
    }
    if access_code:
        metadata["access_code"] = access_code
    metadata.update(extra_metadata or {})
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "amount_total": amount_total,
                "currency": "gbp",
                "payment_status": payment_status,
                "customer_details": {"email": email, "name": "Ada Lovelace"},
                "metadata": metadata,
            }
        },
    }


def signed(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
    payload = json.dumps(event)
    return payload.encode(), stripe_signature(payload, secret)


# -- Test doubles -----------------------------------------------------------


class RecordingMailer:
    """Collects messages instead of calling the email API."""

    def __init__(self, fail_subjects=()):
        self.sent = []
        self.fail_subjects = tuple(fail_subjects)

    def send(self, message):
        if any(s in message.subject for s in self.fail_subjects):
            raise ProviderError("resend", "rate limited", 429)
        self.sent.append(message)
        return f"msg_{len(self.sent)}"

    def subjects(self):
        return [m.subject for m in self.sent]


class RecordingFulfillment:
    """client_factory stand-in that records provider orders."""

    def __init__(self, failing=()):
        self.orders = []
        self.failing = set(failing)

    def __call__(self, provider, settings):
        owner = self

        class _Client:
            def create_order(self, external_id, customer, lines):
                if provider in owner.failing:
                    raise ProviderError(provider, "variant discontinued", 400)
                owner.orders.append((provider, external_id, customer, lines))
                return {"id": len(owner.orders)}

        return _Client()


# -- Data fixtures ----------------------------------------------------------


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        resend_api_key="re_test_123",
        printful_api_key="pf_test",
        order_notification_email="studio@example.com",
        routing_json_url="https://static.example.com/pod-routing.json",
        access_codes_url="https://static.example.com/access-codes.json",
        site_url="https://shop.example.com",
        processed_events_path=str(tmp_path / "events.json"),
    )


@pytest.fixture()
def code_document():
    """Access-code document covering each validity rule."""
    return {
        "codes": {
            "STELLA15": {
                "owner": "Stella",
                "discount_percent": 15,
                "expires_at": "2099-12-31T23:59:59Z",
                "uses_remaining": 10,
                "status": "active",
                "conversions": [],
            },
            "ONCE10": {
                "owner": "Orion",
                "discount_percent": 10,
                "uses_remaining": 1,
                "status": "active",
                "conversions": [],
            },
            "OLD20": {
                "owner": "Vega",
                "discount_percent": 20,
                "expires_at": "2020-01-01T00:00:00Z",
                "uses_remaining": 5,
                "status": "active",
            },
            "USEDUP": {
                "owner": "Lyra",
                "discount_percent": 25,
                "uses_remaining": 0,
                "status": "active",
            },
            "PAUSED": {
                "owner": "Rigel",
                "discount_percent": 30,
                "uses_remaining": 3,
                "status": "paused",
            },
        }
    }


@pytest.fixture()
def routing_data():
    """Routing document in the {"products": [...]} shape."""
    return {
        "products": [
            {
                "sku": "TEE-ARIES",
                "provider": "printful",
                "variants": {"S": 4011, "M": 4012, "L": 4013},
            },
            {
                "sku": "PRINT-VIRGO",
                "pod_provider": "printify",
                "product_id": "5f1a",
                "pod_sku": "77001",
            },
            {"sku": "CANDLE-LEO", "provider": "manual"},
            {"sku": "EBOOK-MOON", "provider": "digital"},
        ]
    }


@pytest.fixture()
def cart_items():
    return [
        CartItem(sku="TEE-ARIES", title="Aries Tee", price=Decimal("30.00"), variant="M"),
        CartItem(sku="CANDLE-LEO", title="Leo Candle", price=Decimal("12.50"), quantity=2),
    ]


@pytest.fixture()
def customer_data():
    return {
        "name": "Ada Lovelace",
        "email": "ada@example.com",
        "address": {
            "line1": "1 Star Lane",
            "city": "London",
            "postal_code": "N1 1AA",
            "country": "gb",
        },
    }

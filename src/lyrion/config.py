"""Constants and configuration for the LYRĪON storefront and order broker."""

from __future__ import annotations

import os
from decimal import Decimal

from pydantic import BaseModel

# Pricing policy (GBP)
CURRENCY = "gbp"
SHIPPING_FEE = Decimal("4.95")
TAX_RATE = Decimal("0.20")  # UK VAT on goods + shipping
# An earlier revision waived shipping at or above this subtotal. Off unless
# FREE_SHIPPING_THRESHOLD is set.
LEGACY_FREE_SHIPPING_THRESHOLD = Decimal("75.00")

# Client-side storage keys
CART_STORAGE_KEY = "lyrion_cart"
LAST_ORDER_STORAGE_KEY = "last_order"

# Stripe metadata values are capped at 500 characters
METADATA_VALUE_MAX = 500
ORACLE_QUESTION_MAX = 500

ORDER_TYPE_PRODUCT = "product"
ORDER_TYPE_ORACLE = "oracle_reading"

# Routing providers
AUTOMATED_PROVIDERS = ("printful", "printify")
MANUAL_PROVIDERS = ("manual", "digital")

# Access codes
CODE_STATUSES = ("active", "exhausted", "expired")
CODE_UPDATE_ATTEMPTS = 3

EMAIL_RE_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"

HTTP_TIMEOUT = 10

ORACLE_TIERS: dict[str, dict] = {
    "essence": {
        "id": "essence",
        "name": "Essence Reading",
        "price": Decimal("25.00"),
        "description": "A focused insight into your current cosmic alignment",
        "word_count": "300+ words",
        "delivery": "48 hours",
    },
    "detailed": {
        "id": "detailed",
        "name": "Detailed Reading",
        "price": Decimal("55.00"),
        "description": "Deep exploration of your birth chart and current transits",
        "word_count": "800+ words",
        "delivery": "48 hours",
    },
    "premium": {
        "id": "premium",
        "name": "Premium Reading",
        "price": Decimal("125.00"),
        "description": "Comprehensive analysis with personalized ritual guidance",
        "word_count": "1,500+ words",
        "delivery": "72 hours",
    },
}


class Settings(BaseModel):
    """Secrets and endpoints, read from the environment per invocation."""

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    printful_api_key: str = ""
    printful_store_id: str = ""
    printify_api_key: str = ""
    printify_shop_id: str = ""
    resend_api_key: str = ""
    email_from: str = "LYRĪON <orders@lyrion.co.uk>"
    order_notification_email: str = "hello@lyrion.co.uk"
    routing_json_url: str = "https://lyrion.co.uk/data/pod-routing.json"
    access_codes_url: str = "https://lyrion.co.uk/data/access-codes.json"
    github_token: str = ""
    access_codes_repo: str = ""
    access_codes_path: str = "data/access-codes.json"
    access_codes_branch: str = "main"
    site_url: str = "https://lyrion.co.uk"
    processed_events_path: str = "/tmp/lyrion-processed-events.json"
    free_shipping_threshold: Decimal | None = None

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = env.get(name.upper(), "").strip()
            if raw:
                values[name] = raw
        return cls(**values)

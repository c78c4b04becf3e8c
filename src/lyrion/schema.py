"""Pydantic v2 models for carts, orders, access codes and routing entries."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from lyrion.config import EMAIL_RE_PATTERN, ORACLE_QUESTION_MAX

EMAIL_RE = re.compile(EMAIL_RE_PATTERN)

ZERO = Decimal("0.00")
PENNY = Decimal("0.01")


def check_email(v: str) -> str:
    v = v.strip()
    if not EMAIL_RE.match(v):
        msg = "Please enter a valid email address"
        raise ValueError(msg)
    return v


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------


class CartItem(BaseModel):
    """One cart line: a SKU, optionally in a given size."""

    sku: str
    title: str
    price: Decimal
    quantity: int = 1
    variant: str | None = None
    category: str | None = None
    image: str | None = None

    @field_validator("price")
    @classmethod
    def price_not_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            msg = f"Price must be >= 0, got {v}"
            raise ValueError(msg)
        # Whole pence, the same unit Stripe charges per line
        return v.quantize(PENNY, rounding=ROUND_HALF_UP)

    @field_validator("quantity")
    @classmethod
    def quantity_positive(cls, v: int) -> int:
        if v < 1:
            msg = f"Quantity must be >= 1, got {v}"
            raise ValueError(msg)
        return v

    @field_validator("variant", mode="before")
    @classmethod
    def blank_variant_is_none(cls, v):
        # The storefront sends '' for "no size"
        return v or None

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity

    def matches(self, sku: str, variant: str | None) -> bool:
        return self.sku == sku and self.variant == (variant or None)


class Cart(BaseModel):
    items: list[CartItem] = Field(default_factory=list)
    total: Decimal = ZERO

    def compute_total(self) -> Decimal:
        return sum((item.line_total for item in self.items), ZERO)

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)


class Product(BaseModel):
    """A catalog entry as published in products.json."""

    model_config = ConfigDict(extra="ignore")

    sku: str
    title: str
    price: Decimal
    category: str | None = None
    image_front: str | None = None
    variants: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Customer and checkout
# ---------------------------------------------------------------------------


class Address(BaseModel):
    line1: str
    line2: str = ""
    city: str
    postal_code: str
    country: str = "GB"

    @field_validator("country")
    @classmethod
    def country_upper(cls, v: str) -> str:
        return v.strip().upper()


class Customer(BaseModel):
    name: str
    email: str
    address: Address | None = None

    @field_validator("email")
    @classmethod
    def email_format(cls, v: str) -> str:
        return check_email(v)

    @property
    def first_name(self) -> str:
        return self.name.split(" ")[0] if self.name else ""

    @property
    def last_name(self) -> str:
        return " ".join(self.name.split(" ")[1:])


class Totals(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: Decimal
    discount_amount: Decimal = ZERO
    shipping: Decimal
    tax: Decimal
    total: Decimal


class CheckoutOrder(BaseModel):
    """Customer + cart snapshot + totals. Frozen once built."""

    model_config = ConfigDict(frozen=True)

    customer: Customer
    items: tuple[CartItem, ...]
    totals: Totals
    access_code: str | None = None
    discount_percent: float | None = None


class OracleTier(BaseModel):
    id: str
    name: str
    price: Decimal
    description: str = ""
    word_count: str = ""
    delivery: str = ""


class OracleOrder(BaseModel):
    name: str
    email: str
    tier: str
    question: str = "No specific question provided"
    birth_date: str = ""
    birth_city: str = ""

    @field_validator("email")
    @classmethod
    def email_format(cls, v: str) -> str:
        return check_email(v)

    @field_validator("question")
    @classmethod
    def question_truncated(cls, v: str) -> str:
        v = v.strip()
        return v[:ORACLE_QUESTION_MAX] if v else "No specific question provided"


class LastOrder(BaseModel):
    id: str
    amount: Decimal
    currency: str
    customer: Customer | None = None
    items: list[CartItem] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Access codes
# ---------------------------------------------------------------------------


class Conversion(BaseModel):
    session_id: str
    amount: float
    redeemed_at: datetime


class AccessCode(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: str = ""
    owner: str = ""
    discount_percent: float
    expires_at: datetime | None = None
    uses_remaining: int = 0
    status: str = "active"
    conversions: list[Conversion] = Field(default_factory=list)

    @field_validator("discount_percent")
    @classmethod
    def percent_in_range(cls, v: float) -> float:
        if v < 0 or v > 100:
            msg = f"Discount percent must be between 0 and 100, got {v}"
            raise ValueError(msg)
        return v

    @field_validator("expires_at")
    @classmethod
    def expiry_aware(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class AccessCodeDocument(BaseModel):
    model_config = ConfigDict(extra="allow")

    codes: dict[str, AccessCode] = Field(default_factory=dict)


class CodeValidation(BaseModel):
    valid: bool
    owner: str | None = None
    discount_percent: float | None = None
    reason: str | None = None


# ---------------------------------------------------------------------------
# Fulfillment routing
# ---------------------------------------------------------------------------


class RoutingEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sku: str
    provider: str = Field(validation_alias=AliasChoices("provider", "pod_provider"))
    variants: dict[str, str] = Field(default_factory=dict)
    default_variant: str | None = Field(
        default=None, validation_alias=AliasChoices("default_variant", "pod_sku")
    )
    product_id: str | None = None

    @field_validator("provider")
    @classmethod
    def provider_lower(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("variants", mode="before")
    @classmethod
    def variant_ids_as_str(cls, v):
        return {str(size): str(vid) for size, vid in (v or {}).items()}

    @field_validator("default_variant", "product_id", mode="before")
    @classmethod
    def id_as_str(cls, v):
        return None if v is None or v == "" else str(v)

    def variant_for(self, size: str | None) -> str | None:
        """Resolve the provider variant id for a size (case-insensitive)."""
        if size:
            for key, vid in self.variants.items():
                if key.lower() == size.lower():
                    return vid
            return None
        if self.default_variant:
            return self.default_variant
        if len(self.variants) == 1:
            return next(iter(self.variants.values()))
        return None


# ---------------------------------------------------------------------------
# Webhook outcome
# ---------------------------------------------------------------------------

Outcome = Literal["handled", "degraded", "ignored", "duplicate", "failed"]


class WebhookResult(BaseModel):
    outcome: Outcome
    event_id: str = ""
    event_type: str = ""
    order_type: str | None = None
    notes: list[str] = Field(default_factory=list)

    @property
    def needs_follow_up(self) -> bool:
        return self.outcome in ("degraded", "failed")


class PaidOrder(BaseModel):
    """What the webhook knows about a completed checkout session."""

    session_id: str
    order_type: str = "product"
    customer_name: str = "Customer"
    customer_email: str = ""
    address: Address | None = None
    amount: Decimal = ZERO
    currency: str = "GBP"
    items: list[CartItem] = Field(default_factory=list)
    access_code: str | None = None
    tier: str = ""
    tier_name: str = ""
    delivery: str = ""
    question: str = ""
    birth_date: str = ""
    birth_city: str = ""
    admin_email: str = ""

    @property
    def has_customer_email(self) -> bool:
        return bool(EMAIL_RE.match(self.customer_email or ""))

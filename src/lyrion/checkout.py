"""Stripe Checkout session creation for product carts and Oracle readings.

Each cart line becomes a priced line item; VAT and shipping are added as
their own line items. Stripe rejects negative line amounts, so an access
code discount is attached as a one-off fixed-amount coupon instead.
Everything the webhook needs later (order type, customer, shipping
address, access code, compact cart) travels in the session metadata.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any

import stripe
from pydantic import ValidationError

from lyrion.access_codes import AccessCodeService, normalize_code
from lyrion.config import (
    CURRENCY,
    METADATA_VALUE_MAX,
    ORACLE_TIERS,
    ORDER_TYPE_ORACLE,
    ORDER_TYPE_PRODUCT,
    TAX_RATE,
    Settings,
)
from lyrion.errors import CheckoutValidationError, LyrionError, ProviderError, TransportError
from lyrion.schema import (
    CartItem,
    CheckoutOrder,
    Customer,
    OracleOrder,
    OracleTier,
)
from lyrion.totals import compute_totals, to_pence

logger = logging.getLogger("lyrion.checkout")

REQUIRED_CUSTOMER_FIELDS = ("email", "name")
REQUIRED_ADDRESS_FIELDS = ("line1", "city", "postal_code", "country")

# Stripe allows 50 metadata keys; leave room for the fixed ones
MAX_ITEM_CHUNKS = 30


# ---------------------------------------------------------------------------
# Metadata packing
# ---------------------------------------------------------------------------


def pack_items(items: list[CartItem] | tuple[CartItem, ...]) -> dict[str, str]:
    """Encode cart lines into ``items_0..items_N`` metadata values."""
    compact = [
        {
            "s": item.sku,
            "q": item.quantity,
            "v": item.variant or "",
            "p": f"{item.price:.2f}",
            "t": item.title[:60],
        }
        for item in items
    ]
    raw = json.dumps(compact, separators=(",", ":"), ensure_ascii=False)
    chunks = [raw[i : i + METADATA_VALUE_MAX] for i in range(0, len(raw), METADATA_VALUE_MAX)]
    if len(chunks) > MAX_ITEM_CHUNKS:
        raise CheckoutValidationError("Too many items in cart for a single order", ["cart"])
    return {f"items_{i}": chunk for i, chunk in enumerate(chunks)}


def unpack_items(metadata: dict[str, Any]) -> list[CartItem]:
    """Reverse of pack_items. Raises ValueError on corrupt metadata."""
    chunks = []
    i = 0
    while f"items_{i}" in metadata:
        chunks.append(metadata[f"items_{i}"])
        i += 1
    if not chunks:
        return []
    compact = json.loads("".join(chunks))
    return [
        CartItem(
            sku=c["s"],
            quantity=int(c["q"]),
            variant=c.get("v") or None,
            price=Decimal(c.get("p", "0")),
            title=c.get("t") or c["s"],
        )
        for c in compact
    ]


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------


def _missing_fields(customer: dict) -> list[str]:
    missing = [f for f in REQUIRED_CUSTOMER_FIELDS if not str(customer.get(f) or "").strip()]
    address = customer.get("address") or {}
    missing += [
        f"address.{f}" for f in REQUIRED_ADDRESS_FIELDS if not str(address.get(f) or "").strip()
    ]
    return missing


def parse_customer(data: Any) -> Customer:
    """Validate customer contact + shipping address; no network access."""
    if not isinstance(data, dict):
        raise CheckoutValidationError("Please fill in all required fields", ["customer"])
    missing = _missing_fields(data)
    if missing:
        raise CheckoutValidationError("Please fill in all required fields", missing)
    try:
        return Customer.model_validate(data)
    except ValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        message = e.errors()[0]["msg"].removeprefix("Value error, ")
        raise CheckoutValidationError(message, fields) from e


def parse_cart_items(data: Any) -> list[CartItem]:
    if isinstance(data, dict):
        data = data.get("items")
    if not isinstance(data, list) or not data:
        raise CheckoutValidationError("Your cart is empty", ["cart"])
    try:
        return [CartItem.model_validate(item) for item in data]
    except ValidationError as e:
        raise CheckoutValidationError("Invalid cart contents", ["cart"]) from e


def build_order(
    payload: dict,
    settings: Settings,
    codes: AccessCodeService | None = None,
) -> CheckoutOrder:
    """Validate a product checkout request and price it.

    An access code that cannot be validated (invalid, or the lookup
    failed) is dropped and the order is priced in full.
    """
    customer = parse_customer(payload.get("customer"))
    items = parse_cart_items(payload.get("cart"))

    code = normalize_code(payload.get("access_code") or payload.get("discount_code"))
    discount_percent = None
    if code and codes is not None:
        result = codes.validate(code)
        if result.valid:
            discount_percent = result.discount_percent
        else:
            logger.info("Checkout continues without code %s (%s)", code, result.reason)
            code = ""
    elif code:
        code = ""

    subtotal = sum((item.line_total for item in items), Decimal("0"))
    totals = compute_totals(
        subtotal,
        discount_percent,
        free_shipping_threshold=settings.free_shipping_threshold,
    )
    return CheckoutOrder(
        customer=customer,
        items=tuple(items),
        totals=totals,
        access_code=code or None,
        discount_percent=discount_percent,
    )


# ---------------------------------------------------------------------------
# Stripe session parameters
# ---------------------------------------------------------------------------


def _line_item(name: str, amount, quantity: int = 1, metadata: dict | None = None) -> dict:
    product_data: dict[str, Any] = {"name": name}
    if metadata:
        product_data["metadata"] = metadata
    return {
        "price_data": {
            "currency": CURRENCY,
            "unit_amount": to_pence(amount),
            "product_data": product_data,
        },
        "quantity": quantity,
    }


def build_session_params(order: CheckoutOrder, settings: Settings) -> dict:
    """Stripe Checkout Session parameters for a product order (no coupon yet)."""
    line_items = []
    for item in order.items:
        name = f"{item.title} ({item.variant})" if item.variant else item.title
        line_items.append(
            _line_item(name, item.price, item.quantity, {"sku": item.sku, "size": item.variant or ""})
        )
    totals = order.totals
    if totals.tax > 0:
        line_items.append(_line_item(f"VAT ({int(TAX_RATE * 100)}%)", totals.tax))
    if totals.shipping > 0:
        line_items.append(_line_item("Shipping", totals.shipping))

    customer = order.customer
    addr = customer.address
    metadata = {
        "order_type": ORDER_TYPE_PRODUCT,
        "customer_name": customer.name,
        "customer_email": customer.email,
        "ship_line1": addr.line1,
        "ship_line2": addr.line2,
        "ship_city": addr.city,
        "ship_postal_code": addr.postal_code,
        "ship_country": addr.country,
        "subtotal": f"{totals.subtotal:.2f}",
        "discount": f"{totals.discount_amount:.2f}",
    }
    if order.access_code:
        metadata["access_code"] = order.access_code
    metadata.update(pack_items(order.items))

    site = settings.site_url.rstrip("/")
    return {
        "mode": "payment",
        "line_items": line_items,
        "customer_email": customer.email,
        "metadata": metadata,
        "success_url": f"{site}/checkout-success.html?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{site}/checkout.html",
    }


def _create_session(params: dict, settings: Settings):
    try:
        return stripe.checkout.Session.create(api_key=settings.stripe_secret_key, **params)
    except stripe.APIConnectionError as e:
        logger.error("Stripe unreachable: %s", e)
        raise TransportError("stripe", "Payment service temporarily unavailable") from e
    except stripe.StripeError as e:
        message = getattr(e, "user_message", None) or str(e)
        logger.error("Stripe rejected checkout session: %s", message)
        raise ProviderError("stripe", message, getattr(e, "http_status", None)) from e


def _create_discount_coupon(order: CheckoutOrder, settings: Settings) -> str:
    try:
        coupon = stripe.Coupon.create(
            api_key=settings.stripe_secret_key,
            amount_off=to_pence(order.totals.discount_amount),
            currency=CURRENCY,
            duration="once",
            max_redemptions=1,
            name=f"Access code {order.access_code}"[:40],
        )
    except stripe.APIConnectionError as e:
        raise TransportError("stripe", "Payment service temporarily unavailable") from e
    except stripe.StripeError as e:
        message = getattr(e, "user_message", None) or str(e)
        raise ProviderError("stripe", message, getattr(e, "http_status", None)) from e
    return coupon.id


def _delete_coupon(coupon_id: str, settings: Settings) -> None:
    try:
        stripe.Coupon.delete(coupon_id, api_key=settings.stripe_secret_key)
    except stripe.StripeError as e:
        logger.warning("Could not delete unused coupon %s: %s", coupon_id, e)


def _require_stripe(settings: Settings) -> None:
    if not settings.stripe_secret_key:
        raise LyrionError("Service configuration error")


def create_product_session(
    payload: dict,
    settings: Settings,
    codes: AccessCodeService | None = None,
) -> dict:
    """Create a hosted checkout session for a cart. Returns the redirect info."""
    order = build_order(payload, settings, codes)
    _require_stripe(settings)

    params = build_session_params(order, settings)
    coupon_id = None
    if order.totals.discount_amount > 0:
        coupon_id = _create_discount_coupon(order, settings)
        params["discounts"] = [{"coupon": coupon_id}]

    try:
        session = _create_session(params, settings)
    except LyrionError:
        if coupon_id:
            _delete_coupon(coupon_id, settings)
        raise

    logger.info(
        "Checkout session %s created: %d lines, total %s",
        session.id,
        len(order.items),
        order.totals.total,
    )
    return {
        "sessionId": session.id,
        "url": session.url,
        "totals": order.totals.model_dump(mode="json"),
    }


# ---------------------------------------------------------------------------
# Oracle readings
# ---------------------------------------------------------------------------


def get_tier(tier_id: str) -> OracleTier:
    tier = ORACLE_TIERS.get((tier_id or "").strip().lower())
    if tier is None:
        raise CheckoutValidationError("Please select a reading tier", ["tier"])
    return OracleTier(**tier)


def parse_oracle_order(payload: Any) -> OracleOrder:
    if not isinstance(payload, dict):
        raise CheckoutValidationError("Please fill in all required fields", ["name", "email"])
    missing = [f for f in ("name", "email") if not str(payload.get(f) or "").strip()]
    if missing:
        raise CheckoutValidationError("Please fill in all required fields", missing)
    data = {k: v for k, v in payload.items() if v is not None}
    data.setdefault("tier", payload.get("tierId", ""))
    try:
        return OracleOrder.model_validate(data)
    except ValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        message = e.errors()[0]["msg"].removeprefix("Value error, ")
        raise CheckoutValidationError(message, fields) from e


def build_oracle_params(order: OracleOrder, tier: OracleTier, settings: Settings) -> dict:
    site = settings.site_url.rstrip("/")
    return {
        "mode": "payment",
        "line_items": [_line_item(tier.name, tier.price, 1, {"tier": tier.id})],
        "customer_email": order.email,
        "metadata": {
            "order_type": ORDER_TYPE_ORACLE,
            "product_type": ORDER_TYPE_ORACLE,
            "tier": tier.id,
            "customer_name": order.name,
            "customer_email": order.email,
            "question": order.question[:METADATA_VALUE_MAX],
            "birth_date": order.birth_date,
            "birth_city": order.birth_city,
        },
        "success_url": f"{site}/oracle-success.html?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{site}/oracle.html",
    }


def create_oracle_session(payload: dict, settings: Settings) -> dict:
    """Create a hosted checkout session for a paid Oracle reading."""
    order = parse_oracle_order(payload)
    tier = get_tier(order.tier)
    _require_stripe(settings)

    session = _create_session(build_oracle_params(order, tier, settings), settings)
    logger.info("Oracle session %s created (%s)", session.id, tier.id)
    return {"sessionId": session.id, "url": session.url}

"""Storefront client session: cart, totals, access codes, checkout hand-off.

This is the state the browser used to keep in module globals. One
StorefrontSession per shopper owns the cart manager, the applied access
code and the last-order snapshot, and talks to the order broker over
HTTP.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from pathlib import Path

from pydantic import ValidationError

from lyrion.cart import CartManager
from lyrion.config import CURRENCY, LAST_ORDER_STORAGE_KEY
from lyrion.errors import CheckoutValidationError, LyrionError
from lyrion.http import request_json
from lyrion.schema import CodeValidation, Customer, LastOrder, Product, Totals
from lyrion.storage import Storage
from lyrion.totals import compute_totals

logger = logging.getLogger("lyrion.client")


def load_catalog(path: str | Path) -> dict[str, Product]:
    """Load products.json into {sku: Product}, skipping malformed entries."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("products", [])
    catalog: dict[str, Product] = {}
    for entry in raw:
        try:
            product = Product.model_validate(entry)
        except ValidationError:
            logger.warning("Skipping malformed product: %r", entry.get("sku") if isinstance(entry, dict) else entry)
            continue
        catalog[product.sku] = product
    return catalog


class StorefrontSession:
    def __init__(self, storage: Storage, broker_url: str, *, free_shipping_threshold=None):
        self.storage = storage
        self.broker_url = broker_url.rstrip("/")
        self.cart = CartManager(storage)
        self.free_shipping_threshold = free_shipping_threshold
        self.access_code: str | None = None
        self.discount_percent: float | None = None

    def totals(self, discount_percent: float | None = None) -> Totals:
        """Totals for the current cart; defaults to the applied code's discount."""
        return compute_totals(
            self.cart.total(),
            self.discount_percent if discount_percent is None else discount_percent,
            free_shipping_threshold=self.free_shipping_threshold,
        )

    def apply_access_code(self, code: str) -> CodeValidation:
        """Ask the broker about a code; keep the discount only if it is valid.

        Any failure (network, bad reply) means no discount, never an error.
        """
        try:
            data = request_json(
                "POST",
                f"{self.broker_url}/api/validate_code",
                provider="broker",
                payload={"code": code},
            )
            result = CodeValidation.model_validate(data)
        except (LyrionError, ValidationError):
            logger.warning("Access code check failed; continuing at full price", exc_info=True)
            result = CodeValidation(valid=False, reason="lookup_unavailable")

        if result.valid:
            self.access_code = code.strip().upper()
            self.discount_percent = result.discount_percent
        else:
            self.access_code = None
            self.discount_percent = None
        return result

    def begin_checkout(self, customer: Customer | dict) -> dict:
        """Post the cart to the broker and return {sessionId, url, totals}."""
        if not self.cart.items:
            raise CheckoutValidationError("Your cart is empty", ["cart"])
        if isinstance(customer, Customer):
            customer = customer.model_dump(mode="json")
        payload = {
            "cart": self.cart.cart.model_dump(mode="json"),
            "customer": customer,
        }
        if self.access_code:
            payload["access_code"] = self.access_code
        return request_json(
            "POST", f"{self.broker_url}/api/checkout", provider="broker", payload=payload
        )

    def complete_checkout(self, session_id: str, amount: Decimal | None = None, customer=None) -> LastOrder:
        """Record the last-order snapshot and empty the cart."""
        snapshot = LastOrder(
            id=session_id,
            amount=amount if amount is not None else self.totals().total,
            currency=CURRENCY,
            customer=customer,
            items=self.cart.items,
        )
        try:
            self.storage.set(LAST_ORDER_STORAGE_KEY, snapshot.model_dump(mode="json"))
        except Exception:
            logger.exception("Could not persist last order snapshot")
        self.cart.clear()
        self.access_code = None
        self.discount_percent = None
        return snapshot

    def last_order(self) -> LastOrder | None:
        saved = self.storage.get(LAST_ORDER_STORAGE_KEY)
        if not saved:
            return None
        try:
            return LastOrder.model_validate(saved)
        except ValidationError:
            return None

"""Shopping cart: add, remove, update quantities, persist after every change."""

from __future__ import annotations

import logging
from decimal import Decimal

from pydantic import ValidationError

from lyrion.config import CART_STORAGE_KEY
from lyrion.schema import Cart, CartItem, Product
from lyrion.storage import Storage

logger = logging.getLogger("lyrion.cart")


class CartManager:
    """Owns one shopper's cart and its persisted copy.

    Every mutating call recomputes the total and writes the whole cart
    document back to storage. A failed write is logged and ignored: the
    in-memory cart stays authoritative until the session ends.
    """

    def __init__(self, storage: Storage, key: str = CART_STORAGE_KEY):
        self.storage = storage
        self.key = key
        self.cart = self._load()

    def _load(self) -> Cart:
        try:
            saved = self.storage.get(self.key)
        except Exception:
            logger.exception("Could not read cart from storage")
            return Cart()
        if not saved:
            return Cart()
        try:
            cart = Cart.model_validate(saved)
        except ValidationError:
            logger.warning("Discarding malformed saved cart")
            return Cart()
        cart.total = cart.compute_total()
        return cart

    def _commit(self) -> None:
        self.cart.total = self.cart.compute_total()
        try:
            self.storage.set(self.key, self.cart.model_dump(mode="json"))
        except Exception:
            logger.exception("Could not persist cart; keeping in-memory copy")

    def _find(self, sku: str, variant: str | None) -> CartItem | None:
        for item in self.cart.items:
            if item.matches(sku, variant):
                return item
        return None

    @property
    def items(self) -> list[CartItem]:
        return list(self.cart.items)

    def add(self, product: Product | CartItem | dict, variant: str | None = None) -> CartItem:
        """Add one unit of a product, merging with an existing same-size line."""
        if isinstance(product, dict):
            product = Product.model_validate(product)
        variant = variant or None

        existing = self._find(product.sku, variant)
        if existing is not None:
            existing.quantity += 1
            line = existing
        else:
            image = getattr(product, "image_front", None) or getattr(product, "image", None)
            line = CartItem(
                sku=product.sku,
                title=product.title,
                price=product.price,
                quantity=1,
                variant=variant,
                category=product.category,
                image=image,
            )
            self.cart.items.append(line)

        self._commit()
        logger.info("Added %s (%s) to cart", product.sku, variant or "-")
        return line

    def remove(self, sku: str, variant: str | None = None) -> bool:
        line = self._find(sku, variant)
        if line is None:
            return False
        self.cart.items.remove(line)
        self._commit()
        return True

    def set_quantity(self, sku: str, variant: str | None, quantity: int) -> bool:
        """Set a line's quantity; zero or less removes the line."""
        line = self._find(sku, variant)
        if line is None:
            return False
        if quantity <= 0:
            return self.remove(sku, variant)
        line.quantity = quantity
        self._commit()
        return True

    def quick_add(self, catalog: dict[str, Product], sku: str) -> str:
        """Add a product straight from a listing card.

        Returns "added", "needs_variant" (the shopper must pick a size on
        the product page first) or "not_found".
        """
        product = catalog.get(sku)
        if product is None:
            return "not_found"
        if product.variants:
            return "needs_variant"
        self.add(product)
        return "added"

    def clear(self) -> None:
        self.cart = Cart()
        self._commit()

    def total(self) -> Decimal:
        return self.cart.compute_total()

    def item_count(self) -> int:
        return self.cart.item_count

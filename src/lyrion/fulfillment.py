"""Print-on-demand provider clients (Printful, Printify) and status callbacks."""

from __future__ import annotations

import logging
from typing import Any

from lyrion.config import Settings
from lyrion.errors import ProviderError
from lyrion.http import request_json
from lyrion.routing import RoutedLine
from lyrion.schema import Customer
from lyrion.totals import money

logger = logging.getLogger("lyrion.fulfillment")

PRINTFUL_API_BASE = "https://api.printful.com"
PRINTIFY_API_BASE = "https://api.printify.com/v1"

# Printful caps external_id at 32 characters
PRINTFUL_EXTERNAL_ID_MAX = 32


def _variant_id(value: str) -> int | str:
    return int(value) if value.isdigit() else value


def _require_variants(provider: str, lines: list[RoutedLine]) -> None:
    missing = [f"{ln.item.sku}/{ln.item.variant or '-'}" for ln in lines if not ln.variant_id]
    if missing:
        raise ProviderError(provider, f"no provider variant for {', '.join(missing)}")


def _require_address(provider: str, customer: Customer) -> None:
    if customer.address is None:
        raise ProviderError(provider, "order has no shipping address")


class PrintfulClient:
    provider = "printful"

    def __init__(self, api_key: str, store_id: str = ""):
        self.api_key = api_key
        self.store_id = store_id

    def _headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if self.store_id:
            headers["X-PF-Store-Id"] = str(self.store_id)
        return headers

    def _call(self, method: str, path: str, payload: Any = None) -> Any:
        if not self.api_key:
            raise ProviderError(self.provider, "PRINTFUL_API_KEY not configured")
        data = request_json(
            method,
            f"{PRINTFUL_API_BASE}{path}",
            provider=self.provider,
            payload=payload,
            headers=self._headers(),
        )
        return (data or {}).get("result")

    def build_order(self, external_id: str, customer: Customer, lines: list[RoutedLine]) -> dict:
        addr = customer.address
        return {
            "external_id": external_id[-PRINTFUL_EXTERNAL_ID_MAX:],
            "recipient": {
                "name": customer.name or "Customer",
                "email": customer.email,
                "address1": addr.line1,
                "address2": addr.line2,
                "city": addr.city,
                "country_code": addr.country or "GB",
                "zip": addr.postal_code,
            },
            "items": [
                {
                    "sync_variant_id": _variant_id(ln.variant_id),
                    "quantity": ln.item.quantity,
                    "retail_price": f"{money(ln.item.price):.2f}",
                    "name": ln.item.title,
                }
                for ln in lines
            ],
        }

    def create_order(self, external_id: str, customer: Customer, lines: list[RoutedLine]) -> dict:
        _require_address(self.provider, customer)
        _require_variants(self.provider, lines)
        order = self._call("POST", "/orders", self.build_order(external_id, customer, lines))
        logger.info("Printful order %s created for %s", (order or {}).get("id"), external_id)
        return order or {}

    def list_store_variants(self) -> list[dict]:
        """List every sync product in the store with its variants."""
        products = self._call("GET", "/store/products") or []
        out = []
        for product in products:
            detail = self._call("GET", f"/store/products/{product['id']}") or {}
            variants = detail.get("sync_variants", [])
            out.append(
                {
                    "product_id": product["id"],
                    "product_name": product.get("name", ""),
                    "external_id": product.get("external_id", ""),
                    "variants": [
                        {
                            "variant_id": v.get("id"),
                            "catalog_variant_id": v.get("variant_id"),
                            "size": v.get("size"),
                            "color": v.get("color"),
                            "retail_price": v.get("retail_price"),
                            "sku": v.get("sku"),
                        }
                        for v in variants
                    ],
                }
            )
        return out


class PrintifyClient:
    provider = "printify"

    def __init__(self, api_key: str, shop_id: str):
        self.api_key = api_key
        self.shop_id = shop_id

    def build_order(self, external_id: str, customer: Customer, lines: list[RoutedLine]) -> dict:
        addr = customer.address
        return {
            "external_id": external_id,
            "label": f"LYRION-{external_id}",
            "line_items": [
                {
                    "product_id": ln.entry.product_id,
                    "variant_id": _variant_id(ln.variant_id),
                    "quantity": ln.item.quantity,
                }
                for ln in lines
            ],
            "shipping_method": 1,
            "send_shipping_notification": True,
            "address_to": {
                "first_name": customer.first_name or "Customer",
                "last_name": customer.last_name,
                "email": customer.email,
                "country": addr.country or "GB",
                "region": "",
                "address1": addr.line1,
                "address2": addr.line2,
                "city": addr.city,
                "zip": addr.postal_code,
            },
        }

    def create_order(self, external_id: str, customer: Customer, lines: list[RoutedLine]) -> dict:
        if not self.api_key or not self.shop_id:
            raise ProviderError(self.provider, "PRINTIFY_API_KEY / PRINTIFY_SHOP_ID not configured")
        _require_address(self.provider, customer)
        _require_variants(self.provider, lines)
        no_product = [ln.item.sku for ln in lines if not ln.entry.product_id]
        if no_product:
            raise ProviderError(self.provider, f"no product_id for {', '.join(no_product)}")

        result = request_json(
            "POST",
            f"{PRINTIFY_API_BASE}/shops/{self.shop_id}/orders.json",
            provider=self.provider,
            payload=self.build_order(external_id, customer, lines),
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        logger.info("Printify order %s created for %s", (result or {}).get("id"), external_id)
        return result or {}


def client_for(provider: str, settings: Settings) -> PrintfulClient | PrintifyClient:
    if provider == "printful":
        return PrintfulClient(settings.printful_api_key, settings.printful_store_id)
    if provider == "printify":
        return PrintifyClient(settings.printify_api_key, settings.printify_shop_id)
    raise ProviderError(provider, "unknown fulfillment provider")


# ---------------------------------------------------------------------------
# Status callbacks
# ---------------------------------------------------------------------------

_FULFILLED_EVENTS = {"package_shipped", "order_fulfilled", "shipment:created"}
_FAILED_EVENTS = {"order_failed", "order_canceled", "order_put_hold", "order:failed"}


def summarize_status_event(payload: dict) -> dict:
    """Classify a provider status callback as fulfilled / failed / other.

    Used for logging only; nothing is written back anywhere.
    """
    event_type = str(payload.get("type", ""))
    data = payload.get("data") or {}
    order = data.get("order") or {}
    if event_type in _FULFILLED_EVENTS:
        status = "fulfilled"
    elif event_type in _FAILED_EVENTS:
        status = "failed"
    else:
        status = "other"

    summary = {
        "type": event_type,
        "status": status,
        "order_id": order.get("id"),
        "external_id": order.get("external_id"),
        "reason": data.get("reason", ""),
    }
    if status == "failed":
        logger.warning("Fulfillment failed: %s", summary)
    else:
        logger.info("Fulfillment update: %s", summary)
    return summary

"""Fulfillment routing table: which provider makes each SKU, in which variant."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from lyrion.errors import ReferenceDataError
from lyrion.http import fetch_json
from lyrion.schema import CartItem, RoutingEntry

logger = logging.getLogger("lyrion.routing")


def parse_routing_table(raw: Any) -> dict[str, RoutingEntry]:
    """Parse the routing document into {sku: entry}.

    Accepts either a list of entries or {"products": [...]}; a bare dict
    keyed by SKU is also accepted.
    """
    if isinstance(raw, dict) and isinstance(raw.get("products"), list):
        raw = raw["products"]
    elif isinstance(raw, dict):
        raw = [{"sku": sku, **entry} for sku, entry in raw.items() if isinstance(entry, dict)]
    if not isinstance(raw, list):
        raise ReferenceDataError("routing table must be a list of entries")

    table: dict[str, RoutingEntry] = {}
    for i, item in enumerate(raw):
        try:
            entry = RoutingEntry.model_validate(item)
        except ValidationError as e:
            logger.warning("Skipping malformed routing entry %d: %s", i, e.errors()[0]["msg"])
            continue
        table[entry.sku] = entry
    return table


def load_routing_table(url: str) -> dict[str, RoutingEntry]:
    """Fetch and parse the routing table. Raises ReferenceDataError on failure."""
    try:
        raw = fetch_json(url, provider="routing")
    except Exception as e:
        raise ReferenceDataError(f"routing table unavailable: {e}") from e
    return parse_routing_table(raw)


@dataclass
class RoutedLine:
    item: CartItem
    entry: RoutingEntry
    variant_id: str | None


@dataclass
class RoutingPlan:
    """Cart lines grouped by provider, plus lines that could not be routed."""

    by_provider: dict[str, list[RoutedLine]] = field(default_factory=dict)
    unrouted: list[tuple[CartItem, str]] = field(default_factory=list)


def plan_fulfillment(items: list[CartItem], table: dict[str, RoutingEntry]) -> RoutingPlan:
    grouped: dict[str, list[RoutedLine]] = defaultdict(list)
    plan = RoutingPlan()

    for item in items:
        entry = table.get(item.sku)
        if entry is None:
            logger.warning("No routing found for SKU: %s", item.sku)
            plan.unrouted.append((item, "no routing entry"))
            continue
        variant_id = entry.variant_for(item.variant)
        grouped[entry.provider].append(RoutedLine(item=item, entry=entry, variant_id=variant_id))

    plan.by_provider = dict(grouped)
    return plan

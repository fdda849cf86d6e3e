"""Reconcile cart snapshots held by the browser, the session, and the database.

A cart snapshot is a plain dict::

    {"items": [{"id": 3, "name": "Tea", "price": 4.5, "quantity": 2}, ...],
     "total": 9.0, "count": 2, "lastUpdated": 1718000000000}

``lastUpdated`` is milliseconds since the epoch, matching what browser code
stores next to its Web Storage copy.
"""

from __future__ import annotations

import copy
import time
from typing import Iterable, Mapping, Optional

from errors import ValidationError

CLEAR_GRACE_MS = 120_000


def current_ms() -> int:
    return int(time.time() * 1000)


def empty_cart(now_ms: int = 0) -> dict[str, object]:
    return {"items": [], "total": 0.0, "count": 0, "lastUpdated": int(now_ms)}


def _as_positive_int(value: object) -> Optional[int]:
    try:
        number = int(str(value))
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _as_price(value: object) -> float:
    try:
        return float(str(value))
    except (TypeError, ValueError):
        return 0.0


def calculate_totals(cart: dict[str, object]) -> dict[str, object]:
    """Recompute ``count`` and ``total`` in place and return the cart."""

    items = cart.get("items") or []
    cart["count"] = sum(int(item.get("quantity") or 0) for item in items)
    cart["total"] = round(
        sum(_as_price(item.get("price")) * int(item.get("quantity") or 0) for item in items),
        2,
    )
    return cart


def normalize_cart(raw: object) -> dict[str, object]:
    """Coerce a client-supplied cart into a clean snapshot."""

    if not isinstance(raw, Mapping) or not isinstance(raw.get("items"), list):
        raise ValidationError("Invalid cart data")

    ordered: list[dict[str, object]] = []
    by_id: dict[int, dict[str, object]] = {}
    for entry in raw["items"]:
        if not isinstance(entry, Mapping):
            continue
        product_id = _as_positive_int(entry.get("id", entry.get("product_id")))
        quantity = _as_positive_int(entry.get("quantity", 1))
        if product_id is None or quantity is None:
            continue
        existing = by_id.get(product_id)
        if existing:
            existing["quantity"] = int(existing["quantity"]) + quantity
            continue
        item = dict(entry)
        item.pop("product_id", None)
        item["id"] = product_id
        item["quantity"] = quantity
        item["price"] = _as_price(entry.get("price"))
        by_id[product_id] = item
        ordered.append(item)

    stamp = _as_positive_int(raw.get("lastUpdated")) or 0
    return calculate_totals({"items": ordered, "total": 0.0, "count": 0, "lastUpdated": stamp})


def merge_carts(
    local: Mapping[str, object],
    server: Mapping[str, object],
    *,
    cleared_at: Optional[int] = None,
    now_ms: Optional[int] = None,
) -> dict[str, object]:
    """Merge two snapshots: the newer cart wins, item conflicts keep the larger quantity."""

    current = now_ms if now_ms is not None else current_ms()
    local_items = list(local.get("items") or [])
    server_items = list(server.get("items") or [])

    if cleared_at is not None and current - int(cleared_at) < CLEAR_GRACE_MS and not server_items:
        return empty_cart(current)

    if not local_items:
        return calculate_totals(copy.deepcopy(dict(server)))
    if not server_items:
        return calculate_totals(copy.deepcopy(dict(local)))

    local_stamp = int(local.get("lastUpdated") or 0)
    server_stamp = int(server.get("lastUpdated") or 0)
    if local_stamp > server_stamp:
        base_items, other_items = local_items, server_items
    else:
        base_items, other_items = server_items, local_items

    merged = [copy.deepcopy(item) for item in base_items]
    positions = {item.get("id"): index for index, item in enumerate(merged)}
    for other in other_items:
        index = positions.get(other.get("id"))
        if index is None:
            positions[other.get("id")] = len(merged)
            merged.append(copy.deepcopy(other))
        elif int(other.get("quantity") or 0) > int(merged[index].get("quantity") or 0):
            merged[index] = copy.deepcopy(other)

    return calculate_totals(
        {"items": merged, "total": 0.0, "count": 0, "lastUpdated": max(local_stamp, server_stamp)}
    )


def reconcile_with_inventory(
    cart: Mapping[str, object],
    products: Iterable[Mapping[str, object]],
) -> tuple[dict[str, object], list[str]]:
    """Clamp a cart against live catalogue rows.

    ``products`` are catalogue dicts carrying ``id``, ``name``, ``price``,
    ``stock`` and ``is_visible``. Returns the adjusted cart and one message
    per change.
    """

    lookup = {int(product["id"]): product for product in products}
    adjustments: list[str] = []
    kept: list[dict[str, object]] = []

    for item in cart.get("items") or []:
        product = lookup.get(int(item["id"]))
        label = str(item.get("name") or f"Product {item['id']}")
        if not product or not product.get("is_visible"):
            adjustments.append(f"{label} is no longer available and was removed from your cart.")
            continue
        stock = int(product.get("stock") or 0)
        if stock <= 0:
            adjustments.append(f"{product['name']} is out of stock and was removed from your cart.")
            continue
        refreshed = dict(item)
        refreshed["name"] = product["name"]
        refreshed["price"] = float(product["price"])
        if int(item["quantity"]) > stock:
            refreshed["quantity"] = stock
            adjustments.append(f"Only {stock} of {product['name']} available. Quantity adjusted.")
        kept.append(refreshed)

    reconciled = calculate_totals(
        {"items": kept, "total": 0.0, "count": 0, "lastUpdated": int(cart.get("lastUpdated") or 0)}
    )
    return reconciled, adjustments


def cart_signature(cart: Mapping[str, object]) -> tuple[tuple[int, int], ...]:
    return tuple(sorted((int(item["id"]), int(item["quantity"])) for item in cart.get("items") or []))

"""
Tests for cart normalisation, merging and inventory reconciliation.
"""

import pytest

from cart_sync import (
    CLEAR_GRACE_MS,
    cart_signature,
    merge_carts,
    normalize_cart,
    reconcile_with_inventory,
)
from errors import ValidationError


def _cart(items, stamp):
    return normalize_cart({"items": items, "lastUpdated": stamp})


def _product(pid, name, stock, price=5.0, visible=True):
    return {"id": pid, "name": name, "stock": stock, "price": price, "is_visible": visible}


class TestNormalize:
    def test_rejects_non_cart_payload(self):
        with pytest.raises(ValidationError, match="Invalid cart data"):
            normalize_cart({"items": "nope"})
        with pytest.raises(ValidationError):
            normalize_cart(None)

    def test_drops_bad_lines_and_sums_duplicates(self):
        cart = normalize_cart(
            {
                "items": [
                    {"id": 1, "name": "Tea", "price": "2.50", "quantity": 2},
                    {"product_id": 1, "quantity": 1},
                    {"id": "x", "quantity": 3},
                    {"id": 2, "quantity": 0},
                    "garbage",
                ],
                "lastUpdated": 42,
            }
        )
        assert [(item["id"], item["quantity"]) for item in cart["items"]] == [(1, 3)]
        assert cart["count"] == 3
        assert cart["total"] == 7.5
        assert cart["lastUpdated"] == 42


class TestMerge:
    def test_newer_cart_is_base_and_larger_quantity_wins(self):
        local = _cart([{"id": 1, "price": 1, "quantity": 1}, {"id": 2, "price": 1, "quantity": 5}], 2000)
        server = _cart([{"id": 1, "price": 1, "quantity": 4}, {"id": 3, "price": 1, "quantity": 1}], 1000)

        merged = merge_carts(local, server, now_ms=10_000)

        assert cart_signature(merged) == ((1, 4), (2, 5), (3, 1))
        assert [item["id"] for item in merged["items"]] == [1, 2, 3]
        assert merged["lastUpdated"] == 2000
        assert merged["count"] == 10

    def test_empty_side_returns_other(self):
        server = _cart([{"id": 9, "price": 3, "quantity": 2}], 500)
        merged = merge_carts({"items": []}, server, now_ms=10_000)
        assert cart_signature(merged) == ((9, 2),)
        assert merged["total"] == 6.0

    def test_recent_clear_wins_over_stale_local_cart(self):
        local = _cart([{"id": 1, "price": 1, "quantity": 2}], 100)
        now = 1_000_000
        merged = merge_carts(local, {"items": []}, cleared_at=now - 1000, now_ms=now)
        assert merged["items"] == []

    def test_clear_outside_grace_window_is_ignored(self):
        local = _cart([{"id": 1, "price": 1, "quantity": 2}], 100)
        now = 1_000_000
        merged = merge_carts(local, {"items": []}, cleared_at=now - CLEAR_GRACE_MS - 1, now_ms=now)
        assert cart_signature(merged) == ((1, 2),)

    def test_inputs_are_not_mutated(self):
        local = _cart([{"id": 1, "price": 1, "quantity": 1}], 2000)
        server = _cart([{"id": 1, "price": 1, "quantity": 4}], 1000)
        merge_carts(local, server, now_ms=5000)
        assert local["items"][0]["quantity"] == 1
        assert server["items"][0]["quantity"] == 4


class TestReconcile:
    def test_adjustments_for_hidden_empty_and_short_stock(self):
        cart = _cart(
            [
                {"id": 1, "name": "Old Name", "price": 1, "quantity": 2},
                {"id": 2, "name": "Bread", "price": 1, "quantity": 1},
                {"id": 3, "name": "Eggs", "price": 1, "quantity": 6},
                {"id": 4, "name": "Gone", "price": 1, "quantity": 1},
            ],
            100,
        )
        products = [
            _product(1, "Honey", 10, price=8.5),
            _product(2, "Bread", 0),
            _product(3, "Eggs", 4, price=4.75),
            _product(4, "Gone", 10, visible=False),
        ]

        reconciled, adjustments = reconcile_with_inventory(cart, products)

        assert cart_signature(reconciled) == ((1, 2), (3, 4))
        assert reconciled["items"][0]["name"] == "Honey"
        assert reconciled["total"] == 36.0
        assert adjustments == [
            "Bread is out of stock and was removed from your cart.",
            "Only 4 of Eggs available. Quantity adjusted.",
            "Gone is no longer available and was removed from your cart.",
        ]

    def test_missing_product_is_removed(self):
        cart = _cart([{"id": 77, "quantity": 1}], 100)
        reconciled, adjustments = reconcile_with_inventory(cart, [])
        assert reconciled["items"] == []
        assert adjustments == ["Product 77 is no longer available and was removed from your cart."]

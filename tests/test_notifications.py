"""
Tests for back-in-stock subscriptions and the restock fan-out.
"""

import pytest

import database
from errors import NotFoundError, ValidationError
from notifications import (
    get_pending_notifications,
    get_user_notifications,
    handle_stock_update,
    subscribe,
    unsubscribe,
)


@pytest.fixture
def sold_out(make_product):
    return make_product("Free Range Eggs", stock=0)


class TestSubscriptions:
    def test_subscribe_and_list(self, customer, sold_out):
        subscribe(customer["id"], sold_out["id"])
        entries = get_user_notifications(customer["id"])
        assert entries[0]["product_name"] == "Free Range Eggs"
        assert entries[0]["notification_sent"] is False
        assert [row["user_id"] for row in get_pending_notifications(sold_out["id"])] == [customer["id"]]

    def test_in_stock_product_refused(self, customer, make_product):
        product = make_product("Honey", stock=3)
        with pytest.raises(ValidationError, match="in stock"):
            subscribe(customer["id"], product["id"])

    def test_unknown_product(self, customer):
        with pytest.raises(NotFoundError):
            subscribe(customer["id"], 999)

    def test_unsubscribe(self, customer, sold_out):
        subscribe(customer["id"], sold_out["id"])
        assert unsubscribe(customer["id"], sold_out["id"]) is True
        assert unsubscribe(customer["id"], sold_out["id"]) is False

    def test_resubscribe_rearms(self, customer, sold_out):
        subscribe(customer["id"], sold_out["id"])
        handle_stock_update(sold_out["id"], 3, 0, notifier=lambda sub, product: None)
        database.update_product(sold_out["id"], stock=0)
        subscribe(customer["id"], sold_out["id"])
        assert len(get_user_notifications(customer["id"])) == 1
        assert get_pending_notifications(sold_out["id"])


class TestRestockFanOut:
    def test_only_zero_to_positive_triggers(self, customer, sold_out):
        subscribe(customer["id"], sold_out["id"])
        calls = []
        result = handle_stock_update(sold_out["id"], 5, 2, notifier=lambda sub, product: calls.append(sub))
        assert result["message"] == "No notifications needed"
        assert calls == []

    def test_each_subscriber_notified_once(self, make_user, sold_out):
        first, second = make_user("customer"), make_user("customer")
        subscribe(first["id"], sold_out["id"])
        subscribe(second["id"], sold_out["id"])

        delivered = []
        result = handle_stock_update(
            sold_out["id"], 4, 0, notifier=lambda sub, product: delivered.append((sub["user_email"], product["stock"]))
        )
        assert result["notificationsSent"] == 2
        assert sorted(delivered) == sorted([(first["email"], 4), (second["email"], 4)])
        assert get_pending_notifications(sold_out["id"]) == []

        again = handle_stock_update(sold_out["id"], 4, 0, notifier=lambda sub, product: delivered.append(sub))
        assert again["notificationsSent"] == 0

    def test_failed_delivery_stays_pending(self, customer, sold_out):
        subscribe(customer["id"], sold_out["id"])

        def broken(subscription, product):
            raise RuntimeError("mail server down")

        result = handle_stock_update(sold_out["id"], 2, 0, notifier=broken)
        assert result["notificationsFailed"] == 1
        assert result["notificationsSent"] == 0
        assert len(get_pending_notifications(sold_out["id"])) == 1

    def test_subscribe_via_api(self, customer_client, sold_out):
        resp = customer_client.post(f"/user/notifications/{sold_out['id']}")
        assert resp.status_code == 201
        listed = customer_client.get("/user/notifications").get_json()["notifications"]
        assert [entry["product_id"] for entry in listed] == [sold_out["id"]]
        assert customer_client.delete(f"/user/notifications/{sold_out['id']}").status_code == 200
        assert customer_client.delete(f"/user/notifications/{sold_out['id']}").status_code == 404

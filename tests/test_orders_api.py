"""
API tests for checkout, order tracking, cancellation, reviews and shopkeeper tools.
"""

import pytest
from sqlalchemy import update

import database
from notifications import get_user_notifications, subscribe

SHIPPING = {"shippingAddress": "12 High Street", "city": "Leeds", "postalCode": "LS1 4AP", "phone": "0113 496 0000"}


@pytest.fixture
def honey(make_product):
    return make_product("Honey", price=8.5, stock=5)


@pytest.fixture
def placed_order(customer_client, honey):
    customer_client.post("/user/api/cart/add", json={"productId": honey["id"], "quantity": 2})
    resp = customer_client.post("/user/checkout", json=SHIPPING)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["order"]


@pytest.fixture
def shopkeeper_client(flask_app, honey, sign_in):
    owner = database.get_user_by_id(honey["shopkeeper_id"])
    client = flask_app.test_client()
    sign_in(client, {"email": owner["email"]})
    return client


class TestCheckout:
    def test_checkout_creates_order_and_takes_stock(self, customer_client, customer, honey, placed_order):
        assert placed_order["reference"] == f"LB-{placed_order['id']:05d}"
        assert placed_order["status"] == "pending"
        assert placed_order["total_amount"] == 17.0
        assert placed_order["shipping_address"] == "12 High Street"
        assert placed_order["items"][0]["product_name"] == "Honey"
        assert database.get_product(honey["id"])["stock"] == 3
        assert database.fetch_user_cart(customer["id"])["items"] == []

    def test_shipping_fields_encrypted_at_rest(self, placed_order):
        with database.session_scope() as session:
            order = session.get(database.Order, placed_order["id"])
            assert "High Street" not in order.shipping_address
            assert order.postal_code != "LS1 4AP"

    def test_snake_case_fields_accepted(self, customer_client, honey):
        customer_client.post("/user/api/cart/add", json={"productId": honey["id"]})
        resp = customer_client.post(
            "/user/checkout",
            json={"shipping_address": "1 Mill Lane", "city": "York", "postal_code": "YO1 7HH"},
        )
        assert resp.status_code == 201

    def test_missing_address_rejected(self, customer_client, honey):
        customer_client.post("/user/api/cart/add", json={"productId": honey["id"]})
        resp = customer_client.post("/user/checkout", json={"city": "Leeds"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Shipping address, city and postal code are required"

    def test_empty_cart_rejected(self, customer_client):
        resp = customer_client.post("/user/checkout", json=SHIPPING)
        assert resp.status_code == 400
        assert resp.get_json()["error"].startswith("Your cart is empty")

    def test_insufficient_stock_rolls_back(self, customer_client, customer, honey):
        customer_client.post("/user/api/cart/add", json={"productId": honey["id"], "quantity": 4})
        database.update_product(honey["id"], stock=1)

        resp = customer_client.post("/user/checkout", json=SHIPPING)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == 'Insufficient stock for "Honey". Available: 1, Requested: 4'
        assert database.get_product(honey["id"])["stock"] == 1
        assert database.fetch_orders_for_user(customer["id"]) == []

    def test_product_hidden_before_checkout(self, customer_client, honey):
        customer_client.post("/user/api/cart/add", json={"productId": honey["id"]})
        database.update_product(honey["id"], is_active=False)
        resp = customer_client.post("/user/checkout", json=SHIPPING)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == 'Product "Honey" is no longer available'

    def test_stock_taken_mid_checkout_aborts_order(self, customer_client, customer, honey, monkeypatch):
        customer_client.post("/user/api/cart/add", json={"productId": honey["id"], "quantity": 3})
        reserve = database._reserve_stock

        def rival_checkout_first(session, product_id, quantity):
            # Another order takes four units after this checkout has read stock 5.
            session.execute(
                update(database.Product).where(database.Product.id == product_id).values(stock=1)
            )
            return reserve(session, product_id, quantity)

        monkeypatch.setattr(database, "_reserve_stock", rival_checkout_first)
        resp = customer_client.post("/user/checkout", json=SHIPPING)

        assert resp.status_code == 400
        assert resp.get_json()["error"] == 'Insufficient stock for "Honey". Please review your cart.'
        assert database.fetch_orders_for_user(customer["id"]) == []
        assert len(database.fetch_user_cart(customer["id"])["items"]) == 1

    def test_reserve_stock_checks_the_database_row(self, honey):
        with database.session_scope() as session:
            loaded = session.get(database.Product, honey["id"])
            assert loaded.stock == 5
            assert database._reserve_stock(session, honey["id"], 3) is True
            assert database._reserve_stock(session, honey["id"], 3) is False
        assert database.get_product(honey["id"])["stock"] == 2


class TestOrderViews:
    def test_history_and_progress(self, customer_client, placed_order):
        orders = customer_client.get("/user/orders").get_json()["orders"]
        assert [order["id"] for order in orders] == [placed_order["id"]]

        body = customer_client.get(f"/user/api/orders/{placed_order['id']}/progress").get_json()
        assert body["progress"]["currentStep"] == 1
        assert body["progress"]["percentage"] == 20

    def test_other_customers_cannot_see_order(self, flask_app, placed_order, make_user, sign_in):
        stranger = make_user("customer")
        client = flask_app.test_client()
        sign_in(client, stranger)
        assert client.get(f"/user/api/orders/{placed_order['id']}").status_code == 404

    def test_tracking_timeline(self, customer_client, shopkeeper_client, placed_order):
        shopkeeper_client.put(
            f"/shopkeeper/orders/{placed_order['id']}/status",
            json={"status": "processing", "location": "Leeds depot"},
        )
        body = customer_client.get(f"/user/orders/{placed_order['id']}/track").get_json()
        assert [event["status"] for event in body["tracking"]] == ["Order Placed", "Processing"]
        assert body["tracking"][1]["location"] == "Leeds depot"
        assert [entry["new_status"] for entry in body["history"]] == ["pending", "processing"]
        assert body["progress"]["percentage"] == 40


class TestCancellation:
    def test_cancel_restocks(self, customer_client, honey, placed_order):
        resp = customer_client.post(f"/user/orders/{placed_order['id']}/cancel", json={"reason": "Changed my mind"})
        assert resp.status_code == 200
        assert resp.get_json()["order"]["status"] == "cancelled"
        assert database.get_product(honey["id"])["stock"] == 5

    def test_shipped_order_cannot_be_cancelled(self, customer_client, shopkeeper_client, placed_order):
        for status in ("processing", "shipped"):
            shopkeeper_client.put(f"/shopkeeper/orders/{placed_order['id']}/status", json={"status": status})
        resp = customer_client.post(f"/user/orders/{placed_order['id']}/cancel")
        assert resp.status_code == 400

    def test_restock_notifies_waiting_customers(self, customer_client, make_product, make_user):
        jam = make_product("Plum Jam", stock=1)
        customer_client.post("/user/api/cart/add", json={"productId": jam["id"]})
        order = customer_client.post("/user/checkout", json=SHIPPING).get_json()["order"]

        waiting = make_user("customer")
        subscribe(waiting["id"], jam["id"])
        assert get_user_notifications(waiting["id"])[0]["notification_sent"] is False

        customer_client.post(f"/user/orders/{order['id']}/cancel")
        assert get_user_notifications(waiting["id"])[0]["notification_sent"] is True


class TestShopkeeperTools:
    def test_status_update_rules(self, shopkeeper_client, placed_order, flask_app, make_user, sign_in):
        url = f"/shopkeeper/orders/{placed_order['id']}/status"
        resp = shopkeeper_client.put(url, json={"status": "delivered"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Cannot move an order from pending to delivered."

        rival = make_user("shopkeeper")
        rival_client = flask_app.test_client()
        sign_in(rival_client, rival)
        assert rival_client.put(url, json={"status": "processing"}).status_code == 403

        resp = shopkeeper_client.put(url, json={"status": "processing"})
        assert resp.status_code == 200
        assert resp.get_json()["order"]["status"] == "processing"

    def test_shopkeeper_sees_only_own_lines(self, shopkeeper_client, customer_client, placed_order, make_user):
        other_shop = make_user("shopkeeper")
        tea_id = database.insert_product(other_shop["id"], "Tea", 3.0, stock=5)
        database.set_product_approval(tea_id, "approved")
        customer_client.post("/user/api/cart/add", json={"productId": tea_id})
        customer_client.post("/user/checkout", json=SHIPPING)

        orders = shopkeeper_client.get("/shopkeeper/orders").get_json()["orders"]
        assert [order["id"] for order in orders] == [placed_order["id"]]
        assert orders[0]["shopkeeper_total"] == 17.0
        assert orders[0]["customer_email"]

    def test_create_product_pending_with_drive_link(self, shopkeeper_client):
        resp = shopkeeper_client.post(
            "/shopkeeper/products",
            json={
                "name": "Beeswax Candle",
                "price": 6.5,
                "stock": 4,
                "imageUrl": "https://drive.google.com/file/d/abc123/view",
            },
        )
        assert resp.status_code == 201
        product = resp.get_json()["product"]
        assert product["status"] == "pending"
        assert product["is_visible"] is False
        assert product["image_url"] == "https://drive.google.com/uc?export=download&id=abc123"

    def test_create_product_validation(self, shopkeeper_client):
        resp = shopkeeper_client.post("/shopkeeper/products", json={"name": "Candle", "price": 2, "imageUrl": "nope"})
        assert resp.status_code == 400
        resp = shopkeeper_client.post("/shopkeeper/products", json={"name": "Candle"})
        assert resp.get_json()["error"] == "Price is required"

    def test_cannot_edit_other_shop_product(self, shopkeeper_client, make_user):
        other_shop = make_user("shopkeeper")
        tea_id = database.insert_product(other_shop["id"], "Tea", 3.0)
        resp = shopkeeper_client.put(f"/shopkeeper/products/{tea_id}", json={"price": 1})
        assert resp.status_code == 403

    def test_is_active_parsed_strictly(self, shopkeeper_client, honey):
        resp = shopkeeper_client.put(f"/shopkeeper/products/{honey['id']}", json={"isActive": "false"})
        assert resp.get_json()["product"]["is_active"] is False
        resp = shopkeeper_client.put(f"/shopkeeper/products/{honey['id']}", json={"isActive": True})
        assert resp.get_json()["product"]["is_active"] is True

        resp = shopkeeper_client.put(f"/shopkeeper/products/{honey['id']}", json={"isActive": "maybe"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "isActive must be true or false"
        assert database.get_product(honey["id"])["is_active"] is True

    def test_restock_through_edit_notifies(self, shopkeeper_client, make_product, make_user):
        eggs = make_product("Eggs", stock=0)
        waiting = make_user("customer")
        subscribe(waiting["id"], eggs["id"])

        resp = shopkeeper_client.put(f"/shopkeeper/products/{eggs['id']}", json={"stock": 12})
        assert resp.get_json()["product"]["stock"] == 12
        assert get_user_notifications(waiting["id"])[0]["notification_sent"] is True

    def test_deleted_product_keeps_order_snapshot(self, shopkeeper_client, customer_client, honey, placed_order):
        assert shopkeeper_client.delete(f"/shopkeeper/products/{honey['id']}").status_code == 200
        order = customer_client.get(f"/user/api/orders/{placed_order['id']}").get_json()["order"]
        assert order["items"][0]["product_name"] == "Honey"
        assert order["items"][0]["product_id"] is None


class TestReviews:
    def test_review_once_per_product(self, customer_client, honey, placed_order):
        url = f"/user/orders/{placed_order['id']}/review"
        resp = customer_client.post(url, json={"productId": honey["id"], "rating": 5, "comment": "Lovely"})
        assert resp.status_code == 201

        resp = customer_client.post(url, json={"productId": honey["id"], "rating": 4})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "You have already reviewed this product"

        detail = customer_client.get(f"/api/products/{honey['id']}").get_json()
        assert detail["rating"] == {"avg_rating": 5.0, "review_count": 1}
        assert detail["reviews"][0]["comment"] == "Lovely"

    def test_rating_range_and_ownership(self, customer_client, honey, placed_order, make_product):
        url = f"/user/orders/{placed_order['id']}/review"
        assert customer_client.post(url, json={"productId": honey["id"], "rating": 9}).status_code == 400
        other = make_product("Soap")
        assert customer_client.post(url, json={"productId": other["id"], "rating": 4}).status_code == 404

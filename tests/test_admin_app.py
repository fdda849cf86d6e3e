"""
API tests for the admin console: moderation, account management and the audit trail.
"""

import json

import pytest

import database
from conftest import PASSWORD
from disputes import create_dispute
from security import verify_password


@pytest.fixture
def admin(make_user):
    return make_user("admin")


@pytest.fixture
def console(admin_client, admin):
    resp = admin_client.post("/login", json={"email": admin["email"], "password": PASSWORD})
    assert resp.status_code == 200
    return admin_client


def _actions():
    return [log["action"] for log in database.fetch_admin_logs()["logs"]]


class TestSession:
    def test_non_admin_cannot_sign_in(self, admin_client, customer):
        resp = admin_client.post("/login", json={"email": customer["email"], "password": PASSWORD})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Invalid admin credentials"

    def test_routes_require_admin(self, admin_client):
        assert admin_client.get("/users").status_code == 401

    def test_login_is_audited(self, console, admin):
        assert _actions() == ["admin_login"]
        assert console.get("/me").get_json()["admin"]["id"] == admin["id"]


class TestUsers:
    def test_list_and_filter(self, console, make_user):
        make_user("shopkeeper")
        banned = make_user("customer")
        database.set_user_ban(banned["id"], True, reason="Spam")

        body = console.get("/users?role=shopkeeper").get_json()
        assert [user["role"] for user in body["users"]] == ["shopkeeper"]
        body = console.get("/users?banned=true").get_json()
        assert [user["id"] for user in body["users"]] == [banned["id"]]

    def test_ban_requires_reason_and_blocks_self(self, console, admin, customer):
        assert console.post(f"/users/{customer['id']}/ban", json={}).status_code == 400
        assert console.post(f"/users/{admin['id']}/ban", json={"reason": "oops"}).status_code == 400

        resp = console.post(f"/users/{customer['id']}/ban", json={"reason": "Fraud"})
        assert resp.get_json()["user"]["is_banned"] is True
        resp = console.post(f"/users/{customer['id']}/unban")
        assert resp.get_json()["user"]["is_banned"] is False
        assert _actions()[:2] == ["unban_user", "ban_user"]

    def test_other_admins_cannot_be_banned(self, console, make_user):
        other = make_user("admin")
        resp = console.post(f"/users/{other['id']}/ban", json={"reason": "Power struggle"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Admin accounts cannot be banned"

    def test_update_user_and_self_demotion(self, console, admin, customer):
        resp = console.put(f"/users/{customer['id']}", json={"name": "Priya P", "role": "shopkeeper"})
        assert resp.get_json()["user"]["role"] == "shopkeeper"
        assert console.put(f"/users/{admin['id']}", json={"role": "customer"}).status_code == 400

        entry = database.fetch_admin_logs(action="update_user")["logs"][0]
        assert json.loads(entry["details"]) == {"fields": ["name", "role"]}

    def test_password_reset_respects_policy(self, console, customer):
        assert console.put(f"/users/{customer['id']}", json={"password": "password"}).status_code == 400
        assert console.put(f"/users/{customer['id']}", json={"password": "N3w#Secret"}).status_code == 200
        stored = database.get_user_by_email(customer["email"])
        assert verify_password("N3w#Secret", stored["password_hash"])

    def test_delete_customer_cancels_open_orders(self, console, customer, make_product):
        product = make_product("Honey", stock=5)
        database.add_to_cart(customer["id"], product["id"], 2)
        order = database.place_order(customer["id"], shipping_address="1 Road", city="Leeds", postal_code="LS1")

        resp = console.delete(f"/users/{customer['id']}")
        body = resp.get_json()
        assert body["cancelledOrders"] == [order["id"]]
        assert database.get_user_by_id(customer["id"]) is None
        assert database.get_product(product["id"])["stock"] == 5
        assert database.get_order(order["id"])["status"] == "cancelled"
        assert console.get(f"/users/{customer['id']}").status_code == 404

    def test_delete_shopkeeper_removes_products(self, console, make_user):
        shop = make_user("shopkeeper")
        database.insert_product(shop["id"], "Tea", 3.0)
        body = console.delete(f"/users/{shop['id']}").get_json()
        assert body["removedProducts"] == 1

    def test_cannot_delete_self(self, console, admin):
        assert console.delete(f"/users/{admin['id']}").status_code == 400

    def test_activity_summary(self, console, customer, make_product):
        product = make_product("Honey", price=4.0, stock=5)
        database.add_to_cart(customer["id"], product["id"], 3)
        database.place_order(customer["id"], shipping_address="1 Road", city="Leeds", postal_code="LS1")

        activity = console.get(f"/users/{customer['id']}").get_json()["activity"]
        assert activity["orderCount"] == 1
        assert activity["totalSpent"] == 12.0
        assert activity["recentOrders"][0]["reference"].startswith("LB-")


class TestProducts:
    def test_moderation_queue(self, console, make_product):
        pending = make_product("Pending Jam", status="pending")
        make_product("Honey")

        body = console.get("/products").get_json()
        assert [product["name"] for product in body["products"]] == ["Pending Jam"]

        assert console.post(f"/products/{pending['id']}/reject", json={}).status_code == 400
        resp = console.post(f"/products/{pending['id']}/reject", json={"reason": "Blurry photo"})
        assert resp.get_json()["product"]["rejection_reason"] == "Blurry photo"

        resp = console.post(f"/products/{pending['id']}/approve")
        product = resp.get_json()["product"]
        assert product["status"] == "approved"
        assert product["is_visible"] is True
        assert product["rejection_reason"] is None

    def test_delete_product_logged(self, console, make_product):
        product = make_product("Honey")
        assert console.delete(f"/products/{product['id']}").status_code == 200
        assert console.delete(f"/products/{product['id']}").status_code == 404
        entry = database.fetch_admin_logs(action="delete_product")["logs"][0]
        assert entry["target_id"] == product["id"]
        assert json.loads(entry["details"])["name"] == "Honey"


class TestProductCache:
    def _cache_detail(self, client, product_id):
        assert client.get(f"/api/products/{product_id}").get_json()["cached"] is False
        assert client.get(f"/api/products/{product_id}").get_json()["cached"] is True

    def test_reject_drops_cached_detail(self, console, client, make_product):
        product = make_product("Honey")
        self._cache_detail(client, product["id"])

        console.post(f"/products/{product['id']}/reject", json={"reason": "Mislabelled jar"})
        assert client.get(f"/api/products/{product['id']}").status_code == 404

    def test_delete_drops_cached_detail(self, console, client, make_product):
        product = make_product("Honey")
        self._cache_detail(client, product["id"])

        console.delete(f"/products/{product['id']}")
        assert client.get(f"/api/products/{product['id']}").status_code == 404

    def test_approve_refreshes_cached_detail(self, console, client, make_product):
        product = make_product("Honey")
        self._cache_detail(client, product["id"])

        console.post(f"/products/{product['id']}/approve")
        assert client.get(f"/api/products/{product['id']}").get_json()["cached"] is False

    def test_deleting_shopkeeper_drops_cached_detail(self, console, client, make_product):
        product = make_product("Honey")
        self._cache_detail(client, product["id"])

        console.delete(f"/users/{product['shopkeeper_id']}")
        assert client.get(f"/api/products/{product['id']}").status_code == 404


class TestDisputesAndLogs:
    def test_dispute_triage_is_logged(self, console, admin, customer, make_product):
        product = make_product("Honey", stock=5)
        database.add_to_cart(customer["id"], product["id"], 1)
        order = database.place_order(customer["id"], shipping_address="1 Road", city="Leeds", postal_code="LS1")
        dispute = create_dispute(customer, order["id"], "Never arrived", "Still waiting after ten days.", "delivery")

        assert console.get("/disputes").get_json()["pagination"]["total"] == 1
        resp = console.put(f"/disputes/{dispute['id']}", json={"priority": "urgent", "assigned_to": admin["id"]})
        assert resp.get_json()["dispute"]["priority"] == "urgent"
        assert "update_dispute" in _actions()

    def test_log_filters_and_pagination(self, console, admin):
        body = console.get(f"/logs?admin_id={admin['id']}&limit=1").get_json()
        assert body["pagination"]["total"] == 1
        assert body["logs"][0]["admin_name"] == admin["name"]
        assert console.get("/logs?admin_id=abc").status_code == 400

"""
Test configuration: an in-memory database, Flask test clients and small data factories.

Environment variables are set before any LocalBuy module is imported so the
engine, bcrypt cost and encryption key are all test-friendly.
"""

import os

from cryptography.fernet import Fernet

os.environ.setdefault("LOCALBUY_DATABASE_URL", "sqlite://")
os.environ.setdefault("LOCALBUY_SKIP_SEED", "1")
os.environ.setdefault("LOCALBUY_BCRYPT_ROUNDS", "4")
os.environ.setdefault("SENSITIVE_DATA_KEY", Fernet.generate_key().decode("utf-8"))

import pytest

import database
import disputes
from cache import PRODUCT_CACHE
from security import hash_password

PASSWORD = "Sup3r-Secret!"


@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Rebuild the schema and empty the product cache for every test; uploads go to a temp dir."""
    database.Base.metadata.drop_all(bind=database.engine)
    database.Base.metadata.create_all(bind=database.engine)
    PRODUCT_CACHE.clear()
    monkeypatch.setattr(disputes, "UPLOAD_DIR", tmp_path / "uploads")
    yield
    database.Base.metadata.drop_all(bind=database.engine)


@pytest.fixture
def flask_app():
    from app import app

    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def admin_client():
    from admin_app import admin_app

    admin_app.config.update(TESTING=True)
    return admin_app.test_client()


@pytest.fixture
def make_user():
    counter = {"n": 0}

    def _make(role="customer", name=None, email=None):
        counter["n"] += 1
        n = counter["n"]
        return {
            "id": database.create_user(
                name or f"{role.title()} {n}",
                email or f"{role}{n}@example.com",
                hash_password(PASSWORD),
                role=role,
            ),
            "email": email or f"{role}{n}@example.com",
            "role": role,
            "name": name or f"{role.title()} {n}",
        }

    return _make


@pytest.fixture
def make_product(make_user):
    """Create an approved product; pass ``status`` to leave it pending or rejected."""
    shop = {}

    def _make(name="Honey Jar", price=10.0, stock=5, status="approved", shopkeeper_id=None, category="Grocery"):
        if shopkeeper_id is None:
            if "id" not in shop:
                shop.update(make_user("shopkeeper"))
            shopkeeper_id = shop["id"]
        product_id = database.insert_product(shopkeeper_id, name, price, stock=stock, category=category)
        if status != "pending":
            database.set_product_approval(product_id, status)
        return database.get_product(product_id)

    return _make


@pytest.fixture
def sign_in():
    def _sign_in(client, user, password=PASSWORD):
        resp = client.post("/auth/login", json={"email": user["email"], "password": password})
        assert resp.status_code == 200, resp.get_json()
        return resp

    return _sign_in


@pytest.fixture
def customer(make_user):
    return make_user("customer")


@pytest.fixture
def customer_client(client, customer, sign_in):
    sign_in(client, customer)
    return client

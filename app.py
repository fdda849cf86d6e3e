"""Public-facing Flask application for the LocalBuy marketplace."""

from __future__ import annotations

import logging
import os
import re
from functools import wraps
from typing import Mapping, Optional, cast

from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from cache import PRODUCT_CACHE, PRODUCT_CACHE_MINUTES, TTLCache, invalidate_product_cache
from cart_sync import (
    cart_signature,
    current_ms,
    empty_cart,
    merge_carts,
    normalize_cart,
    reconcile_with_inventory,
)
from database import (
    add_to_cart,
    cancel_order,
    clear_user_cart,
    create_user,
    database_healthy,
    delete_product,
    fetch_order_tracking,
    fetch_orders_for_shopkeeper,
    fetch_orders_for_user,
    fetch_product_categories,
    fetch_product_reviews,
    fetch_products,
    fetch_products_by_ids,
    fetch_user_cart,
    get_order,
    get_product,
    get_product_rating_summary,
    get_user_by_email,
    get_user_by_id,
    init_db,
    insert_product,
    place_order,
    remove_cart_item,
    replace_user_cart,
    set_cart_quantity,
    submit_review,
    update_order_status,
    update_product,
)
from disputes import add_attachments, add_comment, create_dispute, get_dispute_details, list_disputes, update_dispute
from errors import AuthenticationError, LocalBuyError, NotFoundError, PermissionDenied, ValidationError
from images import convert_google_drive_link, validate_image_url
from notifications import get_user_notifications, subscribe, unsubscribe
from order_status import calculate_order_progress
from security import hash_password, validate_password, verify_password

LOG_LEVEL = os.getenv("LOCALBUY_LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

# Ensure the database and seed data exist before serving.
init_db()

app = Flask(__name__)
app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
app.config["SESSION_COOKIE_NAME"] = "localbuy-session"
app.config["MAX_CONTENT_LENGTH"] = 30 * 1024 * 1024
app.logger.setLevel(LOG_LEVEL)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
REGISTRATION_ROLES = ("customer", "shopkeeper")

CART_CACHE_KEY = "cart"
CART_CLEARED_KEY = "cart_cleared_at"
PREFERENCES_KEY = "preferences"
CART_SNAPSHOT_MINUTES = 30 * 24 * 60
CART_CLEARED_MINUTES = 2

DEFAULT_PREFERENCES: dict[str, object] = {
    "theme": "light",
    "viewMode": "grid",
    "notifications": True,
    "autoSave": True,
}
PREFERENCE_CHOICES: dict[str, tuple[object, ...]] = {
    "theme": ("light", "dark"),
    "viewMode": ("grid", "list"),
    "notifications": (True, False),
    "autoSave": (True, False),
}


# --------------------------------------------------------------------------------------
# Request helpers
# --------------------------------------------------------------------------------------


def _session_cache() -> TTLCache:
    return TTLCache(session)


def _json_body() -> dict[str, object]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _body_value(payload: Mapping[str, object], *names: str, default: object = None) -> object:
    """Return the value of the first of ``names`` present in ``payload``."""
    for name in names:
        if name in payload and payload[name] is not None:
            return payload[name]
    return default


def _text(payload: Mapping[str, object], *names: str) -> str:
    return str(_body_value(payload, *names, default="") or "").strip()


def _flag(value: object, field_name: str) -> bool:
    """Accept JSON booleans or their common string spellings."""
    if isinstance(value, bool):
        return value
    flag = {"true": True, "1": True, "false": False, "0": False}.get(str(value).strip().lower())
    if flag is None:
        raise ValidationError(f"{field_name} must be true or false")
    return flag


def _is_valid_email(value: str) -> bool:
    """Basic validation to ensure the string resembles an email address."""
    if not value:
        return False
    return bool(EMAIL_PATTERN.match(value))


def _sign_out() -> None:
    session.pop("user_id", None)
    session.pop("role", None)
    session.modified = True


def _current_user() -> Mapping[str, object] | None:
    """Return the authenticated user dict, clearing stale sessions if needed."""
    user_id = session.get("user_id")
    if user_id is None:
        return None
    try:
        user_id_int = int(user_id)
    except (TypeError, ValueError):
        _sign_out()
        return None

    user = get_user_by_id(user_id_int)
    if not user:
        _sign_out()
        return None
    return user


def login_required(*roles: str):
    """Require a signed-in, unbanned user, optionally with one of ``roles``."""

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            user = _current_user()
            if not user:
                raise AuthenticationError("Please sign in to continue")
            if user.get("is_banned"):
                _sign_out()
                raise PermissionDenied("Your account has been banned")
            if roles and user.get("role") not in roles:
                raise PermissionDenied("Access denied")
            g.user = user
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _user_id() -> int:
    return int(cast(int, g.user["id"]))


def _store_cart(cart: Mapping[str, object]) -> None:
    """Keep the session copy of the cart in step with the server cart."""
    _session_cache().set(CART_CACHE_KEY, dict(cart), expire_minutes=CART_SNAPSHOT_MINUTES)


def _mark_cart_cleared() -> None:
    cache = _session_cache()
    cache.set(CART_CLEARED_KEY, current_ms(), expire_minutes=CART_CLEARED_MINUTES)
    cache.set(CART_CACHE_KEY, empty_cart(current_ms()), expire_minutes=CART_SNAPSHOT_MINUTES)


def _sync_cart(user_id: int, local: Mapping[str, object]) -> tuple[dict[str, object], list[str], bool]:
    """Merge a client cart into the server cart, clamp it to stock and persist it everywhere."""

    server = fetch_user_cart(user_id)
    cache = _session_cache()
    cleared_at = cache.get(CART_CLEARED_KEY)
    merged = merge_carts(local, server, cleared_at=cleared_at)
    if cleared_at is not None:
        # A clear marker is honoured by one sync only.
        cache.remove(CART_CLEARED_KEY)
    products = fetch_products_by_ids(int(item["id"]) for item in merged["items"])
    reconciled, adjustments = reconcile_with_inventory(merged, products)

    changed = cart_signature(reconciled) != cart_signature(server)
    cart = replace_user_cart(user_id, reconciled) if changed else server
    _store_cart(cart)
    return cart, adjustments, changed


def _order_for_viewer(order_id: int) -> dict[str, object]:
    """Load an order the signed-in user may look at."""
    order = get_order(order_id)
    role = g.user.get("role")
    if not order or (role == "customer" and order.get("user_id") != _user_id()):
        raise NotFoundError("Order not found")
    if role == "shopkeeper" and _user_id() not in cast(list, order.get("shopkeeper_ids") or []):
        raise PermissionDenied("Access denied")
    return order


def _checked_image_url(raw: object) -> Optional[str]:
    url = str(raw or "").strip()
    if not url:
        return None
    valid, error = validate_image_url(url)
    if not valid:
        raise ValidationError(error or "Invalid image URL")
    return convert_google_drive_link(url)


def _request_data() -> Mapping[str, object]:
    """Form fields for multipart uploads, JSON otherwise."""
    if request.files or request.form:
        return request.form.to_dict()
    return _json_body()


# --------------------------------------------------------------------------------------
# Error handling
# --------------------------------------------------------------------------------------


@app.errorhandler(LocalBuyError)
def handle_localbuy_error(error: LocalBuyError):
    return jsonify(error.to_payload()), error.status_code


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    messages = {404: "Not found", 405: "Method not allowed", 413: "Uploaded files are too large"}
    message = messages.get(error.code or 500, error.description or "Request failed")
    return jsonify({"success": False, "error": message}), error.code or 500


@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    app.logger.exception("Unhandled error while serving %s %s", request.method, request.path)
    return jsonify({"success": False, "error": "Internal server error"}), 500


# --------------------------------------------------------------------------------------
# Authentication
# --------------------------------------------------------------------------------------


@app.post("/auth/register")
def register():
    """Register a new customer or shopkeeper account and sign it in."""
    payload = _json_body()
    name = _text(payload, "name")
    email = _text(payload, "email").lower()
    password = str(payload.get("password") or "")
    role = _text(payload, "role") or "customer"

    if not name or not email or not password:
        raise ValidationError("Name, email and password are required")
    if not _is_valid_email(email):
        raise ValidationError("Please provide a valid email address")
    if role not in REGISTRATION_ROLES:
        raise ValidationError("Role must be customer or shopkeeper")
    if get_user_by_email(email):
        raise ValidationError("Email already registered")

    password_error = validate_password(email.split("@", 1)[0], password) or validate_password(name, password)
    if password_error:
        raise ValidationError(password_error)

    user_id = create_user(name, email, hash_password(password), role=role)
    guest_cart = _session_cache().get(CART_CACHE_KEY)

    session["user_id"] = user_id
    session["role"] = role
    cart = None
    if role == "customer" and isinstance(guest_cart, dict) and guest_cart.get("items"):
        cart, _, _ = _sync_cart(user_id, normalize_cart(guest_cart))

    app.logger.info("Registered %s account %s", role, user_id)
    return jsonify({"success": True, "user": get_user_by_id(user_id), "cart": cart}), 201


@app.post("/auth/login")
def login():
    """Authenticate an existing user and fold any guest cart into their server cart."""
    payload = _json_body()
    email = _text(payload, "email").lower()
    password = str(payload.get("password") or "")

    user = get_user_by_email(email) if email else None
    if not user or not verify_password(password, cast(str, user["password_hash"])):
        raise AuthenticationError("Invalid email or password")
    if user.get("is_banned"):
        _sign_out()
        reason = user.get("ban_reason")
        message = f"Your account has been banned: {reason}" if reason else "Your account has been banned"
        raise PermissionDenied(message)

    user_id = int(cast(int, user["id"]))
    session["user_id"] = user_id
    session["role"] = user["role"]

    cart = None
    adjustments: list[str] = []
    if user["role"] == "customer":
        guest_cart = _session_cache().get(CART_CACHE_KEY)
        local = normalize_cart(guest_cart) if isinstance(guest_cart, dict) else empty_cart()
        cart, adjustments, _ = _sync_cart(user_id, local)

    return jsonify({"success": True, "user": get_user_by_id(user_id), "cart": cart, "adjustments": adjustments})


@app.post("/auth/logout")
def logout():
    """Sign the user out; preferences stay with the browser session."""
    _sign_out()
    _session_cache().remove(CART_CACHE_KEY)
    return jsonify({"success": True, "message": "Signed out"})


@app.get("/auth/profile")
@login_required()
def profile():
    return jsonify({"success": True, "user": g.user})


# --------------------------------------------------------------------------------------
# Catalogue
# --------------------------------------------------------------------------------------


@app.get("/products")
def products():
    """Product catalogue with search, price ceiling, category and sort."""
    result = fetch_products(
        search=(request.args.get("search") or "").strip() or None,
        max_price=request.args.get("maxPrice"),
        category=request.args.get("category"),
        sort=request.args.get("sort", "newest"),
        page=request.args.get("page", 1),
        limit=request.args.get("limit", 12),
    )
    return jsonify({"success": True, **result, "categories": fetch_product_categories()})


@app.get("/api/products/<int:product_id>")
def product_detail(product_id: int):
    cache_key = f"detail:{product_id}"
    cached = PRODUCT_CACHE.get(cache_key)
    if cached is not None:
        return jsonify({"success": True, "cached": True, **cached})

    product = get_product(product_id)
    if not product or not product.get("is_visible"):
        raise NotFoundError("Product not found")
    detail = {
        "product": product,
        "rating": get_product_rating_summary(product_id),
        "reviews": fetch_product_reviews(product_id),
    }
    PRODUCT_CACHE.set(cache_key, detail, expire_minutes=PRODUCT_CACHE_MINUTES)
    return jsonify({"success": True, "cached": False, **detail})


# --------------------------------------------------------------------------------------
# Cart
# --------------------------------------------------------------------------------------


@app.get("/user/api/cart")
@login_required("customer")
def get_cart():
    cart = fetch_user_cart(_user_id())
    _store_cart(cart)
    return jsonify({"success": True, "cart": cart})


@app.put("/user/api/cart")
@login_required("customer")
def put_cart():
    """Replace the server cart with the submitted one, clamped to live stock."""
    payload = _json_body()
    incoming = normalize_cart(payload.get("cart", payload))
    products_rows = fetch_products_by_ids(int(item["id"]) for item in incoming["items"])
    reconciled, adjustments = reconcile_with_inventory(incoming, products_rows)
    cart = replace_user_cart(_user_id(), reconciled)
    _store_cart(cart)
    return jsonify({"success": True, "cart": cart, "adjustments": adjustments})


@app.post("/user/api/cart/add")
@login_required("customer")
def cart_add():
    payload = _json_body()
    product_id = _body_value(payload, "productId", "product_id")
    try:
        product_id_int = int(cast(int, product_id))
    except (TypeError, ValueError):
        raise ValidationError("Invalid product ID") from None
    cart = add_to_cart(_user_id(), product_id_int, _body_value(payload, "quantity", default=1))
    _session_cache().remove(CART_CLEARED_KEY)
    _store_cart(cart)
    return jsonify({"success": True, "message": "Added to cart", "cart": cart})


@app.post("/user/api/cart/update")
@login_required("customer")
def cart_update():
    payload = _json_body()
    try:
        product_id = int(cast(int, _body_value(payload, "productId", "product_id")))
        quantity = int(cast(int, _body_value(payload, "quantity")))
    except (TypeError, ValueError):
        raise ValidationError("Product ID and a whole-number quantity are required") from None
    cart = set_cart_quantity(_user_id(), product_id, quantity)
    _store_cart(cart)
    message = "Removed from cart" if quantity <= 0 else "Cart updated"
    return jsonify({"success": True, "message": message, "cart": cart})


@app.route("/user/api/cart/remove/<int:product_id>", methods=["POST", "DELETE"])
@login_required("customer")
def cart_remove(product_id: int):
    if not remove_cart_item(_user_id(), product_id):
        raise NotFoundError("Item not in cart")
    cart = fetch_user_cart(_user_id())
    _store_cart(cart)
    return jsonify({"success": True, "message": "Removed from cart", "cart": cart})


@app.post("/user/api/cart/clear")
@login_required("customer")
def cart_clear():
    removed = clear_user_cart(_user_id())
    _mark_cart_cleared()
    return jsonify({"success": True, "removed": removed, "cart": empty_cart(current_ms())})


@app.post("/user/api/cart/sync")
@login_required("customer")
def cart_sync():
    """Merge the browser's cart with the server cart (newer wins, larger quantity wins)."""
    payload = _json_body()
    local = normalize_cart(payload.get("cart", payload))
    cart, adjustments, changed = _sync_cart(_user_id(), local)
    return jsonify({"success": True, "cart": cart, "adjustments": adjustments, "changed": changed})


@app.get("/user/api/cart/count")
def cart_count():
    snapshot = _session_cache().get(CART_CACHE_KEY)
    count = int(snapshot.get("count") or 0) if isinstance(snapshot, dict) else 0
    return jsonify({"success": True, "count": count})


# --------------------------------------------------------------------------------------
# Orders
# --------------------------------------------------------------------------------------


@app.post("/user/checkout")
@login_required("customer")
def checkout():
    """Turn the server cart into an order."""
    payload = _json_body()
    order = place_order(
        _user_id(),
        shipping_address=_text(payload, "shippingAddress", "shipping_address"),
        city=_text(payload, "city"),
        postal_code=_text(payload, "postalCode", "postal_code"),
        phone=_text(payload, "phone"),
        payment_method=_text(payload, "paymentMethod", "payment_method") or "cod",
    )
    _mark_cart_cleared()
    invalidate_product_cache()
    app.logger.info("Checkout complete for user %s: %s", _user_id(), order["reference"])
    return (
        jsonify(
            {
                "success": True,
                "orderId": order["id"],
                "order": order,
                "message": "Order placed successfully",
                "redirectUrl": "/user/orders",
            }
        ),
        201,
    )


@app.get("/user/orders")
@login_required("customer")
def orders_history():
    """Allow customers to review their orders."""
    orders = fetch_orders_for_user(_user_id(), status=request.args.get("status"))
    return jsonify({"success": True, "orders": orders})


@app.get("/user/api/orders/<int:order_id>")
@login_required()
def order_detail(order_id: int):
    order = _order_for_viewer(order_id)
    progress = calculate_order_progress(str(order["status"]), order["created_at"])
    return jsonify({"success": True, "order": order, "progress": progress})


@app.get("/user/api/orders/<int:order_id>/progress")
@login_required()
def order_progress(order_id: int):
    order = _order_for_viewer(order_id)
    progress = calculate_order_progress(str(order["status"]), order["created_at"])
    return jsonify({"success": True, "orderId": order_id, "status": order["status"], "progress": progress})


@app.get("/user/orders/<int:order_id>/track")
@login_required()
def track_order(order_id: int):
    _order_for_viewer(order_id)
    tracking = fetch_order_tracking(order_id)
    if not tracking:
        raise NotFoundError("Order not found")
    order = tracking["order"]
    tracking["progress"] = calculate_order_progress(str(order["status"]), order["created_at"])
    return jsonify({"success": True, **tracking})


@app.post("/user/orders/<int:order_id>/cancel")
@login_required("customer")
def cancel_user_order(order_id: int):
    """Allow a customer to cancel a pending or processing order."""
    payload = _json_body()
    order = cancel_order(order_id, _user_id(), reason=_text(payload, "reason") or None)
    invalidate_product_cache()
    return jsonify(
        {
            "success": True,
            "message": f"{order['reference']} was cancelled and inventory returned to stock.",
            "order": order,
        }
    )


@app.post("/user/orders/<int:order_id>/review")
@login_required("customer")
def review_order_item(order_id: int):
    payload = _json_body()
    try:
        product_id = int(cast(int, _body_value(payload, "productId", "product_id")))
    except (TypeError, ValueError):
        raise ValidationError("Invalid product ID") from None
    review_id = submit_review(
        _user_id(),
        product_id,
        order_id,
        _body_value(payload, "rating"),
        _text(payload, "comment") or None,
    )
    invalidate_product_cache()
    return jsonify({"success": True, "message": "Review submitted successfully", "reviewId": review_id}), 201


# --------------------------------------------------------------------------------------
# Stock notifications
# --------------------------------------------------------------------------------------


@app.get("/user/notifications")
@login_required()
def list_notifications():
    return jsonify({"success": True, "notifications": get_user_notifications(_user_id())})


@app.post("/user/notifications/<int:product_id>")
@login_required()
def subscribe_notification(product_id: int):
    subscription = subscribe(_user_id(), product_id)
    return (
        jsonify({"success": True, "message": "We'll let you know when it's back", "subscription": subscription}),
        201,
    )


@app.delete("/user/notifications/<int:product_id>")
@login_required()
def unsubscribe_notification(product_id: int):
    if not unsubscribe(_user_id(), product_id):
        raise NotFoundError("Subscription not found")
    return jsonify({"success": True, "message": "Notification removed"})


# --------------------------------------------------------------------------------------
# Shopkeeper tools
# --------------------------------------------------------------------------------------


@app.get("/shopkeeper/products")
@login_required("shopkeeper")
def shopkeeper_products():
    result = fetch_products(
        shopkeeper_id=_user_id(),
        visible_only=False,
        status=request.args.get("status"),
        search=(request.args.get("search") or "").strip() or None,
        sort=request.args.get("sort", "newest"),
        page=request.args.get("page", 1),
        limit=request.args.get("limit", 50),
    )
    return jsonify({"success": True, **result})


@app.post("/shopkeeper/products")
@login_required("shopkeeper")
def shopkeeper_create_product():
    """List a new product; it stays hidden until an admin approves it."""
    payload = _json_body()
    product_id = insert_product(
        _user_id(),
        _text(payload, "name"),
        _body_value(payload, "price"),
        description=_text(payload, "description"),
        stock=_body_value(payload, "stock", "stock_quantity", default=0),
        category=_text(payload, "category") or "General",
        image_url=_checked_image_url(_body_value(payload, "imageUrl", "image_url")),
    )
    app.logger.info("Shopkeeper %s listed product %s", _user_id(), product_id)
    return jsonify({"success": True, "message": "Product submitted for approval", "product": get_product(product_id)}), 201


@app.put("/shopkeeper/products/<int:product_id>")
@login_required("shopkeeper")
def shopkeeper_update_product(product_id: int):
    payload = _json_body()
    image_value = _body_value(payload, "imageUrl", "image_url")
    is_active = _body_value(payload, "isActive", "is_active")
    product = update_product(
        product_id,
        shopkeeper_id=_user_id(),
        name=cast(Optional[str], payload.get("name")),
        description=cast(Optional[str], payload.get("description")),
        price=payload.get("price"),
        stock=_body_value(payload, "stock", "stock_quantity"),
        category=cast(Optional[str], payload.get("category")),
        image_url=(_checked_image_url(image_value) or "") if image_value is not None else None,
        is_active=_flag(is_active, "isActive") if is_active is not None else None,
    )
    invalidate_product_cache()
    return jsonify({"success": True, "product": product})


@app.delete("/shopkeeper/products/<int:product_id>")
@login_required("shopkeeper")
def shopkeeper_delete_product(product_id: int):
    delete_product(product_id, shopkeeper_id=_user_id())
    invalidate_product_cache()
    return jsonify({"success": True, "message": "Product deleted"})


@app.get("/shopkeeper/orders")
@login_required("shopkeeper")
def shopkeeper_orders():
    orders = fetch_orders_for_shopkeeper(_user_id(), status=request.args.get("status"))
    return jsonify({"success": True, "orders": orders})


@app.put("/shopkeeper/orders/<int:order_id>/status")
@login_required("shopkeeper", "admin")
def shopkeeper_update_order_status(order_id: int):
    payload = _json_body()
    order = update_order_status(
        order_id,
        _text(payload, "status"),
        actor_id=_user_id(),
        actor_role=str(g.user["role"]),
        reason=_text(payload, "reason") or None,
        location=_text(payload, "location") or None,
        description=_text(payload, "description") or None,
    )
    invalidate_product_cache()
    progress = calculate_order_progress(str(order["status"]), order["created_at"])
    return jsonify({"success": True, "order": order, "progress": progress})


# --------------------------------------------------------------------------------------
# Disputes
# --------------------------------------------------------------------------------------


@app.get("/disputes")
@login_required()
def disputes_index():
    result = list_disputes(
        g.user,
        status=request.args.get("status") or None,
        priority=request.args.get("priority") or None,
        dispute_type=request.args.get("type") or None,
        assigned_to=request.args.get("assigned_to"),
        page=request.args.get("page", 1),
        limit=request.args.get("limit", 10),
        sort=request.args.get("sort", "created_at"),
        order=request.args.get("order", "desc"),
    )
    return jsonify({"success": True, **result})


@app.post("/disputes")
@login_required("customer")
def disputes_create():
    data = _request_data()
    dispute = create_dispute(
        g.user,
        data.get("order_id") or data.get("orderId"),
        str(data.get("title") or ""),
        str(data.get("description") or ""),
        str(data.get("type") or ""),
        comment=str(data.get("comment") or "") or None,
        files=request.files.getlist("attachments"),
    )
    return jsonify({"success": True, "dispute": dispute}), 201


@app.get("/disputes/<int:dispute_id>")
@login_required()
def disputes_show(dispute_id: int):
    return jsonify({"success": True, **get_dispute_details(g.user, dispute_id)})


@app.put("/disputes/<int:dispute_id>")
@login_required()
def disputes_update(dispute_id: int):
    payload = _json_body()
    dispute = update_dispute(
        g.user,
        dispute_id,
        status=cast(Optional[str], payload.get("status") or None),
        priority=cast(Optional[str], payload.get("priority") or None),
        assigned_to=payload.get("assigned_to"),
    )
    return jsonify({"success": True, "dispute": dispute})


@app.post("/disputes/<int:dispute_id>/comments")
@login_required()
def disputes_comment(dispute_id: int):
    payload = _json_body()
    comment = add_comment(
        g.user,
        dispute_id,
        str(payload.get("comment") or ""),
        is_internal=payload.get("is_internal") is True,
    )
    return jsonify({"success": True, "comment": comment}), 201


@app.post("/disputes/<int:dispute_id>/attachments")
@login_required()
def disputes_attach(dispute_id: int):
    attachments = add_attachments(g.user, dispute_id, request.files.getlist("attachments"))
    return jsonify({"success": True, "attachments": attachments}), 201


# --------------------------------------------------------------------------------------
# Session, preferences and health
# --------------------------------------------------------------------------------------


@app.route("/api/preferences", methods=["GET", "POST"])
def preferences():
    """Per-browser display preferences kept in the session cache."""
    cache = _session_cache()
    current = {**DEFAULT_PREFERENCES, **(cache.get(PREFERENCES_KEY) or {})}
    if request.method == "GET":
        return jsonify({"success": True, "preferences": current})

    payload = _json_body()
    for key, value in payload.items():
        choices = PREFERENCE_CHOICES.get(key)
        if choices is None:
            continue
        if value not in choices or (isinstance(value, bool) != isinstance(choices[0], bool)):
            raise ValidationError(f"Invalid value for {key}")
        current[key] = value
    cache.set(PREFERENCES_KEY, current)
    return jsonify({"success": True, "preferences": current})


@app.get("/api/session")
def session_info():
    cache = _session_cache()
    cache.clear_expired()
    user = _current_user()
    snapshot = cache.get(CART_CACHE_KEY)
    return jsonify(
        {
            "success": True,
            "authenticated": bool(user),
            "user": user,
            "cartCount": int(snapshot.get("count") or 0) if isinstance(snapshot, dict) else 0,
            "cache": cache.stats(),
        }
    )


@app.get("/api/health")
def health():
    healthy = database_healthy()
    body = {"success": healthy, "status": "ok" if healthy else "degraded", "productCache": PRODUCT_CACHE.stats()}
    return jsonify(body), 200 if healthy else 503


if __name__ == "__main__":
    app.run(debug=True)

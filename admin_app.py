"""Admin-only Flask application for moderating users, products and disputes."""

from __future__ import annotations

import os
from functools import wraps
from typing import Optional, cast

from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from cache import invalidate_product_cache
from database import (
    delete_product,
    delete_user_account,
    fetch_admin_logs,
    fetch_products,
    fetch_user_activity,
    fetch_users,
    get_product,
    get_user_by_email,
    get_user_by_id,
    init_db,
    log_admin_action,
    set_product_approval,
    set_user_ban,
    update_user,
)
from disputes import list_disputes, update_dispute
from errors import AuthenticationError, LocalBuyError, NotFoundError, ValidationError
from security import hash_password, validate_password, verify_password

# Ensure tables exist before the admin console starts serving requests.
init_db()

admin_app = Flask(__name__)
admin_app.config["SECRET_KEY"] = os.getenv("ADMIN_SECRET_KEY", "dev-admin-secret-key-change-me")
admin_app.config["SESSION_COOKIE_NAME"] = "localbuy-admin-session"


def _current_admin() -> Optional[dict[str, object]]:
    user_id = session.get("admin_user_id")
    if user_id is None:
        return None
    try:
        user_id_int = int(user_id)
    except (TypeError, ValueError):
        session.pop("admin_user_id", None)
        return None
    user = get_user_by_id(user_id_int)
    if not user or user.get("role") != "admin":
        session.pop("admin_user_id", None)
        return None
    return dict(user)


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        admin = _current_admin()
        if not admin:
            raise AuthenticationError("Sign in as an admin to access the console")
        g.admin = admin
        return view(*args, **kwargs)

    return wrapped


def _admin_id() -> int:
    return int(cast(int, g.admin["id"]))


def _json_body() -> dict[str, object]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _text(payload: dict[str, object], field_name: str) -> str:
    return str(payload.get(field_name) or "").strip()


@admin_app.errorhandler(LocalBuyError)
def handle_localbuy_error(error: LocalBuyError):
    return jsonify(error.to_payload()), error.status_code


@admin_app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    return jsonify({"success": False, "error": error.description or "Request failed"}), error.code or 500


@admin_app.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    admin_app.logger.exception("Unhandled error in admin console: %s %s", request.method, request.path)
    return jsonify({"success": False, "error": "Internal server error"}), 500


# --------------------------------------------------------------------------------------
# Session
# --------------------------------------------------------------------------------------


@admin_app.post("/login")
def login():
    """Admin-only login tied to the shared user table."""
    payload = _json_body()
    email = _text(payload, "email").lower()
    password = str(payload.get("password") or "")

    user = get_user_by_email(email) if email else None
    if not user or user.get("role") != "admin":
        raise AuthenticationError("Invalid admin credentials")
    if not verify_password(password, cast(str, user["password_hash"])):
        raise AuthenticationError("Invalid admin credentials")

    admin_id = int(cast(int, user["id"]))
    session["admin_user_id"] = admin_id
    log_admin_action(admin_id, "admin_login", target_type="user", target_id=admin_id)
    return jsonify({"success": True, "admin": get_user_by_id(admin_id)})


@admin_app.post("/logout")
def logout():
    session.pop("admin_user_id", None)
    return jsonify({"success": True, "message": "Signed out of the admin console"})


@admin_app.get("/me")
@admin_required
def me():
    return jsonify({"success": True, "admin": g.admin})


# --------------------------------------------------------------------------------------
# Users
# --------------------------------------------------------------------------------------


@admin_app.get("/users")
@admin_required
def users_index():
    banned_arg = (request.args.get("banned") or "").lower()
    banned = {"true": True, "1": True, "false": False, "0": False}.get(banned_arg)
    result = fetch_users(
        role=request.args.get("role") or None,
        search=(request.args.get("search") or "").strip() or None,
        banned=banned,
        page=request.args.get("page", 1),
        limit=request.args.get("limit", 20),
    )
    return jsonify({"success": True, **result})


@admin_app.get("/users/<int:user_id>")
@admin_required
def users_show(user_id: int):
    user = get_user_by_id(user_id)
    if not user:
        raise NotFoundError("User not found")
    return jsonify({"success": True, "user": user, "activity": fetch_user_activity(user_id)})


@admin_app.put("/users/<int:user_id>")
@admin_required
def users_update(user_id: int):
    """Edit name, role or password; admins cannot demote themselves."""
    payload = _json_body()
    role = _text(payload, "role") or None
    if user_id == _admin_id() and role is not None and role != "admin":
        raise ValidationError("You cannot change your own role")

    name = payload.get("name")
    password = str(payload.get("password") or "")
    password_hash = None
    if password:
        target = get_user_by_id(user_id)
        if not target:
            raise NotFoundError("User not found")
        password_error = validate_password(str(target["email"]).split("@", 1)[0], password)
        if password_error:
            raise ValidationError(password_error)
        password_hash = hash_password(password)

    user = update_user(
        user_id,
        name=str(name) if name is not None else None,
        role=role,
        password_hash=password_hash,
    )
    changed = sorted(key for key in ("name", "role", "password") if payload.get(key))
    log_admin_action(_admin_id(), "update_user", target_type="user", target_id=user_id, details={"fields": changed})
    return jsonify({"success": True, "user": user})


@admin_app.post("/users/<int:user_id>/ban")
@admin_required
def users_ban(user_id: int):
    if user_id == _admin_id():
        raise ValidationError("You cannot ban yourself")
    reason = _text(_json_body(), "reason")
    if not reason:
        raise ValidationError("A ban reason is required")
    user = set_user_ban(user_id, True, reason=reason, banned_by=_admin_id())
    log_admin_action(_admin_id(), "ban_user", target_type="user", target_id=user_id, details={"reason": reason})
    return jsonify({"success": True, "user": user})


@admin_app.post("/users/<int:user_id>/unban")
@admin_required
def users_unban(user_id: int):
    user = set_user_ban(user_id, False)
    log_admin_action(_admin_id(), "unban_user", target_type="user", target_id=user_id)
    return jsonify({"success": True, "user": user})


@admin_app.delete("/users/<int:user_id>")
@admin_required
def users_delete(user_id: int):
    if user_id == _admin_id():
        raise ValidationError("You cannot delete your own account")
    target = get_user_by_id(user_id)
    if not target:
        raise NotFoundError("User not found")
    summary = delete_user_account(user_id, deleted_by=_admin_id())
    invalidate_product_cache()
    log_admin_action(
        _admin_id(),
        "delete_user",
        target_type="user",
        target_id=user_id,
        details={"email": target["email"], "role": target["role"], **summary},
    )
    return jsonify({"success": True, **summary})


# --------------------------------------------------------------------------------------
# Products
# --------------------------------------------------------------------------------------


@admin_app.get("/products")
@admin_required
def products_index():
    """Moderation queue; defaults to products waiting for approval."""
    status = request.args.get("status", "pending")
    result = fetch_products(
        visible_only=False,
        status=None if status == "all" else status,
        search=(request.args.get("search") or "").strip() or None,
        page=request.args.get("page", 1),
        limit=request.args.get("limit", 20),
    )
    return jsonify({"success": True, **result})


@admin_app.post("/products/<int:product_id>/approve")
@admin_required
def products_approve(product_id: int):
    product = set_product_approval(product_id, "approved", admin_id=_admin_id())
    invalidate_product_cache()
    log_admin_action(_admin_id(), "approve_product", target_type="product", target_id=product_id)
    return jsonify({"success": True, "product": product})


@admin_app.post("/products/<int:product_id>/reject")
@admin_required
def products_reject(product_id: int):
    reason = _text(_json_body(), "reason")
    if not reason:
        raise ValidationError("A rejection reason is required")
    product = set_product_approval(product_id, "rejected", admin_id=_admin_id(), reason=reason)
    invalidate_product_cache()
    log_admin_action(
        _admin_id(), "reject_product", target_type="product", target_id=product_id, details={"reason": reason}
    )
    return jsonify({"success": True, "product": product})


@admin_app.delete("/products/<int:product_id>")
@admin_required
def products_delete(product_id: int):
    product = get_product(product_id)
    if not product:
        raise NotFoundError("Product not found")
    delete_product(product_id)
    invalidate_product_cache()
    log_admin_action(
        _admin_id(),
        "delete_product",
        target_type="product",
        target_id=product_id,
        details={"name": product["name"], "shopkeeper_id": product["shopkeeper_id"]},
    )
    return jsonify({"success": True, "message": "Product deleted"})


# --------------------------------------------------------------------------------------
# Disputes and audit log
# --------------------------------------------------------------------------------------


@admin_app.get("/disputes")
@admin_required
def disputes_index():
    result = list_disputes(
        g.admin,
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


@admin_app.put("/disputes/<int:dispute_id>")
@admin_required
def disputes_update(dispute_id: int):
    payload = _json_body()
    dispute = update_dispute(
        g.admin,
        dispute_id,
        status=cast(Optional[str], payload.get("status") or None),
        priority=cast(Optional[str], payload.get("priority") or None),
        assigned_to=payload.get("assigned_to"),
    )
    details = {key: payload[key] for key in ("status", "priority", "assigned_to") if payload.get(key) is not None}
    log_admin_action(_admin_id(), "update_dispute", target_type="dispute", target_id=dispute_id, details=details)
    return jsonify({"success": True, "dispute": dispute})


@admin_app.get("/logs")
@admin_required
def logs_index():
    admin_filter = request.args.get("admin_id")
    if admin_filter is not None and not admin_filter.isdigit():
        raise ValidationError("Invalid admin ID")
    result = fetch_admin_logs(
        action=request.args.get("action") or None,
        admin_id=int(admin_filter) if admin_filter else None,
        page=request.args.get("page", 1),
        limit=request.args.get("limit", 50),
    )
    return jsonify({"success": True, **result})


if __name__ == "__main__":
    admin_app.run(debug=True, port=5001)

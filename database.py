"""SQLAlchemy-powered data layer shared by the LocalBuy storefront and admin console."""

from __future__ import annotations

import json
import logging
import math
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Optional, Sequence

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    delete,
    event,
    exists,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    aliased,
    mapped_column,
    relationship,
    selectinload,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import Select

from errors import NotFoundError, PermissionDenied, ValidationError
from order_status import (
    CANCELLABLE_STATUSES,
    CANCELLED,
    PENDING,
    VALID_STATUSES,
    tracking_label,
    validate_transition,
)
from security import decrypt_sensitive_value, encrypt_sensitive_value, hash_password

logger = logging.getLogger(__name__)

ROLES = ("customer", "shopkeeper", "admin")
APPROVAL_STATUSES = ("pending", "approved", "rejected")

# --------------------------------------------------------------------------------------
# Small coercion helpers
# --------------------------------------------------------------------------------------


def _as_int(value: object, default: int = 0) -> int:
    """Best-effort conversion to int with a fallback."""

    try:
        return int(str(value))
    except (TypeError, ValueError):
        return default


def _as_float(value: object, default: float = 0.0) -> float:
    """Best-effort conversion to float with a fallback."""

    try:
        return float(str(value))
    except (TypeError, ValueError):
        return default


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_ms(value: Optional[datetime]) -> int:
    if value is None:
        return 0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


# --------------------------------------------------------------------------------------
# SQLAlchemy setup
# --------------------------------------------------------------------------------------

DB_PATH = Path(__file__).with_name("localbuy.db")
DATABASE_URL = os.getenv("LOCALBUY_DATABASE_URL", f"sqlite:///{DB_PATH}")


def _build_engine(url: str):
    options: dict[str, object] = {"future": True}
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so every session sees the same in-memory database.
            options["poolclass"] = StaticPool
    return create_engine(url, **options)


engine = _build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    if engine.dialect.name != "sqlite":
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class User(Base):
    __tablename__ = "users"
    __table_args__ = (CheckConstraint("role IN ('customer', 'shopkeeper', 'admin')", name="ck_users_role"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="customer", server_default="customer")
    is_banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    ban_reason: Mapped[Optional[str]] = mapped_column(Text)
    banned_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    banned_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.current_timestamp())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, server_default=func.current_timestamp()
    )


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_products_price"),
        CheckConstraint("status IN ('pending', 'approved', 'rejected')", name="ck_products_status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    price: Mapped[float] = mapped_column(Float, nullable=False)
    stock: Mapped[Optional[int]] = mapped_column(Integer, default=0, server_default="0")
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="General", server_default="General")
    image_url: Mapped[Optional[str]] = mapped_column(String)
    shopkeeper_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", server_default="pending")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    approved_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.current_timestamp())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, server_default=func.current_timestamp()
    )


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_cart_user_product"),
        CheckConstraint("quantity > 0", name="ck_cart_quantity"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.current_timestamp())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, server_default=func.current_timestamp()
    )


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'shipped', 'delivered', 'cancelled')",
            name="ck_orders_status",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PENDING, server_default=PENDING)
    total_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0, server_default="0")
    shipping_address: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    city: Mapped[str] = mapped_column(String, nullable=False, default="", server_default="")
    postal_code: Mapped[str] = mapped_column(String, nullable=False, default="", server_default="")
    phone: Mapped[str] = mapped_column(String, nullable=False, default="", server_default="")
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default="cod", server_default="cod")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.current_timestamp())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, server_default=func.current_timestamp()
    )

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", passive_deletes=True, order_by="OrderItem.id"
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_items_quantity"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[Optional[int]] = mapped_column(ForeignKey("products.id", ondelete="SET NULL"))
    shopkeeper_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)

    order: Mapped[Order] = relationship("Order", back_populates="items")


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    old_status: Mapped[Optional[str]] = mapped_column(String(20))
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.current_timestamp())


class OrderTracking(Base):
    __tablename__ = "order_tracking"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.current_timestamp())


class Review(Base):
    __tablename__ = "reviews"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_reviews_user_product"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    order_id: Mapped[Optional[int]] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"))
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.current_timestamp())


class StockNotification(Base):
    __tablename__ = "stock_notifications"
    __table_args__ = (UniqueConstraint("user_id", "product_id", name="uq_stock_notifications_user_product"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.current_timestamp())


class Dispute(Base):
    __tablename__ = "disputes"
    __table_args__ = (
        CheckConstraint(
            "type IN ('order_issue', 'product_quality', 'delivery', 'payment', 'other')",
            name="ck_disputes_type",
        ),
        CheckConstraint("status IN ('open', 'in_progress', 'resolved', 'closed')", name="ck_disputes_status"),
        CheckConstraint("priority IN ('low', 'medium', 'high', 'urgent')", name="ck_disputes_priority"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    customer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    shopkeeper_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    assigned_to: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open", server_default="open")
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium", server_default="medium")
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.current_timestamp())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, server_default=func.current_timestamp()
    )


class DisputeComment(Base):
    __tablename__ = "dispute_comments"

    id: Mapped[int] = mapped_column(primary_key=True)
    dispute_id: Mapped[int] = mapped_column(ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    comment: Mapped[str] = mapped_column(Text, nullable=False)
    is_internal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.current_timestamp())


class DisputeAttachment(Base):
    __tablename__ = "dispute_attachments"

    id: Mapped[int] = mapped_column(primary_key=True)
    dispute_id: Mapped[int] = mapped_column(ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(String, nullable=False)
    file_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    uploaded_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.current_timestamp())


class DisputeHistory(Base):
    __tablename__ = "dispute_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    dispute_id: Mapped[int] = mapped_column(ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False)
    changed_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    old_status: Mapped[Optional[str]] = mapped_column(String(20))
    new_status: Mapped[Optional[str]] = mapped_column(String(20))
    old_priority: Mapped[Optional[str]] = mapped_column(String(20))
    new_priority: Mapped[Optional[str]] = mapped_column(String(20))
    old_assigned_to: Mapped[Optional[int]] = mapped_column(Integer)
    new_assigned_to: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.current_timestamp())


class AdminLog(Base):
    __tablename__ = "admin_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    admin_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    target_type: Mapped[Optional[str]] = mapped_column(String(50))
    target_id: Mapped[Optional[int]] = mapped_column(Integer)
    details: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.current_timestamp())


# --------------------------------------------------------------------------------------
# Session helper
# --------------------------------------------------------------------------------------


def database_healthy() -> bool:
    """Return True when a trivial query round-trips."""

    try:
        with engine.connect() as connection:
            connection.execute(select(1))
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        return False
    return True


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# --------------------------------------------------------------------------------------
# Serialization helpers
# --------------------------------------------------------------------------------------


def _serialize_user(user: Optional[User], *, include_hash: bool = False) -> Optional[dict[str, object]]:
    if not user:
        return None
    payload: dict[str, object] = {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "is_banned": bool(user.is_banned),
        "ban_reason": user.ban_reason,
        "banned_at": user.banned_at,
        "created_at": user.created_at,
    }
    if include_hash:
        payload["password_hash"] = user.password_hash
    return payload


def _product_payload(row: Mapping[str, object]) -> dict[str, object]:
    payload = dict(row)
    payload["price"] = _as_float(payload.get("price"))
    payload["stock"] = _as_int(payload.get("stock"))
    payload["is_active"] = bool(payload.get("is_active"))
    payload["is_visible"] = payload.get("status") == "approved" and payload["is_active"]
    payload["avg_rating"] = round(_as_float(payload.get("avg_rating")), 2)
    payload["review_count"] = _as_int(payload.get("review_count"))
    return payload


def _serialize_order_item(item: OrderItem) -> dict[str, object]:
    return {
        "id": item.id,
        "product_id": item.product_id,
        "shopkeeper_id": item.shopkeeper_id,
        "product_name": item.product_name,
        "quantity": int(item.quantity),
        "price": float(item.price),
        "line_total": round(float(item.price) * int(item.quantity), 2),
    }


def _serialize_order(order: Order, *, shopkeeper_id: Optional[int] = None) -> dict[str, object]:
    """Decrypt shipping details and attach line items for an order row."""

    items = [_serialize_order_item(item) for item in order.items]
    if shopkeeper_id is not None:
        items = [item for item in items if item["shopkeeper_id"] == shopkeeper_id]
    return {
        "id": order.id,
        "reference": format_order_reference(order.id),
        "user_id": order.user_id,
        "status": order.status,
        "total_amount": float(order.total_amount),
        "shipping_address": decrypt_sensitive_value(order.shipping_address),
        "city": decrypt_sensitive_value(order.city),
        "postal_code": decrypt_sensitive_value(order.postal_code),
        "phone": decrypt_sensitive_value(order.phone),
        "payment_method": order.payment_method,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
        "items": items,
        "item_count": sum(int(item["quantity"]) for item in items),
        "shopkeeper_ids": sorted({item.shopkeeper_id for item in order.items if item.shopkeeper_id}),
    }


def paginate(total: int, page: int, limit: int) -> dict[str, object]:
    """Return the pagination block shared by every listing endpoint."""

    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


def _page_window(page: object, limit: object, *, default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    page_value = max(1, _as_int(page, 1))
    limit_value = min(max_limit, max(1, _as_int(limit, default_limit)))
    return page_value, limit_value


# --------------------------------------------------------------------------------------
# Initialization and seeding
# --------------------------------------------------------------------------------------


def init_db() -> None:
    """Create tables and seed demo content."""

    Base.metadata.create_all(bind=engine)
    if os.getenv("LOCALBUY_SKIP_SEED"):
        return
    seed_data()


DEMO_PASSWORD = "LocalBuy#2024"


def seed_data() -> None:
    """Insert demo accounts and a starter catalogue; safe to run repeatedly."""

    seed_users = [
        ("LocalBuy Admin", "admin@localbuy.test", "admin"),
        ("Corner Grocer", "grocer@localbuy.test", "shopkeeper"),
        ("Maple Hardware", "hardware@localbuy.test", "shopkeeper"),
        ("Priya Customer", "customer@localbuy.test", "customer"),
    ]
    seed_products = [
        ("grocer@localbuy.test", "Organic Honey", "Raw wildflower honey from nearby farms.", 8.5, 40, "Grocery"),
        ("grocer@localbuy.test", "Sourdough Loaf", "Baked every morning with a 48 hour starter.", 5.25, 15, "Bakery"),
        ("grocer@localbuy.test", "Free Range Eggs", "A dozen eggs from pasture raised hens.", 4.75, 0, "Grocery"),
        ("hardware@localbuy.test", "Claw Hammer", "16 oz steel hammer with a fibreglass grip.", 18.0, 12, "Tools"),
        ("hardware@localbuy.test", "LED Work Light", "Rechargeable 20W flood light.", 32.99, 6, "Tools"),
    ]

    with session_scope() as session:
        users_by_email: dict[str, User] = {}
        for name, email, role in seed_users:
            user = session.execute(select(User).where(User.email == email)).scalar_one_or_none()
            if not user:
                user = User(name=name, email=email, password_hash=hash_password(DEMO_PASSWORD), role=role)
                session.add(user)
                session.flush()
            users_by_email[email] = user

        product_count = session.scalar(select(func.count(Product.id))) or 0
        if product_count == 0:
            admin = users_by_email["admin@localbuy.test"]
            for owner_email, name, description, price, stock, category in seed_products:
                session.add(
                    Product(
                        name=name,
                        description=description,
                        price=price,
                        stock=stock,
                        category=category,
                        shopkeeper_id=users_by_email[owner_email].id,
                        status="approved",
                        approved_by=admin.id,
                        approved_at=_utcnow(),
                    )
                )
            logger.info("Seeded %d demo products", len(seed_products))


# --------------------------------------------------------------------------------------
# User helpers
# --------------------------------------------------------------------------------------


def create_user(name: str, email: str, password_hash: str, *, role: str = "customer") -> int:
    """Insert a new application user and return the id."""

    if role not in ROLES:
        raise ValidationError(f"Invalid role. Must be one of: {', '.join(ROLES)}")
    normalized_email = email.strip().lower()
    with session_scope() as session:
        taken = session.execute(select(User.id).where(User.email == normalized_email)).first()
        if taken:
            raise ValidationError("Email already registered")
        user = User(name=name.strip(), email=normalized_email, password_hash=password_hash, role=role)
        session.add(user)
        session.flush()
        return int(user.id)


def get_user_by_email(email: str) -> Optional[Mapping[str, object]]:
    """Fetch a user record, including the password hash, given an email."""

    with session_scope() as session:
        user = session.execute(select(User).where(User.email == email.strip().lower())).scalar_one_or_none()
        return _serialize_user(user, include_hash=True)


def get_user_by_id(user_id: int) -> Optional[Mapping[str, object]]:
    """Fetch a user by id."""

    with session_scope() as session:
        user = session.get(User, user_id)
        return _serialize_user(user)


def fetch_users(
    *,
    role: Optional[str] = None,
    search: Optional[str] = None,
    banned: Optional[bool] = None,
    page: object = 1,
    limit: object = 20,
) -> dict[str, object]:
    """Return users newest first with optional role, ban and text filters."""

    page_value, limit_value = _page_window(page, limit)
    filters = []
    if role and role in ROLES:
        filters.append(User.role == role)
    if search:
        like_term = f"%{search.lower()}%"
        filters.append(or_(func.lower(User.name).like(like_term), func.lower(User.email).like(like_term)))
    if banned is not None:
        filters.append(User.is_banned == bool(banned))

    with session_scope() as session:
        total = session.scalar(select(func.count(User.id)).where(*filters)) or 0
        users = (
            session.execute(
                select(User)
                .where(*filters)
                .order_by(User.created_at.desc(), User.id.desc())
                .offset((page_value - 1) * limit_value)
                .limit(limit_value)
            )
            .scalars()
            .all()
        )
        return {
            "users": [_serialize_user(user) for user in users],
            "pagination": paginate(int(total), page_value, limit_value),
        }


def update_user(
    user_id: int,
    *,
    name: Optional[str] = None,
    role: Optional[str] = None,
    password_hash: Optional[str] = None,
) -> Mapping[str, object]:
    """Update the provided profile fields and return the fresh record."""

    with session_scope() as session:
        user = session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        if name is not None:
            if not name.strip():
                raise ValidationError("Name cannot be empty")
            user.name = name.strip()
        if role is not None:
            if role not in ROLES:
                raise ValidationError(f"Invalid role. Must be one of: {', '.join(ROLES)}")
            user.role = role
        if password_hash is not None:
            user.password_hash = password_hash
        session.flush()
        return _serialize_user(user) or {}


def set_user_ban(
    user_id: int,
    banned: bool,
    *,
    reason: Optional[str] = None,
    banned_by: Optional[int] = None,
) -> Mapping[str, object]:
    """Ban or unban an account; admin accounts cannot be banned."""

    with session_scope() as session:
        user = session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        if banned and user.role == "admin":
            raise ValidationError("Admin accounts cannot be banned")
        user.is_banned = bool(banned)
        if banned:
            user.ban_reason = (reason or "").strip() or None
            user.banned_at = _utcnow()
            user.banned_by = banned_by
        else:
            user.ban_reason = None
            user.banned_at = None
            user.banned_by = None
        session.flush()
        return _serialize_user(user) or {}


def delete_user_account(user_id: int, *, deleted_by: Optional[int] = None) -> dict[str, object]:
    """Remove an account and clean up what it owns.

    Shopkeepers lose their catalogue; customers have their cart dropped and any
    order that is still pending or processing cancelled (with stock returned).
    """

    restocks: list[tuple[int, int, int]] = []
    cancelled_orders: list[int] = []
    with session_scope() as session:
        user = session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        if user.role == "admin":
            raise ValidationError("Admin accounts cannot be deleted")

        removed_products = 0
        if user.role == "shopkeeper":
            result = session.execute(delete(Product).where(Product.shopkeeper_id == user_id))
            removed_products = int(result.rowcount or 0)
        else:
            session.execute(delete(CartItem).where(CartItem.user_id == user_id))
            open_orders = (
                session.execute(
                    select(Order).where(Order.user_id == user_id, Order.status.in_(tuple(CANCELLABLE_STATUSES)))
                )
                .scalars()
                .all()
            )
            for order in open_orders:
                restocks.extend(_restock_order_inventory(session, order))
                session.add(
                    OrderStatusHistory(
                        order_id=order.id,
                        old_status=order.status,
                        new_status=CANCELLED,
                        changed_by=deleted_by,
                        reason="Order cancelled because the customer account was deleted",
                    )
                )
                order.status = CANCELLED
                cancelled_orders.append(int(order.id))

        session.flush()
        session.execute(delete(User).where(User.id == user_id))

    _announce_restocks(restocks)
    logger.info("Deleted user %s (%d products, %d orders cancelled)", user_id, removed_products, len(cancelled_orders))
    return {"deletedUserId": user_id, "removedProducts": removed_products, "cancelledOrders": cancelled_orders}


def fetch_user_activity(user_id: int) -> dict[str, object]:
    """Summarise what an account has done across the marketplace."""

    with session_scope() as session:
        order_count = session.scalar(select(func.count(Order.id)).where(Order.user_id == user_id)) or 0
        total_spent = session.scalar(
            select(func.coalesce(func.sum(Order.total_amount), 0)).where(
                Order.user_id == user_id, Order.status != CANCELLED
            )
        )
        product_count = session.scalar(select(func.count(Product.id)).where(Product.shopkeeper_id == user_id)) or 0
        review_count = session.scalar(select(func.count(Review.id)).where(Review.user_id == user_id)) or 0
        dispute_count = (
            session.scalar(
                select(func.count(Dispute.id)).where(
                    or_(Dispute.customer_id == user_id, Dispute.shopkeeper_id == user_id)
                )
            )
            or 0
        )
        recent_orders = (
            session.execute(select(Order).where(Order.user_id == user_id).order_by(Order.id.desc()).limit(5))
            .scalars()
            .all()
        )
        return {
            "orderCount": int(order_count),
            "totalSpent": round(_as_float(total_spent), 2),
            "productCount": int(product_count),
            "reviewCount": int(review_count),
            "disputeCount": int(dispute_count),
            "recentOrders": [
                {
                    "id": order.id,
                    "reference": format_order_reference(order.id),
                    "status": order.status,
                    "total_amount": float(order.total_amount),
                    "created_at": order.created_at,
                }
                for order in recent_orders
            ],
        }


# --------------------------------------------------------------------------------------
# Product helpers
# --------------------------------------------------------------------------------------


def _visible_clause():
    return and_(Product.status == "approved", Product.is_active.is_(True))


def _product_select() -> tuple[Select, object]:
    """Return the base select for product queries with rating aggregates."""

    rating_summary = (
        select(
            Review.product_id.label("product_id"),
            func.avg(Review.rating).label("avg_rating"),
            func.count(Review.id).label("review_count"),
        )
        .group_by(Review.product_id)
        .subquery()
    )
    shopkeeper = aliased(User)

    return (
        select(
            Product.id,
            Product.name,
            Product.description,
            Product.price,
            Product.stock,
            Product.category,
            Product.image_url,
            Product.shopkeeper_id,
            Product.status,
            Product.is_active,
            Product.rejection_reason,
            Product.created_at,
            Product.updated_at,
            shopkeeper.name.label("shopkeeper_name"),
            func.coalesce(rating_summary.c.avg_rating, 0).label("avg_rating"),
            func.coalesce(rating_summary.c.review_count, 0).label("review_count"),
        )
        .join(shopkeeper, shopkeeper.id == Product.shopkeeper_id, isouter=True)
        .join(rating_summary, rating_summary.c.product_id == Product.id, isouter=True)
    ), shopkeeper


def _validate_product_fields(
    name: Optional[str],
    price: Optional[object],
    stock: Optional[object],
) -> tuple[Optional[float], Optional[int]]:
    if name is not None and not name.strip():
        raise ValidationError("Product name is required")
    price_value = None
    if price is not None:
        price_value = _as_float(price, -1.0)
        if price_value < 0:
            raise ValidationError("Price must be a non-negative number")
    stock_value = None
    if stock is not None:
        stock_value = _as_int(stock, -1)
        if stock_value < 0:
            raise ValidationError("Stock must be a non-negative whole number")
    return price_value, stock_value


def insert_product(
    shopkeeper_id: int,
    name: str,
    price: object,
    *,
    description: str = "",
    stock: object = 0,
    category: str = "General",
    image_url: Optional[str] = None,
) -> int:
    """Persist a new product awaiting admin approval."""

    if price in (None, ""):
        raise ValidationError("Price is required")
    price_value, stock_value = _validate_product_fields(name or "", price, stock if stock is not None else 0)
    with session_scope() as session:
        product = Product(
            name=name.strip(),
            description=(description or "").strip(),
            price=price_value,
            stock=stock_value,
            category=(category or "General").strip() or "General",
            image_url=image_url or None,
            shopkeeper_id=shopkeeper_id,
            status="pending",
        )
        session.add(product)
        session.flush()
        return int(product.id)


def update_product(
    product_id: int,
    *,
    shopkeeper_id: Optional[int] = None,
    name: Optional[str] = None,
    description: Optional[str] = None,
    price: Optional[object] = None,
    stock: Optional[object] = None,
    category: Optional[str] = None,
    image_url: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> Mapping[str, object]:
    """Update a product with provided fields.

    When ``shopkeeper_id`` is given the product must belong to that shopkeeper.
    A restock from zero is announced to stock notification subscribers once
    the transaction has committed.
    """

    price_value, stock_value = _validate_product_fields(name, price, stock)
    restocks: list[tuple[int, int, int]] = []
    with session_scope() as session:
        product = session.get(Product, product_id)
        if not product:
            raise NotFoundError("Product not found")
        if shopkeeper_id is not None and product.shopkeeper_id != shopkeeper_id:
            raise PermissionDenied("You can only edit your own products")
        if name is not None:
            product.name = name.strip()
        if description is not None:
            product.description = description.strip()
        if price_value is not None:
            product.price = price_value
        if stock_value is not None:
            old_stock = _as_int(product.stock)
            product.stock = stock_value
            restocks.append((int(product.id), old_stock, stock_value))
        if category is not None:
            product.category = category.strip() or "General"
        if image_url is not None:
            product.image_url = image_url or None
        if is_active is not None:
            product.is_active = bool(is_active)

    _announce_restocks(restocks)
    return get_product(product_id) or {}


def delete_product(product_id: int, *, shopkeeper_id: Optional[int] = None) -> None:
    """Remove a product; order lines keep their name and price snapshot."""

    with session_scope() as session:
        owner = session.execute(select(Product.shopkeeper_id).where(Product.id == product_id)).scalar_one_or_none()
        if owner is None:
            raise NotFoundError("Product not found")
        if shopkeeper_id is not None and owner != shopkeeper_id:
            raise PermissionDenied("You can only delete your own products")
        session.execute(delete(Product).where(Product.id == product_id))


def get_product(product_id: int) -> Optional[Mapping[str, object]]:
    """Return a single product or None when not found."""

    stmt, _ = _product_select()
    stmt = stmt.where(Product.id == product_id)
    with session_scope() as session:
        row = session.execute(stmt).mappings().first()
        return _product_payload(row) if row else None


def fetch_products(
    *,
    search: Optional[str] = None,
    max_price: Optional[object] = None,
    category: Optional[str] = None,
    sort: str = "newest",
    visible_only: bool = True,
    status: Optional[str] = None,
    shopkeeper_id: Optional[int] = None,
    page: object = 1,
    limit: object = 12,
) -> dict[str, object]:
    """Return one page of products ordered according to the requested sort and filters."""

    page_value, limit_value = _page_window(page, limit, default_limit=12)
    stmt, shopkeeper = _product_select()
    filters = []

    if visible_only:
        filters.append(_visible_clause())
    if status and status in APPROVAL_STATUSES:
        filters.append(Product.status == status)
    if shopkeeper_id is not None:
        filters.append(Product.shopkeeper_id == shopkeeper_id)
    if search:
        like_term = f"%{search.strip().lower()}%"
        filters.append(
            or_(
                func.lower(Product.name).like(like_term),
                func.lower(Product.description).like(like_term),
                func.lower(func.coalesce(shopkeeper.name, "")).like(like_term),
            )
        )
    if max_price not in (None, ""):
        ceiling = _as_float(max_price, -1.0)
        if ceiling >= 0:
            filters.append(Product.price <= ceiling)
    if category and category.lower() != "all":
        filters.append(func.lower(Product.category) == category.lower())

    order_map = {
        "newest": [Product.created_at.desc(), Product.id.desc()],
        "name": [func.lower(Product.name).asc(), Product.id.asc()],
        "price-low": [Product.price.asc(), Product.id.asc()],
        "price-high": [Product.price.desc(), Product.id.asc()],
        "shop": [func.lower(func.coalesce(shopkeeper.name, "")).asc(), func.lower(Product.name).asc()],
    }
    stmt = stmt.where(*filters).order_by(*order_map.get(sort, order_map["newest"]))

    count_stmt = (
        select(func.count(Product.id))
        .select_from(Product)
        .join(shopkeeper, shopkeeper.id == Product.shopkeeper_id, isouter=True)
        .where(*filters)
    )

    with session_scope() as session:
        total = session.scalar(count_stmt) or 0
        rows = session.execute(stmt.offset((page_value - 1) * limit_value).limit(limit_value)).mappings().all()
        return {
            "products": [_product_payload(row) for row in rows],
            "pagination": paginate(int(total), page_value, limit_value),
        }


def fetch_products_by_ids(product_ids: Iterable[int]) -> list[Mapping[str, object]]:
    """Return products for the provided ids preserving the original order."""

    seen: set[int] = set()
    ordered_ids: list[int] = []
    for product_id in product_ids:
        pid = _as_int(product_id, -1)
        if pid > 0 and pid not in seen:
            ordered_ids.append(pid)
            seen.add(pid)

    if not ordered_ids:
        return []

    stmt, _ = _product_select()
    stmt = stmt.where(Product.id.in_(ordered_ids))

    with session_scope() as session:
        rows = session.execute(stmt).mappings().all()
        lookup = {int(row["id"]): _product_payload(row) for row in rows}
    return [lookup[pid] for pid in ordered_ids if pid in lookup]


def set_product_approval(
    product_id: int,
    status: str,
    *,
    admin_id: Optional[int] = None,
    reason: Optional[str] = None,
) -> Mapping[str, object]:
    """Move a product between pending, approved and rejected."""

    if status not in APPROVAL_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(APPROVAL_STATUSES)}")
    with session_scope() as session:
        product = session.get(Product, product_id)
        if not product:
            raise NotFoundError("Product not found")
        product.status = status
        if status == "approved":
            product.approved_by = admin_id
            product.approved_at = _utcnow()
            product.rejection_reason = None
        elif status == "rejected":
            product.rejection_reason = (reason or "").strip() or None
            product.approved_by = None
            product.approved_at = None
    return get_product(product_id) or {}


def fetch_product_categories() -> list[str]:
    """Return sorted unique categories of visible products."""

    stmt = select(func.distinct(Product.category)).where(_visible_clause()).order_by(Product.category.asc())
    with session_scope() as session:
        return [row[0] for row in session.execute(stmt).all() if row[0]]


# --------------------------------------------------------------------------------------
# Cart helpers
# --------------------------------------------------------------------------------------


def _cart_snapshot(session: Session, user_id: int) -> dict[str, object]:
    rows = session.execute(
        select(
            CartItem.product_id,
            CartItem.quantity,
            CartItem.updated_at,
            Product.name,
            Product.price,
            Product.stock,
            Product.image_url,
            Product.shopkeeper_id,
        )
        .join(Product, Product.id == CartItem.product_id)
        .where(CartItem.user_id == user_id)
        .order_by(CartItem.created_at.asc(), CartItem.id.asc())
    ).all()

    items = []
    total = 0.0
    last_updated = 0
    for row in rows:
        price = float(row.price)
        quantity = int(row.quantity)
        total += price * quantity
        last_updated = max(last_updated, _to_ms(row.updated_at))
        items.append(
            {
                "id": int(row.product_id),
                "name": row.name,
                "price": price,
                "quantity": quantity,
                "stock": _as_int(row.stock),
                "image_url": row.image_url,
                "shopkeeper_id": row.shopkeeper_id,
            }
        )
    return {
        "items": items,
        "total": round(total, 2),
        "count": sum(item["quantity"] for item in items),
        "lastUpdated": last_updated,
    }


def fetch_user_cart(user_id: int) -> dict[str, object]:
    """Return the user's persisted cart as a snapshot."""

    with session_scope() as session:
        return _cart_snapshot(session, user_id)


def _load_visible_product(session: Session, product_id: int) -> Product:
    product = session.get(Product, product_id)
    if not product or product.status != "approved" or not product.is_active:
        raise NotFoundError("Product not found")
    return product


def add_to_cart(user_id: int, product_id: int, quantity: object = 1) -> dict[str, object]:
    """Add ``quantity`` units, refusing to exceed the available stock."""

    amount = _as_int(quantity, 0)
    if amount <= 0:
        raise ValidationError("Quantity must be a positive whole number")

    with session_scope() as session:
        product = _load_visible_product(session, product_id)
        stock = _as_int(product.stock)
        item = session.execute(
            select(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id)
        ).scalar_one_or_none()
        requested = amount + (int(item.quantity) if item else 0)
        if requested > stock:
            raise ValidationError(f"Only {stock} items available")
        if item:
            item.quantity = requested
        else:
            session.add(CartItem(user_id=user_id, product_id=product_id, quantity=requested))
        session.flush()
        return _cart_snapshot(session, user_id)


def set_cart_quantity(user_id: int, product_id: int, quantity: object) -> dict[str, object]:
    """Set the quantity of a cart line; zero or less removes it."""

    amount = _as_int(quantity, -1)
    with session_scope() as session:
        item = session.execute(
            select(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id)
        ).scalar_one_or_none()
        if not item:
            raise NotFoundError("Item not in cart")
        if amount <= 0:
            session.delete(item)
        else:
            product = _load_visible_product(session, product_id)
            stock = _as_int(product.stock)
            if amount > stock:
                raise ValidationError(f"Only {stock} items available")
            item.quantity = amount
        session.flush()
        return _cart_snapshot(session, user_id)


def remove_cart_item(user_id: int, product_id: int) -> bool:
    """Remove a single product from a user's persisted cart."""

    with session_scope() as session:
        result = session.execute(
            delete(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id)
        )
        return bool(result.rowcount)


def replace_user_cart(user_id: int, cart: Mapping[str, object]) -> dict[str, object]:
    """Replace all items in a user's cart with the lines of a cart snapshot."""

    with session_scope() as session:
        session.execute(delete(CartItem).where(CartItem.user_id == user_id))
        items = cart.get("items") or []
        wanted: dict[int, int] = {}
        for item in items:
            pid = _as_int(item.get("id"), -1)
            qty = _as_int(item.get("quantity"), 0)
            if pid > 0 and qty > 0:
                wanted[pid] = wanted.get(pid, 0) + qty
        if wanted:
            known = set(session.execute(select(Product.id).where(Product.id.in_(list(wanted)))).scalars())
            for pid, qty in wanted.items():
                if pid in known:
                    session.add(CartItem(user_id=user_id, product_id=pid, quantity=qty))
        session.flush()
        return _cart_snapshot(session, user_id)


def clear_user_cart(user_id: int) -> int:
    """Delete all persisted cart items for the user."""

    with session_scope() as session:
        result = session.execute(delete(CartItem).where(CartItem.user_id == user_id))
        return int(result.rowcount or 0)


# --------------------------------------------------------------------------------------
# Order helpers
# --------------------------------------------------------------------------------------


def format_order_reference(order_id: int) -> str:
    """Return a human-friendly reference for an internal order id."""

    return f"LB-{_as_int(order_id):05d}"


def _reserve_stock(session: Session, product_id: int, quantity: int) -> bool:
    """Take ``quantity`` units off the shelf in SQL; False when fewer remain."""

    result = session.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock >= quantity)
        .values(stock=Product.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _release_stock(session: Session, product_id: int, quantity: int) -> Optional[int]:
    """Put ``quantity`` units back in SQL and return the new stock, or None if the product is gone."""

    result = session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return _as_int(session.scalar(select(Product.stock).where(Product.id == product_id)))


def _restock_order_inventory(session: Session, order: Order) -> list[tuple[int, int, int]]:
    """Return reserved quantities back to the catalogue; yields (product, old, new) stock."""

    changes = []
    for item in order.items:
        if not item.product_id or item.quantity <= 0:
            continue
        new_stock = _release_stock(session, int(item.product_id), int(item.quantity))
        if new_stock is None:
            continue
        changes.append((int(item.product_id), new_stock - int(item.quantity), new_stock))
    return changes


def _announce_restocks(changes: Sequence[tuple[int, int, int]]) -> None:
    if not changes:
        return
    # Imported lazily: notifications builds on this module.
    from notifications import handle_stock_update

    for product_id, old_stock, new_stock in changes:
        if old_stock <= 0 < new_stock:
            handle_stock_update(product_id, new_stock, old_stock)


def place_order(
    user_id: int,
    *,
    shipping_address: str,
    city: str,
    postal_code: str,
    phone: str = "",
    payment_method: str = "cod",
) -> dict[str, object]:
    """Turn the user's cart into an order in a single transaction."""

    shipping_address = (shipping_address or "").strip()
    city = (city or "").strip()
    postal_code = (postal_code or "").strip()
    if not shipping_address or not city or not postal_code:
        raise ValidationError("Shipping address, city and postal code are required")

    with session_scope() as session:
        lines = session.execute(
            select(CartItem, Product)
            .join(Product, Product.id == CartItem.product_id)
            .where(CartItem.user_id == user_id)
            .order_by(CartItem.created_at.asc(), CartItem.id.asc())
            .with_for_update(of=Product)
        ).all()
        if not lines:
            raise ValidationError("Your cart is empty. Please add items before checkout.")

        total = 0.0
        for cart_item, product in lines:
            if product.status != "approved" or not product.is_active:
                raise ValidationError(f'Product "{product.name}" is no longer available')
            available = _as_int(product.stock)
            if available < cart_item.quantity:
                raise ValidationError(
                    f'Insufficient stock for "{product.name}". '
                    f"Available: {available}, Requested: {cart_item.quantity}"
                )
            total += float(product.price) * int(cart_item.quantity)

        order = Order(
            user_id=user_id,
            status=PENDING,
            total_amount=round(total, 2),
            shipping_address=encrypt_sensitive_value(shipping_address),
            city=encrypt_sensitive_value(city),
            postal_code=encrypt_sensitive_value(postal_code),
            phone=encrypt_sensitive_value((phone or "").strip()),
            payment_method=(payment_method or "cod").strip() or "cod",
        )
        session.add(order)
        session.flush()

        session.add(
            OrderStatusHistory(
                order_id=order.id,
                old_status=None,
                new_status=PENDING,
                changed_by=user_id,
                reason="Order placed by customer",
            )
        )
        session.add(
            OrderTracking(
                order_id=order.id,
                status=tracking_label(PENDING),
                description="Your order has been received and is being processed",
            )
        )
        for cart_item, product in lines:
            session.add(
                OrderItem(
                    order_id=order.id,
                    product_id=product.id,
                    shopkeeper_id=product.shopkeeper_id,
                    product_name=product.name,
                    quantity=int(cart_item.quantity),
                    price=float(product.price),
                )
            )
            if not _reserve_stock(session, int(product.id), int(cart_item.quantity)):
                raise ValidationError(f'Insufficient stock for "{product.name}". Please review your cart.')

        session.execute(delete(CartItem).where(CartItem.user_id == user_id))
        session.flush()
        session.refresh(order, attribute_names=["items"])
        logger.info("Order %s placed by user %s for %.2f", order.id, user_id, order.total_amount)
        return _serialize_order(order)


def get_order(order_id: int) -> Optional[dict[str, object]]:
    """Fetch a single order with its line items."""

    with session_scope() as session:
        order = session.get(Order, order_id)
        return _serialize_order(order) if order else None


def fetch_orders_for_user(user_id: int, *, status: Optional[str] = None) -> list[dict[str, object]]:
    """Return all orders tied to a specific customer, newest first."""

    stmt = select(Order).options(selectinload(Order.items)).where(Order.user_id == user_id)
    if status and status in VALID_STATUSES:
        stmt = stmt.where(Order.status == status)
    with session_scope() as session:
        orders = session.execute(stmt.order_by(Order.id.desc())).scalars().all()
        return [_serialize_order(order) for order in orders]


def fetch_orders_for_shopkeeper(shopkeeper_id: int, *, status: Optional[str] = None) -> list[dict[str, object]]:
    """Return orders containing the shopkeeper's products, limited to their lines."""

    owns_line = exists().where(OrderItem.order_id == Order.id, OrderItem.shopkeeper_id == shopkeeper_id)
    stmt = (
        select(Order, User.name.label("customer_name"), User.email.label("customer_email"))
        .options(selectinload(Order.items))
        .join(User, User.id == Order.user_id, isouter=True)
        .where(owns_line)
    )
    if status and status in VALID_STATUSES:
        stmt = stmt.where(Order.status == status)

    with session_scope() as session:
        rows = session.execute(stmt.order_by(Order.id.desc())).all()
        orders = []
        for order, customer_name, customer_email in rows:
            payload = _serialize_order(order, shopkeeper_id=shopkeeper_id)
            payload["customer_name"] = customer_name
            payload["customer_email"] = customer_email
            payload["shopkeeper_total"] = round(sum(float(item["line_total"]) for item in payload["items"]), 2)
            orders.append(payload)
        return orders


def cancel_order(order_id: int, user_id: int, *, reason: Optional[str] = None) -> dict[str, object]:
    """Let a customer cancel their own pending or processing order."""

    restocks: list[tuple[int, int, int]] = []
    with session_scope() as session:
        order = session.get(Order, order_id, with_for_update=True)
        if not order or order.user_id != user_id:
            raise NotFoundError("Order not found")
        if order.status not in CANCELLABLE_STATUSES:
            raise ValidationError(f"Orders that are {order.status} can no longer be cancelled")

        session.add(
            OrderStatusHistory(
                order_id=order.id,
                old_status=order.status,
                new_status=CANCELLED,
                changed_by=user_id,
                reason=(reason or "").strip() or "Cancelled by customer",
            )
        )
        session.add(
            OrderTracking(
                order_id=order.id,
                status=tracking_label(CANCELLED),
                description="Order cancelled and items returned to stock",
            )
        )
        order.status = CANCELLED
        restocks = _restock_order_inventory(session, order)
        session.flush()
        payload = _serialize_order(order)

    _announce_restocks(restocks)
    return payload


def update_order_status(
    order_id: int,
    new_status: str,
    *,
    actor_id: int,
    actor_role: str,
    reason: Optional[str] = None,
    location: Optional[str] = None,
    description: Optional[str] = None,
) -> dict[str, object]:
    """Advance an order through its lifecycle on behalf of a shopkeeper or admin."""

    restocks: list[tuple[int, int, int]] = []
    with session_scope() as session:
        order = session.get(Order, order_id, with_for_update=True)
        if not order:
            raise NotFoundError("Order not found")
        if actor_role != "admin":
            owns_line = any(item.shopkeeper_id == actor_id for item in order.items)
            if actor_role != "shopkeeper" or not owns_line:
                raise PermissionDenied("You do not have permission to update this order")

        old_status = order.status
        validate_transition(old_status, new_status)

        session.add(
            OrderStatusHistory(
                order_id=order.id,
                old_status=old_status,
                new_status=new_status,
                changed_by=actor_id,
                reason=(reason or "").strip() or None,
            )
        )
        session.add(
            OrderTracking(
                order_id=order.id,
                status=tracking_label(new_status),
                location=(location or "").strip() or None,
                description=(description or "").strip() or f"Order status updated to {tracking_label(new_status)}",
            )
        )
        order.status = new_status
        if new_status == CANCELLED:
            restocks = _restock_order_inventory(session, order)
        session.flush()
        payload = _serialize_order(order)

    _announce_restocks(restocks)
    logger.info("Order %s moved from %s to %s by user %s", order_id, old_status, new_status, actor_id)
    return payload


def fetch_order_tracking(order_id: int) -> Optional[dict[str, object]]:
    """Return an order with its tracking events and status history, oldest first."""

    with session_scope() as session:
        order = session.get(Order, order_id)
        if not order:
            return None
        tracking = (
            session.execute(
                select(OrderTracking)
                .where(OrderTracking.order_id == order_id)
                .order_by(OrderTracking.created_at.asc(), OrderTracking.id.asc())
            )
            .scalars()
            .all()
        )
        history = session.execute(
            select(OrderStatusHistory, User.name)
            .join(User, User.id == OrderStatusHistory.changed_by, isouter=True)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at.asc(), OrderStatusHistory.id.asc())
        ).all()
        return {
            "order": _serialize_order(order),
            "tracking": [
                {
                    "id": event_row.id,
                    "status": event_row.status,
                    "location": event_row.location,
                    "description": event_row.description,
                    "timestamp": event_row.created_at,
                }
                for event_row in tracking
            ],
            "history": [
                {
                    "old_status": entry.old_status,
                    "new_status": entry.new_status,
                    "changed_by": entry.changed_by,
                    "changed_by_name": changed_by_name,
                    "reason": entry.reason,
                    "created_at": entry.created_at,
                }
                for entry, changed_by_name in history
            ],
        }


# --------------------------------------------------------------------------------------
# Review helpers
# --------------------------------------------------------------------------------------


def submit_review(
    user_id: int,
    product_id: int,
    order_id: int,
    rating: object,
    comment: Optional[str] = None,
) -> int:
    """Record a review for a product the user bought in ``order_id``."""

    rating_value = _as_int(rating, 0)
    if rating_value < 1 or rating_value > 5:
        raise ValidationError("Rating must be between 1 and 5")

    with session_scope() as session:
        purchased = session.execute(
            select(OrderItem.id)
            .join(Order, Order.id == OrderItem.order_id)
            .where(Order.id == order_id, Order.user_id == user_id, OrderItem.product_id == product_id)
        ).first()
        if not purchased:
            raise NotFoundError("Order not found or does not contain this product")

        review = Review(
            user_id=user_id,
            product_id=product_id,
            order_id=order_id,
            rating=rating_value,
            comment=(comment or "").strip() or None,
        )
        session.add(review)
        try:
            session.flush()
        except IntegrityError as exc:
            raise ValidationError("You have already reviewed this product") from exc
        return int(review.id)


def fetch_product_reviews(product_id: int) -> list[Mapping[str, object]]:
    """Return reviews for the given product ordered by newest first."""

    stmt = (
        select(
            Review.id,
            Review.rating,
            Review.comment,
            Review.created_at,
            Review.user_id,
            User.name.label("reviewer_name"),
        )
        .join(User, User.id == Review.user_id)
        .where(Review.product_id == product_id)
        .order_by(Review.created_at.desc(), Review.id.desc())
    )
    with session_scope() as session:
        rows = session.execute(stmt).mappings().all()
        return [dict(row) for row in rows]


def get_product_rating_summary(product_id: int) -> Mapping[str, float]:
    """Return the average rating and total review count for a product."""

    stmt = select(
        func.coalesce(func.avg(Review.rating), 0).label("avg_rating"),
        func.count(Review.id).label("review_count"),
    ).where(Review.product_id == product_id)

    with session_scope() as session:
        row = session.execute(stmt).mappings().first()
    if not row:
        return {"avg_rating": 0.0, "review_count": 0}
    return {
        "avg_rating": round(float(row["avg_rating"]), 2),
        "review_count": int(row["review_count"]),
    }


# --------------------------------------------------------------------------------------
# Admin audit log
# --------------------------------------------------------------------------------------


def log_admin_action(
    admin_id: Optional[int],
    action: str,
    *,
    target_type: Optional[str] = None,
    target_id: Optional[int] = None,
    details: object = None,
) -> int:
    """Append a row to the admin audit trail."""

    if details is not None and not isinstance(details, str):
        details = json.dumps(details, default=str, sort_keys=True)
    with session_scope() as session:
        entry = AdminLog(
            admin_id=admin_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            details=details,
        )
        session.add(entry)
        session.flush()
        return int(entry.id)


def fetch_admin_logs(
    *,
    action: Optional[str] = None,
    admin_id: Optional[int] = None,
    page: object = 1,
    limit: object = 50,
) -> dict[str, object]:
    """Return audit entries newest first."""

    page_value, limit_value = _page_window(page, limit, default_limit=50)
    filters = []
    if action:
        filters.append(AdminLog.action == action)
    if admin_id is not None:
        filters.append(AdminLog.admin_id == admin_id)

    with session_scope() as session:
        total = session.scalar(select(func.count(AdminLog.id)).where(*filters)) or 0
        rows = (
            session.execute(
                select(
                    AdminLog.id,
                    AdminLog.admin_id,
                    AdminLog.action,
                    AdminLog.target_type,
                    AdminLog.target_id,
                    AdminLog.details,
                    AdminLog.created_at,
                    User.name.label("admin_name"),
                )
                .join(User, User.id == AdminLog.admin_id, isouter=True)
                .where(*filters)
                .order_by(AdminLog.created_at.desc(), AdminLog.id.desc())
                .offset((page_value - 1) * limit_value)
                .limit(limit_value)
            )
            .mappings()
            .all()
        )
        return {
            "logs": [dict(row) for row in rows],
            "pagination": paginate(int(total), page_value, limit_value),
        }

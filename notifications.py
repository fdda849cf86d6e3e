"""Back-in-stock subscriptions and the restock fan-out."""

from __future__ import annotations

import logging
from typing import Callable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import aliased

from database import Product, StockNotification, User, _as_int, _utcnow, session_scope
from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

Notifier = Callable[[Mapping[str, object], Mapping[str, object]], None]


def log_notifier(subscription: Mapping[str, object], product: Mapping[str, object]) -> None:
    """Default delivery channel: record the notification in the application log."""

    logger.info(
        "Back in stock: notifying %s <%s> about %s (product %s)",
        subscription.get("user_name"),
        subscription.get("user_email"),
        product.get("name"),
        product.get("id"),
    )


def subscribe(user_id: int, product_id: int) -> dict[str, object]:
    """Ask to be told when an out-of-stock product comes back."""

    with session_scope() as session:
        product = session.get(Product, product_id)
        if not product:
            raise NotFoundError("Product not found")
        if _as_int(product.stock) > 0:
            raise ValidationError("This product is in stock. Add it to your cart instead.")

        entry = session.execute(
            select(StockNotification).where(
                StockNotification.user_id == user_id,
                StockNotification.product_id == product_id,
            )
        ).scalar_one_or_none()
        if entry:
            entry.notification_sent = False
            entry.notified_at = None
        else:
            entry = StockNotification(user_id=user_id, product_id=product_id)
            session.add(entry)
        session.flush()
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "product_id": entry.product_id,
            "notification_sent": bool(entry.notification_sent),
            "created_at": entry.created_at,
        }


def unsubscribe(user_id: int, product_id: int) -> bool:
    with session_scope() as session:
        entry = session.execute(
            select(StockNotification).where(
                StockNotification.user_id == user_id,
                StockNotification.product_id == product_id,
            )
        ).scalar_one_or_none()
        if not entry:
            return False
        session.delete(entry)
        return True


def get_pending_notifications(product_id: int) -> list[dict[str, object]]:
    """Subscriptions for ``product_id`` that have not been notified yet."""

    stmt = (
        select(
            StockNotification.id,
            StockNotification.user_id,
            StockNotification.product_id,
            StockNotification.created_at,
            User.name.label("user_name"),
            User.email.label("user_email"),
        )
        .join(User, User.id == StockNotification.user_id)
        .where(
            StockNotification.product_id == product_id,
            StockNotification.notification_sent.is_(False),
        )
        .order_by(StockNotification.created_at.desc(), StockNotification.id.desc())
    )
    with session_scope() as session:
        return [dict(row) for row in session.execute(stmt).mappings().all()]


def get_user_notifications(user_id: int) -> list[dict[str, object]]:
    shopkeeper = aliased(User)
    stmt = (
        select(
            StockNotification.id,
            StockNotification.product_id,
            StockNotification.notification_sent,
            StockNotification.notified_at,
            StockNotification.created_at,
            Product.name.label("product_name"),
            Product.price.label("product_price"),
            Product.stock.label("product_stock"),
            Product.image_url.label("product_image_url"),
            shopkeeper.name.label("shopkeeper_name"),
        )
        .join(Product, Product.id == StockNotification.product_id)
        .join(shopkeeper, shopkeeper.id == Product.shopkeeper_id, isouter=True)
        .where(StockNotification.user_id == user_id)
        .order_by(StockNotification.created_at.desc(), StockNotification.id.desc())
    )
    with session_scope() as session:
        return [dict(row) for row in session.execute(stmt).mappings().all()]


def handle_stock_update(
    product_id: int,
    new_stock: Optional[int],
    old_stock: Optional[int] = 0,
    notifier: Optional[Notifier] = None,
) -> dict[str, object]:
    """Notify every pending subscriber when a product goes from empty to stocked.

    Each subscription is handed to ``notifier`` and flagged as sent when the
    notifier returns. A notifier that raises leaves the subscription pending
    so the next restock retries it.
    """

    previous = _as_int(old_stock)
    current = _as_int(new_stock)
    logger.debug("Stock update for product %s: %s -> %s", product_id, old_stock, new_stock)

    if previous > 0 or current <= 0:
        return {
            "success": True,
            "message": "No notifications needed",
            "notificationsSent": 0,
            "notificationsFailed": 0,
        }

    deliver = notifier or log_notifier
    sent = 0
    failed = 0
    with session_scope() as session:
        product = session.get(Product, product_id)
        if not product:
            return {
                "success": False,
                "message": "Product not found",
                "notificationsSent": 0,
                "notificationsFailed": 0,
            }
        product_payload = {"id": product.id, "name": product.name, "price": float(product.price), "stock": current}

        rows = session.execute(
            select(StockNotification, User.name, User.email)
            .join(User, User.id == StockNotification.user_id)
            .where(
                StockNotification.product_id == product_id,
                StockNotification.notification_sent.is_(False),
            )
            .order_by(StockNotification.created_at.asc(), StockNotification.id.asc())
        ).all()

        for entry, user_name, user_email in rows:
            subscription = {
                "id": entry.id,
                "user_id": entry.user_id,
                "user_name": user_name,
                "user_email": user_email,
            }
            try:
                deliver(subscription, product_payload)
            except Exception:
                failed += 1
                logger.exception("Failed to deliver stock notification %s", entry.id)
                continue
            entry.notification_sent = True
            entry.notified_at = _utcnow()
            sent += 1

    logger.info("Product %s restocked: %d notifications sent, %d failed", product_id, sent, failed)
    return {
        "success": True,
        "message": f"Notifications sent to {sent} users",
        "notificationsSent": sent,
        "notificationsFailed": failed,
    }

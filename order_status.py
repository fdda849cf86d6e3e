"""Order status vocabulary, allowed transitions, and progress computation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from errors import ValidationError

PENDING = "pending"
PROCESSING = "processing"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"

VALID_STATUSES = (PENDING, PROCESSING, SHIPPED, DELIVERED, CANCELLED)
CANCELLABLE_STATUSES = frozenset({PENDING, PROCESSING})
ESTIMATED_DELIVERY_DAYS = 7

STATUS_STEPS: dict[str, dict[str, object]] = {
    PENDING: {"step": 1, "label": "Order Placed", "percentage": 20},
    PROCESSING: {"step": 2, "label": "Processing", "percentage": 40},
    SHIPPED: {"step": 3, "label": "Shipped", "percentage": 70},
    DELIVERED: {"step": 4, "label": "Delivered", "percentage": 100},
    CANCELLED: {"step": 0, "label": "Cancelled", "percentage": 0},
}

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PROCESSING, CANCELLED}),
    PROCESSING: frozenset({SHIPPED, CANCELLED}),
    SHIPPED: frozenset({DELIVERED}),
    DELIVERED: frozenset(),
    CANCELLED: frozenset(),
}


def validate_status(status: str) -> str:
    if status not in VALID_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}")
    return status


def can_transition(old_status: str, new_status: str) -> bool:
    return new_status in ALLOWED_TRANSITIONS.get(old_status, frozenset())


def validate_transition(old_status: str, new_status: str) -> None:
    validate_status(new_status)
    if not can_transition(old_status, new_status):
        raise ValidationError(f"Cannot move an order from {old_status} to {new_status}.")


def tracking_label(status: str) -> str:
    return str(STATUS_STEPS.get(status, STATUS_STEPS[PENDING])["label"])


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def calculate_order_progress(
    status: str,
    created_at: datetime,
    now: Optional[datetime] = None,
) -> dict[str, object]:
    """Return the 4-step progress structure rendered by order tracking views."""

    current = STATUS_STEPS.get(status, STATUS_STEPS[PENDING])
    placed = _as_utc(created_at)
    reference = _as_utc(now) if now is not None else datetime.now(timezone.utc)
    current_step = int(current["step"])

    steps = []
    for key in (PENDING, PROCESSING, SHIPPED, DELIVERED):
        step_number = int(STATUS_STEPS[key]["step"])
        steps.append(
            {
                "step": step_number,
                "label": STATUS_STEPS[key]["label"],
                "completed": current_step >= step_number,
                "current": current_step == step_number,
            }
        )

    return {
        "currentStep": current_step,
        "currentLabel": current["label"],
        "percentage": current["percentage"],
        "estimatedDelivery": (placed + timedelta(days=ESTIMATED_DELIVERY_DAYS)).isoformat(),
        "daysSinceOrder": max(0, (reference - placed).days),
        "isCompleted": status == DELIVERED,
        "isCancelled": status == CANCELLED,
        "steps": steps,
    }

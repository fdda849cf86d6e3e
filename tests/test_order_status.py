"""
Tests for the order lifecycle rules and the tracking progress structure.
"""

from datetime import datetime, timezone

import pytest

from errors import ValidationError
from order_status import (
    CANCELLED,
    DELIVERED,
    PENDING,
    PROCESSING,
    SHIPPED,
    calculate_order_progress,
    can_transition,
    validate_status,
    validate_transition,
)

PLACED = datetime(2026, 3, 1, 9, 30)


class TestTransitions:
    @pytest.mark.parametrize(
        "old,new",
        [(PENDING, PROCESSING), (PENDING, CANCELLED), (PROCESSING, SHIPPED), (PROCESSING, CANCELLED), (SHIPPED, DELIVERED)],
    )
    def test_forward_moves_allowed(self, old, new):
        assert can_transition(old, new)
        validate_transition(old, new)

    @pytest.mark.parametrize(
        "old,new",
        [(SHIPPED, CANCELLED), (DELIVERED, PENDING), (CANCELLED, PROCESSING), (PENDING, SHIPPED)],
    )
    def test_invalid_moves_rejected(self, old, new):
        assert not can_transition(old, new)
        with pytest.raises(ValidationError, match=f"Cannot move an order from {old} to {new}"):
            validate_transition(old, new)

    def test_unknown_status_rejected(self):
        with pytest.raises(ValidationError, match="Invalid status. Must be one of: pending, processing"):
            validate_status("lost")


class TestProgress:
    def test_shipped_progress(self):
        progress = calculate_order_progress(SHIPPED, PLACED, now=datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc))
        assert progress["currentStep"] == 3
        assert progress["currentLabel"] == "Shipped"
        assert progress["percentage"] == 70
        assert progress["daysSinceOrder"] == 3
        assert progress["estimatedDelivery"].startswith("2026-03-08T09:30:00")
        assert not progress["isCompleted"]
        assert [step["completed"] for step in progress["steps"]] == [True, True, True, False]
        assert [step["current"] for step in progress["steps"]] == [False, False, True, False]

    def test_delivered_is_complete(self):
        progress = calculate_order_progress(DELIVERED, PLACED, now=PLACED)
        assert progress["percentage"] == 100
        assert progress["isCompleted"]
        assert all(step["completed"] for step in progress["steps"])

    def test_cancelled_has_no_steps_done(self):
        progress = calculate_order_progress(CANCELLED, PLACED, now=PLACED)
        assert progress["currentStep"] == 0
        assert progress["percentage"] == 0
        assert progress["isCancelled"]
        assert not any(step["completed"] for step in progress["steps"])

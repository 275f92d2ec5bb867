"""
Unit Tests for the Order Status State Machine

Tests cover:
1. The transition table, every pair
2. apply_transition history and timestamp side effects
3. Helper queries
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from hungerwood.core.exceptions import InvalidTransition
from hungerwood.models import OrderStatus, OrderType, PaymentMethod
from hungerwood.schemas import Order, OrderItem
from hungerwood.services.state_machine import (
    allowed_next_statuses,
    apply_transition,
    can_be_cancelled,
    is_terminal,
    status_flow_description,
    validate_transition,
)

S = OrderStatus

ALLOWED = {
    S.RECEIVED: {S.CONFIRMED, S.CANCELLED},
    S.CONFIRMED: {S.PREPARING, S.CANCELLED},
    S.PREPARING: {S.READY, S.CANCELLED},
    S.READY: {S.OUT_FOR_DELIVERY, S.CANCELLED},
    S.OUT_FOR_DELIVERY: {S.COMPLETED},
    S.COMPLETED: set(),
    S.CANCELLED: set(),
}

CREATED_AT = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_order(status=S.RECEIVED, history=None) -> Order:
    return Order(
        id="order-1",
        order_code="20250115001",
        user_id="user-1",
        items=[OrderItem(menu_item_id="m1", name="Veg Biryani", price=Decimal("199"), quantity=1)],
        order_type=OrderType.TAKEAWAY,
        payment_method=PaymentMethod.CASH,
        subtotal=Decimal("199"),
        tax=Decimal("10"),
        total_amount=Decimal("229"),
        amount_payable=Decimal("229"),
        status=status,
        status_history=history or [],
        created_at=CREATED_AT,
    )


class TestValidateTransition:
    """The transition table, checked exhaustively."""

    @pytest.mark.parametrize("current", list(S))
    @pytest.mark.parametrize("target", list(S))
    def test_matches_table(self, current, target):
        assert validate_transition(current, target) == (target in ALLOWED[current])

    def test_examples(self):
        assert validate_transition(S.RECEIVED, S.CONFIRMED) is True
        assert validate_transition(S.RECEIVED, S.PREPARING) is False
        assert validate_transition(S.OUT_FOR_DELIVERY, S.CANCELLED) is False

    def test_accepts_plain_strings(self):
        assert validate_transition("READY", "OUT_FOR_DELIVERY") is True

    def test_unknown_status_is_rejected(self):
        assert validate_transition("RECEIVED", "SHIPPED") is False
        assert validate_transition("LOST", "CONFIRMED") is False


class TestApplyTransition:

    def test_seeds_empty_history(self):
        order = make_order()
        now = CREATED_AT + timedelta(minutes=5)

        updated = apply_transition(order, S.CONFIRMED, "admin-1", now=now)

        assert updated.status == S.CONFIRMED
        assert [e.status for e in updated.status_history] == [S.RECEIVED, S.CONFIRMED]
        seeded = updated.status_history[0]
        assert seeded.timestamp == CREATED_AT
        assert seeded.updated_by == "user-1"
        assert updated.status_history[1].updated_by == "admin-1"
        assert updated.status_history[1].timestamp == now
        assert updated.updated_at == now

    def test_does_not_mutate_input(self):
        order = make_order()
        apply_transition(order, S.CONFIRMED, "admin-1")

        assert order.status == S.RECEIVED
        assert order.status_history == []

    def test_appends_to_existing_history(self):
        order = apply_transition(make_order(), S.CONFIRMED, "admin-1")
        order = apply_transition(order, S.PREPARING, "admin-1")

        assert [e.status for e in order.status_history] == [S.RECEIVED, S.CONFIRMED, S.PREPARING]

    def test_side_effect_timestamps(self):
        order = make_order()
        for target in (S.CONFIRMED, S.PREPARING):
            order = apply_transition(order, target, "admin-1")
        assert order.prepared_at is None

        order = apply_transition(order, S.READY, "admin-1")
        assert order.prepared_at is not None

        order = apply_transition(order, S.OUT_FOR_DELIVERY, "admin-1")
        order = apply_transition(order, S.COMPLETED, "admin-1")
        assert order.delivered_at is not None
        assert order.cancelled_at is None

    def test_cancel_records_reason(self):
        cancelled = apply_transition(make_order(), S.CANCELLED, "user-1", reason="Ordered twice")

        assert cancelled.cancelled_at is not None
        assert cancelled.cancellation_reason == "Ordered twice"

    def test_reason_ignored_for_other_targets(self):
        confirmed = apply_transition(make_order(), S.CONFIRMED, "admin-1", reason="ignored")
        assert confirmed.cancellation_reason is None

    def test_invalid_transition_reports_allowed(self):
        order = make_order(status=S.CONFIRMED)

        with pytest.raises(InvalidTransition) as exc_info:
            apply_transition(order, S.COMPLETED, "admin-1")

        assert set(exc_info.value.allowed) == {S.PREPARING, S.CANCELLED}
        assert exc_info.value.to_dict()["details"]["allowed_statuses"] == ["PREPARING", "CANCELLED"]

    def test_terminal_states_reject_everything(self):
        for terminal in (S.COMPLETED, S.CANCELLED):
            with pytest.raises(InvalidTransition):
                apply_transition(make_order(status=terminal), S.RECEIVED, "admin-1")


class TestHelpers:

    def test_allowed_next_statuses(self):
        assert allowed_next_statuses(S.READY) == [S.OUT_FOR_DELIVERY, S.CANCELLED]
        assert allowed_next_statuses(S.COMPLETED) == []
        assert allowed_next_statuses("BOGUS") == []

    def test_can_be_cancelled(self):
        assert can_be_cancelled(S.READY) is True
        assert can_be_cancelled(S.OUT_FOR_DELIVERY) is False

    def test_is_terminal(self):
        assert is_terminal(S.COMPLETED)
        assert is_terminal(S.CANCELLED)
        assert not is_terminal(S.RECEIVED)

    def test_flow_description(self):
        assert "OUT_FOR_DELIVERY" in status_flow_description()

"""
Order Status State Machine

Enforces the strict order status flow:

    RECEIVED → CONFIRMED → PREPARING → READY → OUT_FOR_DELIVERY → COMPLETED

An order can be CANCELLED at any point before OUT_FOR_DELIVERY. COMPLETED and
CANCELLED are terminal.

apply_transition() is pure: it returns an updated copy of the order and
leaves persistence to OrderService.update_status(), which is the only caller
allowed to write status changes.
"""

from datetime import datetime, timezone
from typing import Optional

from hungerwood.core.exceptions import InvalidTransition
from hungerwood.models import OrderStatus
from hungerwood.schemas import Order, StatusHistoryEntry


STATUS_FLOW: dict[OrderStatus, tuple[OrderStatus, ...]] = {
    OrderStatus.RECEIVED: (OrderStatus.CONFIRMED, OrderStatus.CANCELLED),
    OrderStatus.CONFIRMED: (OrderStatus.PREPARING, OrderStatus.CANCELLED),
    OrderStatus.PREPARING: (OrderStatus.READY, OrderStatus.CANCELLED),
    OrderStatus.READY: (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED),
    OrderStatus.OUT_FOR_DELIVERY: (OrderStatus.COMPLETED,),
    OrderStatus.COMPLETED: (),
    OrderStatus.CANCELLED: (),
}

INITIAL_STATUS = OrderStatus.RECEIVED
TERMINAL_STATUSES = frozenset(
    status for status, allowed in STATUS_FLOW.items() if not allowed
)

# Timestamp field stamped when an order enters the status
_TIMESTAMP_FIELDS = {
    OrderStatus.READY: "prepared_at",
    OrderStatus.COMPLETED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def _coerce(status) -> Optional[OrderStatus]:
    if isinstance(status, OrderStatus):
        return status
    try:
        return OrderStatus(status)
    except ValueError:
        return None


def validate_transition(current, target) -> bool:
    """True iff target is an allowed next status of current."""
    current, target = _coerce(current), _coerce(target)
    if current is None or target is None:
        return False
    return target in STATUS_FLOW[current]


def allowed_next_statuses(current) -> list[OrderStatus]:
    current = _coerce(current)
    if current is None:
        return []
    return list(STATUS_FLOW[current])


def can_be_cancelled(current) -> bool:
    return OrderStatus.CANCELLED in allowed_next_statuses(current)


def is_terminal(status) -> bool:
    return _coerce(status) in TERMINAL_STATUSES


def status_flow_description() -> str:
    return (
        "RECEIVED → CONFIRMED → PREPARING → READY → OUT_FOR_DELIVERY → COMPLETED "
        "(Can be CANCELLED before OUT_FOR_DELIVERY)"
    )


def apply_transition(
    order: Order,
    target,
    actor_id: Optional[str],
    *,
    now: Optional[datetime] = None,
    reason: Optional[str] = None,
) -> Order:
    """
    Move an order to `target` and record the change in its history.

    Args:
        order: Current order snapshot
        target: Requested status
        actor_id: User performing the change
        now: Transition time (defaults to current UTC time)
        reason: Cancellation reason, kept only for CANCELLED

    Returns:
        A new Order with status, history and side-effect timestamps updated

    Raises:
        InvalidTransition: target is not reachable from the current status
    """
    if not validate_transition(order.status, target):
        raise InvalidTransition(order.status, target, allowed_next_statuses(order.status))

    target = _coerce(target)
    now = now or datetime.now(timezone.utc)

    history = list(order.status_history)
    if not history:
        history.append(
            StatusHistoryEntry(
                status=order.status,
                timestamp=order.created_at,
                updated_by=order.user_id,
            )
        )
    history.append(StatusHistoryEntry(status=target, timestamp=now, updated_by=actor_id))

    changes = {
        "status": target,
        "status_history": history,
        "updated_at": now,
    }
    timestamp_field = _TIMESTAMP_FIELDS.get(target)
    if timestamp_field:
        changes[timestamp_field] = now
    if target == OrderStatus.CANCELLED and reason:
        changes["cancellation_reason"] = reason

    return order.model_copy(update=changes)

"""
Order Core Error Taxonomy

Business-rule violations are expected outcomes: they carry a machine-readable
code, the HTTP status the API layer should answer with, and details the
client needs to self-correct (allowed next statuses, available balance...).
Storage faults are NOT part of this hierarchy and propagate unchanged.
"""

from decimal import Decimal
from typing import Any, Iterable, Optional


class OrderCoreError(Exception):
    """Base class for expected business-rule failures."""

    code = "ORDER_CORE_ERROR"
    http_status = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "details": _jsonable(self.details),
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "value"):
        return value.value
    return value


# =============================================================================
# ORDER LIFECYCLE
# =============================================================================

class InvalidTransition(OrderCoreError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: Any, target: Any, allowed: Iterable[Any]):
        allowed = list(allowed)
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            f"Invalid status transition from {current_value} to {target_value}",
            current_status=current,
            requested_status=target,
            allowed_statuses=allowed,
        )
        self.current = current
        self.target = target
        self.allowed = allowed


class OrderNotFound(OrderCoreError):
    code = "ORDER_NOT_FOUND"
    http_status = 404

    def __init__(self, reference: str):
        super().__init__(f"Order {reference} not found", reference=reference)


class DuplicateOrder(OrderCoreError):
    code = "DUPLICATE_ORDER"
    http_status = 409

    def __init__(self, existing_order_id: str, window_seconds: int):
        super().__init__(
            "An identical order was just placed; please wait before retrying",
            existing_order_id=existing_order_id,
            window_seconds=window_seconds,
        )


class StaleOrderError(Exception):
    """Raised by repositories when an order was modified concurrently."""


# =============================================================================
# LEDGER
# =============================================================================

class InvalidAmount(OrderCoreError):
    code = "INVALID_AMOUNT"

    def __init__(self, message: str, amount: Any = None):
        super().__init__(message, amount=amount)


class InsufficientBalance(OrderCoreError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, available: Decimal, requested: Decimal):
        super().__init__(
            f"Insufficient wallet balance. Available: {available}",
            available_balance=available,
            requested_amount=requested,
        )
        self.available = available
        self.requested = requested


class ExceedsPolicyLimit(OrderCoreError):
    code = "EXCEEDS_POLICY_LIMIT"

    def __init__(self, max_percent: int, max_allowed: Decimal):
        super().__init__(
            f"Wallet usage cannot exceed {max_percent}% of order total ({max_allowed})",
            max_percent=max_percent,
            max_allowed=max_allowed,
        )
        self.max_allowed = max_allowed


class ExceedsOrderTotal(OrderCoreError):
    code = "EXCEEDS_ORDER_TOTAL"

    def __init__(self, order_total: Decimal):
        super().__init__(
            "Wallet amount cannot exceed order total",
            order_total=order_total,
        )


class AccountNotFound(OrderCoreError):
    code = "ACCOUNT_NOT_FOUND"
    http_status = 404

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found", user_id=user_id)


class DuplicateLedgerEntry(OrderCoreError):
    """An entry with the same idempotency key is already in the ledger."""
    code = "DUPLICATE_LEDGER_ENTRY"
    http_status = 409

    def __init__(self, idempotency_key: str):
        super().__init__(
            f"Ledger entry {idempotency_key} was already recorded",
            idempotency_key=idempotency_key,
        )
        self.idempotency_key = idempotency_key


# =============================================================================
# REFERRALS
# =============================================================================

class ReferralError(OrderCoreError):
    code = "REFERRAL_ERROR"


# =============================================================================
# LIVE UPDATES
# =============================================================================

class SubscriptionCapacityExceeded(OrderCoreError):
    code = "SUBSCRIPTION_CAPACITY_EXCEEDED"
    http_status = 503

    def __init__(self, order_id: str, capacity: int):
        super().__init__(
            "Max connections reached",
            order_id=order_id,
            capacity=capacity,
        )


class DeliveryFailure(OrderCoreError):
    """Per-subscriber delivery failure; never fatal to the broadcaster."""

    code = "DELIVERY_FAILURE"
    http_status = 500

    def __init__(self, reason: str, order_id: Optional[str] = None):
        super().__init__(reason, order_id=order_id)

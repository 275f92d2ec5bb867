"""
Order Service

Places orders and moves them through their lifecycle.

update_status() is the only path that persists a status change:
    1. Resolve the reference (canonical id first, then order code)
    2. Hold the order's lock, reload, apply the transition
    3. Save with a version check; a stale version reloads and re-validates
    4. Broadcast the change to live subscribers under the canonical id
    5. Refund the wallet share of a cancelled order
"""

import asyncio
import inspect
import logging
import uuid
from datetime import datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Awaitable, Callable, Optional

from hungerwood.core.config import Settings, get_settings
from hungerwood.core.exceptions import (
    AccountNotFound,
    DuplicateOrder,
    InvalidAmount,
    OrderNotFound,
    StaleOrderError,
)
from hungerwood.core.locks import KeyedLock
from hungerwood.models import OrderStatus, OrderType, TransactionReason
from hungerwood.repositories.base import (
    AccountRepository,
    DuplicateSubmission,
    OrderCodeConflict,
    OrderRepository,
)
from hungerwood.schemas import (
    Order,
    OrderCreate,
    OrderItem,
    StatusHistoryEntry,
    items_fingerprint,
)
from hungerwood.services.broadcaster import OrderBroadcaster, status_update_envelope
from hungerwood.services.referral import ReferralService
from hungerwood.services.state_machine import INITIAL_STATUS, apply_transition
from hungerwood.services.wallet import WalletLedger

logger = logging.getLogger(__name__)

# Called with every newly placed order; schedules referral processing
RewardDispatcher = Callable[[Order], Optional[Awaitable[None]]]

MAX_SAVE_ATTEMPTS = 5
MAX_CODE_ATTEMPTS = 10


class OrderService:

    def __init__(
        self,
        orders: OrderRepository,
        accounts: AccountRepository,
        ledger: WalletLedger,
        broadcaster: OrderBroadcaster,
        referrals: ReferralService,
        settings: Optional[Settings] = None,
        reward_dispatcher: Optional[RewardDispatcher] = None,
    ):
        self.orders = orders
        self.accounts = accounts
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.referrals = referrals
        self.settings = settings or get_settings()
        self.reward_dispatcher = reward_dispatcher or self._reward_in_background
        self._order_locks = KeyedLock()
        self._user_locks = KeyedLock()
        self._background: set[asyncio.Task] = set()

    # =========================================================================
    # LOOKUP
    # =========================================================================

    async def resolve_order(self, reference: str) -> Order:
        """
        Find an order by canonical id, falling back to the order code.

        Raises:
            OrderNotFound: neither lookup matched
        """
        order = await self.orders.get(reference)
        if order is None:
            order = await self.orders.get_by_code(reference)
        if order is None:
            raise OrderNotFound(reference)
        return order

    async def list_orders(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        order_type: Optional[OrderType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        return await self.orders.list_orders(
            user_id=user_id,
            status=status,
            order_type=order_type,
            limit=limit,
            offset=offset,
        )

    # =========================================================================
    # PLACEMENT
    # =========================================================================

    def calculate_totals(self, items: list[OrderItem], order_type: OrderType, discount: Decimal) -> dict:
        subtotal = sum((item.line_total for item in items), Decimal("0"))
        tax = (subtotal * self.settings.tax_rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        packaging = self.settings.packaging_fee
        delivery_fee = self.settings.delivery_fee if order_type == OrderType.DELIVERY else Decimal("0")
        total = subtotal + tax + packaging + delivery_fee - discount
        if total < 0:
            raise InvalidAmount("Discount cannot exceed the order amount", amount=discount)
        return {
            "subtotal": subtotal,
            "tax": tax,
            "packaging": packaging,
            "delivery_fee": delivery_fee,
            "discount": discount,
            "total_amount": total,
        }

    async def place_order(self, user_id: str, request: OrderCreate) -> Order:
        """
        Create an order in RECEIVED status.

        Raises:
            AccountNotFound: unknown user
            DuplicateOrder: identical order placed within the duplicate window
            InsufficientBalance, ExceedsPolicyLimit, ExceedsOrderTotal:
                wallet share rejected
        """
        if await self.accounts.get(user_id) is None:
            raise AccountNotFound(user_id)

        items = [OrderItem(**item.model_dump()) for item in request.items]
        fingerprint = items_fingerprint(items)
        totals = self.calculate_totals(items, request.order_type, request.discount)
        wallet_amount = request.wallet_amount

        async with self._user_locks.hold(user_id):
            now = datetime.now(timezone.utc)
            window = self.settings.duplicate_order_window_seconds
            since = now - timedelta(seconds=window) if window > 0 else None
            # The store repeats this check atomically with the insert
            duplicate = await self.orders.find_recent_duplicate(
                user_id, fingerprint, since=now - timedelta(seconds=window)
            )
            if duplicate is not None:
                logger.warning(f"Duplicate order from user {user_id}, matches {duplicate.id}")
                raise DuplicateOrder(duplicate.id, window)

            order_id = str(uuid.uuid4())
            if wallet_amount > 0:
                await self.ledger.validate_wallet_usage(
                    user_id, wallet_amount, totals["total_amount"]
                )
                await self.ledger.debit(
                    user_id,
                    wallet_amount,
                    TransactionReason.ORDER_PAYMENT,
                    order_id=order_id,
                    description="Payment for order",
                    metadata={
                        "order_type": request.order_type.value,
                        "item_count": len(items),
                    },
                )

            order = Order(
                id=order_id,
                order_code="",
                user_id=user_id,
                items=items,
                items_fingerprint=fingerprint,
                order_type=request.order_type,
                payment_method=request.payment_method,
                delivery_address=request.delivery_address,
                instructions=request.instructions,
                wallet_amount=wallet_amount,
                amount_payable=totals["total_amount"] - wallet_amount,
                status=INITIAL_STATUS,
                status_history=[
                    StatusHistoryEntry(status=INITIAL_STATUS, timestamp=now, updated_by=user_id)
                ],
                created_at=now,
                updated_at=now,
                **totals,
            )

            try:
                order = await self._insert_with_code(order, duplicate_since=since)
            except Exception as exc:
                if wallet_amount > 0:
                    await self.ledger.refund_to_wallet(
                        user_id, wallet_amount, order_id, reason="Order could not be placed"
                    )
                if isinstance(exc, DuplicateSubmission):
                    logger.warning(
                        f"Duplicate order from user {user_id}, matches {exc.existing_order_id}"
                    )
                    raise DuplicateOrder(exc.existing_order_id, window) from exc
                raise

        logger.info(
            f"Order created: {order.order_code} ({order.id}) by user {user_id}, "
            f"total {order.total_amount}, wallet used {wallet_amount}"
        )
        await self._dispatch_reward(order)
        return order

    async def _insert_with_code(
        self, order: Order, duplicate_since: Optional[datetime] = None
    ) -> Order:
        """Persist with the next free YYYYMMDDNNN code for the order's day."""
        day_start = datetime.combine(order.created_at.date(), time.min, tzinfo=timezone.utc)
        count = await self.orders.count_created_between(day_start, day_start + timedelta(days=1))
        prefix = order.created_at.strftime("%Y%m%d")

        for attempt in range(MAX_CODE_ATTEMPTS):
            candidate = order.model_copy(update={"order_code": f"{prefix}{count + 1 + attempt:03d}"})
            try:
                return await self.orders.add(candidate, duplicate_since=duplicate_since)
            except OrderCodeConflict:
                logger.debug(f"Order code {candidate.order_code} taken, trying the next one")
        raise OrderCodeConflict(f"No free order code for {prefix}")

    async def _dispatch_reward(self, order: Order) -> None:
        try:
            pending = self.reward_dispatcher(order)
            if inspect.isawaitable(pending):
                await pending
        except Exception:
            logger.exception(f"Could not dispatch referral processing for order {order.id}")

    def _reward_in_background(self, order: Order) -> None:
        task = asyncio.create_task(self.referrals.process_reward(order))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain_background(self) -> None:
        """Wait for in-process referral tasks; used on shutdown and in tests."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def update_status(
        self,
        reference: str,
        target,
        actor_id: Optional[str],
        reason: Optional[str] = None,
    ) -> Order:
        """
        Apply a status transition and notify live subscribers.

        Raises:
            OrderNotFound: unknown reference
            InvalidTransition: target not allowed from the current status
        """
        order_id = (await self.resolve_order(reference)).id

        async with self._order_locks.hold(order_id):
            for attempt in range(1, MAX_SAVE_ATTEMPTS + 1):
                current = await self.orders.get(order_id)
                if current is None:
                    raise OrderNotFound(reference)
                updated = apply_transition(current, target, actor_id, reason=reason)
                try:
                    saved = await self.orders.save(updated)
                    break
                except StaleOrderError:
                    logger.warning(
                        f"Order {order_id} changed concurrently (attempt {attempt}), retrying"
                    )
            else:
                raise StaleOrderError(f"Order {order_id} kept changing; gave up after {MAX_SAVE_ATTEMPTS} attempts")

        logger.info(
            f"Order {saved.order_code} status updated from {current.status.value} "
            f"to {saved.status.value} by {actor_id}"
        )

        await self.broadcaster.broadcast(saved.id, status_update_envelope(saved, current.status))

        if saved.status == OrderStatus.CANCELLED and saved.wallet_amount > 0:
            await self.ledger.refund_to_wallet(
                saved.user_id,
                saved.wallet_amount,
                saved.id,
                reason=f"Refund for cancelled order {saved.order_code}",
            )

        return saved

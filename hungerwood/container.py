"""
Ordering Core Composition Root

Builds the ledger, referral processor, broadcaster and order service on top
of one set of repositories and exposes the caller-facing operations.

Caller-facing operations return an OperationResult: business-rule
violations come back as failures with a code, a message and details, while
storage faults propagate.

Usage:
    from hungerwood.container import get_core

    core = get_core()
    result = await core.apply_transition(order_ref, OrderStatus.CONFIRMED, admin_id)
    if not result.success:
        print(result.details["allowed_statuses"])
"""

import logging
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional

from hungerwood.core.config import Settings, get_settings
from hungerwood.core.exceptions import SubscriptionCapacityExceeded
from hungerwood.core.results import OperationResult, capture
from hungerwood.models import TransactionReason, UserRole
from hungerwood.repositories import Repositories, get_repositories
from hungerwood.schemas import (
    Account,
    LedgerResult,
    Order,
    OrderCreate,
    ReferralRewardOutcome,
    WalletUsageCheck,
)
from hungerwood.services.broadcaster import OrderBroadcaster, SubscriberHandle
from hungerwood.services.orders import OrderService, RewardDispatcher
from hungerwood.services.referral import ReferralService
from hungerwood.services.wallet import WalletLedger

logger = logging.getLogger(__name__)


class OrderingCore:
    """
    Owns every order-core component of the process.

    Attributes:
        repositories: Account and order persistence
        ledger: Wallet ledger engine
        referrals: Referral codes and reward processor
        broadcaster: Live update broadcaster
        orders: Order placement and lifecycle
    """

    def __init__(
        self,
        repositories: Optional[Repositories] = None,
        settings: Optional[Settings] = None,
        broadcaster: Optional[OrderBroadcaster] = None,
        reward_dispatcher: Optional[RewardDispatcher] = None,
    ):
        self.settings = settings or get_settings()
        self.repositories = repositories or get_repositories()
        self.accounts = self.repositories.accounts

        self.ledger = WalletLedger(self.accounts)
        self.referrals = ReferralService(
            self.accounts, self.repositories.orders, self.ledger, self.settings
        )
        self.broadcaster = broadcaster or OrderBroadcaster(
            max_subscribers=self.settings.sse_max_connections,
            heartbeat_interval=self.settings.sse_heartbeat_interval,
        )
        self.orders = OrderService(
            self.repositories.orders,
            self.accounts,
            self.ledger,
            self.broadcaster,
            self.referrals,
            settings=self.settings,
            reward_dispatcher=reward_dispatcher,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        self.broadcaster.start()

    async def stop(self) -> None:
        await self.broadcaster.stop()
        await self.orders.drain_background()

    async def health_check(self) -> bool:
        return await self.repositories.orders.health_check()

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def register_account(
        self,
        phone: str,
        name: str = "Guest User",
        role: UserRole = UserRole.USER,
        user_id: Optional[str] = None,
    ) -> Account:
        """Create an account with an empty wallet and a fresh referral code."""
        code = await self.referrals.generate_referral_code(name)
        account = await self.accounts.add(
            Account(
                id=user_id or str(uuid.uuid4()),
                phone=phone,
                name=name,
                role=role,
                referral_code=code,
                created_at=datetime.now(timezone.utc),
            )
        )
        logger.info(f"Account registered: {account.id} ({account.phone})")
        return account

    # =========================================================================
    # ORDER STATE MACHINE
    # =========================================================================

    async def place_order(self, user_id: str, request: OrderCreate) -> OperationResult[Order]:
        return await capture(self.orders.place_order(user_id, request))

    async def get_order(self, reference: str) -> OperationResult[Order]:
        return await capture(self.orders.resolve_order(reference))

    async def apply_transition(
        self,
        reference: str,
        target: Any,
        actor_id: Optional[str],
        reason: Optional[str] = None,
    ) -> OperationResult[Order]:
        return await capture(self.orders.update_status(reference, target, actor_id, reason))

    # =========================================================================
    # LEDGER
    # =========================================================================

    async def credit(
        self, user_id: str, amount: Any, reason: TransactionReason, **options
    ) -> OperationResult[LedgerResult]:
        return await capture(self.ledger.credit(user_id, amount, reason, **options))

    async def debit(
        self, user_id: str, amount: Any, reason: TransactionReason, **options
    ) -> OperationResult[LedgerResult]:
        return await capture(self.ledger.debit(user_id, amount, reason, **options))

    async def validate_wallet_usage(
        self,
        user_id: str,
        requested: Any,
        order_total: Any,
        max_percent: Optional[int] = None,
    ) -> OperationResult[WalletUsageCheck]:
        return await capture(
            self.ledger.validate_wallet_usage(user_id, requested, order_total, max_percent)
        )

    # =========================================================================
    # REFERRALS
    # =========================================================================

    async def process_reward(self, reference: str) -> OperationResult[Optional[ReferralRewardOutcome]]:
        async def run():
            order = await self.orders.resolve_order(reference)
            return await self.referrals.process_reward(order)

        return await capture(run())

    # =========================================================================
    # LIVE UPDATES
    # =========================================================================

    async def subscribe(self, reference: str, handle: SubscriberHandle) -> OperationResult[Order]:
        """
        Register a live subscriber under the order's canonical id.

        The order is returned so the transport can send the initial snapshot.
        """
        async def run():
            order = await self.orders.resolve_order(reference)
            if not await self.broadcaster.subscribe(order.id, handle):
                raise SubscriptionCapacityExceeded(order.id, self.broadcaster.max_subscribers)
            return order

        return await capture(run())

    async def unsubscribe(self, order_id: str, handle: SubscriberHandle) -> OperationResult[None]:
        return await capture(self.broadcaster.unsubscribe(order_id, handle))

    async def broadcast(self, reference: str, payload: dict) -> OperationResult[int]:
        async def run():
            order = await self.orders.resolve_order(reference)
            return await self.broadcaster.broadcast(order.id, payload)

        return await capture(run())


def celery_reward_dispatcher(order: Order) -> None:
    """Hand referral processing to the Celery worker."""
    from hungerwood.tasks import process_referral_reward

    process_referral_reward.delay(order.id)


@lru_cache()
def get_core() -> OrderingCore:
    """
    Get the process-wide ordering core.

    Development processes referral rewards in-process; staging and
    production hand them to Celery.
    """
    settings = get_settings()
    dispatcher = None if settings.is_development else celery_reward_dispatcher
    return OrderingCore(settings=settings, reward_dispatcher=dispatcher)


def reset_core() -> None:
    get_core.cache_clear()

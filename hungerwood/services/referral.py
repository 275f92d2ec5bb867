"""
Referral Service

Referral codes, the referrer link on a user and the first-order bonus.

Reward flow (process_reward):
    1. Resolve the order's user (silently skip if unknown)
    2. Skip if the user was not referred
    3. Skip if the new-user bonus was ever paid (ledger lookup; the bonus
       entries carry idempotency keys, so the store rejects a second payment
       from a concurrent worker)
    4. Skip if the user has an earlier non-cancelled order
    5. Skip if the order total is below the configured minimum
    6. Credit the new user, then the referrer, then update the counters

Rewards are best effort: failures are logged and never reach the order flow.
"""

import logging
import re
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from hungerwood.core.config import Settings, get_settings
from hungerwood.core.exceptions import AccountNotFound, DuplicateLedgerEntry, ReferralError
from hungerwood.core.locks import KeyedLock
from hungerwood.models import OrderStatus, TransactionReason
from hungerwood.repositories.base import AccountRepository, OrderRepository
from hungerwood.schemas import (
    Order,
    ReferralApplied,
    ReferralCodeInfo,
    ReferralRewardOutcome,
    ReferralStats,
    ReferredUser,
    TopReferrer,
)
from hungerwood.services.wallet import WalletLedger

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
MIN_CODE_LENGTH = 5
TOP_REFERRERS_LIMIT = 10


def new_user_bonus_key(user_id: str) -> str:
    """Ledger idempotency key of the one-time new-user bonus."""
    return f"referral-new-user:{user_id}"


def referrer_bonus_key(user_id: str) -> str:
    """Ledger idempotency key of the referrer bonus earned through `user_id`."""
    return f"referral-referrer:{user_id}"


class ReferralService:

    def __init__(
        self,
        accounts: AccountRepository,
        orders: OrderRepository,
        ledger: WalletLedger,
        settings: Optional[Settings] = None,
    ):
        self.accounts = accounts
        self.orders = orders
        self.ledger = ledger
        self.settings = settings or get_settings()
        self._locks = KeyedLock()

    # =========================================================================
    # CODES
    # =========================================================================

    async def generate_referral_code(self, name: str) -> str:
        """
        Build an unused code: first four letters of the name (non-letters
        become X) followed by four random characters.
        """
        prefix = re.sub(r"[^A-Z]", "X", (name or "USER")[:4].upper())
        while True:
            suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(4))
            code = f"{prefix}{suffix}"
            if await self.accounts.get_by_referral_code(code) is None:
                return code

    async def get_user_referral_code(self, user_id: str) -> ReferralCodeInfo:
        """Return the user's code, generating it on first request."""
        async with self._locks.hold(user_id):
            account = await self.accounts.get(user_id)
            if account is None:
                raise AccountNotFound(user_id)

            if not account.referral_code:
                code = await self.generate_referral_code(account.name)
                account = await self.accounts.update_profile(user_id, referral_code=code)
                logger.info(f"Generated referral code for user {user_id}: {code}")

        return ReferralCodeInfo(
            code=account.referral_code,
            referral_count=account.referral_count,
            earnings=account.referral_earnings,
        )

    async def apply_referral_code(self, user_id: str, referral_code: str) -> ReferralApplied:
        """
        Link a user to the owner of `referral_code`.

        Raises:
            AccountNotFound: unknown user
            ReferralError: malformed or unknown code, own code, or a code was
                already applied
        """
        async with self._locks.hold(user_id):
            account = await self.accounts.get(user_id)
            if account is None:
                raise AccountNotFound(user_id)

            if account.referred_by:
                raise ReferralError("Referral code already applied")

            code = (referral_code or "").strip().upper()
            if len(code) < MIN_CODE_LENGTH:
                raise ReferralError("Invalid referral code format", referral_code=referral_code)

            referrer = await self.accounts.get_by_referral_code(code)
            if referrer is None:
                raise ReferralError("Invalid referral code", referral_code=referral_code)

            if referrer.id == user_id:
                raise ReferralError("Cannot use your own referral code")

            await self.accounts.update_profile(
                user_id,
                referred_by=referrer.id,
                has_used_referral=True,
                referral_applied_at=datetime.now(timezone.utc),
            )

        logger.info(
            f"Referral code {code} applied: New user {user_id} referred by {referrer.id}"
        )
        return ReferralApplied(
            message="Referral code applied successfully",
            referrer_name=referrer.name,
            new_user_bonus=self.settings.referral_bonus_new_user,
            referrer_bonus=self.settings.referral_bonus_referrer,
        )

    # =========================================================================
    # REWARDS
    # =========================================================================

    async def process_reward(self, order: Order) -> Optional[ReferralRewardOutcome]:
        """
        Pay referral bonuses for a qualifying first order.

        Returns the outcome when bonuses were paid, None otherwise. Never
        raises: errors are logged so the order that triggered this is
        unaffected.
        """
        try:
            async with self._locks.hold(order.user_id):
                return await self._process_reward(order)
        except Exception:
            logger.exception(f"Error processing referral reward for order {order.id}")
            return None

    async def _process_reward(self, order: Order) -> Optional[ReferralRewardOutcome]:
        new_user = await self.accounts.get(order.user_id)
        if new_user is None:
            logger.error(f"User not found for order: {order.id}")
            return None

        if not new_user.referred_by or not new_user.has_used_referral:
            logger.info(f"No referral to process for order {order.id}")
            return None

        if await self.accounts.has_transaction(
            new_user.id, TransactionReason.REFERRAL_BONUS_NEW_USER
        ):
            logger.info(f"Referral rewards already processed for user {new_user.id}")
            return None

        prior_orders = await self.orders.count_orders_before(
            new_user.id,
            before=order.created_at,
            exclude_id=order.id,
            exclude_statuses=(OrderStatus.CANCELLED,),
        )
        if prior_orders:
            logger.info(
                f"Order {order.id} is not the first order of user {new_user.id}; "
                f"no referral reward"
            )
            return None

        minimum = self.settings.min_order_amount_for_referral
        if order.total_amount < minimum:
            logger.info(
                f"Order amount {order.total_amount} is below minimum {minimum} for referral"
            )
            return None

        referrer = await self.accounts.get(new_user.referred_by)
        if referrer is None:
            logger.error(f"Referrer not found: {new_user.referred_by}")
            return None

        new_user_bonus = self.settings.referral_bonus_new_user
        referrer_bonus = self.settings.referral_bonus_referrer

        # A failure here aborts before the referrer is paid
        try:
            await self.ledger.credit(
                new_user.id,
                new_user_bonus,
                TransactionReason.REFERRAL_BONUS_NEW_USER,
                order_id=order.id,
                referral_id=referrer.id,
                description=f"Referral bonus for using code {referrer.referral_code}",
                metadata={
                    "referrer_code": referrer.referral_code,
                    "first_order_amount": str(order.total_amount),
                },
                idempotency_key=new_user_bonus_key(new_user.id),
            )
        except DuplicateLedgerEntry:
            logger.info(f"Referral rewards already processed for user {new_user.id}")
            return None

        await self.ledger.credit(
            referrer.id,
            referrer_bonus,
            TransactionReason.REFERRAL_BONUS_REFERRER,
            order_id=order.id,
            referral_id=new_user.id,
            description=f"Referral bonus for referring {new_user.name or 'user'}",
            metadata={
                "referred_user_name": new_user.name,
                "referred_user_phone": new_user.phone,
                "first_order_amount": str(order.total_amount),
            },
            idempotency_key=referrer_bonus_key(new_user.id),
        )

        await self.accounts.increment_referral_stats(referrer.id, 1, referrer_bonus)
        await self.accounts.update_profile(
            new_user.id,
            referral_rewarded=True,
            referral_rewarded_at=datetime.now(timezone.utc),
        )

        logger.info(
            f"Referral rewards processed: new user {new_user.id} (+{new_user_bonus}), "
            f"referrer {referrer.id} (+{referrer_bonus})"
        )
        return ReferralRewardOutcome(
            new_user_id=new_user.id,
            referrer_id=referrer.id,
            order_id=order.id,
            new_user_bonus=new_user_bonus,
            referrer_bonus=referrer_bonus,
        )

    # =========================================================================
    # REPORTING
    # =========================================================================

    async def get_referred_users(self, user_id: str) -> list[ReferredUser]:
        return [
            ReferredUser(
                id=a.id,
                name=a.name,
                phone=a.phone,
                referral_applied_at=a.referral_applied_at,
                referral_rewarded=a.referral_rewarded,
                referral_rewarded_at=a.referral_rewarded_at,
            )
            for a in await self.accounts.list_referred_by(user_id)
        ]

    async def get_referral_stats(self) -> ReferralStats:
        accounts = await self.accounts.list_all()

        total = sum(1 for a in accounts if a.referred_by)
        rewarded = sum(1 for a in accounts if a.referral_rewarded)
        earnings = sum((a.referral_earnings for a in accounts), Decimal("0"))

        top = sorted(
            (a for a in accounts if a.referral_count > 0),
            key=lambda a: a.referral_count,
            reverse=True,
        )[:TOP_REFERRERS_LIMIT]

        return ReferralStats(
            total_referrals=total,
            rewarded_referrals=rewarded,
            pending_referrals=total - rewarded,
            total_referral_earnings=earnings,
            average_referrals_per_user=total / (len(accounts) or 1),
            top_referrers=[
                TopReferrer(
                    id=a.id,
                    name=a.name,
                    phone=a.phone,
                    referral_code=a.referral_code,
                    referral_count=a.referral_count,
                    earnings=a.referral_earnings,
                )
                for a in top
            ],
        )

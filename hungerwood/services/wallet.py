"""
Wallet Ledger Service

Maintains the wallet balance of every account together with its immutable,
append-only transaction log.

Every balance change goes through credit() or debit():
    1. The account's lock is taken (one writer per account at a time)
    2. The repository loads the account with a write lock, builds the ledger
       entry from that snapshot and persists the new balance plus the entry
       in one transaction
    3. The result reports the previous balance, the new balance and the entry

The cached balance therefore always equals the sum of CREDIT minus DEBIT
entries for the account; verify_balance() recomputes it to prove it.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Optional

from hungerwood.core.config import get_settings
from hungerwood.core.exceptions import (
    AccountNotFound,
    ExceedsOrderTotal,
    ExceedsPolicyLimit,
    InsufficientBalance,
    InvalidAmount,
)
from hungerwood.core.locks import KeyedLock
from hungerwood.models import TransactionReason, TransactionType
from hungerwood.repositories.base import AccountRepository
from hungerwood.schemas import (
    Account,
    LedgerResult,
    TransactionPage,
    WalletStats,
    WalletTransaction,
    WalletUsageCheck,
)

logger = logging.getLogger(__name__)


def to_amount(value: Any) -> Decimal:
    """Coerce a caller-supplied amount to Decimal, rejecting garbage."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidAmount(f"Invalid amount: {value!r}", amount=value)
    if not amount.is_finite():
        raise InvalidAmount(f"Invalid amount: {value!r}", amount=value)
    return amount


def calculate_max_wallet_usage(order_total: Any, max_percent: int) -> Decimal:
    """Largest whole amount payable from the wallet for an order total."""
    order_total = to_amount(order_total)
    return (order_total * max_percent / Decimal(100)).to_integral_value(rounding=ROUND_FLOOR)


class WalletLedger:
    """Credit/debit engine with per-account serialization."""

    def __init__(self, accounts: AccountRepository):
        self.accounts = accounts
        self._locks = KeyedLock()

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def credit(
        self,
        user_id: str,
        amount: Any,
        reason: TransactionReason,
        *,
        order_id: Optional[str] = None,
        referral_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerResult:
        """
        Add money to a wallet.

        Raises:
            InvalidAmount: amount is not a positive number
            AccountNotFound: unknown user
            DuplicateLedgerEntry: idempotency_key is already in the ledger; nothing
                is written
        """
        return await self._apply(
            TransactionType.CREDIT,
            user_id,
            amount,
            reason,
            order_id=order_id,
            referral_id=referral_id,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    async def debit(
        self,
        user_id: str,
        amount: Any,
        reason: TransactionReason,
        *,
        order_id: Optional[str] = None,
        referral_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerResult:
        """
        Take money out of a wallet.

        Raises:
            InvalidAmount: amount is not a positive number
            AccountNotFound: unknown user
            DuplicateLedgerEntry: idempotency_key is already in the ledger; nothing
                is written
            InsufficientBalance: amount exceeds the current balance; nothing
                is written
        """
        return await self._apply(
            TransactionType.DEBIT,
            user_id,
            amount,
            reason,
            order_id=order_id,
            referral_id=referral_id,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    async def refund_to_wallet(
        self,
        user_id: str,
        amount: Any,
        order_id: str,
        reason: str = "Order refund",
    ) -> LedgerResult:
        return await self.credit(
            user_id,
            amount,
            TransactionReason.ORDER_REFUND,
            order_id=order_id,
            description=reason,
            metadata={"refund": True},
        )

    async def _apply(
        self,
        entry_type: TransactionType,
        user_id: str,
        amount: Any,
        reason: TransactionReason,
        *,
        order_id: Optional[str],
        referral_id: Optional[str],
        description: Optional[str],
        metadata: Optional[dict],
        idempotency_key: Optional[str],
    ) -> LedgerResult:
        amount = to_amount(amount)
        if amount <= 0:
            raise InvalidAmount("Amount must be greater than 0", amount=amount)
        reason = TransactionReason(reason)

        def plan(account: Account) -> WalletTransaction:
            if entry_type == TransactionType.CREDIT:
                balance_after = account.wallet_balance + amount
            else:
                if amount > account.wallet_balance:
                    raise InsufficientBalance(account.wallet_balance, amount)
                balance_after = account.wallet_balance - amount
            return WalletTransaction(
                id=str(uuid.uuid4()),
                user_id=account.id,
                type=entry_type,
                amount=amount,
                reason=reason,
                order_id=order_id,
                referral_id=referral_id,
                balance_after=balance_after,
                description=description or _default_description(entry_type, reason),
                metadata=metadata or {},
                idempotency_key=idempotency_key,
                created_at=datetime.now(timezone.utc),
            )

        async with self._locks.hold(user_id):
            previous_balance, entry = await self.accounts.apply_entry(user_id, plan)

        logger.info(
            f"Wallet {entry_type.value.lower()}ed: {amount} for user {user_id} "
            f"({reason.value}). Balance {previous_balance} -> {entry.balance_after}"
        )
        return LedgerResult(
            previous_balance=previous_balance,
            new_balance=entry.balance_after,
            transaction=entry,
        )

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_balance(self, user_id: str) -> Decimal:
        account = await self.accounts.get(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        return account.wallet_balance

    async def list_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        type: Optional[TransactionType] = None,
    ) -> TransactionPage:
        """Transactions newest first, plus the current balance."""
        balance = await self.get_balance(user_id)
        entries = await self.accounts.list_transactions(
            user_id, limit=limit, offset=offset, type=type
        )
        return TransactionPage(
            balance=balance,
            transactions=entries,
            total_transactions=len(entries),
        )

    async def validate_wallet_usage(
        self,
        user_id: str,
        requested: Any,
        order_total: Any,
        max_percent: Optional[int] = None,
    ) -> WalletUsageCheck:
        """
        Check whether `requested` may be paid from the wallet for an order.

        Checks run in order and the first violation is raised: negative
        amount, balance, percentage policy, order total.
        """
        if max_percent is None:
            max_percent = get_settings().max_wallet_usage_percent
        requested = to_amount(requested)
        order_total = to_amount(order_total)

        if requested < 0:
            raise InvalidAmount("Wallet amount cannot be negative", amount=requested)
        if requested == 0:
            return WalletUsageCheck(valid=True, message="No wallet amount used")

        current_balance = await self.get_balance(user_id)
        if requested > current_balance:
            raise InsufficientBalance(current_balance, requested)

        max_allowed = calculate_max_wallet_usage(order_total, max_percent)
        if requested > max_allowed:
            raise ExceedsPolicyLimit(max_percent, max_allowed)

        if requested > order_total:
            raise ExceedsOrderTotal(order_total)

        return WalletUsageCheck(
            valid=True,
            message="Wallet usage validated successfully",
            max_allowed=max_allowed,
            current_balance=current_balance,
        )

    async def get_wallet_stats(self) -> WalletStats:
        totals = await self.accounts.totals()
        accounts = await self.accounts.list_all()
        total_balance = sum((a.wallet_balance for a in accounts), Decimal("0"))
        return WalletStats(
            total_transactions=totals.count,
            total_credits=totals.credits,
            total_debits=totals.debits,
            net_amount=totals.credits - totals.debits,
            total_wallet_balance=total_balance,
            users_with_balance=sum(1 for a in accounts if a.wallet_balance > 0),
        )

    async def verify_balance(self, user_id: str) -> bool:
        """Recompute the balance from the log and compare it with the cache."""
        async with self._locks.hold(user_id):
            balance = await self.get_balance(user_id)
            totals = await self.accounts.totals(user_id)
        derived = totals.credits - totals.debits
        if derived != balance:
            logger.error(
                f"Wallet mismatch for user {user_id}: cached {balance}, ledger {derived}"
            )
            return False
        return True


def _default_description(entry_type: TransactionType, reason: TransactionReason) -> str:
    verb = "Credited" if entry_type == TransactionType.CREDIT else "Debited"
    return f"{verb}: {reason.value.replace('_', ' ').lower()}"

"""
In-Memory Repository Implementation

Keeps accounts, ledger entries and orders in dictionaries. Used in
development mode and in the test-suite. Every method runs without awaiting
in between reads and writes, so each call is atomic on the event loop;
records are copied on the way in and out so callers never share state
with the store.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from hungerwood.core.exceptions import (
    AccountNotFound,
    DuplicateLedgerEntry,
    OrderNotFound,
    StaleOrderError,
)
from hungerwood.models import OrderStatus, OrderType, TransactionReason, TransactionType
from hungerwood.repositories.base import (
    PROTECTED_ACCOUNT_FIELDS,
    AccountRepository,
    DuplicateSubmission,
    EntryPlan,
    OrderCodeConflict,
    OrderRepository,
    TransactionTotals,
)
from hungerwood.schemas import Account, Order, WalletTransaction

logger = logging.getLogger(__name__)


class InMemoryAccountRepository(AccountRepository):

    def __init__(self):
        self._accounts: dict[str, Account] = {}
        self._transactions: list[WalletTransaction] = []

    async def get(self, user_id: str) -> Optional[Account]:
        account = self._accounts.get(user_id)
        return account.model_copy(deep=True) if account else None

    async def get_by_referral_code(self, code: str) -> Optional[Account]:
        for account in self._accounts.values():
            if account.referral_code == code:
                return account.model_copy(deep=True)
        return None

    async def add(self, account: Account) -> Account:
        if account.id in self._accounts:
            raise ValueError(f"User {account.id} already exists")
        if any(a.phone == account.phone for a in self._accounts.values()):
            raise ValueError(f"Phone {account.phone} is already registered")
        # Opening balances are not supported; money enters through the ledger
        stored = account.model_copy(update={"wallet_balance": Decimal("0")}, deep=True)
        self._accounts[account.id] = stored
        logger.debug(f"Registered account {account.id}")
        return stored.model_copy(deep=True)

    async def list_all(self) -> list[Account]:
        return [a.model_copy(deep=True) for a in self._accounts.values()]

    async def list_referred_by(self, user_id: str) -> list[Account]:
        return [
            a.model_copy(deep=True)
            for a in self._accounts.values()
            if a.referred_by == user_id
        ]

    async def update_profile(self, user_id: str, **changes) -> Account:
        protected = PROTECTED_ACCOUNT_FIELDS.intersection(changes)
        if protected:
            raise ValueError(f"Cannot update protected fields: {sorted(protected)}")
        account = self._accounts.get(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        updated = account.model_copy(update=changes)
        self._accounts[user_id] = updated
        return updated.model_copy(deep=True)

    async def increment_referral_stats(
        self, user_id: str, count: int, earnings: Decimal
    ) -> Account:
        account = self._accounts.get(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        updated = account.model_copy(update={
            "referral_count": account.referral_count + count,
            "referral_earnings": account.referral_earnings + earnings,
        })
        self._accounts[user_id] = updated
        return updated.model_copy(deep=True)

    async def apply_entry(
        self, user_id: str, plan: EntryPlan
    ) -> tuple[Decimal, WalletTransaction]:
        account = self._accounts.get(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        previous_balance = account.wallet_balance
        entry = plan(account.model_copy(deep=True))
        if entry.idempotency_key is not None and any(
            e.idempotency_key == entry.idempotency_key for e in self._transactions
        ):
            raise DuplicateLedgerEntry(entry.idempotency_key)
        self._accounts[user_id] = account.model_copy(
            update={"wallet_balance": entry.balance_after}
        )
        self._transactions.append(entry)
        return previous_balance, entry

    async def list_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        type: Optional[TransactionType] = None,
    ) -> list[WalletTransaction]:
        # Appended in commit order, so reversed insertion order is newest first
        entries = [
            e for e in reversed(self._transactions)
            if e.user_id == user_id and (type is None or e.type == type)
        ]
        return entries[offset:offset + limit]

    async def has_transaction(self, user_id: str, reason: TransactionReason) -> bool:
        return any(
            e.user_id == user_id and e.reason == reason for e in self._transactions
        )

    async def totals(self, user_id: Optional[str] = None) -> TransactionTotals:
        entries = [
            e for e in self._transactions if user_id is None or e.user_id == user_id
        ]
        credits = sum(
            (e.amount for e in entries if e.type == TransactionType.CREDIT), Decimal("0")
        )
        debits = sum(
            (e.amount for e in entries if e.type == TransactionType.DEBIT), Decimal("0")
        )
        return TransactionTotals(count=len(entries), credits=credits, debits=debits)


class InMemoryOrderRepository(OrderRepository):

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._codes: dict[str, str] = {}

    async def get(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def get_by_code(self, order_code: str) -> Optional[Order]:
        order_id = self._codes.get(order_code)
        return await self.get(order_id) if order_id else None

    async def add(self, order: Order, duplicate_since: Optional[datetime] = None) -> Order:
        if duplicate_since is not None:
            duplicate = await self.find_recent_duplicate(
                order.user_id, order.items_fingerprint, duplicate_since
            )
            if duplicate is not None:
                raise DuplicateSubmission(duplicate.id)
        if order.order_code in self._codes:
            raise OrderCodeConflict(order.order_code)
        if order.id in self._orders:
            raise ValueError(f"Order {order.id} already exists")
        self._orders[order.id] = order.model_copy(deep=True)
        self._codes[order.order_code] = order.id
        return order.model_copy(deep=True)

    async def save(self, order: Order) -> Order:
        stored = self._orders.get(order.id)
        if stored is None:
            raise OrderNotFound(order.id)
        if stored.version != order.version:
            raise StaleOrderError(
                f"Order {order.id} is at version {stored.version}, "
                f"update was based on {order.version}"
            )
        saved = order.model_copy(update={"version": order.version + 1}, deep=True)
        self._orders[order.id] = saved
        return saved.model_copy(deep=True)

    async def list_orders(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        order_type: Optional[OrderType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        matches = [
            o for o in self._orders.values()
            if (user_id is None or o.user_id == user_id)
            and (status is None or o.status == status)
            and (order_type is None or o.order_type == order_type)
        ]
        matches.sort(key=lambda o: o.created_at, reverse=True)
        page = [o.model_copy(deep=True) for o in matches[offset:offset + limit]]
        return page, len(matches)

    async def count_orders_before(
        self,
        user_id: str,
        before: datetime,
        exclude_id: str,
        exclude_statuses: Iterable[OrderStatus] = (),
    ) -> int:
        excluded = set(exclude_statuses)
        return sum(
            1 for o in self._orders.values()
            if o.user_id == user_id
            and o.id != exclude_id
            and o.created_at < before
            and o.status not in excluded
        )

    async def count_created_between(self, start: datetime, end: datetime) -> int:
        return sum(1 for o in self._orders.values() if start <= o.created_at < end)

    async def find_recent_duplicate(
        self, user_id: str, fingerprint: str, since: datetime
    ) -> Optional[Order]:
        for order in self._orders.values():
            if (
                order.user_id == user_id
                and order.items_fingerprint == fingerprint
                and order.created_at >= since
                and order.status != OrderStatus.CANCELLED
            ):
                return order.model_copy(deep=True)
        return None

    async def health_check(self) -> bool:
        return True

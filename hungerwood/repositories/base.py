"""
Repository Abstract Base Classes

Defines the persistence contract the order core depends on. Both the
in-memory implementation (development, tests) and the SQLAlchemy
implementation (staging, production) must implement these methods, so the
services behave identically regardless of which backend is active.

Design Pattern: Strategy Pattern
    - The composition root picks the backend from ENV_MODE
    - Services never import a concrete repository
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional

from hungerwood.models import OrderStatus, OrderType, TransactionReason, TransactionType
from hungerwood.schemas import Account, Order, WalletTransaction


# Builds the ledger entry for a locked account snapshot, or raises to abort
EntryPlan = Callable[[Account], WalletTransaction]

# Profile fields that may never be written through update_profile()
PROTECTED_ACCOUNT_FIELDS = frozenset({"id", "wallet_balance", "created_at"})


class OrderCodeConflict(Exception):
    """The generated order code is already taken."""


class DuplicateSubmission(Exception):
    """An identical order from the same user is already stored."""

    def __init__(self, existing_order_id: str):
        super().__init__(f"Identical order {existing_order_id} already exists")
        self.existing_order_id = existing_order_id


@dataclass
class TransactionTotals:
    count: int
    credits: Decimal
    debits: Decimal


class AccountRepository(ABC):
    """Persistence of user accounts and their wallet ledger."""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def get_by_referral_code(self, code: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def add(self, account: Account) -> Account:
        pass

    @abstractmethod
    async def list_all(self) -> list[Account]:
        pass

    @abstractmethod
    async def list_referred_by(self, user_id: str) -> list[Account]:
        pass

    @abstractmethod
    async def update_profile(self, user_id: str, **changes) -> Account:
        """
        Update non-ledger fields of an account.

        Raises:
            AccountNotFound: unknown user
            ValueError: a protected field such as wallet_balance was passed
        """
        pass

    @abstractmethod
    async def increment_referral_stats(
        self, user_id: str, count: int, earnings: Decimal
    ) -> Account:
        """Atomically add to referral_count and referral_earnings."""
        pass

    @abstractmethod
    async def apply_entry(
        self, user_id: str, plan: EntryPlan
    ) -> tuple[Decimal, WalletTransaction]:
        """
        Atomically mutate a wallet balance and append its ledger entry.

        Loads the account with a write lock, hands the snapshot to `plan`,
        then stores `entry.balance_after` as the new balance together with the
        entry. If `plan` raises, nothing is written.
        An entry carrying an idempotency_key is written at most once.

        Returns:
            (previous balance, persisted entry)

        Raises:
            AccountNotFound: unknown user
            DuplicateLedgerEntry: the entry's idempotency_key is already stored
        """
        pass

    @abstractmethod
    async def list_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        type: Optional[TransactionType] = None,
    ) -> list[WalletTransaction]:
        """Newest first."""
        pass

    @abstractmethod
    async def has_transaction(self, user_id: str, reason: TransactionReason) -> bool:
        pass

    @abstractmethod
    async def totals(self, user_id: Optional[str] = None) -> TransactionTotals:
        """Credit/debit sums for one user, or across all users."""
        pass


class OrderRepository(ABC):
    """Persistence of orders. `id` is canonical, `order_code` an alternate key."""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_code(self, order_code: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def add(self, order: Order, duplicate_since: Optional[datetime] = None) -> Order:
        """
        Insert a new order.

        With `duplicate_since`, the insert is refused if the same user stored
        an order with the same items fingerprint since then (cancelled orders
        excepted). The check and the insert are atomic per user.

        Raises:
            OrderCodeConflict: order_code already in use
            DuplicateSubmission: identical recent order found
        """
        pass

    @abstractmethod
    async def save(self, order: Order) -> Order:
        """
        Persist an updated order if nobody else changed it first.

        The stored version must equal `order.version`; the saved copy is
        returned with the version incremented.

        Raises:
            StaleOrderError: the stored version moved on
            OrderNotFound: the order does not exist
        """
        pass

    @abstractmethod
    async def list_orders(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        order_type: Optional[OrderType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        """Newest first, with the total count matching the filters."""
        pass

    @abstractmethod
    async def count_orders_before(
        self,
        user_id: str,
        before: datetime,
        exclude_id: str,
        exclude_statuses: Iterable[OrderStatus] = (),
    ) -> int:
        pass

    @abstractmethod
    async def count_created_between(self, start: datetime, end: datetime) -> int:
        pass

    @abstractmethod
    async def find_recent_duplicate(
        self, user_id: str, fingerprint: str, since: datetime
    ) -> Optional[Order]:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

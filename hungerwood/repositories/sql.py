"""
SQLAlchemy Repository Implementation

PostgreSQL-backed repositories used in staging and production.

Atomicity:
    - Wallet mutations run in one transaction that locks the user row
      (SELECT ... FOR UPDATE), updates the cached balance and inserts the
      ledger entry. SQLite ignores FOR UPDATE; the wallet ledger's per-account
      lock still serializes writers inside one process.
    - Ledger entries with an idempotency key are unique per key; a second
      writer with the same key fails on the unique index and is reported as
      DuplicateLedgerEntry.
    - Order inserts that check for duplicates first update the user row, so
      placements for one user are serialized across processes.
    - Order updates are compare-and-set on the `version` column.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hungerwood.core.exceptions import (
    AccountNotFound,
    DuplicateLedgerEntry,
    OrderNotFound,
    StaleOrderError,
)
from hungerwood.models import (
    OrderRow,
    OrderStatus,
    OrderType,
    TransactionReason,
    TransactionType,
    UserAccount,
    WalletTransactionRow,
)
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


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything here is stored as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


# =============================================================================
# ROW <-> RECORD CONVERSION
# =============================================================================

def _account_from_row(row: UserAccount) -> Account:
    return Account(
        id=row.id,
        phone=row.phone,
        name=row.name,
        role=row.role,
        is_active=row.is_active,
        wallet_balance=Decimal(row.wallet_balance or 0),
        referral_code=row.referral_code,
        referred_by=row.referred_by,
        has_used_referral=row.has_used_referral,
        referral_applied_at=_aware(row.referral_applied_at),
        referral_rewarded=row.referral_rewarded,
        referral_rewarded_at=_aware(row.referral_rewarded_at),
        referral_count=row.referral_count,
        referral_earnings=Decimal(row.referral_earnings or 0),
        created_at=_aware(row.created_at),
    )


def _transaction_from_row(row: WalletTransactionRow) -> WalletTransaction:
    return WalletTransaction(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        amount=Decimal(row.amount),
        reason=row.reason,
        order_id=row.order_id,
        referral_id=row.referral_id,
        balance_after=Decimal(row.balance_after),
        description=row.description or "",
        metadata=row.extra or {},
        idempotency_key=row.idempotency_key,
        created_at=_aware(row.created_at),
    )


def _transaction_to_row(entry: WalletTransaction) -> WalletTransactionRow:
    return WalletTransactionRow(
        id=entry.id,
        user_id=entry.user_id,
        type=entry.type,
        amount=entry.amount,
        reason=entry.reason,
        order_id=entry.order_id,
        referral_id=entry.referral_id,
        balance_after=entry.balance_after,
        description=entry.description,
        extra=entry.metadata,
        idempotency_key=entry.idempotency_key,
        created_at=entry.created_at,
    )


def _order_from_row(row: OrderRow) -> Order:
    return Order.model_validate({
        "id": row.id,
        "order_code": row.order_code,
        "user_id": row.user_id,
        "items": row.items,
        "items_fingerprint": row.items_fingerprint,
        "order_type": row.order_type,
        "payment_method": row.payment_method,
        "delivery_address": row.delivery_address,
        "instructions": row.instructions or "",
        "subtotal": row.subtotal,
        "tax": row.tax,
        "packaging": row.packaging,
        "delivery_fee": row.delivery_fee,
        "discount": row.discount,
        "total_amount": row.total_amount,
        "wallet_amount": row.wallet_amount,
        "amount_payable": row.amount_payable,
        "status": row.status,
        "status_history": row.status_history or [],
        "cancellation_reason": row.cancellation_reason,
        "version": row.version,
        "created_at": _aware(row.created_at),
        "updated_at": _aware(row.updated_at),
        "prepared_at": _aware(row.prepared_at),
        "delivered_at": _aware(row.delivered_at),
        "cancelled_at": _aware(row.cancelled_at),
    })


def _order_values(order: Order) -> dict:
    """Column values for an order; JSON columns get JSON-safe payloads."""
    dumped = order.model_dump(mode="json", include={"items", "status_history", "delivery_address"})
    return {
        "order_code": order.order_code,
        "user_id": order.user_id,
        "items": dumped["items"],
        "items_fingerprint": order.items_fingerprint,
        "order_type": order.order_type,
        "payment_method": order.payment_method,
        "delivery_address": dumped["delivery_address"],
        "instructions": order.instructions,
        "subtotal": order.subtotal,
        "tax": order.tax,
        "packaging": order.packaging,
        "delivery_fee": order.delivery_fee,
        "discount": order.discount,
        "total_amount": order.total_amount,
        "wallet_amount": order.wallet_amount,
        "amount_payable": order.amount_payable,
        "status": order.status,
        "status_history": dumped["status_history"],
        "cancellation_reason": order.cancellation_reason,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
        "prepared_at": order.prepared_at,
        "delivered_at": order.delivered_at,
        "cancelled_at": order.cancelled_at,
    }


def _recent_duplicate_query(user_id: str, fingerprint: str, since: datetime):
    return (
        select(OrderRow)
        .where(
            OrderRow.user_id == user_id,
            OrderRow.items_fingerprint == fingerprint,
            OrderRow.created_at >= since,
            OrderRow.status != OrderStatus.CANCELLED,
        )
        .order_by(OrderRow.created_at.desc())
        .limit(1)
    )


# =============================================================================
# ACCOUNTS
# =============================================================================

class SqlAccountRepository(AccountRepository):

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get(self, user_id: str) -> Optional[Account]:
        async with self._session_maker() as session:
            row = await session.get(UserAccount, user_id)
            return _account_from_row(row) if row else None

    async def get_by_referral_code(self, code: str) -> Optional[Account]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(UserAccount).where(UserAccount.referral_code == code)
            )
            row = result.scalar_one_or_none()
            return _account_from_row(row) if row else None

    async def add(self, account: Account) -> Account:
        row = UserAccount(
            **account.model_dump(exclude={"wallet_balance"}),
            wallet_balance=Decimal("0"),
        )
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    session.add(row)
        except IntegrityError:
            raise ValueError(f"User {account.id} or phone {account.phone} already exists")
        return _account_from_row(row)

    async def list_all(self) -> list[Account]:
        async with self._session_maker() as session:
            result = await session.execute(select(UserAccount).order_by(UserAccount.created_at))
            return [_account_from_row(row) for row in result.scalars().all()]

    async def list_referred_by(self, user_id: str) -> list[Account]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(UserAccount)
                .where(UserAccount.referred_by == user_id)
                .order_by(UserAccount.created_at)
            )
            return [_account_from_row(row) for row in result.scalars().all()]

    async def update_profile(self, user_id: str, **changes) -> Account:
        protected = PROTECTED_ACCOUNT_FIELDS.intersection(changes)
        if protected:
            raise ValueError(f"Cannot update protected fields: {sorted(protected)}")
        async with self._session_maker() as session:
            async with session.begin():
                row = (await session.execute(
                    lock_for_update(select(UserAccount).where(UserAccount.id == user_id))
                )).scalar_one_or_none()
                if row is None:
                    raise AccountNotFound(user_id)
                for key, value in changes.items():
                    setattr(row, key, value)
            return _account_from_row(row)

    async def increment_referral_stats(
        self, user_id: str, count: int, earnings: Decimal
    ) -> Account:
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(UserAccount)
                    .where(UserAccount.id == user_id)
                    .values(
                        referral_count=UserAccount.referral_count + count,
                        referral_earnings=UserAccount.referral_earnings + earnings,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise AccountNotFound(user_id)
        account = await self.get(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        return account

    async def apply_entry(
        self, user_id: str, plan: EntryPlan
    ) -> tuple[Decimal, WalletTransaction]:
        entry = None
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    row = (await session.execute(
                        lock_for_update(select(UserAccount).where(UserAccount.id == user_id))
                    )).scalar_one_or_none()
                    if row is None:
                        raise AccountNotFound(user_id)
                    account = _account_from_row(row)
                    entry = plan(account)
                    key = entry.idempotency_key
                    if key is not None and await self._has_key(session, key):
                        raise DuplicateLedgerEntry(key)
                    row.wallet_balance = entry.balance_after
                    session.add(_transaction_to_row(entry))
        except IntegrityError as exc:
            # Another writer committed the same key after our check
            key = entry.idempotency_key if entry is not None else None
            if key is not None:
                async with self._session_maker() as session:
                    if await self._has_key(session, key):
                        raise DuplicateLedgerEntry(key) from exc
            raise
        return account.wallet_balance, entry

    @staticmethod
    async def _has_key(session: AsyncSession, key: str) -> bool:
        result = await session.execute(
            select(WalletTransactionRow.id).where(WalletTransactionRow.idempotency_key == key)
        )
        return result.first() is not None

    async def list_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        type: Optional[TransactionType] = None,
    ) -> list[WalletTransaction]:
        query = select(WalletTransactionRow).where(WalletTransactionRow.user_id == user_id)
        if type is not None:
            query = query.where(WalletTransactionRow.type == type)
        query = query.order_by(WalletTransactionRow.created_at.desc()).offset(offset).limit(limit)
        async with self._session_maker() as session:
            result = await session.execute(query)
            return [_transaction_from_row(row) for row in result.scalars().all()]

    async def has_transaction(self, user_id: str, reason: TransactionReason) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(
                select(WalletTransactionRow.id)
                .where(
                    WalletTransactionRow.user_id == user_id,
                    WalletTransactionRow.reason == reason,
                )
                .limit(1)
            )
            return result.first() is not None

    async def totals(self, user_id: Optional[str] = None) -> TransactionTotals:
        query = select(
            WalletTransactionRow.type,
            func.count(WalletTransactionRow.id),
            func.coalesce(func.sum(WalletTransactionRow.amount), 0),
        ).group_by(WalletTransactionRow.type)
        if user_id is not None:
            query = query.where(WalletTransactionRow.user_id == user_id)
        async with self._session_maker() as session:
            rows = (await session.execute(query)).all()
        sums = {TransactionType.CREDIT: Decimal("0"), TransactionType.DEBIT: Decimal("0")}
        count = 0
        for entry_type, entry_count, total in rows:
            sums[TransactionType(entry_type)] = Decimal(str(total))
            count += entry_count
        return TransactionTotals(
            count=count,
            credits=sums[TransactionType.CREDIT],
            debits=sums[TransactionType.DEBIT],
        )


# =============================================================================
# ORDERS
# =============================================================================

class SqlOrderRepository(OrderRepository):

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._session_maker() as session:
            row = await session.get(OrderRow, order_id)
            return _order_from_row(row) if row else None

    async def get_by_code(self, order_code: str) -> Optional[Order]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(OrderRow).where(OrderRow.order_code == order_code)
            )
            row = result.scalar_one_or_none()
            return _order_from_row(row) if row else None

    async def add(self, order: Order, duplicate_since: Optional[datetime] = None) -> Order:
        row = OrderRow(id=order.id, version=order.version, **_order_values(order))
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    if duplicate_since is not None:
                        await self._claim_user(session, order)
                        duplicate = (await session.execute(
                            _recent_duplicate_query(
                                order.user_id, order.items_fingerprint, duplicate_since
                            )
                        )).scalar_one_or_none()
                        if duplicate is not None:
                            raise DuplicateSubmission(duplicate.id)
                    session.add(row)
        except IntegrityError as exc:
            if await self.get_by_code(order.order_code) is not None:
                raise OrderCodeConflict(order.order_code) from exc
            raise
        return _order_from_row(row)

    @staticmethod
    async def _claim_user(session: AsyncSession, order: Order) -> None:
        """Write-lock the user row until the surrounding transaction ends."""
        result = await session.execute(
            update(UserAccount)
            .where(UserAccount.id == order.user_id)
            .values(last_order_at=order.created_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise AccountNotFound(order.user_id)

    async def save(self, order: Order) -> Order:
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(OrderRow)
                    .where(OrderRow.id == order.id, OrderRow.version == order.version)
                    .values(version=order.version + 1, **_order_values(order))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    exists = await session.get(OrderRow, order.id)
                    if exists is None:
                        raise OrderNotFound(order.id)
                    raise StaleOrderError(
                        f"Order {order.id} is at version {exists.version}, "
                        f"update was based on {order.version}"
                    )
        return order.model_copy(update={"version": order.version + 1})

    async def list_orders(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        order_type: Optional[OrderType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        filters = []
        if user_id is not None:
            filters.append(OrderRow.user_id == user_id)
        if status is not None:
            filters.append(OrderRow.status == status)
        if order_type is not None:
            filters.append(OrderRow.order_type == order_type)

        async with self._session_maker() as session:
            total = (await session.execute(
                select(func.count(OrderRow.id)).where(*filters)
            )).scalar() or 0
            result = await session.execute(
                select(OrderRow)
                .where(*filters)
                .order_by(OrderRow.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return [_order_from_row(row) for row in result.scalars().all()], total

    async def count_orders_before(
        self,
        user_id: str,
        before: datetime,
        exclude_id: str,
        exclude_statuses: Iterable[OrderStatus] = (),
    ) -> int:
        query = select(func.count(OrderRow.id)).where(
            OrderRow.user_id == user_id,
            OrderRow.id != exclude_id,
            OrderRow.created_at < before,
        )
        excluded = list(exclude_statuses)
        if excluded:
            query = query.where(OrderRow.status.not_in(excluded))
        async with self._session_maker() as session:
            return (await session.execute(query)).scalar() or 0

    async def count_created_between(self, start: datetime, end: datetime) -> int:
        async with self._session_maker() as session:
            result = await session.execute(
                select(func.count(OrderRow.id)).where(
                    OrderRow.created_at >= start,
                    OrderRow.created_at < end,
                )
            )
            return result.scalar() or 0

    async def find_recent_duplicate(
        self, user_id: str, fingerprint: str, since: datetime
    ) -> Optional[Order]:
        async with self._session_maker() as session:
            result = await session.execute(_recent_duplicate_query(user_id, fingerprint, since))
            row = result.scalar_one_or_none()
            return _order_from_row(row) if row else None

    async def health_check(self) -> bool:
        try:
            async with self._session_maker() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

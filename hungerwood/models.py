"""
SQLAlchemy Database Models

Tables backing the order core:
- users: account, wallet balance cache and referral relationship
- wallet_transactions: immutable, append-only ledger
- orders: order snapshot, lifecycle status and status history
"""

import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)

from hungerwood.database import Base


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    RECEIVED = "RECEIVED"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class OrderType(str, enum.Enum):
    """How the customer receives the order."""
    DINE_IN = "DINE_IN"
    TAKEAWAY = "TAKEAWAY"
    DELIVERY = "DELIVERY"


class PaymentMethod(str, enum.Enum):
    UPI = "UPI"
    CASH = "CASH"
    CARD = "CARD"
    WALLET = "WALLET"


class UserRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class TransactionType(str, enum.Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class TransactionReason(str, enum.Enum):
    """Why a wallet balance changed."""
    ORDER_PAYMENT = "ORDER_PAYMENT"
    ORDER_REFUND = "ORDER_REFUND"
    REFERRAL_BONUS_REFERRER = "REFERRAL_BONUS_REFERRER"
    REFERRAL_BONUS_NEW_USER = "REFERRAL_BONUS_NEW_USER"
    CASHBACK = "CASHBACK"
    ADMIN_CREDIT = "ADMIN_CREDIT"
    ADMIN_DEBIT = "ADMIN_DEBIT"
    PROMOTIONAL_BONUS = "PROMOTIONAL_BONUS"


MONEY = Numeric(12, 2, asdecimal=True)


# =============================================================================
# TABLES
# =============================================================================

class UserAccount(Base):
    """
    Customer or admin account.

    wallet_balance is a cache of the ledger; only the wallet ledger writes it,
    in the same transaction that appends the matching WalletTransactionRow.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    phone = Column(String(15), nullable=False, unique=True, index=True)
    name = Column(String(100), nullable=False, default="Guest User")
    role = Column(Enum(UserRole), nullable=False, default=UserRole.USER)
    is_active = Column(Boolean, nullable=False, default=True)

    # =========================================================================
    # WALLET
    # =========================================================================
    wallet_balance = Column(MONEY, nullable=False, default=0)

    # =========================================================================
    # REFERRAL
    # =========================================================================
    referral_code = Column(String(16), nullable=True, unique=True, index=True)
    referred_by = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    has_used_referral = Column(Boolean, nullable=False, default=False)
    referral_applied_at = Column(DateTime(timezone=True), nullable=True)
    referral_rewarded = Column(Boolean, nullable=False, default=False)
    referral_rewarded_at = Column(DateTime(timezone=True), nullable=True)
    referral_count = Column(Integer, nullable=False, default=0)
    referral_earnings = Column(MONEY, nullable=False, default=0)

    # Written with every order insert; the row update serializes placements per user
    last_order_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<UserAccount {self.id} - {self.phone} - balance {self.wallet_balance}>"


class WalletTransactionRow(Base):
    """Immutable ledger entry. Rows are inserted once and never updated."""
    __tablename__ = "wallet_transactions"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    type = Column(Enum(TransactionType), nullable=False)
    amount = Column(MONEY, nullable=False)
    reason = Column(Enum(TransactionReason), nullable=False)
    order_id = Column(String(36), nullable=True, index=True)
    referral_id = Column(String(36), nullable=True)
    balance_after = Column(MONEY, nullable=False)
    description = Column(Text, nullable=False, default="")
    extra = Column("metadata", JSON, nullable=False, default=dict)
    # At most one entry per key; NULL for entries that may repeat
    idempotency_key = Column(String(100), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_wallet_transactions_user_created", "user_id", "created_at"),
        Index("ix_wallet_transactions_type_reason", "type", "reason"),
    )

    def __repr__(self):
        return f"<WalletTransaction {self.type.value} {self.amount} - {self.reason.value}>"


class OrderRow(Base):
    """
    Placed order.

    status and status_history change only through the order state machine;
    version guards every write against concurrent modification.
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)
    order_code = Column(String(20), nullable=False, unique=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    items = Column(JSON, nullable=False)
    items_fingerprint = Column(String(64), nullable=False, index=True)
    order_type = Column(Enum(OrderType), nullable=False)
    payment_method = Column(Enum(PaymentMethod), nullable=False)
    delivery_address = Column(JSON, nullable=True)
    instructions = Column(Text, nullable=False, default="")

    # =========================================================================
    # PRICING
    # =========================================================================
    subtotal = Column(MONEY, nullable=False)
    tax = Column(MONEY, nullable=False)
    packaging = Column(MONEY, nullable=False, default=0)
    delivery_fee = Column(MONEY, nullable=False, default=0)
    discount = Column(MONEY, nullable=False, default=0)
    total_amount = Column(MONEY, nullable=False)
    wallet_amount = Column(MONEY, nullable=False, default=0)
    amount_payable = Column(MONEY, nullable=False)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================
    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.RECEIVED, index=True)
    status_history = Column(JSON, nullable=False, default=list)
    cancellation_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    prepared_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Order {self.order_code} - {self.order_type.value} - {self.status.value}>"

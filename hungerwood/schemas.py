"""
Pydantic Schemas

Domain records exchanged between the services and the repositories, plus the
request/response schemas of the HTTP layer. Money is always Decimal.
"""

import hashlib
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hungerwood.models import (
    OrderStatus,
    OrderType,
    PaymentMethod,
    TransactionReason,
    TransactionType,
    UserRole,
)


# =============================================================================
# DOMAIN RECORDS
# =============================================================================

class Addon(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    price: Decimal = Field(default=Decimal("0"), ge=0)


class OrderItem(BaseModel):
    """Line item with the menu item's name and price snapshotted at order time."""
    menu_item_id: str
    name: str
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    addons: List[Addon] = Field(default_factory=list)

    @property
    def line_total(self) -> Decimal:
        addon_total = sum((addon.price for addon in self.addons), Decimal("0"))
        return (self.price + addon_total) * self.quantity


class StatusHistoryEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime
    updated_by: Optional[str] = None


class DeliveryAddress(BaseModel):
    label: Optional[str] = Field(None, max_length=50, examples=["Home"])
    address_line: str = Field(..., min_length=3, max_length=255)
    landmark: Optional[str] = Field(None, max_length=100)
    city: str = Field(default="Gaya", max_length=50)
    pincode: Optional[str] = Field(None, pattern=r"^\d{6}$")


class Order(BaseModel):
    """
    Canonical order record.

    `id` is the canonical identifier used for persistence and live updates;
    `order_code` is the human-readable alternate key shown to customers.
    """
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_code: str
    user_id: str
    items: List[OrderItem]
    items_fingerprint: str = ""
    order_type: OrderType
    payment_method: PaymentMethod
    delivery_address: Optional[DeliveryAddress] = None
    instructions: str = ""

    subtotal: Decimal
    tax: Decimal
    packaging: Decimal = Decimal("0")
    delivery_fee: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    total_amount: Decimal
    wallet_amount: Decimal = Decimal("0")
    amount_payable: Decimal

    status: OrderStatus = OrderStatus.RECEIVED
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    cancellation_reason: Optional[str] = None
    version: int = 1

    created_at: datetime
    updated_at: Optional[datetime] = None
    prepared_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class Account(BaseModel):
    """User record as seen by the ledger and the referral processor."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    phone: str
    name: str = "Guest User"
    role: UserRole = UserRole.USER
    is_active: bool = True
    wallet_balance: Decimal = Decimal("0")

    referral_code: Optional[str] = None
    referred_by: Optional[str] = None
    has_used_referral: bool = False
    referral_applied_at: Optional[datetime] = None
    referral_rewarded: bool = False
    referral_rewarded_at: Optional[datetime] = None
    referral_count: int = 0
    referral_earnings: Decimal = Decimal("0")

    created_at: datetime


class WalletTransaction(BaseModel):
    """Immutable ledger entry."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    user_id: str
    type: TransactionType
    amount: Decimal = Field(..., gt=0)
    reason: TransactionReason
    order_id: Optional[str] = None
    referral_id: Optional[str] = None
    balance_after: Decimal
    description: str = ""
    metadata: dict = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    created_at: datetime


def items_fingerprint(items: List[OrderItem]) -> str:
    """Stable digest of an order's contents, used for duplicate detection."""
    canonical = sorted(
        (
            item.menu_item_id,
            item.quantity,
            sorted(addon.name for addon in item.addons),
        )
        for item in items
    )
    return hashlib.sha256(json.dumps(canonical).encode("utf-8")).hexdigest()


# =============================================================================
# SERVICE RESULTS
# =============================================================================

class LedgerResult(BaseModel):
    previous_balance: Decimal
    new_balance: Decimal
    transaction: WalletTransaction


class WalletUsageCheck(BaseModel):
    valid: bool
    message: str
    max_allowed: Optional[Decimal] = None
    current_balance: Optional[Decimal] = None


class TransactionPage(BaseModel):
    balance: Decimal
    transactions: List[WalletTransaction]
    total_transactions: int


class WalletStats(BaseModel):
    total_transactions: int
    total_credits: Decimal
    total_debits: Decimal
    net_amount: Decimal
    total_wallet_balance: Decimal
    users_with_balance: int


class ReferralCodeInfo(BaseModel):
    code: str
    referral_count: int
    earnings: Decimal


class ReferredUser(BaseModel):
    id: str
    name: str
    phone: str
    referral_applied_at: Optional[datetime] = None
    referral_rewarded: bool = False
    referral_rewarded_at: Optional[datetime] = None


class ReferralApplied(BaseModel):
    success: bool = True
    message: str
    referrer_name: str
    new_user_bonus: Decimal
    referrer_bonus: Decimal
    note: str = "Bonuses will be credited after your first successful order"


class ReferralRewardOutcome(BaseModel):
    new_user_id: str
    referrer_id: str
    order_id: str
    new_user_bonus: Decimal
    referrer_bonus: Decimal


class TopReferrer(BaseModel):
    id: str
    name: str
    phone: str
    referral_code: Optional[str]
    referral_count: int
    earnings: Decimal


class ReferralStats(BaseModel):
    total_referrals: int
    rewarded_referrals: int
    pending_referrals: int
    total_referral_earnings: Decimal
    average_referrals_per_user: float
    top_referrers: List[TopReferrer]


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class AccountCreate(BaseModel):
    """Account registration, normally performed by the phone-OTP service."""
    phone: str = Field(..., min_length=10, max_length=15, examples=["9876543210"])
    name: str = Field(default="Guest User", min_length=1, max_length=100)
    role: UserRole = Field(default=UserRole.USER)


class OrderItemCreate(BaseModel):
    """Single item in an order request."""
    menu_item_id: str = Field(..., min_length=1, examples=["65f1c2a9e4b0a1b2c3d4e5f6"])
    name: str = Field(..., min_length=1, max_length=100, examples=["Paneer Tikka"])
    price: Decimal = Field(..., gt=0, examples=[249])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    addons: List[Addon] = Field(default_factory=list)


class OrderCreate(BaseModel):
    """Request schema for placing an order."""
    items: List[OrderItemCreate] = Field(..., min_length=1)
    order_type: OrderType = Field(default=OrderType.DELIVERY)
    payment_method: PaymentMethod = Field(default=PaymentMethod.CASH)
    delivery_address: Optional[DeliveryAddress] = None
    instructions: str = Field(default="", max_length=500)
    wallet_amount: Decimal = Field(default=Decimal("0"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)

    @model_validator(mode="after")
    def require_address_for_delivery(self) -> "OrderCreate":
        if self.order_type == OrderType.DELIVERY and self.delivery_address is None:
            raise ValueError("delivery_address is required for DELIVERY orders")
        return self


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    reason: Optional[str] = Field(None, max_length=500)


class WalletAdjustmentRequest(BaseModel):
    amount: Decimal = Field(..., examples=[100])
    description: Optional[str] = Field(None, max_length=200)


class WalletValidateRequest(BaseModel):
    amount: Decimal
    order_total: Decimal = Field(..., ge=0)


class ReferralApplyRequest(BaseModel):
    referral_code: str = Field(..., min_length=1, max_length=16)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    storage: str
    redis: str
    live_connections: int
    timestamp: datetime

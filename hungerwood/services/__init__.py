"""
                        Services Module

Business logic of the order core. Every service works against the abstract
repositories, so the same code runs on in-memory storage (development) and
PostgreSQL (staging/production).

Services:
    - state_machine: Order status transition table
    - wallet: Wallet ledger engine
    - referral: Referral codes and first-order rewards
    - broadcaster: Live order update fan-out
    - orders: Order placement and lifecycle
"""

from hungerwood.services.broadcaster import OrderBroadcaster, QueueSubscriber
from hungerwood.services.orders import OrderService
from hungerwood.services.referral import ReferralService
from hungerwood.services.wallet import WalletLedger

__all__ = [
    "OrderBroadcaster",
    "OrderService",
    "QueueSubscriber",
    "ReferralService",
    "WalletLedger",
]

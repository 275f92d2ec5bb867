"""
Shared fixtures: a fresh in-memory ordering core per test.

Async code is driven with asyncio.run(), one event loop per test.
"""

import os

os.environ.setdefault("ENV_MODE", "development")

from decimal import Decimal

import pytest

from hungerwood.container import OrderingCore, reset_core
from hungerwood.core.config import Settings
from hungerwood.models import OrderType, PaymentMethod
from hungerwood.repositories import in_memory_repositories, reset_repositories
from hungerwood.schemas import DeliveryAddress, OrderCreate, OrderItemCreate


@pytest.fixture(autouse=True)
def fresh_singletons():
    """No process-wide core or store leaks between tests."""
    reset_core()
    reset_repositories()
    yield
    reset_core()
    reset_repositories()


@pytest.fixture
def settings():
    return Settings(env_mode="development", debug=False)


@pytest.fixture
def core(settings):
    return OrderingCore(repositories=in_memory_repositories(), settings=settings)


@pytest.fixture
def order_request():
    """Build an OrderCreate; one Paneer Tikka (249) TAKEAWAY by default."""

    def build(price="249", quantity=1, menu_item_id="m-paneer-tikka", **overrides):
        fields = {
            "items": [
                OrderItemCreate(
                    menu_item_id=menu_item_id,
                    name="Paneer Tikka",
                    price=Decimal(price),
                    quantity=quantity,
                )
            ],
            "order_type": OrderType.TAKEAWAY,
            "payment_method": PaymentMethod.UPI,
        }
        if overrides.get("order_type") == OrderType.DELIVERY:
            fields["delivery_address"] = DeliveryAddress(address_line="12 Station Road")
        fields.update(overrides)
        return OrderCreate(**fields)

    return build

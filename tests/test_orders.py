"""
Unit Tests for Order Placement and the Order Lifecycle

Tests cover:
1. Totals and order codes at placement
2. Lookup by canonical id or order code
3. Transitions through the core (structured failures)
4. Wallet share debited at placement, refunded on cancel
5. Duplicate detection
6. Concurrent transitions and stale-version retries
7. Live subscribers see status changes
"""

import asyncio
from decimal import Decimal

import pytest
from pydantic import ValidationError

from hungerwood.container import OrderingCore
from hungerwood.core.exceptions import (
    DuplicateOrder,
    ExceedsPolicyLimit,
    InvalidTransition,
    OrderNotFound,
)
from hungerwood.models import OrderStatus, OrderType, TransactionReason
from hungerwood.repositories import Repositories
from hungerwood.repositories.memory import InMemoryAccountRepository, InMemoryOrderRepository
from hungerwood.schemas import OrderCreate, OrderItemCreate
from hungerwood.services.broadcaster import QueueSubscriber

S = OrderStatus


async def customer(core, phone="9000000001", balance=None):
    account = await core.register_account(phone, "Asha")
    if balance:
        await core.ledger.credit(account.id, balance, TransactionReason.PROMOTIONAL_BONUS)
    return account


class TestPlacement:

    def test_totals_takeaway(self, core, order_request):
        async def scenario():
            user = await customer(core)
            return await core.orders.place_order(user.id, order_request())

        order = asyncio.run(scenario())

        assert order.subtotal == Decimal("249")
        assert order.tax == Decimal("12")
        assert order.packaging == Decimal("20")
        assert order.delivery_fee == Decimal("0")
        assert order.total_amount == Decimal("281")
        assert order.amount_payable == Decimal("281")
        assert order.status == S.RECEIVED
        assert [e.status for e in order.status_history] == [S.RECEIVED]

    def test_totals_delivery(self, core, order_request):
        async def scenario():
            user = await customer(core)
            return await core.orders.place_order(
                user.id, order_request(order_type=OrderType.DELIVERY)
            )

        order = asyncio.run(scenario())

        assert order.delivery_fee == Decimal("40")
        assert order.total_amount == Decimal("321")
        assert order.delivery_address.city == "Gaya"

    def test_addons_and_quantity(self, core):
        request = OrderCreate(
            items=[
                OrderItemCreate(
                    menu_item_id="m-dosa",
                    name="Masala Dosa",
                    price=Decimal("120"),
                    quantity=2,
                    addons=[{"name": "Extra chutney", "price": "15"}],
                )
            ],
            order_type=OrderType.DINE_IN,
        )

        async def scenario():
            user = await customer(core)
            return await core.orders.place_order(user.id, request)

        order = asyncio.run(scenario())

        assert order.subtotal == Decimal("270")
        assert order.tax == Decimal("14")

    def test_order_codes_count_up_per_day(self, core, order_request):
        async def scenario():
            user = await customer(core)
            first = await core.orders.place_order(user.id, order_request())
            second = await core.orders.place_order(user.id, order_request(menu_item_id="m-thali"))
            return first, second

        first, second = asyncio.run(scenario())

        day = first.created_at.strftime("%Y%m%d")
        assert first.order_code == f"{day}001"
        assert second.order_code == f"{day}002"
        assert first.id != second.id

    def test_unknown_user(self, core, order_request):
        result = asyncio.run(core.place_order("nobody", order_request()))

        assert result.success is False
        assert result.error_code == "ACCOUNT_NOT_FOUND"

    def test_delivery_requires_address(self):
        with pytest.raises(ValidationError):
            OrderCreate(
                items=[OrderItemCreate(menu_item_id="m1", name="Chai", price=Decimal("20"), quantity=1)],
                order_type=OrderType.DELIVERY,
            )


class TestLookup:

    def test_id_and_code_resolve_to_same_order(self, core, order_request):
        async def scenario():
            user = await customer(core)
            placed = await core.orders.place_order(user.id, order_request())
            by_id = await core.get_order(placed.id)
            by_code = await core.get_order(placed.order_code)
            return placed, by_id, by_code

        placed, by_id, by_code = asyncio.run(scenario())

        assert by_id.data.id == placed.id
        assert by_code.data.id == placed.id

    def test_unknown_reference(self, core):
        async def scenario():
            with pytest.raises(OrderNotFound):
                await core.orders.resolve_order("20990101001")
            return await core.apply_transition("missing", S.CONFIRMED, "admin-1")

        result = asyncio.run(scenario())

        assert result.success is False
        assert result.error_code == "ORDER_NOT_FOUND"
        assert result.http_status == 404

    def test_list_orders_filters(self, core, order_request):
        async def scenario():
            first = await customer(core, phone="9000000001")
            second = await customer(core, phone="9000000002")
            await core.orders.place_order(first.id, order_request())
            await core.orders.place_order(first.id, order_request(menu_item_id="m-thali"))
            await core.orders.place_order(second.id, order_request())
            return (
                await core.orders.list_orders(user_id=first.id),
                await core.orders.list_orders(),
                await core.orders.list_orders(limit=1),
            )

        (mine, mine_total), (_, everyone_total), (page, _) = asyncio.run(scenario())

        assert mine_total == 2
        assert all(o.user_id == mine[0].user_id for o in mine)
        assert everyone_total == 3
        assert len(page) == 1


class TestLifecycle:

    def test_full_lifecycle(self, core, order_request):
        async def scenario():
            user = await customer(core)
            order = await core.orders.place_order(
                user.id, order_request(order_type=OrderType.DELIVERY)
            )
            for target in (S.CONFIRMED, S.PREPARING, S.READY, S.OUT_FOR_DELIVERY, S.COMPLETED):
                result = await core.apply_transition(order.order_code, target, "admin-1")
                assert result.success, result.error_message
            return result.data

        order = asyncio.run(scenario())

        assert order.status == S.COMPLETED
        assert len(order.status_history) == 6
        assert order.status_history[0].updated_by == order.user_id
        assert order.prepared_at is not None
        assert order.delivered_at is not None
        assert order.version == 6

    def test_skipping_a_step_reports_allowed(self, core, order_request):
        async def scenario():
            user = await customer(core)
            order = await core.orders.place_order(user.id, order_request())
            await core.apply_transition(order.id, S.CONFIRMED, "admin-1")
            failed = await core.apply_transition(order.id, S.COMPLETED, "admin-1")
            return failed, await core.orders.resolve_order(order.id)

        failed, order = asyncio.run(scenario())

        assert failed.success is False
        assert failed.error_code == "INVALID_TRANSITION"
        assert failed.details["allowed_statuses"] == ["PREPARING", "CANCELLED"]
        assert failed.details["current_status"] == "CONFIRMED"
        assert order.status == S.CONFIRMED
        assert len(order.status_history) == 2

    def test_cancel_records_reason(self, core, order_request):
        async def scenario():
            user = await customer(core)
            order = await core.orders.place_order(user.id, order_request())
            return await core.orders.update_status(
                order.id, S.CANCELLED, user.id, reason="Ordered by mistake"
            )

        order = asyncio.run(scenario())

        assert order.cancellation_reason == "Ordered by mistake"
        assert order.cancelled_at is not None


class TestWalletPayment:

    def test_wallet_share_is_debited(self, core, order_request):
        async def scenario():
            user = await customer(core, balance=200)
            order = await core.orders.place_order(
                user.id, order_request(wallet_amount=Decimal("100"))
            )
            entries = await core.accounts.list_transactions(user.id)
            return order, await core.ledger.get_balance(user.id), entries[0]

        order, balance, entry = asyncio.run(scenario())

        assert order.wallet_amount == Decimal("100")
        assert order.amount_payable == Decimal("181")
        assert balance == Decimal("100")
        assert entry.reason == TransactionReason.ORDER_PAYMENT
        assert entry.order_id == order.id

    def test_cancel_refunds_wallet_share(self, core, order_request):
        async def scenario():
            user = await customer(core, balance=200)
            order = await core.orders.place_order(
                user.id, order_request(wallet_amount=Decimal("100"))
            )
            await core.apply_transition(order.id, S.CANCELLED, user.id)
            entries = await core.accounts.list_transactions(user.id)
            return order, await core.ledger.get_balance(user.id), entries[0]

        order, balance, refund = asyncio.run(scenario())

        assert balance == Decimal("200")
        assert refund.reason == TransactionReason.ORDER_REFUND
        assert refund.order_id == order.id
        assert refund.metadata["refund"] is True

    def test_policy_violation_creates_no_order(self, core, order_request):
        async def scenario():
            user = await customer(core, balance=200)
            with pytest.raises(ExceedsPolicyLimit):
                await core.orders.place_order(
                    user.id, order_request(wallet_amount=Decimal("150"))
                )
            _, total = await core.orders.list_orders(user_id=user.id)
            return total, await core.ledger.get_balance(user.id)

        total, balance = asyncio.run(scenario())

        assert total == 0
        assert balance == Decimal("200")


class TestDuplicates:

    def test_identical_order_is_rejected(self, core, order_request):
        async def scenario():
            user = await customer(core)
            first = await core.orders.place_order(user.id, order_request())
            with pytest.raises(DuplicateOrder) as exc_info:
                await core.orders.place_order(user.id, order_request())
            return first, exc_info.value

        first, error = asyncio.run(scenario())

        assert error.details["existing_order_id"] == first.id
        assert error.http_status == 409

    def test_concurrent_identical_orders(self, core, order_request):
        async def scenario():
            user = await customer(core)
            return await asyncio.gather(
                *(core.place_order(user.id, order_request()) for _ in range(5))
            )

        results = asyncio.run(scenario())

        assert sum(1 for r in results if r.success) == 1
        assert all(r.error_code == "DUPLICATE_ORDER" for r in results if not r.success)

    def test_zero_window_allows_repeats(self, order_request):
        from hungerwood.core.config import Settings
        from hungerwood.repositories import in_memory_repositories

        settings = Settings(env_mode="development", duplicate_order_window_seconds=0)
        core = OrderingCore(repositories=in_memory_repositories(), settings=settings)

        async def scenario():
            user = await customer(core)
            await core.orders.place_order(user.id, order_request())
            await core.orders.place_order(user.id, order_request())
            return await core.orders.list_orders(user_id=user.id)

        _, total = asyncio.run(scenario())
        assert total == 2

    def test_cancelled_order_is_not_a_duplicate(self, core, order_request):
        async def scenario():
            user = await customer(core)
            first = await core.orders.place_order(user.id, order_request())
            await core.orders.update_status(first.id, S.CANCELLED, user.id)
            return await core.orders.place_order(user.id, order_request())

        assert asyncio.run(scenario()).status == S.RECEIVED


class RacingOrderRepository(InMemoryOrderRepository):
    """Simulates another process writing the order just before our save."""

    def __init__(self, interloper_status=None):
        super().__init__()
        self.interloper_status = interloper_status
        self.raced = False

    async def save(self, order):
        if not self.raced:
            self.raced = True
            stored = self._orders[order.id]
            changes = {"version": stored.version + 1}
            if self.interloper_status is not None:
                changes["status"] = self.interloper_status
            self._orders[order.id] = stored.model_copy(update=changes)
        return await super().save(order)


def racing_core(settings, interloper_status=None):
    orders = RacingOrderRepository(interloper_status)
    repos = Repositories(accounts=InMemoryAccountRepository(), orders=orders, backend="memory")
    return OrderingCore(repositories=repos, settings=settings), orders


class TestConcurrentTransitions:

    def test_duplicate_confirm_requests(self, core, order_request):
        async def scenario():
            user = await customer(core)
            order = await core.orders.place_order(user.id, order_request())
            results = await asyncio.gather(
                core.apply_transition(order.id, S.CONFIRMED, "admin-1"),
                core.apply_transition(order.order_code, S.CONFIRMED, "admin-2"),
            )
            return results, await core.orders.resolve_order(order.id)

        results, order = asyncio.run(scenario())

        assert sum(1 for r in results if r.success) == 1
        loser = next(r for r in results if not r.success)
        assert loser.error_code == "INVALID_TRANSITION"
        assert order.status == S.CONFIRMED
        assert [e.status for e in order.status_history] == [S.RECEIVED, S.CONFIRMED]

    def test_stale_version_is_retried(self, settings, order_request):
        core, orders = racing_core(settings)

        async def scenario():
            user = await customer(core)
            order = await core.orders.place_order(user.id, order_request())
            return await core.orders.update_status(order.id, S.CONFIRMED, "admin-1")

        order = asyncio.run(scenario())

        assert orders.raced is True
        assert order.status == S.CONFIRMED
        assert order.version == 3

    def test_retry_revalidates_against_fresh_status(self, settings, order_request):
        core, _ = racing_core(settings, interloper_status=S.CANCELLED)

        async def scenario():
            user = await customer(core)
            order = await core.orders.place_order(user.id, order_request())
            with pytest.raises(InvalidTransition) as exc_info:
                await core.orders.update_status(order.id, S.CONFIRMED, "admin-1")
            return exc_info.value

        assert asyncio.run(scenario()).current == S.CANCELLED


class TestLiveUpdates:

    def test_subscriber_by_code_receives_update(self, core, order_request):
        async def scenario():
            user = await customer(core)
            order = await core.orders.place_order(user.id, order_request())
            handle = QueueSubscriber()
            subscribed = await core.subscribe(order.order_code, handle)
            await core.apply_transition(order.id, S.CONFIRMED, "admin-1")
            return order, subscribed, handle.queue.get_nowait()

        order, subscribed, event = asyncio.run(scenario())

        assert subscribed.data.id == order.id
        assert event.payload["type"] == "statusUpdate"
        assert event.payload["orderId"] == order.id
        assert event.payload["orderCode"] == order.order_code
        assert event.payload["status"] == "CONFIRMED"
        assert event.payload["previousStatus"] == "RECEIVED"
        assert event.payload["updatedBy"] == "admin-1"
        assert len(event.payload["statusHistory"]) == 2

    def test_failed_transition_is_not_broadcast(self, core, order_request):
        async def scenario():
            user = await customer(core)
            order = await core.orders.place_order(user.id, order_request())
            handle = QueueSubscriber()
            await core.subscribe(order.id, handle)
            await core.apply_transition(order.id, S.COMPLETED, "admin-1")
            return handle.queue.empty()

        assert asyncio.run(scenario()) is True

    def test_subscribe_at_capacity(self, settings, order_request):
        from hungerwood.repositories import in_memory_repositories
        from hungerwood.services.broadcaster import OrderBroadcaster

        core = OrderingCore(
            repositories=in_memory_repositories(),
            settings=settings,
            broadcaster=OrderBroadcaster(max_subscribers=1),
        )

        async def scenario():
            user = await customer(core)
            order = await core.orders.place_order(user.id, order_request())
            first = await core.subscribe(order.id, QueueSubscriber())
            second = await core.subscribe(order.id, QueueSubscriber())
            return first, second

        first, second = asyncio.run(scenario())

        assert first.success is True
        assert second.success is False
        assert second.error_code == "SUBSCRIPTION_CAPACITY_EXCEEDED"

    def test_broadcast_by_reference(self, core, order_request):
        async def scenario():
            user = await customer(core)
            order = await core.orders.place_order(user.id, order_request())
            handle = QueueSubscriber()
            await core.subscribe(order.id, handle)
            delivered = await core.broadcast(order.order_code, {"type": "note"})
            await core.unsubscribe(order.id, handle)
            after = await core.broadcast(order.id, {"type": "note"})
            return delivered, after

        delivered, after = asyncio.run(scenario())

        assert delivered.data == 1
        assert after.data == 0

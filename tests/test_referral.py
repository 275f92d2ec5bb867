"""
Unit Tests for Referral Codes and Rewards

Tests cover:
1. Code generation and application rules
2. First-order reward flow
3. Idempotency (bonus paid at most once per user)
4. Disqualifying conditions
5. New-user credit failure aborts the referrer credit
"""

import asyncio
import re
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from hungerwood.core.exceptions import ReferralError
from hungerwood.models import OrderType, TransactionReason, TransactionType
from hungerwood.schemas import Order, OrderItem
from hungerwood.services.referral import ReferralService
from hungerwood.services.wallet import WalletLedger

R = TransactionReason


async def referred_pair(core):
    """A referrer and a new user who applied the referrer's code."""
    referrer = await core.register_account("9000000001", "Ravi Kumar")
    new_user = await core.register_account("9000000002", "Meera")
    await core.referrals.apply_referral_code(new_user.id, referrer.referral_code)
    return referrer, new_user


async def bonus_entries(core, user_id, reason):
    entries = await core.accounts.list_transactions(user_id, limit=1000)
    return [e for e in entries if e.reason == reason]


class TestReferralCodes:

    def test_code_format(self, core):
        async def scenario():
            return [
                await core.referrals.generate_referral_code("Ravi Kumar"),
                await core.referrals.generate_referral_code("J.D. Smith"),
            ]

        ravi, jd = asyncio.run(scenario())

        assert re.fullmatch(r"RAVI[A-Z0-9]{4}", ravi)
        assert re.fullmatch(r"JXDX[A-Z0-9]{4}", jd)

    def test_registered_accounts_get_unique_codes(self, core):
        async def scenario():
            accounts = [
                await core.register_account(f"90000000{i:02d}", "Asha") for i in range(20)
            ]
            return [a.referral_code for a in accounts]

        codes = asyncio.run(scenario())
        assert len(set(codes)) == 20

    def test_get_user_referral_code_generates_once(self, core):
        from hungerwood.schemas import Account

        async def scenario():
            await core.accounts.add(Account(
                id="legacy", phone="9000000003", name="Old Timer",
                created_at=datetime.now(timezone.utc),
            ))
            first = await core.referrals.get_user_referral_code("legacy")
            second = await core.referrals.get_user_referral_code("legacy")
            return first, second

        first, second = asyncio.run(scenario())

        assert first.code.startswith("OLDX")
        assert first.code == second.code
        assert first.referral_count == 0

    def test_apply_links_users(self, core):
        async def scenario():
            referrer, new_user = await referred_pair(core)
            return referrer, await core.accounts.get(new_user.id)

        referrer, new_user = asyncio.run(scenario())

        assert new_user.referred_by == referrer.id
        assert new_user.has_used_referral is True
        assert new_user.referral_applied_at is not None

    def test_apply_is_case_insensitive(self, core):
        async def scenario():
            referrer = await core.register_account("9000000001", "Ravi")
            new_user = await core.register_account("9000000002", "Meera")
            applied = await core.referrals.apply_referral_code(
                new_user.id, referrer.referral_code.lower()
            )
            return applied

        applied = asyncio.run(scenario())

        assert applied.referrer_name == "Ravi"
        assert applied.new_user_bonus == Decimal("50")

    def test_apply_rejections(self, core):
        async def scenario():
            referrer, new_user = await referred_pair(core)
            other = await core.register_account("9000000004", "Kiran")
            errors = {}
            for label, user_id, code in [
                ("again", new_user.id, referrer.referral_code),
                ("self", other.id, other.referral_code),
                ("short", other.id, "AB1"),
                ("unknown", other.id, "ZZZZ9999"),
            ]:
                with pytest.raises(ReferralError) as exc_info:
                    await core.referrals.apply_referral_code(user_id, code)
                errors[label] = exc_info.value.message
            return errors

        errors = asyncio.run(scenario())

        assert errors["again"] == "Referral code already applied"
        assert errors["self"] == "Cannot use your own referral code"
        assert errors["short"] == "Invalid referral code format"
        assert errors["unknown"] == "Invalid referral code"


class TestProcessReward:

    def test_first_order_pays_both_bonuses(self, core, order_request):
        async def scenario():
            referrer, new_user = await referred_pair(core)
            await core.orders.place_order(new_user.id, order_request())
            await core.orders.drain_background()
            return (
                await core.accounts.get(referrer.id),
                await core.accounts.get(new_user.id),
            )

        referrer, new_user = asyncio.run(scenario())

        assert new_user.wallet_balance == Decimal("50")
        assert new_user.referral_rewarded is True
        assert new_user.referral_rewarded_at is not None
        assert referrer.wallet_balance == Decimal("50")
        assert referrer.referral_count == 1
        assert referrer.referral_earnings == Decimal("50")

    def test_reward_is_idempotent(self, core, order_request):
        async def scenario():
            referrer, new_user = await referred_pair(core)
            order = await core.orders.place_order(new_user.id, order_request())
            await core.orders.drain_background()
            again = await core.referrals.process_reward(order)
            concurrent = await asyncio.gather(
                core.referrals.process_reward(order),
                core.referrals.process_reward(order),
            )
            return (
                again,
                concurrent,
                await bonus_entries(core, new_user.id, R.REFERRAL_BONUS_NEW_USER),
                await bonus_entries(core, referrer.id, R.REFERRAL_BONUS_REFERRER),
            )

        again, concurrent, new_user_bonuses, referrer_bonuses = asyncio.run(scenario())

        assert again is None
        assert concurrent == [None, None]
        assert len(new_user_bonuses) == 1
        assert len(referrer_bonuses) == 1

    def test_concurrent_first_runs_pay_once(self, core, order_request):
        async def scenario():
            referrer, new_user = await referred_pair(core)
            core.orders.reward_dispatcher = lambda order: None
            order = await core.orders.place_order(new_user.id, order_request())
            outcomes = await asyncio.gather(*(core.referrals.process_reward(order) for _ in range(5)))
            return outcomes, await bonus_entries(core, new_user.id, R.REFERRAL_BONUS_NEW_USER)

        outcomes, bonuses = asyncio.run(scenario())

        assert sum(1 for o in outcomes if o is not None) == 1
        assert len(bonuses) == 1

    def test_independent_workers_pay_once(self, core, order_request, settings):
        async def scenario():
            referrer, new_user = await referred_pair(core)
            core.orders.reward_dispatcher = lambda order: None
            order = await core.orders.place_order(new_user.id, order_request())
            # Separate services do not share locks, as in separate worker processes
            workers = [
                ReferralService(core.accounts, core.repositories.orders, WalletLedger(core.accounts), settings)
                for _ in range(3)
            ]
            outcomes = await asyncio.gather(*(w.process_reward(order) for w in workers))
            return (
                outcomes,
                await bonus_entries(core, new_user.id, R.REFERRAL_BONUS_NEW_USER),
                await bonus_entries(core, referrer.id, R.REFERRAL_BONUS_REFERRER),
                await core.accounts.get(referrer.id),
            )

        outcomes, new_user_bonuses, referrer_bonuses, referrer = asyncio.run(scenario())

        assert sum(1 for o in outcomes if o is not None) == 1
        assert len(new_user_bonuses) == 1
        assert new_user_bonuses[0].idempotency_key == f"referral-new-user:{new_user_bonuses[0].user_id}"
        assert len(referrer_bonuses) == 1
        assert referrer.wallet_balance == Decimal("50")
        assert referrer.referral_count == 1

    def test_bonus_entries_link_counterparts(self, core, order_request):
        async def scenario():
            referrer, new_user = await referred_pair(core)
            order = await core.orders.place_order(new_user.id, order_request())
            await core.orders.drain_background()
            return (
                referrer,
                new_user,
                order,
                (await bonus_entries(core, new_user.id, R.REFERRAL_BONUS_NEW_USER))[0],
                (await bonus_entries(core, referrer.id, R.REFERRAL_BONUS_REFERRER))[0],
            )

        referrer, new_user, order, new_user_entry, referrer_entry = asyncio.run(scenario())

        assert new_user_entry.type == TransactionType.CREDIT
        assert new_user_entry.referral_id == referrer.id
        assert new_user_entry.order_id == order.id
        assert referrer_entry.referral_id == new_user.id
        assert referrer_entry.order_id == order.id
        assert new_user_entry.created_at <= referrer_entry.created_at

    def test_order_below_minimum_is_skipped(self, core, order_request):
        async def scenario():
            _, new_user = await referred_pair(core)
            # 100 + 5 tax + 20 packaging = 125
            order = await core.orders.place_order(new_user.id, order_request(price="100"))
            await core.orders.drain_background()
            return order, await core.accounts.get(new_user.id)

        order, new_user = asyncio.run(scenario())

        assert order.total_amount == Decimal("125")
        assert new_user.wallet_balance == Decimal("0")
        assert new_user.referral_rewarded is False

    def test_only_the_first_order_qualifies(self, core, order_request):
        async def scenario():
            _, new_user = await referred_pair(core)
            await core.orders.place_order(new_user.id, order_request(price="100"))
            await core.orders.place_order(
                new_user.id, order_request(price="400", menu_item_id="m-thali")
            )
            await core.orders.drain_background()
            return await core.accounts.get(new_user.id)

        assert asyncio.run(scenario()).wallet_balance == Decimal("0")

    def test_cancelled_earlier_order_does_not_disqualify(self, core, order_request):
        async def scenario():
            _, new_user = await referred_pair(core)
            first = await core.orders.place_order(new_user.id, order_request(price="100"))
            await core.orders.update_status(first.id, "CANCELLED", new_user.id)
            await core.orders.place_order(
                new_user.id, order_request(price="400", menu_item_id="m-thali")
            )
            await core.orders.drain_background()
            return await core.accounts.get(new_user.id)

        new_user = asyncio.run(scenario())

        assert new_user.wallet_balance == Decimal("50")
        assert new_user.referral_rewarded is True

    def test_user_without_referral(self, core, order_request):
        async def scenario():
            user = await core.register_account("9000000005", "Solo")
            order = await core.orders.place_order(user.id, order_request())
            return await core.referrals.process_reward(order)

        assert asyncio.run(scenario()) is None

    def test_unknown_user_is_silent(self, core):
        order = Order(
            id="ghost-order",
            order_code="20250101001",
            user_id="ghost",
            items=[OrderItem(menu_item_id="m1", name="Chai", price=Decimal("300"), quantity=1)],
            order_type=OrderType.TAKEAWAY,
            payment_method="CASH",
            subtotal=Decimal("300"),
            tax=Decimal("15"),
            total_amount=Decimal("335"),
            amount_payable=Decimal("335"),
            created_at=datetime.now(timezone.utc),
        )

        assert asyncio.run(core.referrals.process_reward(order)) is None

    def test_failed_new_user_credit_skips_referrer(self, core, order_request, monkeypatch):
        async def scenario():
            referrer, new_user = await referred_pair(core)
            core.orders.reward_dispatcher = lambda order: None
            order = await core.orders.place_order(new_user.id, order_request())

            async def broken_credit(*args, **kwargs):
                raise ConnectionError("ledger unavailable")

            monkeypatch.setattr(core.ledger, "credit", broken_credit)
            outcome = await core.referrals.process_reward(order)
            return outcome, await core.accounts.get(referrer.id)

        outcome, referrer = asyncio.run(scenario())

        assert outcome is None
        assert referrer.wallet_balance == Decimal("0")
        assert referrer.referral_count == 0


class TestReferralReporting:

    def test_referred_users_and_stats(self, core, order_request):
        async def scenario():
            referrer, new_user = await referred_pair(core)
            late = await core.register_account("9000000006", "Late")
            await core.referrals.apply_referral_code(late.id, referrer.referral_code)
            await core.orders.place_order(new_user.id, order_request())
            await core.orders.drain_background()
            return (
                await core.referrals.get_referred_users(referrer.id),
                await core.referrals.get_referral_stats(),
                referrer,
            )

        referred, stats, referrer = asyncio.run(scenario())

        assert {u.name for u in referred} == {"Meera", "Late"}
        assert stats.total_referrals == 2
        assert stats.rewarded_referrals == 1
        assert stats.pending_referrals == 1
        assert stats.total_referral_earnings == Decimal("50")
        assert stats.average_referrals_per_user == pytest.approx(2 / 3)
        assert [t.id for t in stats.top_referrers] == [referrer.id]

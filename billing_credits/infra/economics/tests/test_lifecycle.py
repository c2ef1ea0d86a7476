# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

import pytest

from billing_credits.infra.economics.lifecycle import (
    GRANT_TO_MANUAL,
    GRANT_TO_SEAT_USERS,
    GRANT_TO_SUBSCRIBER,
    LifecycleOrchestrator,
)
from billing_credits.infra.economics.tests.helpers import (
    FakeDirectory,
    MemoryStore,
    memory_credits,
    plan_resolver,
    subscription,
)
from billing_credits.infra.economics.types import TransactionSource, TransactionType


class World:
    def __init__(self, grant_to=GRANT_TO_SUBSCRIBER):
        self.store = MemoryStore()
        self.credits = memory_credits(self.store)
        self.directory = FakeDirectory()
        self.directory.add("u1", "cus_1")
        self.granted, self.revoked = [], []

        async def on_granted(ev):
            self.granted.append(ev)

        async def on_revoked(ev):
            self.revoked.append(ev)

        self.lifecycle = LifecycleOrchestrator(
            credits=self.credits,
            plans=plan_resolver(),
            directory=self.directory,
            grant_to=grant_to,
            on_credits_granted=on_granted,
            on_credits_revoked=on_revoked,
        )

    async def balances(self, holder="u1"):
        return await self.credits.get_all_balances(holder)


@pytest.fixture
def world():
    return World()


@pytest.mark.asyncio
async def test_created_grants_plan_allocation(world):
    await world.lifecycle.on_subscription_created(subscription())

    assert await world.balances() == {"api_calls": 1000, "exports": 10, "wallet": 500_000}
    assert {e.idempotency_key for e in world.store.entries} == {
        "subscription_sub_1:api_calls", "subscription_sub_1:exports", "subscription_sub_1:wallet",
    }
    assert all(e.source == TransactionSource.SUBSCRIPTION and e.source_id == "sub_1" for e in world.store.entries)
    assert world.store.currencies[("u1", "wallet")] == "usd"
    assert len(world.granted) == 3

    # redelivery
    await world.lifecycle.on_subscription_created(subscription())
    assert len(world.store.entries) == 3
    assert len(world.granted) == 3


@pytest.mark.asyncio
async def test_yearly_and_weekly_prices_scale(world):
    world.directory.add("u2", "cus_2")
    world.directory.add("u3", "cus_3")
    await world.lifecycle.on_subscription_created(subscription("sub_y", "price_pro_y", customer="cus_2"))
    await world.lifecycle.on_subscription_created(subscription("sub_w", "price_pro_w", customer="cus_3"))

    assert (await world.balances("u2"))["api_calls"] == 12000
    assert (await world.balances("u3"))["api_calls"] == 250
    assert (await world.balances("u3"))["wallet"] == 125_000


@pytest.mark.asyncio
async def test_created_for_unmapped_customer_uses_metadata(world):
    await world.lifecycle.on_subscription_created(subscription("sub_9", customer="cus_unknown"))
    assert world.store.entries == []

    await world.lifecycle.on_subscription_created(
        subscription("sub_9", customer="cus_unknown", metadata={"user_id": "u9"}))
    assert (await world.balances("u9"))["api_calls"] == 1000


@pytest.mark.asyncio
async def test_unknown_price_grants_nothing(world):
    await world.lifecycle.on_subscription_created(subscription(price_id="price_legacy"))
    assert world.store.entries == []


@pytest.mark.asyncio
async def test_renewal_resets_and_adds(world):
    sub = subscription()
    await world.lifecycle.on_subscription_created(sub)
    await world.credits.consume("u1", "api_calls", 300)
    await world.credits.consume("u1", "exports", 4)
    await world.credits.consume("u1", "wallet", 600_000, allow_negative=True)

    await world.lifecycle.on_subscription_renewed(sub, "in_1")

    assert await world.balances() == {"api_calls": 1000, "exports": 16, "wallet": 500_000}
    renewal = [e for e in world.store.entries if e.source == TransactionSource.RENEWAL]
    assert {e.key: (e.transaction_type, e.amount) for e in renewal} == {
        "api_calls": (TransactionType.ADJUST, 300),
        "exports": (TransactionType.GRANT, 10),
        "wallet": (TransactionType.ADJUST, 600_000),
    }
    assert renewal[0].idempotency_key == "renewal_in_1_u1:api_calls"

    count = len(world.store.entries)
    await world.lifecycle.on_subscription_renewed(sub, "in_1")
    assert len(world.store.entries) == count


@pytest.mark.asyncio
async def test_renewal_at_full_balance_still_records(world):
    sub = subscription(price_id="price_lite_m")
    await world.lifecycle.on_subscription_created(sub)
    await world.lifecycle.on_subscription_renewed(sub, "in_1")

    last = world.store.entries[-1]
    assert (last.amount, last.balance_after, last.idempotency_key) == (0, 200, "renewal_in_1_u1:api_calls")


@pytest.mark.asyncio
async def test_cancellation_revokes_everything_including_topups(world):
    sub = subscription()
    await world.lifecycle.on_subscription_created(sub)
    await world.credits.grant("u1", "api_calls", 50, source=TransactionSource.TOPUP, idempotency_key="topup_pi_1")

    await world.lifecycle.on_subscription_cancelled(sub)

    assert await world.balances() == {"api_calls": 0, "exports": 0, "wallet": 0}
    revokes = [e for e in world.store.entries if e.transaction_type == TransactionType.REVOKE]
    assert {(e.key, e.amount) for e in revokes} == {("api_calls", -1050), ("exports", -10), ("wallet", -500_000)}
    assert all(e.source == TransactionSource.CANCELLATION for e in revokes)
    assert {r.key for r in world.revoked} == {"api_calls", "exports", "wallet"}

    count = len(world.store.entries)
    await world.credits.grant("u1", "api_calls", 5)
    await world.lifecycle.on_subscription_cancelled(sub)
    # the redelivered event's keys are spent
    assert len(world.store.entries) == count + 1


@pytest.mark.asyncio
async def test_upgrade_keeps_balance_and_adds(world):
    await world.lifecycle.on_subscription_created(subscription(price_id="price_lite_m"))
    await world.credits.consume("u1", "api_calls", 50)

    await world.lifecycle.on_subscription_plan_changed(subscription(price_id="price_pro_m"), "price_lite_m")

    assert await world.balances() == {"api_calls": 1150, "exports": 10, "wallet": 500_000}
    changes = [e for e in world.store.entries if e.source == TransactionSource.PLAN_CHANGE]
    assert all(e.transaction_type == TransactionType.GRANT for e in changes)
    assert "plan_change_sub_1_price_lite_m_price_pro_m_u1:api_calls" in {e.idempotency_key for e in changes}

    count = len(world.store.entries)
    await world.lifecycle.on_subscription_plan_changed(subscription(price_id="price_pro_m"), "price_lite_m")
    assert len(world.store.entries) == count


@pytest.mark.asyncio
async def test_upgrade_from_free_replaces_allocation(world):
    await world.lifecycle.on_subscription_created(subscription(price_id="price_free"))
    await world.lifecycle.on_subscription_plan_changed(subscription(price_id="price_pro_m"), "price_free")

    assert (await world.balances())["api_calls"] == 1000
    revoke, = [e for e in world.store.entries if e.transaction_type == TransactionType.REVOKE]
    assert (revoke.amount, revoke.idempotency_key) == (-100, "plan_change_sub_1_price_free_price_pro_m_u1_revoke:api_calls")


@pytest.mark.asyncio
async def test_zero_cost_hint_in_metadata(world):
    await world.lifecycle.on_subscription_created(subscription(price_id="price_lite_m"))
    sub = subscription(price_id="price_pro_m", metadata={"upgrade_from_price_amount": "0"})

    await world.lifecycle.on_subscription_plan_changed(sub, "price_lite_m")

    assert (await world.balances())["api_calls"] == 1000


@pytest.mark.asyncio
async def test_downgrade_is_deferred_then_applied(world):
    await world.lifecycle.on_subscription_created(subscription())
    await world.credits.consume("u1", "api_calls", 300)
    count = len(world.store.entries)

    pending = subscription(price_id="price_lite_m", metadata={"pending_credit_downgrade": "true",
                                                              "downgrade_from_price": "price_pro_m"})
    await world.lifecycle.on_subscription_plan_changed(pending, "price_pro_m")
    assert len(world.store.entries) == count

    await world.lifecycle.on_downgrade_applied(pending, "price_lite_m", invoice_id="in_2")

    # exports is not part of lite; the wallet is left alone
    assert await world.balances() == {"api_calls": 200, "exports": 0, "wallet": 500_000}
    keys = {e.idempotency_key for e in world.store.entries[count:]}
    assert keys == {"downgrade_sub_1_price_lite_m_in_2_u1_revoke:exports",
                    "downgrade_sub_1_price_lite_m_in_2_u1:api_calls"}

    count = len(world.store.entries)
    await world.lifecycle.on_downgrade_applied(pending, "price_lite_m", invoice_id="in_2")
    assert len(world.store.entries) == count


@pytest.mark.asyncio
async def test_downgrade_clears_overdrawn_balance_to_zero(world):
    await world.lifecycle.on_subscription_created(subscription())
    await world.credits.consume("u1", "exports", 17, allow_negative=True)
    assert await world.credits.get_balance("u1", "exports") == -7

    pending = subscription(price_id="price_lite_m", metadata={"pending_credit_downgrade": "true"})
    await world.lifecycle.on_downgrade_applied(pending, "price_lite_m", invoice_id="in_2")

    assert await world.credits.get_balance("u1", "exports") == 0
    entry, = [e for e in world.store.entries if e.idempotency_key == "downgrade_sub_1_price_lite_m_in_2_u1_revoke:exports"]
    assert (entry.amount, entry.balance_after, entry.transaction_type) == (7, 0, TransactionType.ADJUST)


@pytest.mark.asyncio
async def test_seat_users_mode():
    world = World(grant_to=GRANT_TO_SEAT_USERS)
    sub = subscription("sub_t", "price_team_m", customer="cus_1", metadata={"first_seat_user_id": "alice"})

    await world.lifecycle.on_subscription_created(sub)
    assert await world.balances("alice") == {"api_calls": 300}
    assert await world.balances("u1") == {}
    assert await world.credits.read_model.get_active_seat_users("sub_t") == ["alice"]
    assert world.store.entries[0].idempotency_key == "seat_alice_sub_t:api_calls"

    await world.credits.consume("alice", "api_calls", 120)
    await world.lifecycle.on_subscription_renewed(sub, "in_5")
    assert await world.balances("alice") == {"api_calls": 300}
    assert world.store.entries[-1].source == TransactionSource.SEAT_GRANT

    await world.credits.consume("alice", "api_calls", 300)
    await world.lifecycle.on_subscription_cancelled(sub)
    assert await world.credits.read_model.get_active_seat_users("sub_t") == []
    last = world.store.entries[-1]
    assert (last.source, last.amount, last.idempotency_key) == \
        (TransactionSource.SEAT_REVOKE, 0, "cancel_sub_t_alice:api_calls")


@pytest.mark.asyncio
async def test_organization_is_subscriber_and_manual_does_nothing():
    assert World(grant_to="organization").lifecycle.grant_to == GRANT_TO_SUBSCRIBER

    world = World(grant_to=GRANT_TO_MANUAL)
    sub = subscription()
    await world.lifecycle.on_subscription_created(sub)
    await world.lifecycle.on_subscription_renewed(sub, "in_1")
    await world.lifecycle.on_subscription_plan_changed(sub, "price_lite_m")
    await world.lifecycle.on_subscription_cancelled(sub)
    assert world.store.entries == []

# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

import asyncio

import pytest

from billing_credits.infra.economics.tests.helpers import MemoryStore, memory_credits
from billing_credits.infra.economics.types import (
    CreditError,
    ErrorCode,
    TransactionSource,
    TransactionType,
)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def credits(store):
    return memory_credits(store)


def replay(entries):
    total = 0
    for e in entries:
        total += e.amount
        assert e.balance_after == total
    return total


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, 1.5, True, "10"])
async def test_rejects_non_positive_amounts(credits, store, amount):
    for op in (credits.grant, credits.consume, credits.revoke):
        with pytest.raises(CreditError) as ei:
            await op("u1", "api_calls", amount)
        assert ei.value.code == ErrorCode.INVALID_AMOUNT
    assert store.entries == []


@pytest.mark.asyncio
async def test_grant_consume_and_history(credits, store):
    assert await credits.grant("u1", "api_calls", 100) == 100
    res = await credits.consume("u1", "api_calls", 30, description="3 exports")
    assert (res.success, res.balance) == (True, 70)
    assert await credits.has_credits("u1", "api_calls", 70)
    assert not await credits.has_credits("u1", "api_calls", 71)

    history = await credits.get_history("u1", key="api_calls")
    assert [h.transaction_type for h in history] == [TransactionType.CONSUME, TransactionType.GRANT]
    assert history[0].source == TransactionSource.USAGE
    assert history[0].amount == -30


@pytest.mark.asyncio
async def test_insufficient_consume_writes_nothing(credits, store):
    await credits.grant("u1", "api_calls", 5)
    res = await credits.consume("u1", "api_calls", 6)
    assert (res.success, res.balance) == (False, 5)
    assert len(store.entries) == 1


@pytest.mark.asyncio
async def test_idempotency_key_applies_once(credits, store):
    await credits.grant("u1", "api_calls", 100, idempotency_key="grant-1")
    with pytest.raises(CreditError) as ei:
        await credits.grant("u1", "api_calls", 999, idempotency_key="grant-1")
    assert ei.value.is_idempotency_conflict
    assert ei.value.data == {"idempotency_key": "grant-1"}
    assert await credits.get_balance("u1", "api_calls") == 100

    # keys are global, not per holder
    with pytest.raises(CreditError):
        await credits.consume("u2", "api_calls", 1, idempotency_key="grant-1")


@pytest.mark.asyncio
async def test_concurrent_consumers_never_overdraw(credits, store):
    await credits.grant("u1", "api_calls", 10)

    results = await asyncio.gather(*[credits.consume("u1", "api_calls", 3) for _ in range(8)])

    assert sum(r.success for r in results) == 3
    assert await credits.get_balance("u1", "api_calls") == 1
    assert replay(store.entries_for("u1", "api_calls")) == 1


@pytest.mark.asyncio
async def test_revoke_is_capped_by_balance(credits):
    await credits.grant("u1", "api_calls", 40)
    res = await credits.revoke("u1", "api_calls", 100, source=TransactionSource.CANCELLATION)
    assert (res.amount_revoked, res.balance, res.previous_balance) == (40, 0, 40)


@pytest.mark.asyncio
async def test_revoke_all_skips_empty_unless_recorded(credits, store):
    res = await credits.revoke_all("u1", "api_calls")
    assert res.amount_revoked == 0
    assert store.entries == []

    res = await credits.revoke_all("u1", "api_calls", record_empty=True, idempotency_key="cancel:api_calls")
    assert res.amount_revoked == 0
    assert [(e.amount, e.idempotency_key) for e in store.entries] == [(0, "cancel:api_calls")]


@pytest.mark.asyncio
async def test_revoke_all_for_holder_uses_prefixed_keys(credits, store):
    await credits.grant("u1", "api_calls", 10)
    await credits.grant("u1", "exports", 3, source=TransactionSource.TOPUP)
    await credits.grant("u2", "api_calls", 7)

    out = await credits.revoke_all_for_holder("u1", source=TransactionSource.CANCELLATION,
                                              idempotency_prefix="cancel_sub_1")

    assert {k: r.amount_revoked for k, r in out.items()} == {"api_calls": 10, "exports": 3}
    assert await credits.get_all_balances("u1") == {"api_calls": 0, "exports": 0}
    assert await credits.get_balance("u2", "api_calls") == 7
    keys = {e.idempotency_key for e in store.entries_for("u1") if e.transaction_type == TransactionType.REVOKE}
    assert keys == {"cancel_sub_1:api_calls", "cancel_sub_1:exports"}


@pytest.mark.asyncio
async def test_set_balance_brings_negative_balance_to_target(credits, store):
    await credits.consume("u1", "wallet", 250, allow_negative=True)
    assert await credits.get_balance("u1", "wallet") == -250

    res = await credits.set_balance("u1", "wallet", 1000, source=TransactionSource.RENEWAL)
    assert (res.previous_balance, res.balance, res.adjustment) == (-250, 1000, 1250)

    # same value again still leaves a zero entry behind
    res = await credits.set_balance("u1", "wallet", 1000, source=TransactionSource.RENEWAL)
    assert res.adjustment == 0
    entries = store.entries_for("u1", "wallet")
    assert [e.amount for e in entries] == [-250, 1250, 0]
    assert replay(entries) == 1000


@pytest.mark.asyncio
async def test_set_balance_rejects_negative_target(credits):
    with pytest.raises(CreditError) as ei:
        await credits.set_balance("u1", "api_calls", -1)
    assert ei.value.code == ErrorCode.INVALID_AMOUNT


@pytest.mark.asyncio
async def test_record_revoke_marker_moves_nothing(credits, store):
    await credits.grant("u1", "api_calls", 5, source=TransactionSource.TOPUP)
    res = await credits.record_revoke_marker("u1", "api_calls", source=TransactionSource.SEAT_REVOKE,
                                             source_id="sub_1")
    assert (res.amount_revoked, res.balance) == (0, 5)
    marker = store.entries[-1]
    assert (marker.source, marker.source_id, marker.amount) == (TransactionSource.SEAT_REVOKE, "sub_1", 0)


@pytest.mark.asyncio
async def test_every_history_replays_to_its_balance(credits, store):
    await credits.grant("u1", "api_calls", 100)
    await credits.consume("u1", "api_calls", 40)
    await credits.revoke("u1", "api_calls", 10)
    await credits.set_balance("u1", "api_calls", 500)
    await credits.consume("u1", "api_calls", 600)
    await credits.revoke_all("u1", "api_calls")

    assert replay(store.entries_for("u1", "api_calls")) == await credits.get_balance("u1", "api_calls") == 0

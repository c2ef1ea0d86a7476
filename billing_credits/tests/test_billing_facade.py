# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

import json

import pytest

from billing_credits import billing as billing_mod
from billing_credits.billing import BillingCallbacks, BillingCredits
from billing_credits.infra.economics.tests.helpers import PLANS, FakeGateway, make_settings


class StubPool:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


def build(**kw):
    settings = make_settings(BILLING_PLANS_JSON=json.dumps(PLANS), BILLING_SCHEMA="tenant_a",
                             CREDITS_GRANT_TO="organization")
    return BillingCredits(settings=settings, gateway=FakeGateway(), **kw)


@pytest.mark.asyncio
async def test_wires_components_over_one_pool():
    pool = StubPool()
    billing = build(pg_pool=pool)
    await billing.init()

    for component in (billing.ledger, billing.read_model, billing.failures, billing.directory, billing.usage_store):
        assert component.pool is pool
        assert component.schema == "tenant_a"
    assert billing.lifecycle.grant_to == "subscriber"
    assert billing.plans.plan_for_price("price_pro_m").name == "Pro"
    assert billing.topup.gateway is billing.gateway is billing.events.gateway
    assert billing.usage.store is billing.usage_store and billing.usage.gateway is billing.gateway
    assert billing.subscriptions.directory is billing.directory

    await billing.close()
    assert pool.closed is False


@pytest.mark.asyncio
async def test_owned_pool_is_closed(monkeypatch):
    pool = StubPool()

    async def fake_create(settings=None, **kw):
        return pool

    monkeypatch.setattr(billing_mod, "create_pg_pool", fake_create)
    billing = build()
    await billing.init()
    assert billing.ledger.pool is pool

    await billing.close()
    assert pool.closed is True


def test_callbacks_reach_engines():
    async def on_low(event):
        return None

    async def on_granted(event):
        return None

    billing = build(callbacks=BillingCallbacks(on_credits_low=on_low, on_credits_granted=on_granted))
    assert billing.topup.on_credits_low is on_low
    assert billing.topup.on_credits_granted is on_granted
    assert billing.lifecycle.on_credits_granted is on_granted

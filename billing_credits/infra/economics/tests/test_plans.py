# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

import json

import pytest

from billing_credits.infra.economics.lifecycle import plan_entitlements
from billing_credits.infra.economics.plans import BillingConfig, PlanResolver, scale_allocation
from billing_credits.infra.economics.tests.helpers import PLANS, make_settings, plan_resolver
from billing_credits.infra.economics.types import CreditError, ErrorCode


@pytest.mark.parametrize("interval,expected", [
    ("month", 1000),
    ("year", 12000),
    ("week", 250),
    ("one_time", 1000),
    (None, 1000),
])
def test_scale_allocation(interval, expected):
    assert scale_allocation(1000, interval) == expected


def test_weekly_scaling_rounds_up():
    assert scale_allocation(10, "week") == 3


def test_camel_case_config_parses():
    resolver = plan_resolver()
    pro = resolver.plan_for_price("price_pro_y")

    assert pro.name == "Pro"
    api = pro.features["api_calls"]
    assert (api.display_name, api.price_per_credit, api.min_per_purchase, api.max_per_purchase) == \
        ("API calls", 2, 50, 10000)
    assert (api.auto_topup.threshold, api.auto_topup.amount, api.auto_topup.max_per_month) == (100, 500, 3)
    assert pro.features["exports"].credits.on_renewal == "add"
    assert pro.wallet.auto_topup.max_per_month == 10
    assert resolver.plan_for_price("price_team_m").per_seat is True


def test_resolver_lookups():
    resolver = plan_resolver()
    assert resolver.plan_for_price("price_unknown") is None
    assert resolver.plan_for_price(None) is None
    assert resolver.interval_for_price("price_pro_w") == "week"
    assert resolver.interval_for_price("price_unknown") == "month"
    assert resolver.is_zero_cost_price("price_free")
    assert not resolver.is_zero_cost_price("price_pro_m")
    assert resolver.plan_for_price("price_free").is_free
    assert resolver.plan_for_price("price_free").grants_anything


def test_mode_selects_plan_set():
    config = BillingConfig.model_validate({"production": {"plans": [
        {"name": "Live", "price": [{"id": "price_live", "amount": 900}]},
    ]}})
    assert PlanResolver(config, mode="production").plan_for_price("price_live").name == "Live"
    assert PlanResolver(config, mode="test").plan_for_price("price_live") is None


def test_plan_entitlements_scale_wallet_in_milli_cents():
    pro = plan_resolver().plan_for_price("price_pro_w")
    ents = {e.key: e for e in plan_entitlements(pro, "week", "USD")}

    assert ents["api_calls"].amount == 250
    assert ents["exports"].amount == 3
    assert ents["wallet"].amount == 125_000
    assert ents["wallet"].currency == "usd"
    assert ents["exports"].on_renewal == "add"


def test_from_settings_reads_json_and_file(tmp_path):
    resolver = PlanResolver.from_settings(make_settings(BILLING_PLANS_JSON=json.dumps(PLANS)))
    assert resolver.plan_for_price("price_lite_m").name == "Lite"

    path = tmp_path / "plans.json"
    path.write_text(json.dumps(PLANS))
    resolver = PlanResolver.from_settings(make_settings(BILLING_PLANS_FILE=str(path)))
    assert len(resolver.plans) == 4

    assert PlanResolver.from_settings(make_settings()).plans == []

    with pytest.raises(CreditError) as ei:
        PlanResolver.from_settings(make_settings(BILLING_PLANS_FILE=str(tmp_path / "missing.json")))
    assert ei.value.code == ErrorCode.MISSING_CONFIG

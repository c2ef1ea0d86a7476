# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/plans.py
from __future__ import annotations

import json
import logging
import math
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from billing_credits.config import Settings
from billing_credits.infra.economics.types import CreditError, ErrorCode

logger = logging.getLogger(__name__)

PriceInterval = Literal["month", "year", "week", "one_time"]
RenewalPolicy = Literal["reset", "add"]


def scale_allocation(base: int, interval: Optional[str]) -> int:
    """
    A renewal fires once per billing interval, so the holder gets the whole
    interval's worth at once: month x1, year x12, week ceil(base / 4).
    Unknown / one-time intervals are treated as monthly.
    """
    base = int(base)
    if interval == "year":
        return base * 12
    if interval == "week":
        return math.ceil(base / 4)
    return base


class _Model(BaseModel):
    # accept both snake_case and the camelCase of the JSON billing config
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)


class PriceConfig(_Model):
    id: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    interval: PriceInterval = "month"

    @field_validator("currency")
    @classmethod
    def _lower(cls, v: str) -> str:
        return (v or "usd").lower()


class AutoTopUpConfig(_Model):
    threshold: int
    amount: int
    max_per_month: int = 10

    def is_valid(self) -> bool:
        return self.threshold > 0 and self.amount > 0 and self.max_per_month > 0


class CreditAllocation(_Model):
    allocation: int
    on_renewal: RenewalPolicy = "reset"


class FeatureConfig(_Model):
    display_name: Optional[str] = None
    # price of one credit in the smallest currency unit
    price_per_credit: Optional[int] = None
    min_per_purchase: int = 1
    max_per_purchase: Optional[int] = None
    auto_topup: Optional[AutoTopUpConfig] = Field(default=None, alias="autoTopUp")
    credits: Optional[CreditAllocation] = None
    # metered billing: usage is reported to a Stripe meter billed through metered_price_id
    track_usage: bool = False
    metered_price_id: Optional[str] = None

    def missing_usage_config(self) -> List[str]:
        missing = []
        if not self.track_usage:
            missing.append("trackUsage: true")
        if self.price_per_credit is None:
            missing.append("pricePerCredit")
        return missing

    @property
    def usage_tracking_enabled(self) -> bool:
        return not self.missing_usage_config()


class WalletConfig(_Model):
    # cents
    allocation: int = 0
    on_renewal: RenewalPolicy = "reset"
    min_per_purchase: int = 1
    max_per_purchase: Optional[int] = None
    auto_topup: Optional[AutoTopUpConfig] = Field(default=None, alias="autoTopUp")


class Plan(_Model):
    id: Optional[str] = None
    name: str
    price: List[PriceConfig] = Field(default_factory=list)
    features: Dict[str, FeatureConfig] = Field(default_factory=dict)
    wallet: Optional[WalletConfig] = None
    per_seat: bool = False

    @property
    def credit_allocations(self) -> Dict[str, CreditAllocation]:
        return {k: f.credits for k, f in self.features.items() if f.credits is not None}

    @property
    def grants_anything(self) -> bool:
        return bool(self.credit_allocations) or bool(self.wallet and self.wallet.allocation > 0)

    @property
    def is_free(self) -> bool:
        return all(p.amount == 0 for p in self.price)

    def price_by_id(self, price_id: str) -> Optional[PriceConfig]:
        return next((p for p in self.price if p.id == price_id), None)


class ModeConfig(_Model):
    plans: List[Plan] = Field(default_factory=list)


class BillingConfig(_Model):
    test: ModeConfig = Field(default_factory=ModeConfig)
    production: ModeConfig = Field(default_factory=ModeConfig)


class PlanResolver:
    """Pure lookup: price id -> plan definition for the active mode."""

    def __init__(self, config: Optional[BillingConfig] = None, *, mode: str = "test"):
        self.config = config or BillingConfig()
        self.mode = mode if mode in ("test", "production") else "test"

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlanResolver":
        raw = settings.BILLING_PLANS_JSON
        if not raw and settings.BILLING_PLANS_FILE:
            try:
                with open(settings.BILLING_PLANS_FILE, "r") as f:
                    raw = f.read()
            except OSError as e:
                raise CreditError(f"Cannot read billing plans file: {e}", code=ErrorCode.MISSING_CONFIG)
        if not raw:
            logger.warning("No billing plans configured (BILLING_PLANS_JSON / BILLING_PLANS_FILE)")
            return cls(BillingConfig(), mode=settings.BILLING_MODE)
        return cls(BillingConfig.model_validate(json.loads(raw)), mode=settings.BILLING_MODE)

    @property
    def plans(self) -> List[Plan]:
        return list(getattr(self.config, self.mode).plans)

    def plan_for_price(self, price_id: Optional[str]) -> Optional[Plan]:
        if not price_id:
            return None
        return next((p for p in self.plans if p.price_by_id(price_id)), None)

    def price(self, price_id: Optional[str]) -> Optional[PriceConfig]:
        plan = self.plan_for_price(price_id)
        return plan.price_by_id(price_id) if plan else None

    def interval_for_price(self, price_id: Optional[str]) -> str:
        p = self.price(price_id)
        return p.interval if p else "month"

    def is_zero_cost_price(self, price_id: Optional[str]) -> bool:
        p = self.price(price_id)
        return p is not None and p.amount == 0

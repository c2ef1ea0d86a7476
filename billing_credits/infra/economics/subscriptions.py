# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/subscriptions.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from billing_credits.infra.economics.directory import StripeDirectory, SubscriptionInfo
from billing_credits.infra.economics.plans import PlanResolver

ACTIVE_STATUSES = ("active", "trialing")


@dataclass(frozen=True)
class PlanRef:
    id: str
    name: str
    price_id: str


@dataclass(frozen=True)
class Subscription:
    id: str
    status: str
    plan: Optional[PlanRef]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class SubscriptionQueries:
    """
    Read-only view of a holder's subscriptions, with the configured plan
    resolved from the first item's price. A holder without a Stripe customer
    simply has none.
    """

    def __init__(self, *, directory: StripeDirectory, plans: PlanResolver):
        self.directory = directory
        self.plans = plans

    async def is_active(self, holder_id: str) -> bool:
        return any(s.is_active for s in await self.list(holder_id))

    async def get(self, holder_id: str) -> Optional[Subscription]:
        """The latest active/trialing subscription, else the latest one of any status."""
        subs = await self.list(holder_id)
        if not subs:
            return None
        return next((s for s in subs if s.is_active), subs[0])

    async def list(self, holder_id: str) -> List[Subscription]:
        customer = await self.directory.get_customer_for_holder(holder_id)
        if not customer:
            return []
        return [self._to_subscription(s) for s in await self.directory.list_subscriptions(customer.id)]

    def _to_subscription(self, info: SubscriptionInfo) -> Subscription:
        plan = self.plans.plan_for_price(info.price_id)
        return Subscription(
            id=info.id,
            status=info.status,
            plan=PlanRef(id=plan.id or plan.name, name=plan.name, price_id=info.price_id) if plan else None,
            current_period_start=info.current_period_start,
            current_period_end=info.current_period_end,
            cancel_at_period_end=info.cancel_at_period_end,
        )

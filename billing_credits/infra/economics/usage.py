# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/usage.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Tuple

import asyncpg

from billing_credits.infra.economics.directory import CustomerRef, StripeDirectory, SubscriptionRef
from billing_credits.infra.economics.plans import FeatureConfig, Plan, PlanResolver
from billing_credits.infra.economics import stripe_objects as so
from billing_credits.infra.economics.stripe import StripeChargeGateway
from billing_credits.infra.economics.types import CreditError, ErrorCode
from billing_credits.infra.namespaces import BILLING

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def meter_event_name(key: str) -> str:
    """'API Calls' -> 'api_calls'; Stripe caps meter event names at 40 chars."""
    return re.sub(r"_+", "_", re.sub(r"[^a-z0-9_]", "_", key.lower()))[:40]


def calendar_month(now: datetime) -> Tuple[datetime, datetime]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    end = start.replace(year=start.year + 1, month=1) if start.month == 12 else start.replace(month=start.month + 1)
    return start, end


@dataclass(frozen=True)
class UsageEvent:
    id: Optional[int]
    holder_id: str
    key: str
    amount: int
    stripe_meter_event_id: Optional[str]
    period_start: datetime
    period_end: datetime
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, r: Any) -> "UsageEvent":
        return cls(
            id=int(r["id"]),
            holder_id=r["holder_id"],
            key=r["key"],
            amount=int(r["amount"]),
            stripe_meter_event_id=r["stripe_meter_event_id"],
            period_start=r["period_start"],
            period_end=r["period_end"],
            created_at=r["created_at"],
        )


@dataclass(frozen=True)
class UsageSummary:
    total_amount: int
    event_count: int
    # total_amount x pricePerCredit, smallest currency unit
    estimated_cost: int
    currency: str
    period_start: datetime
    period_end: datetime


class UsageStore:
    """usage_events: local record of what was reported to Stripe meters."""

    TABLE = BILLING.TABLES.USAGE_EVENTS
    _COLUMNS = "id, holder_id, key, amount, stripe_meter_event_id, period_start, period_end, created_at"

    def __init__(self, pg_pool: Optional[asyncpg.Pool] = None, *, schema: str = BILLING.DEFAULT_SCHEMA):
        self._pg_pool = pg_pool
        self.schema = schema

    def set_pg_pool(self, pg_pool: asyncpg.Pool) -> None:
        self._pg_pool = pg_pool

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pg_pool is None:
            raise CreditError("Database pool not initialized", code=ErrorCode.NO_DATABASE)
        return self._pg_pool

    async def insert_event(self, *, holder_id: str, key: str, amount: int, stripe_meter_event_id: Optional[str],
                           period_start: datetime, period_end: datetime) -> UsageEvent:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                INSERT INTO {self.schema}.{self.TABLE}
                    (holder_id, key, amount, stripe_meter_event_id, period_start, period_end)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING {self._COLUMNS}
            """, holder_id, key, int(amount), stripe_meter_event_id, period_start, period_end)
        return UsageEvent.from_row(row)

    async def get_summary(self, holder_id: str, key: str, period_start: datetime,
                          period_end: datetime) -> Tuple[int, int]:
        """(total amount, event count) within one billing period."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT COALESCE(SUM(amount), 0) AS total_amount, COUNT(*) AS event_count
                FROM {self.schema}.{self.TABLE}
                WHERE holder_id = $1 AND key = $2 AND period_start = $3 AND period_end = $4
            """, holder_id, key, period_start, period_end)
        return int(row["total_amount"]), int(row["event_count"])

    async def get_history(self, holder_id: str, key: str, *, limit: int = 50, offset: int = 0) -> List[UsageEvent]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {self._COLUMNS}
                FROM {self.schema}.{self.TABLE}
                WHERE holder_id = $1 AND key = $2
                ORDER BY created_at DESC, id DESC
                LIMIT $3 OFFSET $4
            """, holder_id, key, int(limit), int(offset))
        return [UsageEvent.from_row(r) for r in rows]


class UsageMeter:
    """
    Metered billing for features with `trackUsage: true` and a `pricePerCredit`.

    record() reports to the Stripe meter first, then stores a local copy for
    summaries. The meter event is what gets billed: when the local insert
    fails the usage is still billed, only the local summary misses it.
    Usage is independent from credit balances; consume() is the credit path.
    """

    def __init__(
            self,
            *,
            store: UsageStore,
            plans: PlanResolver,
            directory: StripeDirectory,
            gateway: StripeChargeGateway,
            clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.plans = plans
        self.directory = directory
        self.gateway = gateway
        self.clock = clock

    async def record(self, holder_id: str, key: str, amount: int, *,
                     timestamp: Optional[datetime] = None) -> UsageEvent:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise CreditError("Amount must be a positive integer", code=ErrorCode.INVALID_AMOUNT,
                              data={"amount": amount})
        customer, sub, plan, _ = await self._resolve(holder_id, key)
        period_start, period_end = self._period(sub)
        timestamp = timestamp or self.clock()
        if not (period_start <= timestamp <= period_end):
            raise CreditError(
                f"Timestamp must be within the current billing period "
                f"({period_start.isoformat()} to {period_end.isoformat()})",
                code=ErrorCode.INVALID_AMOUNT,
                data={"timestamp": timestamp.isoformat()},
            )

        meter_event_id = await self.gateway.create_meter_event(
            event_name=meter_event_name(key),
            customer_id=customer.id,
            value=amount,
            timestamp=int(timestamp.timestamp()),
        )
        try:
            return await self.store.insert_event(holder_id=holder_id, key=key, amount=amount,
                                                 stripe_meter_event_id=meter_event_id,
                                                 period_start=period_start, period_end=period_end)
        except (asyncpg.PostgresError, OSError, CreditError):
            logger.exception("Usage of %s %s sent to Stripe (meter event %s) but not stored locally",
                             holder_id, key, meter_event_id)
            return UsageEvent(id=None, holder_id=holder_id, key=key, amount=amount,
                              stripe_meter_event_id=meter_event_id,
                              period_start=period_start, period_end=period_end, created_at=self.clock())

    async def get_summary(self, holder_id: str, key: str) -> UsageSummary:
        _, sub, plan, feature = await self._resolve(holder_id, key)
        period_start, period_end = self._period(sub)
        total, count = await self.store.get_summary(holder_id, key, period_start, period_end)
        return UsageSummary(
            total_amount=total,
            event_count=count,
            estimated_cost=total * (feature.price_per_credit or 0),
            currency=plan.price[0].currency if plan.price else sub.currency,
            period_start=period_start,
            period_end=period_end,
        )

    async def get_history(self, holder_id: str, key: str, *, limit: int = 50, offset: int = 0) -> List[UsageEvent]:
        return await self.store.get_history(holder_id, key, limit=limit, offset=offset)

    async def enable_for_holder(self, holder_id: str, key: str) -> bool:
        """
        Adds the feature's metered price to an existing subscription (holders
        who subscribed before tracking was turned on). False when already there.
        """
        _, sub, _, feature = await self._resolve(holder_id, key)
        if not feature.metered_price_id:
            raise CreditError(f'Metered price not configured for feature "{key}"',
                              code=ErrorCode.METERED_PRICE_NOT_CONFIGURED, data={"key": key})
        if await self._has_price(sub.id, feature.metered_price_id):
            return False
        try:
            await self.gateway.add_subscription_item(subscription_id=sub.id, price_id=feature.metered_price_id)
        except CreditError:
            # a concurrent call may have added it first
            if await self._has_price(sub.id, feature.metered_price_id):
                return False
            raise
        logger.info("Metered price %s added to %s for %s", feature.metered_price_id, sub.id, holder_id)
        return True

    # ---------------- internals ----------------

    async def _resolve(self, holder_id: str, key: str) -> Tuple[CustomerRef, SubscriptionRef, Plan, FeatureConfig]:
        customer = await self.directory.get_customer_for_holder(holder_id)
        if not customer or customer.deleted:
            raise CreditError(f'No Stripe customer found for "{holder_id}"', code=ErrorCode.USER_NOT_FOUND,
                              data={"holder_id": holder_id})
        sub = await self.directory.get_active_subscription(customer.id)
        if not sub:
            raise CreditError(f'No active subscription found for "{holder_id}"', code=ErrorCode.NO_SUBSCRIPTION,
                              data={"holder_id": holder_id, "customer_id": customer.id})
        plan = self.plans.plan_for_price(sub.price_id)
        if not plan:
            raise CreditError("Could not identify plan for the subscription", code=ErrorCode.TRACKING_NOT_ENABLED,
                              data={"subscription_id": sub.id})
        feature = plan.features.get(key)
        if not feature:
            raise CreditError(f'Feature "{key}" not found in plan "{plan.name}"',
                              code=ErrorCode.TRACKING_NOT_ENABLED, data={"key": key, "plan": plan.name})
        missing = feature.missing_usage_config()
        if missing:
            raise CreditError(
                f'Usage tracking not enabled for feature "{key}". Add {" and ".join(missing)} to the feature config.',
                code=ErrorCode.TRACKING_NOT_ENABLED,
                data={"key": key, "missing_config": missing},
            )
        return customer, sub, plan, feature

    def _period(self, sub: SubscriptionRef) -> Tuple[datetime, datetime]:
        if sub.current_period_start and sub.current_period_end:
            return sub.current_period_start, sub.current_period_end
        # period not mirrored yet: bucket by calendar month
        return calendar_month(self.clock())

    async def _has_price(self, subscription_id: str, price_id: str) -> bool:
        sub = await self.gateway.retrieve_subscription(subscription_id)
        items = so.field(so.field(sub, "items"), "data") or []
        return any(so.obj_id(so.field(item, "price")) == price_id for item in items)

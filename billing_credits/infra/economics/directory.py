# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/directory.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import asyncpg

from billing_credits.infra.economics.types import CreditError, ErrorCode
from billing_credits.infra.namespaces import BILLING


@dataclass(frozen=True)
class CustomerRef:
    id: str
    deleted: bool = False
    default_payment_method: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionRef:
    id: str
    price_id: str
    currency: str = "usd"
    item_id: Optional[str] = None
    quantity: int = 1
    metadata: Dict[str, str] = field(default_factory=dict)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionInfo:
    """Any subscription of a customer, whatever its status."""
    id: str
    status: str
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


def _epoch(v: Any) -> Optional[datetime]:
    # mirrored periods are unix seconds
    if v is None:
        return None
    if isinstance(v, datetime):
        return v
    return datetime.fromtimestamp(int(v), tz=timezone.utc)


class StripeDirectory:
    """
    Read-only lookups over the Stripe objects mirrored into <schema> by the sync engine.
    Holder <-> customer comes from user_stripe_customer_map.
    """

    T = BILLING.TABLES

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

    async def get_customer_for_holder(self, holder_id: str) -> Optional[CustomerRef]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT c.id,
                       COALESCE(c.deleted, FALSE) AS deleted,
                       c.invoice_settings->>'default_payment_method' AS default_payment_method
                FROM {self.schema}.{self.T.CUSTOMER_MAP} m
                JOIN {self.schema}.{self.T.CUSTOMERS} c ON c.id = m.stripe_customer_id
                WHERE m.user_id = $1
            """, holder_id)
        if not row:
            return None
        return CustomerRef(id=row["id"], deleted=bool(row["deleted"]),
                           default_payment_method=row["default_payment_method"])

    async def get_holder_for_customer(self, customer_id: str) -> Optional[str]:
        async with self.pool.acquire() as conn:
            v = await conn.fetchval(f"""
                SELECT user_id FROM {self.schema}.{self.T.CUSTOMER_MAP}
                WHERE stripe_customer_id = $1
            """, customer_id)
            if v:
                return v
            # customers created outside the map still carry user_id in metadata
            return await conn.fetchval(f"""
                SELECT metadata->>'user_id' FROM {self.schema}.{self.T.CUSTOMERS} WHERE id = $1
            """, customer_id)

    async def get_active_subscription(self, customer_id: str) -> Optional[SubscriptionRef]:
        # trialing / past_due still have a valid plan
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT s.id, s.metadata, s.current_period_start, s.current_period_end,
                       si.id AS item_id, si.price, COALESCE(si.quantity, 1) AS quantity, p.currency
                FROM {self.schema}.{self.T.SUBSCRIPTIONS} s
                JOIN {self.schema}.{self.T.SUBSCRIPTION_ITEMS} si ON si.subscription = s.id
                JOIN {self.schema}.{self.T.PRICES} p ON p.id = si.price
                WHERE s.customer = $1 AND s.status IN ('active', 'trialing', 'past_due')
                ORDER BY s.created DESC
                LIMIT 1
            """, customer_id)
        if not row:
            return None
        md = row["metadata"] or {}
        return SubscriptionRef(
            id=row["id"],
            price_id=row["price"],
            currency=(row["currency"] or "usd").lower(),
            item_id=row["item_id"],
            quantity=int(row["quantity"]),
            metadata={str(k): str(v) for k, v in md.items() if v is not None} if isinstance(md, dict) else {},
            current_period_start=_epoch(row["current_period_start"]),
            current_period_end=_epoch(row["current_period_end"]),
        )

    async def list_subscriptions(self, customer_id: str) -> List[SubscriptionInfo]:
        """Every subscription of the customer, latest period first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT s.id, s.status::text AS status, s.current_period_start, s.current_period_end,
                       COALESCE(s.cancel_at_period_end, FALSE) AS cancel_at_period_end,
                       (SELECT si.price FROM {self.schema}.{self.T.SUBSCRIPTION_ITEMS} si
                        WHERE si.subscription = s.id ORDER BY si.created LIMIT 1) AS price_id
                FROM {self.schema}.{self.T.SUBSCRIPTIONS} s
                WHERE s.customer = $1
                ORDER BY s.current_period_end DESC NULLS LAST, s.created DESC
            """, customer_id)
        return [
            SubscriptionInfo(
                id=r["id"],
                status=r["status"],
                price_id=r["price_id"],
                current_period_start=_epoch(r["current_period_start"]),
                current_period_end=_epoch(r["current_period_end"]),
                cancel_at_period_end=bool(r["cancel_at_period_end"]),
            )
            for r in rows
        ]

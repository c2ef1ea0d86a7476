# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/read_model.py
from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import asyncpg

from billing_credits.infra.economics.types import (
    CreditError,
    CreditTransaction,
    ErrorCode,
    SEAT_SOURCES,
    SUBSCRIPTION_SOURCES,
    TransactionSource,
)
from billing_credits.infra.namespaces import BILLING

"""
Read-only projections over the ledger store.

Seat membership and "net credits granted by a subscription" are NOT stored anywhere:
they are derived from the ledger on every read (latest seat_grant / seat_revoke entry
per holder wins), so there is no second source of truth to drift.
"""

_SEAT_SOURCES = [s.value for s in SEAT_SOURCES]
_SUBSCRIPTION_SOURCES = [s.value for s in SUBSCRIPTION_SOURCES]
_TOPUP_SOURCES = [TransactionSource.TOPUP.value, TransactionSource.AUTO_TOPUP.value]


class LedgerReadModel:
    BALANCES = BILLING.TABLES.BALANCES
    LEDGER = BILLING.TABLES.LEDGER

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

    # ---------- balances ----------

    async def get_balance(self, holder_id: str, key: str) -> int:
        async with self.pool.acquire() as conn:
            v = await conn.fetchval(f"""
                SELECT balance FROM {self.schema}.{self.BALANCES}
                WHERE holder_id = $1 AND key = $2
            """, holder_id, key)
        return int(v) if v is not None else 0

    async def get_balance_with_currency(self, holder_id: str, key: str) -> Tuple[int, Optional[str]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT balance, currency FROM {self.schema}.{self.BALANCES}
                WHERE holder_id = $1 AND key = $2
            """, holder_id, key)
        if not row:
            return 0, None
        return int(row["balance"]), row["currency"]

    async def get_all_balances(self, holder_id: str) -> Dict[str, int]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT key, balance FROM {self.schema}.{self.BALANCES}
                WHERE holder_id = $1
                ORDER BY key
            """, holder_id)
        return {r["key"]: int(r["balance"]) for r in rows}

    # ---------- history ----------

    async def get_history(
            self,
            holder_id: str,
            *,
            key: Optional[str] = None,
            limit: int = 50,
            offset: int = 0,
    ) -> List[CreditTransaction]:
        args: list = [holder_id]
        where = "holder_id = $1"
        if key:
            args.append(key)
            where += f" AND key = ${len(args)}"
        args.extend([int(limit), int(offset)])
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT id, holder_id, key, amount, balance_after, transaction_type,
                       source, source_id, description, metadata, idempotency_key, created_at
                FROM {self.schema}.{self.LEDGER}
                WHERE {where}
                ORDER BY created_at DESC, id DESC
                LIMIT ${len(args) - 1} OFFSET ${len(args)}
            """, *args)
        return [CreditTransaction.from_row(r) for r in rows]

    async def idempotency_key_exists(self, idempotency_key: str) -> bool:
        async with self.pool.acquire() as conn:
            v = await conn.fetchval(f"""
                SELECT 1 FROM {self.schema}.{self.LEDGER} WHERE idempotency_key = $1
            """, idempotency_key)
        return v is not None

    async def count_auto_topups_this_month(self, holder_id: str, key: str) -> int:
        async with self.pool.acquire() as conn:
            v = await conn.fetchval(f"""
                SELECT COUNT(*) FROM {self.schema}.{self.LEDGER}
                WHERE holder_id = $1
                  AND key = $2
                  AND source = $3
                  AND created_at >= date_trunc('month', NOW() AT TIME ZONE 'UTC') AT TIME ZONE 'UTC'
            """, holder_id, key, TransactionSource.AUTO_TOPUP.value)
        return int(v or 0)

    # ---------- seat attribution ----------

    async def get_active_seat_users(self, subscription_id: str) -> List[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT holder_id FROM (
                    SELECT DISTINCT ON (holder_id) holder_id, source
                    FROM {self.schema}.{self.LEDGER}
                    WHERE source_id = $1
                      AND source = ANY($2::text[])
                    ORDER BY holder_id, created_at DESC, id DESC
                ) latest
                WHERE source = 'seat_grant'
                ORDER BY holder_id
            """, subscription_id, _SEAT_SOURCES)
        return [r["holder_id"] for r in rows]

    async def get_user_seat_subscription(self, holder_id: str) -> Optional[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT source_id FROM (
                    SELECT DISTINCT ON (source_id) source_id, source, created_at, id
                    FROM {self.schema}.{self.LEDGER}
                    WHERE holder_id = $1
                      AND source = ANY($2::text[])
                      AND source_id IS NOT NULL
                    ORDER BY source_id, created_at DESC, id DESC
                ) latest
                WHERE source = 'seat_grant'
                ORDER BY created_at DESC, id DESC
                LIMIT 1
            """, holder_id, _SEAT_SOURCES)
        return rows[0]["source_id"] if rows else None

    async def is_seat_active(self, holder_id: str, subscription_id: str, seat_user: str) -> bool:
        """
        Seat entries carry metadata.seat_user, so a pooled holder (the org in
        subscriber mode) can tell its seats apart. Latest entry wins.
        """
        async with self.pool.acquire() as conn:
            v = await conn.fetchval(f"""
                SELECT source FROM {self.schema}.{self.LEDGER}
                WHERE holder_id = $1
                  AND source_id = $2
                  AND source = ANY($3::text[])
                  AND metadata->>'seat_user' = $4
                ORDER BY created_at DESC, id DESC
                LIMIT 1
            """, holder_id, subscription_id, _SEAT_SOURCES, seat_user)
        return v == TransactionSource.SEAT_GRANT.value

    async def count_seat_revocations(self, holder_id: str, subscription_id: str,
                                     seat_user: Optional[str] = None) -> int:
        """Seat generation counter: re-adding a removed seat must not collide with the first add's keys."""
        args: list = [holder_id, subscription_id]
        where = "holder_id = $1 AND source_id = $2 AND source = 'seat_revoke'"
        if seat_user is not None:
            args.append(seat_user)
            where += f" AND metadata->>'seat_user' = ${len(args)}"
        async with self.pool.acquire() as conn:
            v = await conn.fetchval(f"""
                SELECT COUNT(*) FROM {self.schema}.{self.LEDGER} WHERE {where}
            """, *args)
        return int(v or 0)

    async def get_seat_credits_granted(self, holder_id: str, subscription_id: str, seat_user: str) -> Dict[str, int]:
        """Net seat grants of one seat user on `holder_id`; only keys > 0."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT key, SUM(amount) AS net_amount
                FROM {self.schema}.{self.LEDGER}
                WHERE holder_id = $1
                  AND source_id = $2
                  AND source = ANY($3::text[])
                  AND metadata->>'seat_user' = $4
                GROUP BY key
                HAVING SUM(amount) > 0
            """, holder_id, subscription_id, _SEAT_SOURCES, seat_user)
        return {r["key"]: int(r["net_amount"]) for r in rows}

    async def get_topup_credits_since_reset(self, holder_id: str, key: str) -> int:
        """Top-up grants on `key` after its latest `adjust` entry (a renewal reset or manual set)."""
        async with self.pool.acquire() as conn:
            v = await conn.fetchval(f"""
                SELECT COALESCE(SUM(amount), 0) FROM {self.schema}.{self.LEDGER}
                WHERE holder_id = $1
                  AND key = $2
                  AND source = ANY($3::text[])
                  AND amount > 0
                  AND id > COALESCE((
                      SELECT MAX(id) FROM {self.schema}.{self.LEDGER}
                      WHERE holder_id = $1 AND key = $2 AND transaction_type = 'adjust'
                  ), 0)
            """, holder_id, key, _TOPUP_SOURCES)
        return int(v or 0)

    async def get_credits_granted_by_source(self, holder_id: str, source_id: str) -> Dict[str, int]:
        """Net (grants minus revocations) per key that `source_id` is accountable for; only keys > 0."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT key, SUM(amount) AS net_amount
                FROM {self.schema}.{self.LEDGER}
                WHERE holder_id = $1
                  AND source_id = $2
                  AND source = ANY($3::text[])
                GROUP BY key
                HAVING SUM(amount) > 0
            """, holder_id, source_id, _SUBSCRIPTION_SOURCES)
        return {r["key"]: int(r["net_amount"]) for r in rows}

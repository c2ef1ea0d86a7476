# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/ledger.py
from __future__ import annotations

import logging
from typing import Optional, Tuple

import asyncpg

from billing_credits.infra.economics.types import (
    ConsumeResult,
    CreditError,
    ErrorCode,
    LedgerMeta,
    RevokeResult,
    SetBalanceResult,
)
from billing_credits.infra.namespaces import BILLING

logger = logging.getLogger(__name__)


class _InsufficientBalance(Exception):
    # raised inside the transaction so it rolls back, caught right outside
    def __init__(self, balance: int):
        super().__init__(balance)
        self.balance = balance


class CreditLedger:
    """
    Atomic balance mutations over <schema>.credit_balances + <schema>.credit_ledger.

    Every primitive is ONE transaction:
      1) ensure the (holder_id, key) balance row exists (so FOR UPDATE has a target)
      2) SELECT ... FOR UPDATE on that row
      3) compute the new balance, UPDATE the row
      4) append exactly one ledger entry (balance_after = new balance)
    Any failure rolls the whole thing back. A unique violation on idempotency_key
    surfaces as CreditError(code=IDEMPOTENCY_CONFLICT).
    """

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

    # ---------------- primitives ----------------

    async def atomic_add(self, holder_id: str, key: str, amount: int, meta: LedgerMeta) -> int:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current, _ = await self._lock_balance(conn, holder_id, key, currency=meta.currency)
                new_balance = current + amount
                await self._write_balance(conn, holder_id, key, new_balance, currency=meta.currency)
                await self._write_ledger_entry(conn, holder_id, key, amount, new_balance, meta)
        return new_balance

    async def atomic_consume(
            self,
            holder_id: str,
            key: str,
            amount: int,
            meta: LedgerMeta,
            *,
            allow_negative: bool = False,
    ) -> ConsumeResult:
        """
        Insufficient balance returns ConsumeResult(success=False) and leaves no trace
        (not even the lazily created balance row). allow_negative is for metered
        wallet spend, which the next reset renewal forgives.
        """
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    current, _ = await self._lock_balance(conn, holder_id, key)
                    if current < amount and not allow_negative:
                        raise _InsufficientBalance(current)
                    new_balance = current - amount
                    await self._write_balance(conn, holder_id, key, new_balance)
                    await self._write_ledger_entry(conn, holder_id, key, -amount, new_balance, meta)
        except _InsufficientBalance as e:
            return ConsumeResult(success=False, balance=e.balance)
        return ConsumeResult(success=True, balance=new_balance)

    async def atomic_revoke(self, holder_id: str, key: str, max_amount: int, meta: LedgerMeta) -> RevokeResult:
        """
        Revokes min(max_amount, balance); never drives the balance negative.
        The entry is written even when nothing was revoked, so the idempotency
        key (and a seat_revoke marker) still lands.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current, _ = await self._lock_balance(conn, holder_id, key)
                revoked = max(0, min(max_amount, current))
                new_balance = current - revoked
                await self._write_balance(conn, holder_id, key, new_balance)
                await self._write_ledger_entry(conn, holder_id, key, -revoked, new_balance, meta)
        return RevokeResult(amount_revoked=revoked, balance=new_balance)

    async def atomic_set(self, holder_id: str, key: str, new_balance: int, meta: LedgerMeta) -> SetBalanceResult:
        """One `adjust` entry of (new_balance - previous), zero included."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                previous, _ = await self._lock_balance(conn, holder_id, key, currency=meta.currency)
                await self._write_balance(conn, holder_id, key, new_balance, currency=meta.currency)
                await self._write_ledger_entry(conn, holder_id, key, new_balance - previous, new_balance, meta)
        return SetBalanceResult(previous_balance=previous, balance=new_balance)

    # ---------------- internals ----------------

    async def _lock_balance(
            self,
            conn: asyncpg.Connection,
            holder_id: str,
            key: str,
            *,
            currency: Optional[str] = None,
    ) -> Tuple[int, Optional[str]]:
        await conn.execute(f"""
            INSERT INTO {self.schema}.{self.BALANCES} (holder_id, key, balance, currency)
            VALUES ($1, $2, 0, $3)
            ON CONFLICT (holder_id, key) DO NOTHING
        """, holder_id, key, currency)

        row = await conn.fetchrow(f"""
            SELECT balance, currency
            FROM {self.schema}.{self.BALANCES}
            WHERE holder_id = $1 AND key = $2
            FOR UPDATE
        """, holder_id, key)
        if not row:
            raise RuntimeError(f"Failed to lock balance row ({holder_id}, {key})")
        return int(row["balance"]), row["currency"]

    async def _write_balance(
            self,
            conn: asyncpg.Connection,
            holder_id: str,
            key: str,
            balance: int,
            *,
            currency: Optional[str] = None,
    ) -> None:
        await conn.execute(f"""
            UPDATE {self.schema}.{self.BALANCES}
            SET balance = $3,
                currency = COALESCE(currency, $4),
                updated_at = NOW()
            WHERE holder_id = $1 AND key = $2
        """, holder_id, key, balance, currency)

    async def _write_ledger_entry(
            self,
            conn: asyncpg.Connection,
            holder_id: str,
            key: str,
            amount: int,
            balance_after: int,
            meta: LedgerMeta,
    ) -> None:
        try:
            await conn.execute(f"""
                INSERT INTO {self.schema}.{self.LEDGER} (
                  holder_id, key, amount, balance_after,
                  transaction_type, source, source_id,
                  description, metadata, idempotency_key
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10)
            """,
                holder_id, key, amount, balance_after,
                meta.transaction_type.value, meta.source.value, meta.source_id,
                meta.description, meta.metadata, meta.idempotency_key,
            )
        except asyncpg.UniqueViolationError:
            if not meta.idempotency_key:
                raise
            raise CreditError(
                "Operation already processed",
                code=ErrorCode.IDEMPOTENCY_CONFLICT,
                data={"idempotency_key": meta.idempotency_key},
            )

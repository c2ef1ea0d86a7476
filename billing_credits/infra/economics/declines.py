# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/declines.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import asyncpg

from billing_credits.infra.economics.types import CreditError, ErrorCode
from billing_credits.infra.namespaces import BILLING

"""
Decline classification + cooldown gate for automatic charges.

States per (holder, key):
  clear         -> no topup_failures row
  soft-blocked  -> decline_type=soft, retry allowed once last_failure_at + cooldown has passed
  escalated     -> soft, but failure_count reached the escalation threshold: treated as hard
  hard-blocked  -> decline_type=hard, no cooldown; only recovery clears it

Recovery (successful charge, changed default payment method, manual unblock) deletes the row.
"""

HARD_DECLINE_CODES = frozenset({
    "expired_card",
    "stolen_card",
    "lost_card",
    "pickup_card",
    "fraudulent",
    "invalid_account",
    "restricted_card",
    "invalid_cvc",
    "incorrect_cvc",
    "invalid_number",
    "incorrect_number",
})

# Known temporary declines. Anything not in HARD_DECLINE_CODES is soft, listed or not.
SOFT_DECLINE_CODES = frozenset({
    "insufficient_funds",
    "card_velocity_exceeded",
    "withdrawal_count_limit_exceeded",
    "authentication_required",
    "issuer_not_available",
    "processing_error",
    "try_again_later",
    "do_not_honor",
    "generic_decline",
    "call_issuer",
    "duplicate_transaction",
})

DEFAULT_COOLDOWN = timedelta(hours=24)
DEFAULT_ESCALATION_FAILURES = 3


def classify_decline(decline_code: Optional[str]) -> str:
    return "hard" if (decline_code or "").lower() in HARD_DECLINE_CODES else "soft"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AutoTopUpStatus:
    holder_id: str
    key: str
    payment_method_id: Optional[str]
    decline_type: str
    decline_code: Optional[str]
    failure_count: int
    last_failure_at: datetime
    disabled: bool

    @classmethod
    def from_row(cls, row) -> "AutoTopUpStatus":
        return cls(
            holder_id=row["holder_id"],
            key=row["key"],
            payment_method_id=row["payment_method_id"],
            decline_type=row["decline_type"],
            decline_code=row["decline_code"],
            failure_count=int(row["failure_count"]),
            last_failure_at=row["last_failure_at"],
            disabled=bool(row["disabled"]),
        )

    def is_action_required(self, escalation_failures: int = DEFAULT_ESCALATION_FAILURES) -> bool:
        return self.decline_type == "hard" or self.failure_count >= escalation_failures

    def next_attempt_at(self, cooldown: timedelta = DEFAULT_COOLDOWN) -> datetime:
        return self.last_failure_at + cooldown


@dataclass(frozen=True)
class RetryDecision:
    allowed: bool
    # blocked_until_card_updated | waiting_for_retry_cooldown (only when not allowed)
    trigger: Optional[str] = None
    status: Optional[str] = None
    next_attempt_at: Optional[datetime] = None


def evaluate_retry(
        failure: Optional[AutoTopUpStatus],
        *,
        now: Optional[datetime] = None,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        escalation_failures: int = DEFAULT_ESCALATION_FAILURES,
) -> RetryDecision:
    """Pure gate: may an automatic charge be attempted right now?"""
    if failure is None or not failure.disabled:
        return RetryDecision(allowed=True)

    if failure.is_action_required(escalation_failures):
        return RetryDecision(allowed=False, trigger="blocked_until_card_updated", status="action_required")

    retry_at = failure.next_attempt_at(cooldown)
    if (now or _now()) < retry_at:
        return RetryDecision(allowed=False, trigger="waiting_for_retry_cooldown", status="will_retry",
                             next_attempt_at=retry_at)
    return RetryDecision(allowed=True)


class TopUpFailureManager:
    """
    <schema>.topup_failures: single mutable row per (holder, key).
    Failures upsert with an atomic increment so two concurrent failures can't lose one.
    """

    TABLE = BILLING.TABLES.TOPUP_FAILURES
    _COLS = "holder_id, key, payment_method_id, decline_type, decline_code, failure_count, last_failure_at, disabled"

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

    async def get(self, holder_id: str, key: str) -> Optional[AutoTopUpStatus]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {self._COLS}
                FROM {self.schema}.{self.TABLE}
                WHERE holder_id = $1 AND key = $2
            """, holder_id, key)
        return AutoTopUpStatus.from_row(row) if row else None

    async def record_failure(
            self,
            holder_id: str,
            key: str,
            *,
            payment_method_id: Optional[str],
            decline_code: Optional[str],
    ) -> AutoTopUpStatus:
        decline_type = classify_decline(decline_code)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                INSERT INTO {self.schema}.{self.TABLE} ({self._COLS})
                VALUES ($1, $2, $3, $4, $5, 1, NOW(), TRUE)
                ON CONFLICT (holder_id, key) DO UPDATE SET
                  payment_method_id = EXCLUDED.payment_method_id,
                  decline_type = EXCLUDED.decline_type,
                  decline_code = EXCLUDED.decline_code,
                  failure_count = {self.schema}.{self.TABLE}.failure_count + 1,
                  last_failure_at = NOW(),
                  disabled = TRUE
                RETURNING {self._COLS}
            """, holder_id, key, payment_method_id, decline_type, decline_code)
        return AutoTopUpStatus.from_row(row)

    async def clear(self, holder_id: str, key: str) -> bool:
        async with self.pool.acquire() as conn:
            res = await conn.execute(f"""
                DELETE FROM {self.schema}.{self.TABLE} WHERE holder_id = $1 AND key = $2
            """, holder_id, key)
        return _affected(res) > 0

    async def clear_all(self, holder_id: str) -> int:
        async with self.pool.acquire() as conn:
            res = await conn.execute(f"""
                DELETE FROM {self.schema}.{self.TABLE} WHERE holder_id = $1
            """, holder_id)
        return _affected(res)


def _affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 2"
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0

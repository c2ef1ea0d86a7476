# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/types.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class TransactionType(str, Enum):
    GRANT = "grant"
    CONSUME = "consume"
    REVOKE = "revoke"
    ADJUST = "adjust"


class TransactionSource(str, Enum):
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"
    CANCELLATION = "cancellation"
    PLAN_CHANGE = "plan_change"
    MANUAL = "manual"
    USAGE = "usage"
    TOPUP = "topup"
    AUTO_TOPUP = "auto_topup"
    SEAT_GRANT = "seat_grant"
    SEAT_REVOKE = "seat_revoke"


# Entries a subscription is accountable for (top-ups deliberately excluded)
SUBSCRIPTION_SOURCES = (
    TransactionSource.SUBSCRIPTION,
    TransactionSource.RENEWAL,
    TransactionSource.SEAT_GRANT,
    TransactionSource.PLAN_CHANGE,
    TransactionSource.CANCELLATION,
    TransactionSource.SEAT_REVOKE,
)

SEAT_SOURCES = (TransactionSource.SEAT_GRANT, TransactionSource.SEAT_REVOKE)


class ErrorCode:
    INVALID_AMOUNT = "INVALID_AMOUNT"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"
    INVALID_METADATA = "INVALID_METADATA"
    MISSING_CONFIG = "MISSING_CONFIG"
    NO_DATABASE = "NO_DATABASE"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    # top-up domain (carried in result values, not raised)
    NO_PAYMENT_METHOD = "NO_PAYMENT_METHOD"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    TOPUP_NOT_CONFIGURED = "TOPUP_NOT_CONFIGURED"
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    MONTHLY_LIMIT_REACHED = "MONTHLY_LIMIT_REACHED"
    # seats / provider calls
    SEAT_CONFLICT = "SEAT_CONFLICT"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    # usage metering
    TRACKING_NOT_ENABLED = "TRACKING_NOT_ENABLED"
    METERED_PRICE_NOT_CONFIGURED = "METERED_PRICE_NOT_CONFIGURED"


class CreditError(RuntimeError):
    def __init__(self, message: str, *, code: str, data: dict | None = None):
        super().__init__(message)
        self.code = code
        self.data = data or {}

    @property
    def is_idempotency_conflict(self) -> bool:
        return self.code == ErrorCode.IDEMPOTENCY_CONFLICT


@dataclass(frozen=True)
class LedgerMeta:
    """What gets recorded next to a balance mutation."""
    transaction_type: TransactionType
    source: TransactionSource
    source_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None
    # wallet only: stamped on the balance row the first time it is set
    currency: Optional[str] = None


@dataclass(frozen=True)
class CreditTransaction:
    id: int
    holder_id: str
    key: str
    amount: int
    balance_after: int
    transaction_type: TransactionType
    source: TransactionSource
    source_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "CreditTransaction":
        return cls(
            id=int(row["id"]),
            holder_id=row["holder_id"],
            key=row["key"],
            amount=int(row["amount"]),
            balance_after=int(row["balance_after"]),
            transaction_type=TransactionType(row["transaction_type"]),
            source=TransactionSource(row["source"]),
            source_id=row["source_id"],
            description=row["description"],
            metadata=row["metadata"],
            idempotency_key=row["idempotency_key"],
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class ConsumeResult:
    """success=False is the ordinary insufficient-balance outcome; `balance` is then the untouched current balance."""
    success: bool
    balance: int


@dataclass(frozen=True)
class RevokeResult:
    amount_revoked: int
    balance: int

    @property
    def previous_balance(self) -> int:
        return self.balance + self.amount_revoked


@dataclass(frozen=True)
class SetBalanceResult:
    previous_balance: int
    balance: int

    @property
    def adjustment(self) -> int:
        return self.balance - self.previous_balance

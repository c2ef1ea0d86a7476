# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/credits.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from billing_credits.infra.economics.ledger import CreditLedger
from billing_credits.infra.economics.read_model import LedgerReadModel
from billing_credits.infra.economics.types import (
    ConsumeResult,
    CreditError,
    CreditTransaction,
    ErrorCode,
    LedgerMeta,
    RevokeResult,
    SetBalanceResult,
    TransactionSource,
    TransactionType,
)

logger = logging.getLogger(__name__)


def _require_positive(amount: Any, what: str = "Amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise CreditError(f"{what} must be a positive integer", code=ErrorCode.INVALID_AMOUNT,
                          data={"amount": amount})
    return amount


def idempotency_key_for(prefix: Optional[str], key: str) -> Optional[str]:
    return f"{prefix}:{key}" if prefix else None


class CreditsManager:
    """
    Grant / consume / revoke API over the atomic primitives.

    Validates amounts, pre-checks idempotency keys against the ledger (the unique
    index stays the real guard), and keeps the insufficient-balance branch of
    consume a result value rather than an error.
    """

    def __init__(self, ledger: CreditLedger, read_model: LedgerReadModel):
        self.ledger = ledger
        self.read_model = read_model

    # ---------- reads ----------

    async def get_balance(self, holder_id: str, key: str) -> int:
        return await self.read_model.get_balance(holder_id, key)

    async def get_all_balances(self, holder_id: str) -> Dict[str, int]:
        return await self.read_model.get_all_balances(holder_id)

    async def has_credits(self, holder_id: str, key: str, amount: int) -> bool:
        return (await self.get_balance(holder_id, key)) >= amount

    async def get_history(
            self,
            holder_id: str,
            *,
            key: Optional[str] = None,
            limit: int = 50,
            offset: int = 0,
    ) -> List[CreditTransaction]:
        return await self.read_model.get_history(holder_id, key=key, limit=limit, offset=offset)

    # ---------- mutations ----------

    async def grant(
            self,
            holder_id: str,
            key: str,
            amount: int,
            *,
            source: TransactionSource = TransactionSource.MANUAL,
            source_id: Optional[str] = None,
            description: Optional[str] = None,
            metadata: Optional[Dict[str, Any]] = None,
            idempotency_key: Optional[str] = None,
            currency: Optional[str] = None,
    ) -> int:
        """Returns the new balance. Raises CreditError(IDEMPOTENCY_CONFLICT) on replay."""
        _require_positive(amount)
        await self._check_idempotency(idempotency_key)
        return await self.ledger.atomic_add(holder_id, key, amount, LedgerMeta(
            transaction_type=TransactionType.GRANT,
            source=source,
            source_id=source_id,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
            currency=currency,
        ))

    async def consume(
            self,
            holder_id: str,
            key: str,
            amount: int,
            *,
            description: Optional[str] = None,
            metadata: Optional[Dict[str, Any]] = None,
            idempotency_key: Optional[str] = None,
            source: TransactionSource = TransactionSource.USAGE,
            allow_negative: bool = False,
    ) -> ConsumeResult:
        _require_positive(amount)
        await self._check_idempotency(idempotency_key)
        return await self.ledger.atomic_consume(holder_id, key, amount, LedgerMeta(
            transaction_type=TransactionType.CONSUME,
            source=source,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
        ), allow_negative=allow_negative)

    async def revoke(
            self,
            holder_id: str,
            key: str,
            amount: int,
            *,
            source: TransactionSource = TransactionSource.MANUAL,
            source_id: Optional[str] = None,
            description: Optional[str] = None,
            metadata: Optional[Dict[str, Any]] = None,
            idempotency_key: Optional[str] = None,
    ) -> RevokeResult:
        """Revokes up to `amount`; the result says how much actually went."""
        _require_positive(amount)
        return await self._revoke(holder_id, key, amount, source=source, source_id=source_id,
                                  description=description, metadata=metadata, idempotency_key=idempotency_key)

    async def revoke_all(
            self,
            holder_id: str,
            key: str,
            *,
            source: TransactionSource = TransactionSource.MANUAL,
            source_id: Optional[str] = None,
            description: Optional[str] = None,
            idempotency_key: Optional[str] = None,
            record_empty: bool = False,
    ) -> RevokeResult:
        """
        Reads the balance, then revokes exactly that. The pair is not atomic; a
        concurrent mutation in between is still capped by the locked balance.
        record_empty writes a zero entry when there is nothing to take.
        """
        balance = await self.get_balance(holder_id, key)
        if balance <= 0 and not record_empty:
            return RevokeResult(amount_revoked=0, balance=balance)
        return await self._revoke(holder_id, key, max(balance, 0), source=source, source_id=source_id,
                                  description=description, idempotency_key=idempotency_key)

    async def revoke_all_for_holder(
            self,
            holder_id: str,
            *,
            source: TransactionSource = TransactionSource.MANUAL,
            source_id: Optional[str] = None,
            description: Optional[str] = None,
            idempotency_prefix: Optional[str] = None,
            record_empty: bool = False,
    ) -> Dict[str, RevokeResult]:
        """Every key of the holder, top-up balances included. Keys are `{idempotency_prefix}:{key}`."""
        out: Dict[str, RevokeResult] = {}
        for key, balance in (await self.get_all_balances(holder_id)).items():
            if balance <= 0 and not record_empty:
                continue
            out[key] = await self._revoke(
                holder_id, key, max(balance, 0),
                source=source,
                source_id=source_id,
                description=description,
                idempotency_key=idempotency_key_for(idempotency_prefix, key),
            )
        return out

    async def record_revoke_marker(
            self,
            holder_id: str,
            key: str,
            *,
            source: TransactionSource,
            source_id: Optional[str] = None,
            description: Optional[str] = None,
            metadata: Optional[Dict[str, Any]] = None,
            idempotency_key: Optional[str] = None,
    ) -> RevokeResult:
        """A zero `revoke` entry: moves nothing, but ends a seat in the ledger-derived membership."""
        return await self._revoke(holder_id, key, 0, source=source, source_id=source_id,
                                  description=description, metadata=metadata,
                                  idempotency_key=idempotency_key)

    async def set_balance(
            self,
            holder_id: str,
            key: str,
            balance: int,
            *,
            source: TransactionSource = TransactionSource.MANUAL,
            source_id: Optional[str] = None,
            description: Optional[str] = None,
            metadata: Optional[Dict[str, Any]] = None,
            idempotency_key: Optional[str] = None,
            currency: Optional[str] = None,
    ) -> SetBalanceResult:
        """One `adjust` entry of (balance - previous); brings a negative balance cleanly to target."""
        if isinstance(balance, bool) or not isinstance(balance, int) or balance < 0:
            raise CreditError("Balance must be a non-negative integer", code=ErrorCode.INVALID_AMOUNT,
                              data={"balance": balance})
        await self._check_idempotency(idempotency_key)
        return await self.ledger.atomic_set(holder_id, key, balance, LedgerMeta(
            transaction_type=TransactionType.ADJUST,
            source=source,
            source_id=source_id,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
            currency=currency,
        ))

    # ---------- internals ----------

    async def _check_idempotency(self, idempotency_key: Optional[str]) -> None:
        if idempotency_key and await self.read_model.idempotency_key_exists(idempotency_key):
            raise CreditError("Operation already processed", code=ErrorCode.IDEMPOTENCY_CONFLICT,
                              data={"idempotency_key": idempotency_key})

    async def _revoke(
            self,
            holder_id: str,
            key: str,
            amount: int,
            *,
            source: TransactionSource,
            source_id: Optional[str] = None,
            description: Optional[str] = None,
            metadata: Optional[Dict[str, Any]] = None,
            idempotency_key: Optional[str] = None,
    ) -> RevokeResult:
        await self._check_idempotency(idempotency_key)
        return await self.ledger.atomic_revoke(holder_id, key, amount, LedgerMeta(
            transaction_type=TransactionType.REVOKE,
            source=source,
            source_id=source_id,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
        ))

# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/wallet.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from billing_credits.infra.economics.credits import CreditsManager
from billing_credits.infra.economics.types import (
    CreditError,
    ErrorCode,
    TransactionSource,
)
from billing_credits.infra.namespaces import BILLING

WALLET_KEY = BILLING.KEYS.WALLET

# Stored unit is 1/1000 of the currency's smallest unit so that weekly
# scaling (ceil(x / 4)) of a cent allocation keeps its precision.
MILLI_CENTS_PER_CENT = 1000

ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf",
    "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})

_SYMBOLS = {
    "usd": "$",
    "eur": "€",
    "gbp": "£",
    "jpy": "¥",
    "krw": "₩",
}


def cents_to_milli_cents(cents: float) -> int:
    return int(round(cents * MILLI_CENTS_PER_CENT))


def milli_cents_to_cents(milli_cents: int) -> float:
    return milli_cents / MILLI_CENTS_PER_CENT


def format_wallet_balance(milli_cents: int, currency: str) -> str:
    cur = (currency or "usd").lower()
    cents = milli_cents_to_cents(milli_cents)
    symbol = _SYMBOLS.get(cur, f"{cur.upper()} ")
    sign = "-" if cents < 0 else ""

    if cur in ZERO_DECIMAL_CURRENCIES:
        return f"{sign}{symbol}{abs(round(cents))}"
    return f"{sign}{symbol}{abs(cents) / 100:.2f}"


@dataclass(frozen=True)
class WalletBalance:
    cents: float
    formatted: str
    currency: str

    @classmethod
    def of(cls, milli_cents: int, currency: Optional[str]) -> "WalletBalance":
        cur = (currency or "usd").lower()
        return cls(cents=milli_cents_to_cents(milli_cents), formatted=format_wallet_balance(milli_cents, cur), currency=cur)


@dataclass(frozen=True)
class WalletEvent:
    id: int
    cents: float
    balance_after_cents: float
    type: str
    source: str
    source_id: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class WalletManager:
    """Monetary balance under the reserved `wallet` key, one currency per holder."""

    def __init__(self, credits: CreditsManager):
        self.credits = credits

    async def get_balance(self, holder_id: str) -> Optional[WalletBalance]:
        """None when the wallet was never touched."""
        balance, currency = await self.credits.read_model.get_balance_with_currency(holder_id, WALLET_KEY)
        if balance == 0 and currency is None:
            return None
        return WalletBalance.of(balance, currency)

    async def add(
            self,
            holder_id: str,
            cents: int,
            *,
            currency: str = "usd",
            source: TransactionSource = TransactionSource.MANUAL,
            source_id: Optional[str] = None,
            description: Optional[str] = None,
            idempotency_key: Optional[str] = None,
    ) -> WalletBalance:
        if isinstance(cents, bool) or not isinstance(cents, int) or cents <= 0:
            raise CreditError("Amount must be a positive integer", code=ErrorCode.INVALID_AMOUNT,
                              data={"cents": cents})
        currency = (currency or "usd").lower()

        _, existing = await self.credits.read_model.get_balance_with_currency(holder_id, WALLET_KEY)
        if existing and existing != currency:
            raise CreditError(
                f"Wallet currency is {existing}, cannot add {currency}",
                code=ErrorCode.CURRENCY_MISMATCH,
                data={"wallet_currency": existing, "requested_currency": currency},
            )

        new_balance = await self.credits.grant(
            holder_id, WALLET_KEY, cents_to_milli_cents(cents),
            source=source,
            source_id=source_id,
            description=description,
            idempotency_key=idempotency_key,
            currency=currency,
        )
        return WalletBalance.of(new_balance, currency)

    async def consume(
            self,
            holder_id: str,
            cents: float,
            *,
            description: Optional[str] = None,
            idempotency_key: Optional[str] = None,
    ) -> WalletBalance:
        """Metered spend: may take the wallet below zero."""
        if isinstance(cents, bool) or not isinstance(cents, (int, float)) or cents <= 0:
            raise CreditError("Amount must be positive", code=ErrorCode.INVALID_AMOUNT, data={"cents": cents})
        milli = cents_to_milli_cents(cents)
        if milli <= 0:
            raise CreditError("Amount below wallet precision", code=ErrorCode.INVALID_AMOUNT, data={"cents": cents})

        result = await self.credits.consume(
            holder_id, WALLET_KEY, milli,
            description=description,
            idempotency_key=idempotency_key,
            allow_negative=True,
        )
        _, currency = await self.credits.read_model.get_balance_with_currency(holder_id, WALLET_KEY)
        return WalletBalance.of(result.balance, currency)

    async def get_history(self, holder_id: str, *, limit: int = 50, offset: int = 0) -> List[WalletEvent]:
        txs = await self.credits.get_history(holder_id, key=WALLET_KEY, limit=limit, offset=offset)
        return [
            WalletEvent(
                id=tx.id,
                cents=milli_cents_to_cents(tx.amount),
                balance_after_cents=milli_cents_to_cents(tx.balance_after),
                type="add" if tx.transaction_type.value == "grant" else tx.transaction_type.value,
                source=tx.source.value,
                source_id=tx.source_id,
                description=tx.description,
                created_at=tx.created_at,
            )
            for tx in txs
        ]

# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# billing_credits/billing.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import asyncpg

from billing_credits.config import Settings, get_settings
from billing_credits.infra.economics.credits import CreditsManager
from billing_credits.infra.economics.declines import AutoTopUpStatus, TopUpFailureManager
from billing_credits.infra.economics.directory import StripeDirectory
from billing_credits.infra.economics.ledger import CreditLedger
from billing_credits.infra.economics.lifecycle import CreditCallback, LifecycleOrchestrator
from billing_credits.infra.economics.plans import PlanResolver
from billing_credits.infra.economics.read_model import LedgerReadModel
from billing_credits.infra.economics.seats import AddSeatResult, RemoveSeatResult, SeatManager
from billing_credits.infra.economics.stripe import StripeChargeGateway
from billing_credits.infra.economics.stripe_events import StripeBillingEventHandler
from billing_credits.infra.economics.subscriptions import Subscription, SubscriptionQueries
from billing_credits.infra.economics.topup import (
    AutoTopUpFailed,
    AutoTopUpResult,
    CreditsLow,
    TopUpCompleted,
    TopUpEngine,
    TopUpResult,
)
from billing_credits.infra.economics.types import (
    ConsumeResult,
    CreditTransaction,
    RevokeResult,
    SetBalanceResult,
    TransactionSource,
)
from billing_credits.infra.economics.usage import UsageEvent, UsageMeter, UsageStore, UsageSummary
from billing_credits.infra.economics.wallet import WalletManager
from billing_credits.infra.relational.psql.pool import create_pg_pool

logger = logging.getLogger(__name__)


@dataclass
class BillingCallbacks:
    on_credits_granted: Optional[CreditCallback] = None
    on_credits_revoked: Optional[CreditCallback] = None
    on_credits_low: Optional[Callable[[CreditsLow], Awaitable[None]]] = None
    on_auto_topup_failed: Optional[Callable[[AutoTopUpFailed], Awaitable[None]]] = None
    on_topup_completed: Optional[Callable[[TopUpCompleted], Awaitable[None]]] = None


class BillingCredits:
    """
    One object for the whole credit system: wires the ledger, read model,
    lifecycle, seats, top-ups and the Stripe event router over one pool.

        billing = BillingCredits()
        await billing.init()
        await billing.consume("user-1", "api_calls", 1)
        ...
        await billing.close()

    A pool passed in stays owned by the caller; one created by init() is closed by close().
    """

    def __init__(
            self,
            *,
            settings: Optional[Settings] = None,
            pg_pool: Optional[asyncpg.Pool] = None,
            plans: Optional[PlanResolver] = None,
            gateway: Optional[StripeChargeGateway] = None,
            callbacks: Optional[BillingCallbacks] = None,
    ):
        self.settings = settings or get_settings()
        self._pg_pool = pg_pool
        self._owns_pool = False
        schema = self.settings.BILLING_SCHEMA
        cb = callbacks or BillingCallbacks()

        self.plans = plans or PlanResolver.from_settings(self.settings)
        self.gateway = gateway or StripeChargeGateway(settings=self.settings)

        self.ledger = CreditLedger(pg_pool, schema=schema)
        self.read_model = LedgerReadModel(pg_pool, schema=schema)
        self.failures = TopUpFailureManager(pg_pool, schema=schema)
        self.directory = StripeDirectory(pg_pool, schema=schema)
        self.usage_store = UsageStore(pg_pool, schema=schema)

        self.credits = CreditsManager(self.ledger, self.read_model)
        self.wallet = WalletManager(self.credits)
        self.lifecycle = LifecycleOrchestrator(
            credits=self.credits,
            plans=self.plans,
            directory=self.directory,
            grant_to=self.settings.grant_to,
            on_credits_granted=cb.on_credits_granted,
            on_credits_revoked=cb.on_credits_revoked,
        )
        self.seats = SeatManager(
            credits=self.credits,
            plans=self.plans,
            directory=self.directory,
            gateway=self.gateway,
            lifecycle=self.lifecycle,
        )
        self.topup = TopUpEngine(
            credits=self.credits,
            failures=self.failures,
            plans=self.plans,
            directory=self.directory,
            gateway=self.gateway,
            settings=self.settings,
            on_credits_low=cb.on_credits_low,
            on_auto_topup_failed=cb.on_auto_topup_failed,
            on_topup_completed=cb.on_topup_completed,
            on_credits_granted=cb.on_credits_granted,
        )
        self.events = StripeBillingEventHandler(lifecycle=self.lifecycle, topup=self.topup, gateway=self.gateway)
        self.usage = UsageMeter(store=self.usage_store, plans=self.plans, directory=self.directory,
                                gateway=self.gateway)
        self.subscriptions = SubscriptionQueries(directory=self.directory, plans=self.plans)

    async def init(self) -> None:
        if self._pg_pool is None:
            self._pg_pool = await create_pg_pool(self.settings)
            self._owns_pool = True
        for component in (self.ledger, self.read_model, self.failures, self.directory, self.usage_store):
            component.set_pg_pool(self._pg_pool)
        logger.info("Billing credits ready (schema=%s, mode=%s, grant_to=%s)",
                    self.settings.BILLING_SCHEMA, self.settings.BILLING_MODE, self.lifecycle.grant_to)

    async def close(self) -> None:
        if self._pg_pool is not None and self._owns_pool:
            await self._pg_pool.close()
        self._pg_pool = None
        self._owns_pool = False

    # ---------------- balances ----------------

    async def get_balance(self, holder_id: str, key: str) -> int:
        return await self.credits.get_balance(holder_id, key)

    async def get_all_balances(self, holder_id: str) -> Dict[str, int]:
        return await self.credits.get_all_balances(holder_id)

    async def has_credits(self, holder_id: str, key: str, amount: int) -> bool:
        return await self.credits.has_credits(holder_id, key, amount)

    async def get_history(self, holder_id: str, *, key: Optional[str] = None,
                          limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        return await self.credits.get_history(holder_id, key=key, limit=limit, offset=offset)

    # ---------------- mutations ----------------

    async def grant(self, holder_id: str, key: str, amount: int, **kw: Any) -> int:
        return await self.credits.grant(holder_id, key, amount, **kw)

    async def consume(self, holder_id: str, key: str, amount: int, **kw: Any) -> ConsumeResult:
        return await self.credits.consume(holder_id, key, amount, **kw)

    async def revoke(self, holder_id: str, key: str, amount: int, **kw: Any) -> RevokeResult:
        return await self.credits.revoke(holder_id, key, amount, **kw)

    async def revoke_all(self, holder_id: str, key: str, **kw: Any) -> RevokeResult:
        return await self.credits.revoke_all(holder_id, key, **kw)

    async def revoke_all_for_holder(self, holder_id: str, **kw: Any) -> Dict[str, RevokeResult]:
        return await self.credits.revoke_all_for_holder(holder_id, **kw)

    async def set_balance(self, holder_id: str, key: str, balance: int, *,
                          source: TransactionSource = TransactionSource.MANUAL, **kw: Any) -> SetBalanceResult:
        return await self.credits.set_balance(holder_id, key, balance, source=source, **kw)

    # ---------------- top-ups ----------------

    async def top_up(self, holder_id: str, key: str, amount: int, *,
                     idempotency_key: Optional[str] = None) -> TopUpResult:
        return await self.topup.top_up(holder_id, key, amount, idempotency_key=idempotency_key)

    async def trigger_auto_topup_if_needed(self, holder_id: str, key: str,
                                           current_balance: Optional[int] = None) -> AutoTopUpResult:
        return await self.topup.trigger_auto_topup_if_needed(holder_id, key, current_balance)

    async def get_auto_topup_status(self, holder_id: str, key: str) -> Optional[AutoTopUpStatus]:
        return await self.topup.get_auto_topup_status(holder_id, key)

    async def unblock_auto_topup(self, holder_id: str, key: str) -> bool:
        return await self.topup.unblock_auto_topup(holder_id, key)

    async def unblock_all_auto_topups(self, holder_id: str) -> int:
        return await self.topup.unblock_all_auto_topups(holder_id)

    # ---------------- seats ----------------

    async def add_seat(self, org_id: str, user_id: str) -> AddSeatResult:
        return await self.seats.add_seat(org_id, user_id)

    async def remove_seat(self, org_id: str, user_id: str) -> RemoveSeatResult:
        return await self.seats.remove_seat(org_id, user_id)

    # ---------------- provider events ----------------

    async def handle_event(self, event: Any) -> Dict[str, Any]:
        return await self.events.handle_event(event)

    async def handle_webhook(self, *, body: bytes, stripe_signature: Optional[str]) -> Dict[str, Any]:
        return await self.events.handle_webhook(body=body, stripe_signature=stripe_signature)

    # ---------------- usage metering ----------------

    async def record_usage(self, holder_id: str, key: str, amount: int, *,
                           timestamp: Optional[datetime] = None) -> UsageEvent:
        return await self.usage.record(holder_id, key, amount, timestamp=timestamp)

    async def get_usage_summary(self, holder_id: str, key: str) -> UsageSummary:
        return await self.usage.get_summary(holder_id, key)

    async def get_usage_history(self, holder_id: str, key: str, *,
                                limit: int = 50, offset: int = 0) -> List[UsageEvent]:
        return await self.usage.get_history(holder_id, key, limit=limit, offset=offset)

    async def enable_usage_for_holder(self, holder_id: str, key: str) -> bool:
        return await self.usage.enable_for_holder(holder_id, key)

    # ---------------- subscriptions ----------------

    async def is_subscription_active(self, holder_id: str) -> bool:
        return await self.subscriptions.is_active(holder_id)

    async def get_subscription(self, holder_id: str) -> Optional[Subscription]:
        return await self.subscriptions.get(holder_id)

    async def list_subscriptions(self, holder_id: str) -> List[Subscription]:
        return await self.subscriptions.list(holder_id)

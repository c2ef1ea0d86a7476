# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/tests/helpers.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from billing_credits.config import Settings
from billing_credits.infra.economics.credits import CreditsManager
from billing_credits.infra.economics.declines import AutoTopUpStatus, classify_decline
from billing_credits.infra.economics.directory import CustomerRef, SubscriptionInfo, SubscriptionRef
from billing_credits.infra.economics.plans import BillingConfig, PlanResolver
from billing_credits.infra.economics.stripe import ChargeResult
from billing_credits.infra.economics.types import (
    SEAT_SOURCES,
    SUBSCRIPTION_SOURCES,
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
from billing_credits.infra.economics.usage import UsageEvent

T0 = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> None:
        self.now = self.now + timedelta(**kw)


def make_settings(**overrides) -> Settings:
    values = dict(
        STRIPE_SECRET_KEY="sk_test_dummy",
        TOPUP_SUCCESS_URL="https://app.example/topup/ok",
        TOPUP_CANCEL_URL="https://app.example/topup/cancel",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ---------------- ledger ----------------

class MemoryStore:
    """Balances + ledger rows; writes are synchronous, so each primitive is atomic under asyncio."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()
        self.balances: Dict[Tuple[str, str], int] = {}
        self.currencies: Dict[Tuple[str, str], str] = {}
        self.entries: List[CreditTransaction] = []

    def entries_for(self, holder_id: str, key: Optional[str] = None) -> List[CreditTransaction]:
        return [e for e in self.entries if e.holder_id == holder_id and (key is None or e.key == key)]


class MemoryLedger:
    """Same contract as CreditLedger, over a MemoryStore."""

    def __init__(self, store: MemoryStore):
        self.store = store

    async def atomic_add(self, holder_id: str, key: str, amount: int, meta: LedgerMeta) -> int:
        current = self.store.balances.get((holder_id, key), 0)
        self._write(holder_id, key, amount, current + amount, meta)
        return current + amount

    async def atomic_consume(self, holder_id: str, key: str, amount: int, meta: LedgerMeta, *,
                             allow_negative: bool = False) -> ConsumeResult:
        current = self.store.balances.get((holder_id, key), 0)
        if current < amount and not allow_negative:
            return ConsumeResult(success=False, balance=current)
        self._write(holder_id, key, -amount, current - amount, meta)
        return ConsumeResult(success=True, balance=current - amount)

    async def atomic_revoke(self, holder_id: str, key: str, max_amount: int, meta: LedgerMeta) -> RevokeResult:
        current = self.store.balances.get((holder_id, key), 0)
        revoked = max(0, min(max_amount, current))
        self._write(holder_id, key, -revoked, current - revoked, meta)
        return RevokeResult(amount_revoked=revoked, balance=current - revoked)

    async def atomic_set(self, holder_id: str, key: str, new_balance: int, meta: LedgerMeta) -> SetBalanceResult:
        previous = self.store.balances.get((holder_id, key), 0)
        self._write(holder_id, key, new_balance - previous, new_balance, meta)
        return SetBalanceResult(previous_balance=previous, balance=new_balance)

    def _write(self, holder_id: str, key: str, amount: int, balance_after: int, meta: LedgerMeta) -> None:
        if meta.idempotency_key and any(e.idempotency_key == meta.idempotency_key for e in self.store.entries):
            raise CreditError("Operation already processed", code=ErrorCode.IDEMPOTENCY_CONFLICT,
                              data={"idempotency_key": meta.idempotency_key})
        self.store.balances[(holder_id, key)] = balance_after
        if meta.currency:
            self.store.currencies.setdefault((holder_id, key), meta.currency)
        self.store.entries.append(CreditTransaction(
            id=len(self.store.entries) + 1,
            holder_id=holder_id,
            key=key,
            amount=amount,
            balance_after=balance_after,
            transaction_type=meta.transaction_type,
            source=meta.source,
            source_id=meta.source_id,
            description=meta.description,
            metadata=meta.metadata,
            idempotency_key=meta.idempotency_key,
            created_at=self.store.clock(),
        ))


class MemoryReadModel:
    """Same queries as LedgerReadModel, answered from a MemoryStore."""

    def __init__(self, store: MemoryStore):
        self.store = store

    async def get_balance(self, holder_id: str, key: str) -> int:
        return self.store.balances.get((holder_id, key), 0)

    async def get_balance_with_currency(self, holder_id: str, key: str):
        if (holder_id, key) not in self.store.balances:
            return 0, None
        return self.store.balances[(holder_id, key)], self.store.currencies.get((holder_id, key))

    async def get_all_balances(self, holder_id: str) -> Dict[str, int]:
        return {k: v for (h, k), v in sorted(self.store.balances.items()) if h == holder_id}

    async def get_history(self, holder_id: str, *, key: Optional[str] = None, limit: int = 50, offset: int = 0):
        rows = list(reversed(self.store.entries_for(holder_id, key)))
        return rows[offset:offset + limit]

    async def idempotency_key_exists(self, idempotency_key: str) -> bool:
        return any(e.idempotency_key == idempotency_key for e in self.store.entries)

    async def count_auto_topups_this_month(self, holder_id: str, key: str) -> int:
        now = self.store.clock()
        return sum(1 for e in self.store.entries_for(holder_id, key)
                   if e.source == TransactionSource.AUTO_TOPUP
                   and (e.created_at.year, e.created_at.month) == (now.year, now.month))

    def _latest_seat_entries(self, **match) -> Dict[str, CreditTransaction]:
        latest: Dict[str, CreditTransaction] = {}
        for e in self.store.entries:
            if e.source not in SEAT_SOURCES or e.source_id is None:
                continue
            if all(getattr(e, k) == v for k, v in match.items()):
                latest[e.holder_id if "source_id" in match else e.source_id] = e
        return latest

    async def get_active_seat_users(self, subscription_id: str) -> List[str]:
        latest = self._latest_seat_entries(source_id=subscription_id)
        return sorted(h for h, e in latest.items() if e.source == TransactionSource.SEAT_GRANT)

    async def get_user_seat_subscription(self, holder_id: str) -> Optional[str]:
        latest = self._latest_seat_entries(holder_id=holder_id)
        active = [e for e in latest.values() if e.source == TransactionSource.SEAT_GRANT]
        return max(active, key=lambda e: e.id).source_id if active else None

    def _seat_entries(self, holder_id: str, subscription_id: str, seat_user: Optional[str]):
        return [e for e in self.store.entries_for(holder_id)
                if e.source_id == subscription_id and e.source in SEAT_SOURCES
                and (seat_user is None or (e.metadata or {}).get("seat_user") == seat_user)]

    async def is_seat_active(self, holder_id: str, subscription_id: str, seat_user: str) -> bool:
        entries = self._seat_entries(holder_id, subscription_id, seat_user)
        return bool(entries) and entries[-1].source == TransactionSource.SEAT_GRANT

    async def count_seat_revocations(self, holder_id: str, subscription_id: str,
                                     seat_user: Optional[str] = None) -> int:
        return sum(1 for e in self._seat_entries(holder_id, subscription_id, seat_user)
                   if e.source == TransactionSource.SEAT_REVOKE)

    async def get_seat_credits_granted(self, holder_id: str, subscription_id: str, seat_user: str) -> Dict[str, int]:
        net: Dict[str, int] = {}
        for e in self._seat_entries(holder_id, subscription_id, seat_user):
            net[e.key] = net.get(e.key, 0) + e.amount
        return {k: v for k, v in net.items() if v > 0}

    async def get_topup_credits_since_reset(self, holder_id: str, key: str) -> int:
        total = 0
        for e in self.store.entries_for(holder_id, key):
            if e.transaction_type == TransactionType.ADJUST:
                total = 0
            elif e.source in (TransactionSource.TOPUP, TransactionSource.AUTO_TOPUP) and e.amount > 0:
                total += e.amount
        return total

    async def get_credits_granted_by_source(self, holder_id: str, source_id: str) -> Dict[str, int]:
        net: Dict[str, int] = {}
        for e in self.store.entries_for(holder_id):
            if e.source_id == source_id and e.source in SUBSCRIPTION_SOURCES:
                net[e.key] = net.get(e.key, 0) + e.amount
        return {k: v for k, v in net.items() if v > 0}


def memory_credits(store: Optional[MemoryStore] = None) -> CreditsManager:
    store = store or MemoryStore()
    return CreditsManager(MemoryLedger(store), MemoryReadModel(store))


# ---------------- auto top-up failures ----------------

class MemoryFailureStore:
    """Same contract as TopUpFailureManager."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self.rows: Dict[Tuple[str, str], AutoTopUpStatus] = {}

    async def get(self, holder_id: str, key: str) -> Optional[AutoTopUpStatus]:
        return self.rows.get((holder_id, key))

    async def record_failure(self, holder_id: str, key: str, *, payment_method_id: Optional[str],
                             decline_code: Optional[str]) -> AutoTopUpStatus:
        prev = self.rows.get((holder_id, key))
        row = AutoTopUpStatus(
            holder_id=holder_id,
            key=key,
            payment_method_id=payment_method_id,
            decline_type=classify_decline(decline_code),
            decline_code=decline_code,
            failure_count=(prev.failure_count if prev else 0) + 1,
            last_failure_at=self.clock(),
            disabled=True,
        )
        self.rows[(holder_id, key)] = row
        return row

    async def clear(self, holder_id: str, key: str) -> bool:
        return self.rows.pop((holder_id, key), None) is not None

    async def clear_all(self, holder_id: str) -> int:
        keys = [k for k in self.rows if k[0] == holder_id]
        for k in keys:
            del self.rows[k]
        return len(keys)


# ---------------- stripe ----------------

class FakeDirectory:
    def __init__(self):
        self.customers: Dict[str, CustomerRef] = {}
        self.subscriptions: Dict[str, SubscriptionRef] = {}
        self.holders: Dict[str, str] = {}
        self.history: Dict[str, List[SubscriptionInfo]] = {}

    def add(self, holder_id: str, customer_id: str, *, payment_method: Optional[str] = "pm_card_1",
            subscription: Optional[SubscriptionRef] = None) -> None:
        self.customers[holder_id] = CustomerRef(id=customer_id, default_payment_method=payment_method)
        self.holders[customer_id] = holder_id
        if subscription:
            self.subscriptions[customer_id] = subscription

    def set_payment_method(self, holder_id: str, payment_method: Optional[str]) -> None:
        c = self.customers[holder_id]
        self.customers[holder_id] = CustomerRef(id=c.id, deleted=c.deleted, default_payment_method=payment_method)

    async def get_customer_for_holder(self, holder_id: str) -> Optional[CustomerRef]:
        return self.customers.get(holder_id)

    async def get_holder_for_customer(self, customer_id: str) -> Optional[str]:
        return self.holders.get(customer_id)

    async def get_active_subscription(self, customer_id: str) -> Optional[SubscriptionRef]:
        return self.subscriptions.get(customer_id)

    async def list_subscriptions(self, customer_id: str) -> List[SubscriptionInfo]:
        return list(self.history.get(customer_id, []))


class FakeGateway:
    """Scripted charges: queue ChargeResults with `script`; default is success."""

    def __init__(self):
        self.charges: List[Dict[str, Any]] = []
        self.checkouts: List[Dict[str, Any]] = []
        self.quantity_updates: List[Dict[str, Any]] = []
        self.cleared_downgrades: List[str] = []
        self.adopted: List[Tuple[str, str]] = []
        self.meter_events: List[Dict[str, Any]] = []
        self.added_items: List[Dict[str, Any]] = []
        self.subscriptions: Dict[str, Any] = {}
        self._script: List[ChargeResult] = []

    def script(self, *results: ChargeResult) -> None:
        self._script.extend(results)

    async def create_charge(self, **kw) -> ChargeResult:
        self.charges.append(kw)
        if self._script:
            return self._script.pop(0)
        return ChargeResult(status="succeeded", payment_intent_id=f"pi_{len(self.charges)}")

    async def create_recovery_checkout(self, **kw) -> Optional[str]:
        self.checkouts.append(kw)
        return f"https://checkout.example/{len(self.checkouts)}"

    async def update_subscription_quantity(self, **kw) -> None:
        self.quantity_updates.append(kw)

    async def retrieve_subscription(self, subscription_id: str) -> Any:
        return self.subscriptions[subscription_id]

    async def clear_pending_downgrade(self, subscription_id: str) -> None:
        self.cleared_downgrades.append(subscription_id)

    async def adopt_payment_method(self, customer_id: str, payment_intent_id: str) -> Optional[str]:
        self.adopted.append((customer_id, payment_intent_id))
        return "pm_new"

    async def adopt_subscription_payment_method(self, customer_id: str, subscription_id: str) -> Optional[str]:
        self.adopted.append((customer_id, subscription_id))
        return "pm_sub"

    async def create_meter_event(self, **kw) -> str:
        self.meter_events.append(kw)
        return f"mtr_{len(self.meter_events)}"

    async def add_subscription_item(self, **kw) -> None:
        self.added_items.append(kw)


def declined(code: str, pi: str = "pi_declined") -> ChargeResult:
    return ChargeResult(status="failed", payment_intent_id=pi, decline_code=code, message=f"declined: {code}")


# ---------------- plans ----------------

PLANS = {
    "test": {
        "plans": [
            {
                "id": "free", "name": "Free",
                "price": [{"id": "price_free", "amount": 0, "currency": "usd", "interval": "month"}],
                "features": {"api_calls": {"credits": {"allocation": 100}}},
            },
            {
                "id": "pro", "name": "Pro",
                "price": [
                    {"id": "price_pro_m", "amount": 2000, "currency": "usd", "interval": "month"},
                    {"id": "price_pro_y", "amount": 20000, "currency": "usd", "interval": "year"},
                    {"id": "price_pro_w", "amount": 500, "currency": "usd", "interval": "week"},
                ],
                "features": {
                    "api_calls": {
                        "displayName": "API calls",
                        "pricePerCredit": 2,
                        "minPerPurchase": 50,
                        "maxPerPurchase": 10000,
                        "autoTopUp": {"threshold": 100, "amount": 500, "maxPerMonth": 3},
                        "credits": {"allocation": 1000, "onRenewal": "reset"},
                    },
                    "exports": {"credits": {"allocation": 10, "onRenewal": "add"}},
                    "tokens": {"pricePerCredit": 3, "trackUsage": True, "meteredPriceId": "price_tokens_metered"},
                },
                "wallet": {"allocation": 500, "onRenewal": "reset",
                           "autoTopUp": {"threshold": 100, "amount": 1000}},
            },
            {
                "id": "team", "name": "Team", "perSeat": True,
                "price": [{"id": "price_team_m", "amount": 1500, "currency": "usd", "interval": "month"}],
                "features": {"api_calls": {"credits": {"allocation": 300}}},
            },
            {
                "id": "lite", "name": "Lite",
                "price": [{"id": "price_lite_m", "amount": 500, "currency": "usd", "interval": "month"}],
                "features": {"api_calls": {"credits": {"allocation": 200, "onRenewal": "reset"}}},
            },
        ]
    }
}


def plan_resolver() -> PlanResolver:
    return PlanResolver(BillingConfig.model_validate(PLANS), mode="test")


def subscription(sub_id: str = "sub_1", price_id: str = "price_pro_m", customer: str = "cus_1",
                 metadata: Optional[Dict[str, str]] = None, quantity: int = 1, status: str = "active") -> Dict[str, Any]:
    """A customer.subscription payload as webhooks deliver it."""
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata or {},
        "items": {"data": [{"id": f"si_{sub_id}", "quantity": quantity, "price": {"id": price_id}}]},
    }


# ---------------- usage ----------------

class MemoryUsageStore:
    """Same contract as UsageStore."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self.events: List[UsageEvent] = []
        self.fail_inserts = False

    async def insert_event(self, **kw) -> UsageEvent:
        if self.fail_inserts:
            raise CreditError("Database pool not initialized", code=ErrorCode.NO_DATABASE)
        event = UsageEvent(id=len(self.events) + 1, created_at=self.clock(), **kw)
        self.events.append(event)
        return event

    async def get_summary(self, holder_id: str, key: str, period_start: datetime, period_end: datetime):
        hits = [e for e in self.events if (e.holder_id, e.key, e.period_start, e.period_end)
                == (holder_id, key, period_start, period_end)]
        return sum(e.amount for e in hits), len(hits)

    async def get_history(self, holder_id: str, key: str, *, limit: int = 50, offset: int = 0) -> List[UsageEvent]:
        rows = [e for e in reversed(self.events) if e.holder_id == holder_id and e.key == key]
        return rows[offset:offset + limit]

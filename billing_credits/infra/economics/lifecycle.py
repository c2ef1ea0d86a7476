# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/lifecycle.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from billing_credits.infra.economics import stripe_objects as so
from billing_credits.infra.economics.credits import CreditsManager
from billing_credits.infra.economics.directory import StripeDirectory
from billing_credits.infra.economics.plans import Plan, PlanResolver, scale_allocation
from billing_credits.infra.economics.read_model import LedgerReadModel
from billing_credits.infra.economics.types import CreditError, TransactionSource
from billing_credits.infra.economics.wallet import WALLET_KEY, cents_to_milli_cents
from billing_credits.infra.namespaces import BILLING

logger = logging.getLogger(__name__)

GRANT_TO_SUBSCRIBER = "subscriber"
GRANT_TO_SEAT_USERS = "seat-users"
GRANT_TO_MANUAL = "manual"


@dataclass(frozen=True)
class Entitlement:
    key: str
    amount: int
    on_renewal: str = "reset"
    # wallet only
    currency: Optional[str] = None


@dataclass(frozen=True)
class CreditEvent:
    holder_id: str
    key: str
    amount: int
    balance: int
    source: TransactionSource
    source_id: Optional[str] = None


CreditCallback = Callable[[CreditEvent], Awaitable[None]]


def plan_entitlements(plan: Plan, interval: Optional[str], currency: Optional[str] = None) -> List[Entitlement]:
    """What one billing interval of `plan` is worth, per balance key."""
    out: List[Entitlement] = []
    for key, alloc in plan.credit_allocations.items():
        amount = scale_allocation(alloc.allocation, interval)
        if amount > 0:
            out.append(Entitlement(key=key, amount=amount, on_renewal=alloc.on_renewal))
    if plan.wallet and plan.wallet.allocation > 0:
        # scale in milli-cents so weekly division keeps precision
        amount = scale_allocation(cents_to_milli_cents(plan.wallet.allocation), interval)
        out.append(Entitlement(key=WALLET_KEY, amount=amount, on_renewal=plan.wallet.on_renewal,
                               currency=(currency or "usd").lower()))
    return out


class LifecycleOrchestrator:
    """
    Turns subscription events into ledger mutations.

    Every mutation carries an idempotency key derived from the provider event
    (subscription id, invoice id, price ids) plus the balance key, so a
    redelivered event hits IDEMPOTENCY_CONFLICT and is skipped.

    grant_to:
      subscriber  - the billing entity behind the customer gets the balances
      seat-users  - each active seat (derived from the ledger) gets its own
      manual      - nothing happens automatically
    """

    M = BILLING.METADATA

    def __init__(
            self,
            *,
            credits: CreditsManager,
            plans: PlanResolver,
            directory: StripeDirectory,
            grant_to: str = GRANT_TO_SUBSCRIBER,
            on_credits_granted: Optional[CreditCallback] = None,
            on_credits_revoked: Optional[CreditCallback] = None,
    ):
        self.credits = credits
        self.plans = plans
        self.directory = directory
        self.grant_to = GRANT_TO_SUBSCRIBER if grant_to == "organization" else grant_to
        self.on_credits_granted = on_credits_granted
        self.on_credits_revoked = on_credits_revoked

    @property
    def read_model(self) -> LedgerReadModel:
        return self.credits.read_model

    # ---------------- events ----------------

    async def on_subscription_created(self, subscription: Any) -> None:
        if self.grant_to == GRANT_TO_MANUAL:
            return
        sub_id, entitlements = self._resolve(subscription)
        if not entitlements:
            return

        if self.grant_to == GRANT_TO_SEAT_USERS:
            # otherwise the app adds seats itself
            first_seat = so.metadata(subscription).get(self.M.FIRST_SEAT_USER_ID)
            if first_seat:
                await self.grant_entitlements(first_seat, entitlements, source=TransactionSource.SEAT_GRANT,
                                              source_id=sub_id, prefix=f"seat_{first_seat}_{sub_id}",
                                              metadata={BILLING.LEDGER_METADATA.SEAT_USER: first_seat})
            return

        holder = await self._resolve_holder(subscription)
        if not holder:
            logger.warning("Subscription %s created for unknown holder; no credits granted", sub_id)
            return
        await self.grant_entitlements(holder, entitlements, source=TransactionSource.SUBSCRIPTION,
                              source_id=sub_id, prefix=f"subscription_{sub_id}")

    async def on_subscription_renewed(self, subscription: Any, invoice_id: str) -> None:
        if self.grant_to == GRANT_TO_MANUAL:
            return
        sub_id, entitlements = self._resolve(subscription)
        if not entitlements:
            return

        for holder, source in await self._targets(subscription, TransactionSource.RENEWAL):
            await self._renew_all(holder, entitlements, source=source, source_id=sub_id,
                                  prefix=f"renewal_{invoice_id}_{holder}")

    async def on_subscription_cancelled(self, subscription: Any) -> None:
        """Access ends entirely: every balance of the holder goes, top-ups included."""
        if self.grant_to == GRANT_TO_MANUAL:
            return
        sub_id = so.obj_id(subscription)

        if self.grant_to == GRANT_TO_SEAT_USERS:
            for holder in await self.read_model.get_active_seat_users(sub_id):
                # seat_revoke entries (even zero ones) end the derived membership
                await self._revoke_everything(holder, source=TransactionSource.SEAT_REVOKE, source_id=sub_id,
                                              prefix=f"cancel_{sub_id}_{holder}", record_empty=True)
            return

        holder = await self._resolve_holder(subscription)
        if not holder:
            logger.warning("Subscription %s cancelled for unknown holder; nothing revoked", sub_id)
            return
        await self._revoke_everything(holder, source=TransactionSource.CANCELLATION, source_id=sub_id,
                                      prefix=f"cancel_{sub_id}")

    async def on_subscription_plan_changed(self, subscription: Any, previous_price_id: str) -> None:
        """
        Upgrade: keep what the holder has and add the new plan's allocation
        (from a zero-cost plan the old allocation is revoked first).
        Downgrade (pending_credit_downgrade=true): nothing now, see on_downgrade_applied.
        """
        if self.grant_to == GRANT_TO_MANUAL:
            return
        md = so.metadata(subscription)
        sub_id = so.obj_id(subscription)
        if md.get(self.M.PENDING_CREDIT_DOWNGRADE) == "true":
            logger.info("Subscription %s: downgrade from %s deferred to next renewal", sub_id, previous_price_id)
            return

        new_price_id = so.subscription_price_id(subscription)
        new_plan = self.plans.plan_for_price(new_price_id)
        if not new_plan:
            logger.warning("Subscription %s: no plan for price %s", sub_id, new_price_id)
            return
        old_plan = self.plans.plan_for_price(previous_price_id)
        from_zero_cost = self._is_zero_cost_change(md, previous_price_id, old_plan)

        new_price = self.plans.price(new_price_id)
        entitlements = plan_entitlements(new_plan, new_price.interval if new_price else None,
                                         new_price.currency if new_price else None)
        old_keys = [e.key for e in self._entitlements_for(old_plan, previous_price_id)] if old_plan else []

        change = f"plan_change_{sub_id}_{previous_price_id}_{new_price_id}"
        for holder, grant_source in await self._targets(subscription, TransactionSource.PLAN_CHANGE):
            if from_zero_cost:
                for key in old_keys:
                    await self._once(self._revoke_key(holder, key, source=TransactionSource.PLAN_CHANGE,
                                                      source_id=sub_id,
                                                      idempotency_key=f"{change}_{holder}_revoke:{key}"))
            await self.grant_entitlements(holder, entitlements, source=grant_source, source_id=sub_id,
                                  prefix=f"{change}_{holder}")

    async def on_downgrade_applied(self, subscription: Any, new_price_id: str,
                                   invoice_id: Optional[str] = None) -> None:
        """
        Renewal boundary after a deferred downgrade: credit types the new plan
        lacks are set to exactly 0 (negative balances included), the rest
        follow the usual reset/add rule. The wallet is left as it is when the
        new plan has none.
        """
        if self.grant_to == GRANT_TO_MANUAL:
            return
        sub_id = so.obj_id(subscription)
        new_plan = self.plans.plan_for_price(new_price_id)
        entitlements = self._entitlements_for(new_plan, new_price_id) if new_plan else []
        kept = {e.key for e in entitlements}

        boundary = invoice_id or str(so.field(subscription, "current_period_start") or "")
        prefix = f"downgrade_{sub_id}_{new_price_id}_{boundary}"
        for holder, grant_source in await self._targets(subscription, TransactionSource.PLAN_CHANGE):
            for key in (await self.credits.get_all_balances(holder)).keys():
                if key in kept or key == WALLET_KEY:
                    continue
                await self._once(self._zero_key(holder, key, source=TransactionSource.PLAN_CHANGE,
                                                source_id=sub_id,
                                                idempotency_key=f"{prefix}_{holder}_revoke:{key}"))
            await self._renew_all(holder, entitlements, source=grant_source, source_id=sub_id,
                                  prefix=f"{prefix}_{holder}")

    # ---------------- resolution ----------------

    def _resolve(self, subscription: Any):
        sub_id = so.obj_id(subscription)
        price_id = so.subscription_price_id(subscription)
        plan = self.plans.plan_for_price(price_id)
        if not plan:
            logger.debug("Subscription %s: price %s is not a configured plan", sub_id, price_id)
            return sub_id, []
        return sub_id, self._entitlements_for(plan, price_id)

    def _entitlements_for(self, plan: Plan, price_id: Optional[str]) -> List[Entitlement]:
        price = plan.price_by_id(price_id) if price_id else None
        return plan_entitlements(plan, price.interval if price else None, price.currency if price else None)

    def _is_zero_cost_change(self, md, previous_price_id: Optional[str], old_plan: Optional[Plan]) -> bool:
        hint = md.get(self.M.UPGRADE_FROM_PRICE_AMOUNT)
        if hint not in (None, ""):
            return hint == "0"
        if old_plan is None:
            return False
        return self.plans.is_zero_cost_price(previous_price_id) or old_plan.is_free

    async def _resolve_holder(self, subscription: Any) -> Optional[str]:
        customer_id = so.subscription_customer_id(subscription)
        holder = await self.directory.get_holder_for_customer(customer_id) if customer_id else None
        return holder or so.metadata(subscription).get(self.M.USER_ID)

    async def _targets(self, subscription: Any, subscriber_source: TransactionSource):
        """[(holder, source to grant with)] for the configured policy."""
        if self.grant_to == GRANT_TO_SEAT_USERS:
            users = await self.read_model.get_active_seat_users(so.obj_id(subscription))
            # seat grants keep re-affirming membership
            return [(u, TransactionSource.SEAT_GRANT) for u in users]
        holder = await self._resolve_holder(subscription)
        if not holder:
            logger.warning("Subscription %s: cannot resolve holder", so.obj_id(subscription))
            return []
        return [(holder, subscriber_source)]

    # ---------------- mutations ----------------

    async def _once(self, aw: Awaitable):
        try:
            return await aw
        except CreditError as e:
            if not e.is_idempotency_conflict:
                raise
            logger.warning("Already applied, skipping: %s", e.data.get("idempotency_key"))
            return None

    async def grant_entitlements(self, holder: str, entitlements: List[Entitlement], *,
                                 source: TransactionSource, source_id: str, prefix: str,
                                 metadata: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
        """Grants each entitlement once under `{prefix}:{key}`; returns what was newly granted."""
        granted: Dict[str, int] = {}
        for ent in entitlements:
            balance = await self._once(self.credits.grant(
                holder, ent.key, ent.amount,
                source=source,
                source_id=source_id,
                idempotency_key=f"{prefix}:{ent.key}",
                currency=ent.currency,
                metadata=metadata,
            ))
            if balance is not None:
                logger.info("Granted %s %s to %s (%s %s)", ent.amount, ent.key, holder, source.value, source_id)
                granted[ent.key] = ent.amount
                await self._notify(self.on_credits_granted, CreditEvent(holder, ent.key, ent.amount, balance,
                                                                        source, source_id))
        return granted

    async def _renew_all(self, holder: str, entitlements: List[Entitlement], *,
                         source: TransactionSource, source_id: str, prefix: str) -> None:
        for ent in entitlements:
            idem = f"{prefix}:{ent.key}"
            if ent.on_renewal == "add":
                balance = await self._once(self.credits.grant(
                    holder, ent.key, ent.amount, source=source, source_id=source_id,
                    idempotency_key=idem, currency=ent.currency,
                ))
                amount = ent.amount
            else:
                res = await self._once(self.credits.set_balance(
                    holder, ent.key, ent.amount, source=source, source_id=source_id,
                    idempotency_key=idem, currency=ent.currency,
                ))
                balance = res.balance if res else None
                amount = res.adjustment if res else 0
            if balance is not None:
                logger.info("Renewed %s for %s: %s -> %s (%s)", ent.key, holder, ent.on_renewal, balance, source_id)
                await self._notify(self.on_credits_granted, CreditEvent(holder, ent.key, amount, balance,
                                                                        source, source_id))

    async def _revoke_key(self, holder: str, key: str, *, source: TransactionSource, source_id: str,
                          idempotency_key: str, record_empty: bool = False):
        res = await self.credits.revoke_all(holder, key, source=source, source_id=source_id,
                                            idempotency_key=idempotency_key, record_empty=record_empty)
        if res.amount_revoked > 0:
            logger.info("Revoked %s %s from %s (%s %s)", res.amount_revoked, key, holder, source.value, source_id)
            await self._notify(self.on_credits_revoked, CreditEvent(holder, key, res.amount_revoked, res.balance,
                                                                    source, source_id))
        return res

    async def _zero_key(self, holder: str, key: str, *, source: TransactionSource, source_id: str,
                        idempotency_key: str):
        """One signed `adjust` entry to exactly 0; a negative balance is cleared too."""
        res = await self.credits.set_balance(holder, key, 0, source=source, source_id=source_id,
                                             idempotency_key=idempotency_key)
        if res.previous_balance > 0:
            logger.info("Revoked %s %s from %s (%s %s)", res.previous_balance, key, holder, source.value, source_id)
            await self._notify(self.on_credits_revoked, CreditEvent(holder, key, res.previous_balance, 0,
                                                                    source, source_id))
        elif res.previous_balance < 0:
            logger.info("Cleared negative %s balance of %s (%s)", key, holder, res.previous_balance)
        return res

    async def _revoke_everything(self, holder: str, *, source: TransactionSource, source_id: str,
                                 prefix: str, record_empty: bool = False) -> None:
        for key in (await self.credits.get_all_balances(holder)).keys():
            await self._once(self._revoke_key(holder, key, source=source, source_id=source_id,
                                              idempotency_key=f"{prefix}:{key}", record_empty=record_empty))

    @staticmethod
    async def _notify(cb: Optional[CreditCallback], event: CreditEvent) -> None:
        if cb is not None:
            await cb(event)

# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/seats.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from billing_credits.infra.economics.credits import CreditsManager
from billing_credits.infra.economics.directory import StripeDirectory, SubscriptionRef
from billing_credits.infra.economics.lifecycle import (
    GRANT_TO_MANUAL,
    GRANT_TO_SEAT_USERS,
    CreditEvent,
    LifecycleOrchestrator,
    plan_entitlements,
)
from billing_credits.infra.economics.plans import Plan, PlanResolver
from billing_credits.infra.economics.stripe import StripeChargeGateway
from billing_credits.infra.economics.types import CreditError, ErrorCode, TransactionSource
from billing_credits.infra.namespaces import BILLING

logger = logging.getLogger(__name__)

SEAT_USER = BILLING.LEDGER_METADATA.SEAT_USER


@dataclass(frozen=True)
class AddSeatResult:
    success: bool
    credits_granted: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    code: Optional[str] = None


@dataclass(frozen=True)
class RemoveSeatResult:
    success: bool
    credits_revoked: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    code: Optional[str] = None


class SeatManager:
    """
    Seats of an organization's subscription.

    There is no membership table: in seat-users mode a user is a seat of the
    subscription whose seat_grant/seat_revoke entries (source_id = subscription)
    end in a grant (see LedgerReadModel.get_active_seat_users). In subscriber
    mode the organization's shared pool receives the seat allocation instead,
    and the seat entries on the org carry metadata.seat_user to tell seats apart.
    Revocations use keys of the same generation as the grant they undo.
    Per-seat plans also move the Stripe subscription quantity (never below 1).
    """

    def __init__(
            self,
            *,
            credits: CreditsManager,
            plans: PlanResolver,
            directory: StripeDirectory,
            gateway: StripeChargeGateway,
            lifecycle: LifecycleOrchestrator,
    ):
        self.credits = credits
        self.plans = plans
        self.directory = directory
        self.gateway = gateway
        self.lifecycle = lifecycle

    @property
    def grant_to(self) -> str:
        return self.lifecycle.grant_to

    async def add_seat(self, org_id: str, user_id: str) -> AddSeatResult:
        """Idempotent: adding a current seat again changes nothing."""
        resolved = await self._resolve(org_id)
        if isinstance(resolved, str):
            return AddSeatResult(success=False, error=resolved, code=ErrorCode.NO_SUBSCRIPTION)
        sub, plan = resolved

        holder = self._holder(org_id, user_id)
        if self.grant_to == GRANT_TO_SEAT_USERS:
            current = await self.credits.read_model.get_user_seat_subscription(user_id)
            if current and current != sub.id:
                return AddSeatResult(success=False, error="User is already a seat of another subscription",
                                     code=ErrorCode.SEAT_CONFLICT)
        if self.grant_to != GRANT_TO_MANUAL and await self._is_seat(holder, sub, user_id):
            logger.info("User %s is already a seat of %s", user_id, sub.id)
            return AddSeatResult(success=True)

        suffix = await self._generation_suffix(holder, sub, user_id)
        granted: Dict[str, int] = {}
        if self.grant_to != GRANT_TO_MANUAL:
            granted = await self.lifecycle.grant_entitlements(
                holder, self._entitlements(sub, plan),
                source=TransactionSource.SEAT_GRANT,
                source_id=sub.id,
                prefix=f"seat_{org_id}_{user_id}_{sub.id}{suffix}",
                metadata={SEAT_USER: user_id},
            )

        if plan.per_seat and sub.item_id:
            await self.gateway.update_subscription_quantity(
                subscription_id=sub.id,
                item_id=sub.item_id,
                quantity=sub.quantity + 1,
                idempotency_key=f"add_seat_{org_id}_{user_id}_{sub.id}{suffix}",
            )
        logger.info("Seat %s added to %s (%s)", user_id, sub.id, org_id)
        return AddSeatResult(success=True, credits_granted=granted)

    async def remove_seat(self, org_id: str, user_id: str) -> RemoveSeatResult:
        """
        Takes back what the subscription granted for this seat (net of earlier
        revocations), capped so top-up credits bought since the last reset stay
        with the holder. Removing a user who is not a seat is a no-op; a
        concurrent duplicate removal collapses on the revoke idempotency keys.
        """
        resolved = await self._resolve(org_id)
        if isinstance(resolved, str):
            return RemoveSeatResult(success=False, error=resolved, code=ErrorCode.NO_SUBSCRIPTION)
        sub, plan = resolved

        holder = self._holder(org_id, user_id)
        if self.grant_to != GRANT_TO_MANUAL and not await self._is_seat(holder, sub, user_id):
            logger.info("User %s is not a seat of %s; nothing to remove", user_id, sub.id)
            return RemoveSeatResult(success=True)

        suffix = await self._generation_suffix(holder, sub, user_id)
        revoked: Dict[str, int] = {}
        if self.grant_to != GRANT_TO_MANUAL:
            try:
                revoked = await self._revoke_seat_credits(
                    holder, sub, plan, user_id, prefix=f"remove_seat_{org_id}_{user_id}_{sub.id}{suffix}")
            except CreditError as e:
                if not e.is_idempotency_conflict:
                    raise
                logger.info("Seat %s of %s is already being removed", user_id, sub.id)
                return RemoveSeatResult(success=True)

        if plan.per_seat and sub.item_id and sub.quantity > 1:
            await self.gateway.update_subscription_quantity(
                subscription_id=sub.id,
                item_id=sub.item_id,
                quantity=sub.quantity - 1,
                idempotency_key=f"remove_seat_{org_id}_{user_id}_{sub.id}{suffix}",
            )
        logger.info("Seat %s removed from %s (%s)", user_id, sub.id, org_id)
        return RemoveSeatResult(success=True, credits_revoked=revoked)

    # ---------------- internals ----------------

    def _holder(self, org_id: str, user_id: str) -> str:
        return user_id if self.grant_to == GRANT_TO_SEAT_USERS else org_id

    async def _is_seat(self, holder: str, sub: SubscriptionRef, user_id: str) -> bool:
        if self.grant_to == GRANT_TO_SEAT_USERS:
            return await self.credits.read_model.get_user_seat_subscription(user_id) == sub.id
        return await self.credits.read_model.is_seat_active(holder, sub.id, user_id)

    async def _generation_suffix(self, holder: str, sub: SubscriptionRef, user_id: str) -> str:
        """A removed seat can come back: each return is a new generation of keys."""
        if self.grant_to == GRANT_TO_MANUAL:
            return ""
        seat_user = None if self.grant_to == GRANT_TO_SEAT_USERS else user_id
        generation = await self.credits.read_model.count_seat_revocations(holder, sub.id, seat_user)
        return f"_{generation}" if generation else ""

    async def _resolve(self, org_id: str):
        customer = await self.directory.get_customer_for_holder(org_id)
        if not customer or customer.deleted:
            return "Org has no Stripe customer"
        sub = await self.directory.get_active_subscription(customer.id)
        if not sub:
            return "No active subscription found for org"
        plan = self.plans.plan_for_price(sub.price_id)
        if not plan:
            return "Could not resolve plan from subscription"
        return sub, plan

    def _entitlements(self, sub: SubscriptionRef, plan: Plan):
        price = plan.price_by_id(sub.price_id)
        return plan_entitlements(plan, price.interval if price else None, sub.currency)

    async def _revoke_seat_credits(self, holder: str, sub: SubscriptionRef, plan: Plan, user_id: str, *,
                                   prefix: str) -> Dict[str, int]:
        rm = self.credits.read_model
        if self.grant_to == GRANT_TO_SEAT_USERS:
            granted = await rm.get_credits_granted_by_source(holder, sub.id)
        else:
            # the org pool holds every seat's allocation: only this seat's grants come back
            granted = await rm.get_seat_credits_granted(holder, sub.id, user_id)
        if not granted:
            # nothing left to take back, but the membership must still end
            keys = [e.key for e in self._entitlements(sub, plan)] or list(
                (await self.credits.get_all_balances(holder)).keys())
            granted = {keys[0]: 0} if keys else {}

        revoked: Dict[str, int] = {}
        meta = {SEAT_USER: user_id}
        for key, amount in granted.items():
            balance = await self.credits.get_balance(holder, key)
            protected = await rm.get_topup_credits_since_reset(holder, key)
            amount = min(amount, max(0, balance - protected))
            idem = f"{prefix}:{key}"
            if amount > 0:
                res = await self.credits.revoke(holder, key, amount, source=TransactionSource.SEAT_REVOKE,
                                                source_id=sub.id, metadata=meta, idempotency_key=idem)
            else:
                res = await self.credits.record_revoke_marker(holder, key, source=TransactionSource.SEAT_REVOKE,
                                                              source_id=sub.id, metadata=meta,
                                                              idempotency_key=idem)
            revoked[key] = res.amount_revoked
            if res.amount_revoked > 0 and self.lifecycle.on_credits_revoked:
                await self.lifecycle.on_credits_revoked(CreditEvent(
                    holder, key, res.amount_revoked, res.balance, TransactionSource.SEAT_REVOKE, sub.id,
                ))
        return revoked

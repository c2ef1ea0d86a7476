# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/stripe_events.py
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from billing_credits.infra.economics import stripe_objects as so
from billing_credits.infra.economics.lifecycle import LifecycleOrchestrator
from billing_credits.infra.economics.stripe import StripeChargeGateway
from billing_credits.infra.economics.topup import TopUpEngine
from billing_credits.infra.namespaces import BILLING

logger = logging.getLogger(__name__)

M = BILLING.METADATA


@dataclass(frozen=True)
class StripeHandleResult:
    status: str
    action: str
    message: str
    event_type: Optional[str] = None
    object_id: Optional[str] = None


class StripeBillingEventHandler:
    """
    Routes verified Stripe events to the credit lifecycle and the top-up engine.

    Supported:
      - customer.subscription.created  -> initial grant
      - customer.subscription.updated  -> plan change (price moved) or cancellation via status
      - customer.subscription.deleted  -> revoke everything (skipped for auto-cancelled duplicates)
      - invoice.paid (subscription_cycle) -> renewal, or the deferred downgrade when flagged
      - payment_intent.succeeded       -> top-up grant
      - checkout.session.completed     -> recovery checkout grant / save card of a subscription checkout
      - customer.updated               -> lift auto top-up blocks on a new default card

    Every effect is idempotent on its own keys, so redelivery is safe.
    """

    def __init__(
            self,
            *,
            lifecycle: LifecycleOrchestrator,
            topup: TopUpEngine,
            gateway: StripeChargeGateway,
    ):
        self.lifecycle = lifecycle
        self.topup = topup
        self.gateway = gateway

    async def handle_webhook(self, *, body: bytes, stripe_signature: Optional[str]) -> Dict[str, Any]:
        event = self.gateway.construct_event(body, stripe_signature)
        return await self.handle_event(event)

    async def handle_event(self, event: Any) -> Dict[str, Any]:
        etype = so.field(event, "type")
        data = so.field(event, "data") or {}
        obj = so.field(data, "object") or {}
        prev = so.field(data, "previous_attributes")

        try:
            if etype == "customer.subscription.created":
                res = await self._subscription_created(obj)
            elif etype == "customer.subscription.updated":
                res = await self._subscription_updated(obj, prev)
            elif etype == "customer.subscription.deleted":
                res = await self._subscription_deleted(obj)
            elif etype == "invoice.paid":
                res = await self._invoice_paid(obj)
            elif etype == "payment_intent.succeeded":
                res = await self._payment_intent_succeeded(obj)
            elif etype == "checkout.session.completed":
                res = await self._checkout_completed(obj)
            elif etype == "customer.updated":
                res = await self._customer_updated(obj, prev)
            else:
                res = StripeHandleResult(status="ok", action="unsupported", message=f"Event {etype} not processed")
        except Exception as e:
            logger.exception("Stripe event failed: type=%s id=%s", etype, so.field(event, "id"))
            return {"status": "error", "action": "failed", "message": str(e), "event_type": etype}

        out = asdict(res)
        out["event_type"] = etype
        return out

    # ---------------- subscriptions ----------------

    async def _subscription_created(self, sub: Any) -> StripeHandleResult:
        await self.lifecycle.on_subscription_created(sub)
        return StripeHandleResult(status="ok", action="applied", message="Initial credits granted",
                                  object_id=so.obj_id(sub))

    async def _subscription_updated(self, sub: Any, prev: Any) -> StripeHandleResult:
        prev_status = so.field(prev, "status")
        if so.field(sub, "status") == "canceled" and prev_status and prev_status != "canceled":
            return await self._subscription_deleted(sub)

        if so.field(prev, "items") is not None:
            old_price = so.obj_id(so.field(so.first_item(prev), "price"))
            new_price = so.subscription_price_id(sub)
            if old_price and new_price and old_price != new_price:
                await self.lifecycle.on_subscription_plan_changed(sub, old_price)
                return StripeHandleResult(status="ok", action="applied",
                                          message=f"Plan changed {old_price} -> {new_price}",
                                          object_id=so.obj_id(sub))
        return StripeHandleResult(status="ok", action="ignored", message="No credit-relevant change",
                                  object_id=so.obj_id(sub))

    async def _subscription_deleted(self, sub: Any) -> StripeHandleResult:
        if so.metadata(sub).get(M.CANCELLED_AS_DUPLICATE):
            return StripeHandleResult(status="ok", action="ignored", message="Duplicate subscription cancelled",
                                      object_id=so.obj_id(sub))
        await self.lifecycle.on_subscription_cancelled(sub)
        return StripeHandleResult(status="ok", action="applied", message="Credits revoked",
                                  object_id=so.obj_id(sub))

    async def _invoice_paid(self, invoice: Any) -> StripeHandleResult:
        invoice_id = so.obj_id(invoice)
        # newer API versions moved it under parent.subscription_details
        sub_ref = so.field(invoice, "subscription") or so.field(
            so.field(so.field(invoice, "parent"), "subscription_details"), "subscription")
        if so.field(invoice, "billing_reason") != "subscription_cycle" or not sub_ref:
            return StripeHandleResult(status="ok", action="ignored", message="Not a subscription renewal",
                                      object_id=invoice_id)

        sub = await self.gateway.retrieve_subscription(so.obj_id(sub_ref))
        if so.metadata(sub).get(M.PENDING_CREDIT_DOWNGRADE) == "true":
            price_id = so.subscription_price_id(sub)
            await self.gateway.clear_pending_downgrade(so.obj_id(sub))
            if price_id:
                await self.lifecycle.on_downgrade_applied(sub, price_id, invoice_id=invoice_id)
            return StripeHandleResult(status="ok", action="applied", message="Deferred downgrade applied",
                                      object_id=invoice_id)

        await self.lifecycle.on_subscription_renewed(sub, invoice_id)
        return StripeHandleResult(status="ok", action="applied", message="Renewal credits applied",
                                  object_id=invoice_id)

    # ---------------- payments ----------------

    async def _payment_intent_succeeded(self, pi: Any) -> StripeHandleResult:
        balance = await self.topup.handle_payment_intent_succeeded(pi)
        if balance is None:
            return StripeHandleResult(status="ok", action="ignored", message="Not a top-up payment",
                                      object_id=so.obj_id(pi))
        return StripeHandleResult(status="ok", action="applied", message=f"Top-up granted (balance {balance})",
                                  object_id=so.obj_id(pi))

    async def _checkout_completed(self, session: Any) -> StripeHandleResult:
        if so.metadata(session).get(M.TOP_UP_KEY):
            balance = await self.topup.handle_topup_checkout_completed(session)
            action = "applied" if balance is not None else "ignored"
            return StripeHandleResult(status="ok", action=action, message="Top-up checkout processed",
                                      object_id=so.obj_id(session))

        customer_id = so.obj_id(so.field(session, "customer"))
        sub_id = so.obj_id(so.field(session, "subscription"))
        if so.field(session, "mode") == "subscription" and customer_id and sub_id:
            await self.gateway.adopt_subscription_payment_method(customer_id, sub_id)
            return StripeHandleResult(status="ok", action="applied", message="Default payment method saved",
                                      object_id=so.obj_id(session))
        return StripeHandleResult(status="ok", action="ignored", message="Checkout not relevant to credits",
                                  object_id=so.obj_id(session))

    async def _customer_updated(self, customer: Any, prev: Any) -> StripeHandleResult:
        cleared = await self.topup.handle_customer_updated(customer, prev)
        return StripeHandleResult(status="ok", action="applied" if cleared else "ignored",
                                  message=f"Cleared {cleared} auto top-up block(s)", object_id=so.obj_id(customer))

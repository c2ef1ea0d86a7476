# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/stripe.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from billing_credits.config import Settings, get_settings
from billing_credits.infra.economics import stripe_objects as so
from billing_credits.infra.economics.types import CreditError, ErrorCode
from billing_credits.infra.namespaces import BILLING

logger = logging.getLogger(__name__)

# PaymentIntent states that will not settle without the customer
_NEEDS_CUSTOMER = ("requires_action", "requires_payment_method", "requires_confirmation", "canceled")


@dataclass(frozen=True)
class ChargeResult:
    # succeeded | processing | failed | error
    status: str
    payment_intent_id: Optional[str] = None
    decline_code: Optional[str] = None
    message: Optional[str] = None
    # request was wrong (bad key, bad params): retrying or a new card won't help
    developer_error: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class StripeChargeGateway:
    """
    The only place that talks to the Stripe API.
    Calls are the SDK's synchronous ones, issued from async methods like the rest of the
    Stripe services. Charge errors never escape: they come back as ChargeResult.
    """

    def __init__(self, *, stripe_api_key: Optional[str] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.stripe_api_key = stripe_api_key or self.settings.STRIPE_SECRET_KEY

    def _stripe(self):
        import stripe
        if not self.stripe_api_key:
            raise CreditError("Stripe API key not configured (STRIPE_SECRET_KEY)", code=ErrorCode.MISSING_CONFIG)
        stripe.api_key = self.stripe_api_key
        return stripe

    async def create_charge(
            self,
            *,
            amount: int,
            currency: str,
            customer_id: str,
            payment_method_id: str,
            idempotency_key: str,
            metadata: Optional[Dict[str, str]] = None,
            description: Optional[str] = None,
    ) -> ChargeResult:
        """Off-session, confirmed immediately. `amount` is in the smallest currency unit."""
        stripe = self._stripe()
        try:
            pi = stripe.PaymentIntent.create(
                amount=int(amount),
                currency=(currency or "usd").lower(),
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                metadata=metadata or {},
                description=description,
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            err = getattr(e, "error", None)
            decline = so.field(err, "decline_code") or getattr(e, "code", None)
            logger.info("Charge declined for %s: %s", customer_id, decline)
            return ChargeResult(
                status="failed",
                payment_intent_id=so.obj_id(so.field(err, "payment_intent")),
                decline_code=decline,
                message=getattr(e, "user_message", None) or str(e),
            )
        except (stripe.InvalidRequestError, stripe.AuthenticationError, stripe.PermissionError) as e:
            logger.exception("Stripe rejected the charge request for %s", customer_id)
            return ChargeResult(status="error", message=str(e), developer_error=True)
        except stripe.StripeError as e:
            logger.exception("Stripe charge failed for %s", customer_id)
            return ChargeResult(status="error", message=str(e))

        status = str(so.field(pi, "status") or "")
        pi_id = so.obj_id(pi)
        if status == "succeeded":
            return ChargeResult(status="succeeded", payment_intent_id=pi_id)
        if status == "processing":
            return ChargeResult(status="processing", payment_intent_id=pi_id)
        if status in _NEEDS_CUSTOMER:
            last = so.field(pi, "last_payment_error")
            decline = so.field(last, "decline_code") or so.field(last, "code")
            if not decline and status == "requires_action":
                decline = "authentication_required"
            return ChargeResult(status="failed", payment_intent_id=pi_id, decline_code=decline,
                                message=so.field(last, "message"))
        logger.warning("Unexpected PaymentIntent status %s for %s", status, pi_id)
        return ChargeResult(status="error", payment_intent_id=pi_id, message=f"Unexpected status {status}")

    async def create_recovery_checkout(
            self,
            *,
            customer_id: str,
            amount: int,
            currency: str,
            product_name: str,
            metadata: Dict[str, str],
    ) -> Optional[str]:
        """
        Hosted checkout for the same amount that also saves the card for
        off-session use. None when it can't be built (logged).
        """
        success_url = self.settings.TOPUP_SUCCESS_URL
        cancel_url = self.settings.TOPUP_CANCEL_URL
        if not success_url or not cancel_url:
            logger.warning("TOPUP_SUCCESS_URL / TOPUP_CANCEL_URL not set; no recovery checkout for %s", customer_id)
            return None
        try:
            stripe = self._stripe()
            session = stripe.checkout.Session.create(
                mode="payment",
                customer=customer_id,
                line_items=[{
                    "quantity": 1,
                    "price_data": {
                        "currency": (currency or "usd").lower(),
                        "unit_amount": int(amount),
                        "product_data": {"name": product_name},
                    },
                }],
                payment_intent_data={"setup_future_usage": "off_session", "metadata": metadata},
                metadata=metadata,
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except Exception:
            logger.exception("Failed to create recovery checkout for %s", customer_id)
            return None
        return so.field(session, "url")

    async def retrieve_subscription(self, subscription_id: str) -> Any:
        stripe = self._stripe()
        return stripe.Subscription.retrieve(subscription_id)

    async def update_subscription_quantity(
            self,
            *,
            subscription_id: str,
            item_id: str,
            quantity: int,
            idempotency_key: str,
    ) -> None:
        stripe = self._stripe()
        try:
            stripe.Subscription.modify(
                subscription_id,
                items=[{"id": item_id, "quantity": max(1, int(quantity))}],
                proration_behavior="create_prorations",
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise CreditError(f"Failed to update seat quantity: {e}", code=ErrorCode.PROVIDER_ERROR,
                              data={"subscription_id": subscription_id, "quantity": quantity})

    async def create_meter_event(self, *, event_name: str, customer_id: str, value: int, timestamp: int) -> str:
        """Reports usage to a Stripe meter; returns the meter event identifier."""
        stripe = self._stripe()
        try:
            event = stripe.billing.MeterEvent.create(
                event_name=event_name,
                payload={"value": str(value), "stripe_customer_id": customer_id},
                timestamp=int(timestamp),
            )
        except stripe.StripeError as e:
            raise CreditError(f"Failed to send meter event to Stripe: {e}", code=ErrorCode.PROVIDER_ERROR,
                              data={"event_name": event_name, "customer_id": customer_id})
        return so.field(event, "identifier")

    async def add_subscription_item(self, *, subscription_id: str, price_id: str) -> None:
        stripe = self._stripe()
        try:
            stripe.SubscriptionItem.create(subscription=subscription_id, price=price_id, proration_behavior="none")
        except stripe.StripeError as e:
            raise CreditError(f"Failed to add price to subscription: {e}", code=ErrorCode.PROVIDER_ERROR,
                              data={"subscription_id": subscription_id, "price_id": price_id})

    async def clear_pending_downgrade(self, subscription_id: str) -> None:
        """Drops the deferred-downgrade markers once the new plan's credits are applied."""
        stripe = self._stripe()
        stripe.Subscription.modify(
            subscription_id,
            metadata={
                BILLING.METADATA.PENDING_CREDIT_DOWNGRADE: "",
                BILLING.METADATA.DOWNGRADE_FROM_PRICE: "",
            },
        )

    async def adopt_payment_method(self, customer_id: str, payment_intent_id: str) -> Optional[str]:
        """Makes the card used for `payment_intent_id` the customer's default. Best effort."""
        try:
            stripe = self._stripe()
            pi = stripe.PaymentIntent.retrieve(payment_intent_id)
            pm = so.obj_id(so.field(pi, "payment_method"))
            if pm:
                stripe.Customer.modify(customer_id, invoice_settings={"default_payment_method": pm})
            return pm
        except Exception:
            logger.exception("Failed to adopt payment method of %s for %s", payment_intent_id, customer_id)
            return None

    async def adopt_subscription_payment_method(self, customer_id: str, subscription_id: str) -> Optional[str]:
        """After a subscription checkout: its card becomes the default for off-session top-ups."""
        try:
            stripe = self._stripe()
            sub = stripe.Subscription.retrieve(subscription_id)
            pm = so.obj_id(so.field(sub, "default_payment_method"))
            if pm:
                stripe.Customer.modify(customer_id, invoice_settings={"default_payment_method": pm})
            return pm
        except Exception:
            logger.exception("Failed to adopt payment method of %s for %s", subscription_id, customer_id)
            return None

    def construct_event(self, body: bytes, stripe_signature: Optional[str]) -> Dict[str, Any]:
        """Verifies the Stripe-Signature header; without STRIPE_WEBHOOK_SECRET the body is parsed unverified."""
        secret = self.settings.STRIPE_WEBHOOK_SECRET
        if not secret:
            logger.warning("STRIPE_WEBHOOK_SECRET not set: parsing Stripe event WITHOUT verification")
            return json.loads(body.decode("utf-8"))
        if not stripe_signature:
            raise ValueError("Missing Stripe-Signature header")
        import stripe
        return stripe.Webhook.construct_event(payload=body, sig_header=stripe_signature, secret=secret)

# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/topup.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from billing_credits.config import Settings, get_settings
from billing_credits.infra.economics import stripe_objects as so
from billing_credits.infra.economics.credits import CreditsManager
from billing_credits.infra.economics.declines import (
    AutoTopUpStatus,
    TopUpFailureManager,
    classify_decline,
    evaluate_retry,
)
from billing_credits.infra.economics.directory import CustomerRef, StripeDirectory
from billing_credits.infra.economics.lifecycle import CreditCallback, CreditEvent
from billing_credits.infra.economics.plans import AutoTopUpConfig, Plan, PlanResolver
from billing_credits.infra.economics.stripe import ChargeResult, StripeChargeGateway
from billing_credits.infra.economics.types import CreditError, ErrorCode, TransactionSource
from billing_credits.infra.economics.wallet import MILLI_CENTS_PER_CENT, WALLET_KEY
from billing_credits.infra.namespaces import BILLING

logger = logging.getLogger(__name__)

M = BILLING.METADATA

# ---------------- outcomes ----------------


@dataclass(frozen=True)
class TopUpSuccess:
    holder_id: str
    key: str
    amount: int
    balance: int
    charged: int
    currency: str
    payment_intent_id: str
    status: str = "succeeded"


@dataclass(frozen=True)
class TopUpPending:
    """Async payment method; the webhook grants when it settles."""
    holder_id: str
    key: str
    amount: int
    payment_intent_id: str
    status: str = "processing"


@dataclass(frozen=True)
class TopUpFailure:
    holder_id: str
    key: str
    code: str
    message: str
    recovery_url: Optional[str] = None
    decline_code: Optional[str] = None
    status: str = "failed"


TopUpResult = Union[TopUpSuccess, TopUpPending, TopUpFailure]


@dataclass(frozen=True)
class AutoTopUpTriggered:
    holder_id: str
    key: str
    payment_intent_id: str
    amount: int
    # succeeded | pending
    status: str
    balance: Optional[int] = None
    triggered: bool = True


@dataclass(frozen=True)
class AutoTopUpSkipped:
    """Nothing to do: reason in user_not_found | no_subscription | not_configured | balance_above_threshold."""
    holder_id: str
    key: str
    reason: str
    triggered: bool = False


@dataclass(frozen=True)
class AutoTopUpFailed:
    """
    trigger: stripe_declined_payment | waiting_for_retry_cooldown | blocked_until_card_updated
             | no_payment_method | monthly_limit_reached | unexpected_error
    status:  will_retry | action_required
    """
    holder_id: str
    key: str
    customer_id: str
    trigger: str
    status: str
    failure_count: int = 0
    decline_code: Optional[str] = None
    decline_type: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    message: Optional[str] = None
    triggered: bool = False


AutoTopUpResult = Union[AutoTopUpTriggered, AutoTopUpSkipped, AutoTopUpFailed]


@dataclass(frozen=True)
class CreditsLow:
    holder_id: str
    key: str
    balance: int
    threshold: int


@dataclass(frozen=True)
class TopUpCompleted:
    holder_id: str
    key: str
    amount: int
    charged: int
    currency: str
    balance: int
    payment_intent_id: str


@dataclass(frozen=True)
class _Offer:
    key: str
    # what the charge buys, in balance units (milli-cents for the wallet)
    units: int
    # what the caller asked for; goes into top_up_amount metadata
    amount: int
    charge: int
    currency: str
    product_name: str
    auto_topup: Optional[AutoTopUpConfig] = None
    min_per_purchase: int = 1
    max_per_purchase: Optional[int] = None

    @property
    def is_wallet(self) -> bool:
        return self.key == WALLET_KEY


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _display_name(key: str) -> str:
    return key.replace("_", " ").title()


class TopUpEngine:
    """
    On-demand and automatic purchases of credits (or wallet money).

    Charges go through the gateway off-session with the customer's default
    payment method. A successful charge is granted inline with the key
    `topup_{payment_intent}` (`wallet_topup_{...}` for the wallet), so the
    later webhook for the same payment is a duplicate no-op.

    Automatic top-ups are gated by the decline state (declines.py), a monthly
    cap and the presence of a payment method; every blocked attempt is
    reported through on_auto_topup_failed.
    """

    def __init__(
            self,
            *,
            credits: CreditsManager,
            failures: TopUpFailureManager,
            plans: PlanResolver,
            directory: StripeDirectory,
            gateway: StripeChargeGateway,
            settings: Optional[Settings] = None,
            on_credits_low: Optional[Callable[[CreditsLow], Awaitable[None]]] = None,
            on_auto_topup_failed: Optional[Callable[[AutoTopUpFailed], Awaitable[None]]] = None,
            on_topup_completed: Optional[Callable[[TopUpCompleted], Awaitable[None]]] = None,
            on_credits_granted: Optional[CreditCallback] = None,
            clock: Callable[[], datetime] = _utcnow,
    ):
        self.credits = credits
        self.failures = failures
        self.plans = plans
        self.directory = directory
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.on_credits_low = on_credits_low
        self.on_auto_topup_failed = on_auto_topup_failed
        self.on_topup_completed = on_topup_completed
        self.on_credits_granted = on_credits_granted
        self.clock = clock

    @property
    def cooldown(self) -> timedelta:
        return timedelta(hours=self.settings.AUTO_TOPUP_COOLDOWN_HOURS)

    @property
    def escalation_failures(self) -> int:
        return self.settings.AUTO_TOPUP_ESCALATION_FAILURES

    # ---------------- on demand ----------------

    async def top_up(
            self,
            holder_id: str,
            key: str,
            amount: int,
            *,
            idempotency_key: Optional[str] = None,
    ) -> TopUpResult:
        """
        `amount` is credits, or cents for the wallet. Payment problems come back
        as TopUpFailure (with a recovery checkout URL where a new card would help).
        Pass `idempotency_key` to make a retried request charge once.
        """
        def fail(code: str, message: str, **kw) -> TopUpFailure:
            return TopUpFailure(holder_id=holder_id, key=key, code=code, message=message, **kw)

        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            return fail(ErrorCode.INVALID_AMOUNT, "Amount must be a positive integer")

        customer = await self.directory.get_customer_for_holder(holder_id)
        if not customer or customer.deleted:
            return fail(ErrorCode.USER_NOT_FOUND, "No billing customer for holder")
        sub = await self.directory.get_active_subscription(customer.id)
        if not sub:
            return fail(ErrorCode.NO_SUBSCRIPTION, "No active subscription")

        try:
            offer = self._offer(self.plans.plan_for_price(sub.price_id), key, amount, sub.currency)
            self._check_purchase_limits(offer)
            if offer.is_wallet:
                await self._check_wallet_currency(holder_id, offer.currency)
        except CreditError as e:
            return fail(e.code, str(e))

        metadata = {M.TOP_UP_KEY: key, M.TOP_UP_AMOUNT: str(amount), M.USER_ID: holder_id}
        if not customer.default_payment_method:
            url = await self._recovery_url(customer, offer, metadata)
            return fail(ErrorCode.NO_PAYMENT_METHOD, "No payment method on file", recovery_url=url)

        charge = await self.gateway.create_charge(
            amount=offer.charge,
            currency=offer.currency,
            customer_id=customer.id,
            payment_method_id=customer.default_payment_method,
            idempotency_key=idempotency_key or f"topup_{holder_id}_{key}_{uuid.uuid4().hex}",
            metadata=metadata,
            description=f"{offer.product_name} top-up",
        )

        if charge.status == "succeeded":
            balance = await self._grant_purchase(
                holder_id, offer, payment_intent_id=charge.payment_intent_id, source=TransactionSource.TOPUP,
            )
            logger.info("Top-up %s %s for %s charged %s %s", amount, key, holder_id, offer.charge, offer.currency)
            return TopUpSuccess(holder_id=holder_id, key=key, amount=amount, balance=balance,
                                charged=offer.charge, currency=offer.currency,
                                payment_intent_id=charge.payment_intent_id)
        if charge.status == "processing":
            logger.info("Top-up %s for %s is processing (%s)", key, holder_id, charge.payment_intent_id)
            return TopUpPending(holder_id=holder_id, key=key, amount=amount,
                                payment_intent_id=charge.payment_intent_id)

        if charge.developer_error:
            return fail(ErrorCode.PAYMENT_FAILED, charge.message or "Payment request rejected")
        url = await self._recovery_url(customer, offer, metadata)
        return fail(ErrorCode.PAYMENT_FAILED, charge.message or "Payment failed",
                    recovery_url=url, decline_code=charge.decline_code)

    # ---------------- automatic ----------------

    async def trigger_auto_topup_if_needed(
            self,
            holder_id: str,
            key: str,
            current_balance: Optional[int] = None,
    ) -> AutoTopUpResult:
        """Call after a consumption. `current_balance` saves a read when the caller has it."""
        def skip(reason: str) -> AutoTopUpSkipped:
            return AutoTopUpSkipped(holder_id=holder_id, key=key, reason=reason)

        customer = await self.directory.get_customer_for_holder(holder_id)
        if not customer or customer.deleted:
            return skip("user_not_found")
        sub = await self.directory.get_active_subscription(customer.id)
        if not sub:
            return skip("no_subscription")

        try:
            plan = self.plans.plan_for_price(sub.price_id)
            cfg = self._auto_topup_config(plan, key)
            if not cfg or not cfg.is_valid():
                return skip("not_configured")
            offer = self._offer(plan, key, cfg.amount, sub.currency)
        except CreditError:
            return skip("not_configured")

        threshold = cfg.threshold * MILLI_CENTS_PER_CENT if offer.is_wallet else cfg.threshold
        balance = current_balance if current_balance is not None else await self.credits.get_balance(holder_id, key)
        if balance >= threshold:
            return skip("balance_above_threshold")

        failure = await self._current_failure(holder_id, key, customer)
        failure_count = failure.failure_count if failure else 0

        decision = evaluate_retry(failure, now=self.clock(), cooldown=self.cooldown,
                                  escalation_failures=self.escalation_failures)
        if not decision.allowed:
            return await self._report(AutoTopUpFailed(
                holder_id=holder_id, key=key, customer_id=customer.id,
                trigger=decision.trigger, status=decision.status,
                failure_count=failure_count,
                decline_code=failure.decline_code if failure else None,
                decline_type=failure.decline_type if failure else None,
                next_attempt_at=decision.next_attempt_at,
            ))

        if self.on_credits_low:
            await self.on_credits_low(CreditsLow(holder_id=holder_id, key=key, balance=balance, threshold=threshold))

        count = await self.credits.read_model.count_auto_topups_this_month(holder_id, key)
        max_per_month = cfg.max_per_month or self.settings.AUTO_TOPUP_DEFAULT_MAX_PER_MONTH
        if count >= max_per_month:
            # resets next month
            return await self._report(AutoTopUpFailed(
                holder_id=holder_id, key=key, customer_id=customer.id,
                trigger="monthly_limit_reached", status="will_retry", failure_count=failure_count,
            ))

        pm = customer.default_payment_method
        if not pm:
            return await self._report(AutoTopUpFailed(
                holder_id=holder_id, key=key, customer_id=customer.id,
                trigger="no_payment_method", status="action_required", failure_count=failure_count,
            ))

        # Same key for concurrent triggers within one count window: Stripe collapses them.
        # No clock component, so a declined attempt can't be retried around the cooldown.
        year_month = self.clock().strftime("%Y-%m")
        charge = await self.gateway.create_charge(
            amount=offer.charge,
            currency=offer.currency,
            customer_id=customer.id,
            payment_method_id=pm,
            idempotency_key=f"auto_topup_{holder_id}_{key}_{year_month}_{count + 1}",
            metadata={M.TOP_UP_KEY: key, M.TOP_UP_AMOUNT: str(offer.amount), M.USER_ID: holder_id,
                      M.TOP_UP_AUTO: "true"},
            description=f"{offer.product_name} (auto top-up)",
        )

        if charge.status == "succeeded":
            balance = await self._grant_purchase(
                holder_id, offer, payment_intent_id=charge.payment_intent_id, source=TransactionSource.AUTO_TOPUP,
            )
            logger.info("Auto top-up %s %s for %s (%s)", offer.amount, key, holder_id, charge.payment_intent_id)
            return AutoTopUpTriggered(holder_id=holder_id, key=key, payment_intent_id=charge.payment_intent_id,
                                      amount=offer.amount, status="succeeded", balance=balance)
        if charge.status == "processing":
            # failure record stays until the payment actually lands
            return AutoTopUpTriggered(holder_id=holder_id, key=key, payment_intent_id=charge.payment_intent_id,
                                      amount=offer.amount, status="pending")
        if charge.status == "failed":
            return await self._record_decline(holder_id, key, customer.id, pm, charge)

        return await self._report(AutoTopUpFailed(
            holder_id=holder_id, key=key, customer_id=customer.id,
            trigger="unexpected_error", status="will_retry", failure_count=failure_count,
            message=charge.message,
        ))

    # ---------------- provider confirmations ----------------

    async def handle_payment_intent_succeeded(self, payment_intent: Any) -> Optional[int]:
        """
        Grants a top-up paid through a PaymentIntent we created. Returns the balance,
        or None when the intent isn't a top-up. Duplicates of the inline grant are no-ops.
        """
        md = so.metadata(payment_intent)
        key = md.get(M.TOP_UP_KEY)
        if not key:
            return None
        holder_id = md.get(M.USER_ID)
        amount = _parse_amount(md.get(M.TOP_UP_AMOUNT))
        if not holder_id or amount is None:
            raise CreditError("Missing top-up metadata on PaymentIntent", code=ErrorCode.INVALID_METADATA,
                              data={"payment_intent_id": so.obj_id(payment_intent)})

        source = TransactionSource.AUTO_TOPUP if md.get(M.TOP_UP_AUTO) == "true" else TransactionSource.TOPUP
        offer = self._paid_offer(key, amount, charged=int(so.field(payment_intent, "amount") or 0),
                                 currency=so.field(payment_intent, "currency"))
        return await self._grant_purchase(holder_id, offer, payment_intent_id=so.obj_id(payment_intent),
                                          source=source)

    async def handle_topup_checkout_completed(self, session: Any) -> Optional[int]:
        """Recovery checkout paid: grant once per payment and adopt the new card."""
        md = so.metadata(session)
        key = md.get(M.TOP_UP_KEY)
        if not key or not md.get(M.TOP_UP_AMOUNT):
            return None
        if so.field(session, "payment_status") != "paid":
            logger.warning("Top-up checkout %s has payment_status %s, skipping",
                           so.obj_id(session), so.field(session, "payment_status"))
            return None
        amount = _parse_amount(md.get(M.TOP_UP_AMOUNT))
        if amount is None:
            raise CreditError("Invalid top_up_amount in checkout session metadata", code=ErrorCode.INVALID_METADATA,
                              data={"session_id": so.obj_id(session)})

        customer_id = so.obj_id(so.field(session, "customer"))
        holder_id = await self.directory.get_holder_for_customer(customer_id) if customer_id else None
        if not holder_id:
            raise CreditError("No holder mapped to checkout customer", code=ErrorCode.USER_NOT_FOUND,
                              data={"customer_id": customer_id})

        pi_id = so.obj_id(so.field(session, "payment_intent"))
        if pi_id:
            await self.gateway.adopt_payment_method(customer_id, pi_id)

        offer = self._paid_offer(key, amount, charged=int(so.field(session, "amount_total") or 0),
                                 currency=so.field(session, "currency"))
        return await self._grant_purchase(holder_id, offer, payment_intent_id=pi_id or so.obj_id(session),
                                          source=TransactionSource.TOPUP)

    async def handle_customer_updated(self, customer: Any, previous_attributes: Optional[Dict[str, Any]] = None) -> int:
        """A changed default payment method lifts every auto top-up block of the holder."""
        prev_settings = so.field(previous_attributes, "invoice_settings")
        if prev_settings is None or "default_payment_method" not in prev_settings:
            return 0
        previous = so.obj_id(prev_settings.get("default_payment_method"))
        if previous == so.default_payment_method(customer):
            return 0
        holder_id = so.metadata(customer).get(M.USER_ID) \
            or await self.directory.get_holder_for_customer(so.obj_id(customer))
        if not holder_id:
            return 0
        cleared = await self.failures.clear_all(holder_id)
        if cleared:
            logger.info("Payment method changed for %s: cleared %s auto top-up block(s)", holder_id, cleared)
        return cleared

    # ---------------- status ----------------

    async def get_auto_topup_status(self, holder_id: str, key: str) -> Optional[AutoTopUpStatus]:
        return await self.failures.get(holder_id, key)

    async def unblock_auto_topup(self, holder_id: str, key: str) -> bool:
        return await self.failures.clear(holder_id, key)

    async def unblock_all_auto_topups(self, holder_id: str) -> int:
        return await self.failures.clear_all(holder_id)

    # ---------------- internals ----------------

    def _offer(self, plan: Optional[Plan], key: str, amount: int, currency: Optional[str]) -> _Offer:
        if plan is None:
            raise CreditError("Subscription price is not a configured plan", code=ErrorCode.TOPUP_NOT_CONFIGURED)
        currency = (currency or "usd").lower()
        if key == WALLET_KEY:
            if not plan.wallet:
                raise CreditError("Wallet top-ups not configured for plan", code=ErrorCode.TOPUP_NOT_CONFIGURED,
                                  data={"plan": plan.name})
            return _Offer(key=key, units=amount * MILLI_CENTS_PER_CENT, amount=amount, charge=amount,
                          currency=currency, product_name="Wallet", auto_topup=plan.wallet.auto_topup,
                          min_per_purchase=plan.wallet.min_per_purchase,
                          max_per_purchase=plan.wallet.max_per_purchase)
        feature = plan.features.get(key)
        if not feature or not feature.price_per_credit or feature.price_per_credit <= 0:
            raise CreditError(f"Top-ups not configured for {key}", code=ErrorCode.TOPUP_NOT_CONFIGURED,
                              data={"plan": plan.name, "key": key})
        return _Offer(key=key, units=amount, amount=amount, charge=amount * feature.price_per_credit,
                      currency=currency, product_name=feature.display_name or _display_name(key),
                      auto_topup=feature.auto_topup, min_per_purchase=feature.min_per_purchase,
                      max_per_purchase=feature.max_per_purchase)

    def _paid_offer(self, key: str, amount: int, *, charged: int, currency: Optional[str]) -> _Offer:
        # already paid: only the unit conversion matters
        units = amount * MILLI_CENTS_PER_CENT if key == WALLET_KEY else amount
        return _Offer(key=key, units=units, amount=amount, charge=charged, currency=(currency or "usd").lower(),
                      product_name=_display_name(key))

    def _auto_topup_config(self, plan: Optional[Plan], key: str) -> Optional[AutoTopUpConfig]:
        if plan is None:
            return None
        if key == WALLET_KEY:
            return plan.wallet.auto_topup if plan.wallet else None
        feature = plan.features.get(key)
        return feature.auto_topup if feature else None

    def _check_purchase_limits(self, offer: _Offer) -> None:
        lo, hi = offer.min_per_purchase, offer.max_per_purchase
        if offer.amount < lo:
            raise CreditError(f"Minimum purchase is {lo}", code=ErrorCode.INVALID_AMOUNT, data={"min": lo})
        if hi is not None and offer.amount > hi:
            raise CreditError(f"Maximum purchase is {hi}", code=ErrorCode.INVALID_AMOUNT, data={"max": hi})
        if offer.charge < self.settings.TOPUP_MIN_CHARGE_CENTS:
            raise CreditError(
                f"Charge of {offer.charge} is below the minimum of {self.settings.TOPUP_MIN_CHARGE_CENTS}",
                code=ErrorCode.INVALID_AMOUNT,
                data={"charge": offer.charge, "min_charge": self.settings.TOPUP_MIN_CHARGE_CENTS},
            )

    async def _check_wallet_currency(self, holder_id: str, currency: str) -> None:
        _, existing = await self.credits.read_model.get_balance_with_currency(holder_id, WALLET_KEY)
        if existing and existing != currency:
            raise CreditError(f"Wallet currency is {existing}, subscription bills in {currency}",
                              code=ErrorCode.CURRENCY_MISMATCH,
                              data={"wallet_currency": existing, "requested_currency": currency})

    async def _current_failure(self, holder_id: str, key: str, customer: CustomerRef) -> Optional[AutoTopUpStatus]:
        failure = await self.failures.get(holder_id, key)
        if (failure and failure.payment_method_id and customer.default_payment_method
                and failure.payment_method_id != customer.default_payment_method):
            logger.info("Default payment method of %s changed; lifting auto top-up block on %s", holder_id, key)
            await self.failures.clear(holder_id, key)
            return None
        return failure

    async def _record_decline(self, holder_id: str, key: str, customer_id: str, pm: str,
                              charge: ChargeResult) -> AutoTopUpFailed:
        status = await self.failures.record_failure(holder_id, key, payment_method_id=pm,
                                                    decline_code=charge.decline_code)
        action_required = status.is_action_required(self.escalation_failures)
        logger.warning("Auto top-up declined for %s/%s: %s (%s, failure #%s)",
                       holder_id, key, charge.decline_code, status.decline_type, status.failure_count)
        return await self._report(AutoTopUpFailed(
            holder_id=holder_id, key=key, customer_id=customer_id,
            trigger="stripe_declined_payment",
            status="action_required" if action_required else "will_retry",
            failure_count=status.failure_count,
            decline_code=charge.decline_code,
            decline_type=classify_decline(charge.decline_code),
            next_attempt_at=None if action_required else status.next_attempt_at(self.cooldown),
            message=charge.message,
        ))

    async def _report(self, failed: AutoTopUpFailed) -> AutoTopUpFailed:
        logger.info("Auto top-up not charged for %s/%s: %s (%s)", failed.holder_id, failed.key,
                    failed.trigger, failed.status)
        if self.on_auto_topup_failed:
            await self.on_auto_topup_failed(failed)
        return failed

    async def _recovery_url(self, customer: CustomerRef, offer: _Offer, metadata: Dict[str, str]) -> Optional[str]:
        return await self.gateway.create_recovery_checkout(
            customer_id=customer.id,
            amount=offer.charge,
            currency=offer.currency,
            product_name=f"{offer.product_name} top-up",
            metadata=metadata,
        )

    async def _grant_purchase(self, holder_id: str, offer: _Offer, *, payment_intent_id: str,
                              source: TransactionSource) -> int:
        """Idempotent per payment; callbacks fire on the first grant only. Clears the decline record."""
        prefix = "wallet_topup" if offer.is_wallet else "topup"
        try:
            balance = await self.credits.grant(
                holder_id, offer.key, offer.units,
                source=source,
                source_id=payment_intent_id,
                idempotency_key=f"{prefix}_{payment_intent_id}",
                currency=offer.currency if offer.is_wallet else None,
            )
        except CreditError as e:
            if not e.is_idempotency_conflict:
                raise
            logger.warning("Top-up %s already granted", payment_intent_id)
            await self.failures.clear(holder_id, offer.key)
            return await self.credits.get_balance(holder_id, offer.key)

        await self.failures.clear(holder_id, offer.key)
        if self.on_credits_granted:
            await self.on_credits_granted(CreditEvent(holder_id, offer.key, offer.units, balance, source,
                                                      payment_intent_id))
        if self.on_topup_completed:
            await self.on_topup_completed(TopUpCompleted(
                holder_id=holder_id, key=offer.key, amount=offer.amount, charged=offer.charge,
                currency=offer.currency, balance=balance, payment_intent_id=payment_intent_id,
            ))
        return balance


def _parse_amount(raw: Optional[str]) -> Optional[int]:
    try:
        v = int(raw) if raw is not None else None
    except ValueError:
        return None
    return v if v and v > 0 else None

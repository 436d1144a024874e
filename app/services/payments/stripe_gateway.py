"""Stripe gateway - recurring plans via Checkout Sessions and Subscriptions."""

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any, TypeVar

import stripe
from stripe import SignatureVerificationError, StripeError

from app.config import settings
from app.config.plans import billing_interval
from app.core.exceptions import ProviderError, SignatureError
from app.models.plan import Plan
from app.models.user import User
from app.services.payments.base import (
    CheckoutResult,
    EventKind,
    PaymentDetails,
    PaymentGateway,
    ProviderEvent,
)

logger = logging.getLogger(__name__)

# Initialize Stripe with secret key
stripe.api_key = settings.stripe_secret_key

T = TypeVar("T")

PAST_DUE_STATUSES = ("past_due", "unpaid")


def _from_epoch(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Subscription id on an invoice (top-level on older API versions, nested on newer)."""
    if invoice.get("subscription"):
        return str(invoice["subscription"])
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


def _invoice_subscription_metadata(invoice: dict[str, Any]) -> dict[str, Any]:
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or invoice.get("subscription_details") or {}
    return dict(details.get("metadata") or {})


def _invoice_period_end(invoice: dict[str, Any]) -> datetime | None:
    """Latest line-item period end, falling back to the invoice's own period."""
    ends = [
        line.get("period", {}).get("end")
        for line in invoice.get("lines", {}).get("data", [])
        if line.get("period", {}).get("end")
    ]
    if ends:
        return _from_epoch(max(ends))
    return _from_epoch(invoice.get("period_end"))


class StripeGateway(PaymentGateway):
    """
    Handles all Stripe API interactions.

    The Stripe SDK is synchronous; every call runs in a worker thread
    bounded by ``provider_timeout_seconds``. Stripe errors and timeouts are
    raised as ProviderError with the Stripe error code preserved.
    """

    name = "stripe"
    signature_header = "stripe-signature"

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if not settings.stripe_enabled:
            raise ProviderError(self.name, "Stripe is not configured", "not_configured")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=settings.provider_timeout_seconds,
            )
        except TimeoutError:
            logger.error(
                f"Stripe call timed out after {settings.provider_timeout_seconds}s"
            )
            raise ProviderError(self.name, "Request timed out", "timeout") from None
        except StripeError as e:
            logger.error(f"Stripe call failed: {e}")
            raise ProviderError(
                self.name,
                e.user_message or str(e) or "Stripe request failed",
                e.code,
            ) from e

    async def create_customer(self, user: User) -> str:
        """
        Create a Stripe customer for a user.

        Returns the Stripe customer ID (cus_...).
        """
        customer = await self._call(
            stripe.Customer.create,
            email=user.email or "",
            name=user.display_name or "",
            metadata={"user_id": user.id},
        )
        logger.info(f"Created Stripe customer {customer.id} for user {user.id}")
        return customer.id

    async def create_checkout(
        self,
        user: User,
        plan: Plan,
        success_url: str,
        cancel_url: str,
        customer_id: str | None = None,
    ) -> CheckoutResult:
        """
        Create a Stripe Checkout session.

        Recurring plans use subscription mode against the synced price;
        anything else is a one-off payment-mode session.
        """
        if not customer_id:
            customer_id = await self.create_customer(user)

        metadata = {"user_id": user.id, "plan_id": plan.id}
        params: dict[str, Any] = {
            "customer": customer_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user.id,
            "metadata": metadata,
        }
        if plan.is_recurring:
            if not plan.stripe_price_id:
                raise ProviderError(
                    self.name, f"Plan {plan.id} has no Stripe price", "price_not_synced"
                )
            params["mode"] = "subscription"
            params["line_items"] = [{"price": plan.stripe_price_id, "quantity": 1}]
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["mode"] = "payment"
            params["line_items"] = [
                {
                    "price_data": {
                        "currency": plan.currency.lower(),
                        "unit_amount": plan.price_minor_units,
                        "product_data": {"name": plan.name},
                    },
                    "quantity": 1,
                }
            ]
            params["payment_intent_data"] = {"metadata": metadata}

        session = await self._call(stripe.checkout.Session.create, **params)
        logger.info(
            f"Created checkout session {session.id} for user {user.id}, plan {plan.id}"
        )
        return CheckoutResult(
            provider=self.name,
            redirect_url=session.url,
            order_id=session.id,
            amount_minor_units=plan.price_minor_units,
            currency=plan.currency,
            customer_id=customer_id,
        )

    def verify_payment(self, payment_id: str, order_id: str, signature: str) -> bool:
        # Stripe confirms payments only through webhooks.
        logger.debug(f"verify_payment not supported for Stripe (payment {payment_id})")
        return False

    async def fetch_payment(self, payment_id: str) -> PaymentDetails:
        intent = await self._call(stripe.PaymentIntent.retrieve, payment_id)
        method_types = intent.get("payment_method_types") or []
        return PaymentDetails(
            payment_id=intent["id"],
            status=intent["status"],
            amount_minor_units=int(intent.get("amount_received") or intent.get("amount") or 0),
            currency=str(intent.get("currency", "")).upper(),
            method=method_types[0] if method_types else None,
            notes=dict(intent.get("metadata") or {}),
        )

    async def cancel_recurring(self, provider_subscription_id: str, at_period_end: bool) -> None:
        """Cancel at period end, or immediately."""
        if at_period_end:
            await self._call(
                stripe.Subscription.modify,
                provider_subscription_id,
                cancel_at_period_end=True,
            )
            logger.info(f"Marked subscription {provider_subscription_id} for cancellation")
        else:
            await self._call(stripe.Subscription.cancel, provider_subscription_id)
            logger.info(f"Cancelled subscription {provider_subscription_id} immediately")

    async def change_recurring_plan(
        self,
        provider_subscription_id: str,
        new_price_handle: str,
    ) -> None:
        """
        Change a subscription to a different price.

        Prorates the change based on remaining time in current period.
        """
        sub = await self._call(stripe.Subscription.retrieve, provider_subscription_id)
        items = sub["items"]["data"]
        if not items:
            raise ProviderError(self.name, "Subscription has no items", "no_items")

        await self._call(
            stripe.Subscription.modify,
            provider_subscription_id,
            items=[{"id": items[0]["id"], "price": new_price_handle}],
            proration_behavior="create_prorations",
        )
        logger.info(f"Changed subscription {provider_subscription_id} to {new_price_handle}")

    def price_handle(self, plan: Plan) -> str | None:
        return plan.stripe_price_id

    async def sync_plan(self, plan: Plan) -> tuple[str, str] | None:
        """Create a Stripe product and recurring price for a plan."""
        if not plan.is_recurring:
            return None
        interval, interval_count = billing_interval(plan.duration_days)
        product = await self._call(
            stripe.Product.create,
            name=plan.name,
            description=plan.description or "",
            metadata={"plan_id": plan.id, "duration_days": str(plan.duration_days)},
        )
        price = await self._call(
            stripe.Price.create,
            product=product.id,
            unit_amount=plan.price_minor_units,
            currency=plan.currency.lower(),
            recurring={"interval": interval, "interval_count": interval_count},
        )
        return product.id, price.id

    def verify_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and construct a webhook event from Stripe.

        Raises SignatureError if signature verification fails.
        """
        if not settings.stripe_webhook_secret:
            raise SignatureError("Stripe webhook secret not configured")
        try:
            stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload,
                signature,
                settings.stripe_webhook_secret,
            )
        except SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise SignatureError("Invalid webhook signature") from None
        except ValueError as e:
            logger.warning(f"Invalid webhook payload: {e}")
            raise SignatureError("Invalid webhook payload") from None
        return json.loads(payload)

    def event_id(self, event: dict[str, Any], payload: bytes, headers: Mapping[str, str]) -> str:
        return str(event.get("id", ""))

    def parse_event(self, event: dict[str, Any], event_id: str) -> ProviderEvent | None:
        event_type = str(event.get("type", ""))
        obj: dict[str, Any] = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        def build(kind: EventKind, **fields: Any) -> ProviderEvent:
            return ProviderEvent(
                provider=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=kind,
                user_id=metadata.get("user_id"),
                plan_id=metadata.get("plan_id"),
                provider_customer_id=obj.get("customer"),
                **fields,
            )

        if event_type == "checkout.session.completed":
            if obj.get("mode") == "subscription":
                return build(
                    EventKind.SUBSCRIPTION_ACTIVATED,
                    provider_subscription_id=obj.get("subscription"),
                    provider_payment_id=obj.get("invoice") or obj.get("id"),
                    amount_minor_units=obj.get("amount_total"),
                    currency=str(obj.get("currency", "")).upper() or None,
                    method="card",
                )
            if obj.get("payment_status") != "paid":
                # Delayed methods settle later via async_payment_succeeded.
                return None
            return build(
                EventKind.PAYMENT_SUCCEEDED,
                provider_payment_id=obj.get("payment_intent"),
                order_id=obj.get("id"),
                amount_minor_units=obj.get("amount_total"),
                currency=str(obj.get("currency", "")).upper() or None,
            )

        if event_type == "checkout.session.async_payment_succeeded":
            return build(
                EventKind.PAYMENT_SUCCEEDED,
                provider_payment_id=obj.get("payment_intent"),
                order_id=obj.get("id"),
                amount_minor_units=obj.get("amount_total"),
                currency=str(obj.get("currency", "")).upper() or None,
            )

        if event_type == "checkout.session.async_payment_failed":
            return build(
                EventKind.PAYMENT_FAILED,
                provider_payment_id=obj.get("payment_intent"),
                order_id=obj.get("id"),
                amount_minor_units=obj.get("amount_total"),
                currency=str(obj.get("currency", "")).upper() or None,
            )

        if event_type in ("invoice.payment_succeeded", "invoice.paid"):
            if obj.get("billing_reason") == "subscription_create":
                # Same payment id as checkout.session.completed, so whichever
                # arrives second is a no-op.
                sub_metadata = _invoice_subscription_metadata(obj)
                return ProviderEvent(
                    provider=self.name,
                    event_id=event_id,
                    event_type=event_type,
                    kind=EventKind.SUBSCRIPTION_ACTIVATED,
                    user_id=sub_metadata.get("user_id"),
                    plan_id=sub_metadata.get("plan_id"),
                    provider_customer_id=obj.get("customer"),
                    provider_subscription_id=_invoice_subscription_id(obj),
                    provider_payment_id=obj.get("id"),
                    amount_minor_units=obj.get("amount_paid"),
                    currency=str(obj.get("currency", "")).upper() or None,
                    method="card",
                    period_end=_invoice_period_end(obj),
                )
            return build(
                EventKind.SUBSCRIPTION_RENEWED,
                provider_subscription_id=_invoice_subscription_id(obj),
                provider_payment_id=obj.get("id"),
                amount_minor_units=obj.get("amount_paid"),
                currency=str(obj.get("currency", "")).upper() or None,
                period_end=_invoice_period_end(obj),
            )

        if event_type == "invoice.payment_failed":
            return build(
                EventKind.PAYMENT_FAILED,
                provider_subscription_id=_invoice_subscription_id(obj),
                provider_payment_id=obj.get("id"),
                amount_minor_units=obj.get("amount_due"),
                currency=str(obj.get("currency", "")).upper() or None,
            )

        if event_type == "customer.subscription.updated":
            if obj.get("status") not in PAST_DUE_STATUSES:
                return None
            return build(EventKind.SUBSCRIPTION_PAST_DUE, provider_subscription_id=obj.get("id"))

        if event_type == "customer.subscription.deleted":
            return build(EventKind.SUBSCRIPTION_CANCELLED, provider_subscription_id=obj.get("id"))

        return None


stripe_gateway = StripeGateway()

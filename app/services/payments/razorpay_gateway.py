"""Razorpay gateway - fixed-term plans via orders and payments.

Uses Razorpay's REST API directly via httpx with basic auth (key id and
key secret). Checkout is client-side: the client pays against an order and
posts back ``order_id|payment_id`` signed with our key secret.
"""

import hashlib
import hmac
import json
import logging
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import httpx

from app.config import settings
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

PAYMENT_EVENTS = {
    "payment.captured": EventKind.PAYMENT_SUCCEEDED,
    "payment.failed": EventKind.PAYMENT_FAILED,
}
SUBSCRIPTION_EVENTS = {
    "subscription.activated": EventKind.SUBSCRIPTION_ACTIVATED,
    "subscription.charged": EventKind.SUBSCRIPTION_RENEWED,
    "subscription.cancelled": EventKind.SUBSCRIPTION_CANCELLED,
    "subscription.completed": EventKind.SUBSCRIPTION_CANCELLED,
    "subscription.halted": EventKind.SUBSCRIPTION_PAST_DUE,
    "subscription.pending": EventKind.SUBSCRIPTION_PAST_DUE,
}


def _hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _from_epoch(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _entity(event: dict[str, Any], name: str) -> dict[str, Any]:
    return ((event.get("payload") or {}).get(name) or {}).get("entity") or {}


class RazorpayGateway(PaymentGateway):
    """Send order, payment and subscription requests to Razorpay's REST API."""

    name = "razorpay"
    signature_header = "x-razorpay-signature"

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not settings.razorpay_enabled:
            raise ProviderError(self.name, "Razorpay is not configured", "not_configured")

        try:
            async with httpx.AsyncClient(
                base_url=settings.razorpay_api_base,
                auth=(settings.razorpay_key_id, settings.razorpay_key_secret),
                timeout=settings.provider_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=payload)
        except httpx.TimeoutException:
            logger.error(f"[razorpay] {method} {path} timed out")
            raise ProviderError(self.name, "Request timed out", "timeout") from None
        except httpx.RequestError as e:
            logger.error(f"[razorpay] {method} {path} failed: {e}")
            raise ProviderError(self.name, "Request failed", "request_error") from e

        if response.is_error:
            code, description = "http_error", response.text
            try:
                error = response.json().get("error") or {}
                code = error.get("code") or code
                description = error.get("description") or description
            except ValueError:
                pass
            logger.error(
                f"[razorpay] HTTP {response.status_code} on {method} {path}: {code} {description}"
            )
            raise ProviderError(self.name, description, code)

        return response.json()

    async def create_checkout(
        self,
        user: User,
        plan: Plan,
        success_url: str,
        cancel_url: str,
        customer_id: str | None = None,
    ) -> CheckoutResult:
        """Create an order for the plan price; amounts are in minor units."""
        order = await self._request(
            "POST",
            "/orders",
            {
                "amount": plan.price_minor_units,
                "currency": plan.currency,
                "receipt": f"rcpt_{uuid.uuid4().hex[:24]}",
                "notes": {"user_id": user.id, "plan_id": plan.id},
            },
        )
        logger.info(f"[razorpay] Created order {order['id']} for user {user.id}, plan {plan.id}")
        return CheckoutResult(
            provider=self.name,
            order_id=order["id"],
            amount_minor_units=int(order.get("amount", plan.price_minor_units)),
            currency=str(order.get("currency", plan.currency)),
            key_id=settings.razorpay_key_id,
        )

    def verify_payment(self, payment_id: str, order_id: str, signature: str) -> bool:
        """HMAC-SHA256 over ``order_id|payment_id`` with the key secret."""
        if not (settings.razorpay_key_secret and payment_id and order_id and signature):
            return False
        expected = _hmac_sha256(
            settings.razorpay_key_secret, f"{order_id}|{payment_id}".encode()
        )
        return hmac.compare_digest(expected, signature)

    async def fetch_payment(self, payment_id: str) -> PaymentDetails:
        data = await self._request("GET", f"/payments/{payment_id}")
        return PaymentDetails(
            payment_id=data["id"],
            status=data.get("status", ""),
            amount_minor_units=int(data.get("amount") or 0),
            currency=str(data.get("currency", "")).upper(),
            order_id=data.get("order_id"),
            method=data.get("method"),
            notes=dict(data.get("notes") or {}),
        )

    async def cancel_recurring(self, provider_subscription_id: str, at_period_end: bool) -> None:
        await self._request(
            "POST",
            f"/subscriptions/{provider_subscription_id}/cancel",
            {"cancel_at_cycle_end": 1 if at_period_end else 0},
        )
        logger.info(f"[razorpay] Cancelled subscription {provider_subscription_id}")

    async def change_recurring_plan(
        self,
        provider_subscription_id: str,
        new_price_handle: str,
    ) -> None:
        await self._request(
            "PATCH",
            f"/subscriptions/{provider_subscription_id}",
            {"plan_id": new_price_handle, "schedule_change_at": "now"},
        )
        logger.info(
            f"[razorpay] Changed subscription {provider_subscription_id} to {new_price_handle}"
        )

    def verify_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify ``X-Razorpay-Signature``: HMAC-SHA256 of the raw body with the webhook secret."""
        if not settings.razorpay_webhook_secret:
            raise SignatureError("Razorpay webhook secret not configured")
        if not signature:
            raise SignatureError("Missing webhook signature")

        expected = _hmac_sha256(settings.razorpay_webhook_secret, payload)
        if not hmac.compare_digest(expected, signature):
            logger.warning("[razorpay] Webhook signature mismatch")
            raise SignatureError("Invalid webhook signature")

        try:
            return json.loads(payload)
        except ValueError:
            raise SignatureError("Invalid webhook payload") from None

    def event_id(self, event: dict[str, Any], payload: bytes, headers: Mapping[str, str]) -> str:
        """Razorpay sends the event id as a header; fall back to a body digest."""
        return headers.get("x-razorpay-event-id") or hashlib.sha256(payload).hexdigest()

    def parse_event(self, event: dict[str, Any], event_id: str) -> ProviderEvent | None:
        event_type = str(event.get("event", ""))

        if event_type in PAYMENT_EVENTS:
            payment = _entity(event, "payment")
            if not payment.get("order_id") or payment.get("invoice_id"):
                # Subscription charges arrive as subscription.* events.
                return None
            notes = payment.get("notes") or {}
            return ProviderEvent(
                provider=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=PAYMENT_EVENTS[event_type],
                user_id=notes.get("user_id"),
                plan_id=notes.get("plan_id"),
                provider_payment_id=payment.get("id"),
                provider_customer_id=payment.get("customer_id"),
                order_id=payment.get("order_id"),
                amount_minor_units=payment.get("amount"),
                currency=str(payment.get("currency", "")).upper() or None,
                method=payment.get("method"),
            )

        if event_type in SUBSCRIPTION_EVENTS:
            subscription = _entity(event, "subscription")
            payment = _entity(event, "payment")
            notes = subscription.get("notes") or {}
            payment_id = payment.get("id")
            if not payment_id and subscription.get("id"):
                payment_id = f"{subscription['id']}:{subscription.get('current_start')}"
            return ProviderEvent(
                provider=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=SUBSCRIPTION_EVENTS[event_type],
                user_id=notes.get("user_id"),
                plan_id=notes.get("plan_id"),
                provider_payment_id=payment_id,
                provider_subscription_id=subscription.get("id"),
                provider_customer_id=subscription.get("customer_id"),
                amount_minor_units=payment.get("amount"),
                currency=str(payment.get("currency", "")).upper() or None,
                method=payment.get("method"),
                period_start=_from_epoch(subscription.get("current_start")),
                period_end=_from_epoch(subscription.get("current_end")),
            )

        return None


razorpay_gateway = RazorpayGateway()

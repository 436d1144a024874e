"""Webhook verification, deduplication and dispatch into the state machine.

Order of work for one delivery:

1. verify the signature over the raw body (SignatureError -> 400)
2. skip events already in ``processed_webhook_events``
3. map to an EventKind (unmapped -> ignored)
4. apply through the subscription state machine
5. record the event as processed
6. send the lifecycle emails queued by step 4

Step 5 only happens after step 4 returns, so a failure leaves the event
unrecorded and the provider's redelivery retries it. Step 6 runs outside
the dispatch timeout, after the response when the endpoint hands over its
BackgroundTasks.
"""

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, assert_never

from fastapi import BackgroundTasks
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.clock import Clock, system_clock
from app.core.exceptions import (
    DispatchTimeoutError,
    PaymentNotCapturedError,
    SignatureError,
)
from app.domain.subscription_operations import subscription_ops
from app.domain.webhook_event_operations import webhook_event_ops
from app.models.subscription import SubscriptionStatus
from app.services.payments import EventKind, PaymentGateway, ProviderEvent, get_gateway
from app.services.subscription_machine import SubscriptionStateMachine, subscription_machine

logger = logging.getLogger(__name__)

PROCESSED = "processed"
IGNORED = "ignored"
ALREADY_PROCESSED = "already_processed"


@dataclass
class WebhookOutcome:
    """Result of handling one webhook delivery."""

    status: str
    provider: str
    event_id: str | None = None
    event_type: str | None = None
    kind: str | None = None
    action: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class WebhookDispatcher:
    def __init__(
        self,
        machine: SubscriptionStateMachine | None = None,
        gateway_lookup: Callable[[str], PaymentGateway] | None = None,
        clock: Clock | None = None,
        timeout: float | None = None,
    ) -> None:
        self._machine = machine or subscription_machine
        self._gateway_lookup = gateway_lookup or get_gateway
        self._clock = clock or system_clock
        self._timeout = timeout

    async def handle(
        self,
        db: AsyncSession,
        provider: str,
        payload: bytes,
        headers: Mapping[str, str],
        background_tasks: BackgroundTasks | None = None,
    ) -> WebhookOutcome:
        """
        Verify and apply one webhook delivery.

        Raises SignatureError on a bad signature and lets state machine
        errors propagate so the caller answers non-2xx.

        Lifecycle emails are sent after the event is recorded, outside the
        dispatch timeout. With ``background_tasks`` they go out after the
        response is returned.
        """
        gateway = self._gateway_lookup(provider)
        signature = headers.get(gateway.signature_header, "")
        try:
            event = gateway.verify_webhook(payload, signature)
        except SignatureError as e:
            logger.warning(
                f"[webhook] SECURITY: rejected {gateway.name} delivery "
                f"({len(payload)} bytes, signature {'present' if signature else 'missing'}): {e}"
            )
            raise

        event_id = gateway.event_id(event, payload, headers)
        if not event_id:
            raise SignatureError("Webhook event has no id")
        received_at = self._clock.now()

        if await webhook_event_ops.is_processed(db, gateway.name, event_id):
            logger.info(f"[webhook] Skipping duplicate {gateway.name} event {event_id}")
            return WebhookOutcome(ALREADY_PROCESSED, gateway.name, event_id)

        parsed = gateway.parse_event(event, event_id)
        if parsed is None:
            logger.debug(f"[webhook] Ignoring unhandled {gateway.name} event {event_id}")
            return WebhookOutcome(IGNORED, gateway.name, event_id)

        logger.info(
            f"[webhook] Received {gateway.name} {parsed.event_type} ({event_id}) -> {parsed.kind.value}"
        )
        async with self._machine.collect_notifications() as outbox:
            try:
                outcome = await self._apply(db, gateway, parsed, event_id, received_at)
            except Exception:
                # Transitions that committed before the failure still notify
                await self._machine.send_notifications(outbox)
                raise

        if outbox:
            if background_tasks is not None:
                background_tasks.add_task(self._machine.send_notifications, outbox)
            else:
                await self._machine.send_notifications(outbox)
        return outcome

    async def _apply(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        parsed: ProviderEvent,
        event_id: str,
        received_at: datetime,
    ) -> WebhookOutcome:
        timeout = self._timeout
        if timeout is None:
            timeout = settings.webhook_dispatch_timeout_seconds
        try:
            action = await asyncio.wait_for(self._dispatch(db, gateway, parsed), timeout=timeout)
        except TimeoutError:
            logger.error(f"[webhook] Dispatch of {gateway.name} event {event_id} timed out")
            raise DispatchTimeoutError(gateway.name, event_id) from None

        if action == IGNORED:
            return WebhookOutcome(
                IGNORED, gateway.name, event_id, parsed.event_type, parsed.kind.value
            )

        try:
            await webhook_event_ops.mark_processed(
                db,
                provider_name=gateway.name,
                provider_event_id=event_id,
                event_type=parsed.event_type,
                received_at=received_at,
                processed_at=self._clock.now(),
            )
            await db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event got there first.
            await db.rollback()
            logger.info(f"[webhook] {gateway.name} event {event_id} recorded concurrently")
            return WebhookOutcome(ALREADY_PROCESSED, gateway.name, event_id)

        return WebhookOutcome(
            PROCESSED, gateway.name, event_id, parsed.event_type, parsed.kind.value, action
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────────────

    async def _dispatch(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        event: ProviderEvent,
    ) -> str:
        match event.kind:
            case EventKind.PAYMENT_SUCCEEDED:
                return await self._payment_succeeded(db, gateway, event)
            case EventKind.PAYMENT_FAILED:
                return await self._payment_failed(db, event)
            case EventKind.SUBSCRIPTION_ACTIVATED:
                return await self._subscription_activated(db, event)
            case EventKind.SUBSCRIPTION_RENEWED:
                return await self._subscription_renewed(db, event)
            case EventKind.SUBSCRIPTION_CANCELLED:
                return await self._subscription_cancelled(db, event)
            case EventKind.SUBSCRIPTION_PAST_DUE:
                return await self._subscription_past_due(db, event)
            case _:
                assert_never(event.kind)

    def _missing(self, event: ProviderEvent, *fields: str) -> bool:
        absent = [name for name in fields if not getattr(event, name)]
        if absent:
            logger.warning(
                f"[webhook] {event.provider} event {event.event_id} lacks {', '.join(absent)}; ignoring"
            )
        return bool(absent)

    async def _payment_succeeded(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        event: ProviderEvent,
    ) -> str:
        if self._missing(event, "user_id", "plan_id", "provider_payment_id"):
            return IGNORED
        details = await gateway.fetch_payment(event.provider_payment_id)
        if not details.captured:
            logger.warning(
                f"[webhook] Payment {details.payment_id} reported paid but status is {details.status}"
            )
            raise PaymentNotCapturedError(details.payment_id, details.status)

        await self._machine.activate_from_payment(
            db,
            event.user_id,
            event.plan_id,
            event.provider_payment_id,
            provider=event.provider,
            amount_minor_units=details.amount_minor_units or event.amount_minor_units,
            currency=details.currency or event.currency,
            method=details.method or event.method,
            provider_customer_id=event.provider_customer_id,
            provider_event_id=event.event_id,
        )
        return "activated"

    async def _payment_failed(self, db: AsyncSession, event: ProviderEvent) -> str:
        if event.provider_subscription_id:
            subscription = await self._machine.resolve_by_provider_subscription(
                db, event.provider, event.provider_subscription_id
            )
            if subscription.status == SubscriptionStatus.PAST_DUE.value:
                return "unchanged"
            await self._machine.mark_past_due(db, subscription.id, provider_event_id=event.event_id)
            return "past_due"

        if self._missing(event, "user_id", "plan_id", "provider_payment_id"):
            return IGNORED
        await self._machine.record_failed_payment(
            db,
            event.user_id,
            event.plan_id,
            event.provider_payment_id,
            provider=event.provider,
            amount_minor_units=event.amount_minor_units,
            currency=event.currency,
            method=event.method,
            provider_event_id=event.event_id,
        )
        return "payment_failed"

    async def _subscription_activated(self, db: AsyncSession, event: ProviderEvent) -> str:
        if self._missing(event, "user_id", "plan_id"):
            return IGNORED
        if event.provider_subscription_id:
            bound = await subscription_ops.get_by_provider_subscription(
                db, event.provider, event.provider_subscription_id
            )
            if bound is not None and bound.status == SubscriptionStatus.ACTIVE.value:
                return "unchanged"
        await self._machine.activate_from_payment(
            db,
            event.user_id,
            event.plan_id,
            event.provider_payment_id or event.event_id,
            event.period_start,
            event.period_end,
            provider=event.provider,
            amount_minor_units=event.amount_minor_units,
            currency=event.currency,
            method=event.method,
            provider_customer_id=event.provider_customer_id,
            provider_subscription_id=event.provider_subscription_id,
            provider_event_id=event.event_id,
        )
        return "activated"

    async def _subscription_renewed(self, db: AsyncSession, event: ProviderEvent) -> str:
        if self._missing(event, "provider_subscription_id"):
            return IGNORED
        subscription = await self._machine.resolve_by_provider_subscription(
            db, event.provider, event.provider_subscription_id
        )
        await self._machine.apply_recurring_renewal(
            db,
            subscription.id,
            event.period_end,
            event.provider_payment_id or event.event_id,
            amount_minor_units=event.amount_minor_units,
            currency=event.currency,
            method=event.method,
            provider_event_id=event.event_id,
        )
        return "renewed"

    async def _subscription_cancelled(self, db: AsyncSession, event: ProviderEvent) -> str:
        if self._missing(event, "provider_subscription_id"):
            return IGNORED
        subscription = await self._machine.resolve_by_provider_subscription(
            db, event.provider, event.provider_subscription_id
        )
        if subscription.is_terminal:
            return "unchanged"
        await self._machine.request_cancellation(
            db,
            subscription.id,
            cancel_at_period_end=False,
            provider_event_id=event.event_id,
            notify_provider=False,
        )
        return "cancelled"

    async def _subscription_past_due(self, db: AsyncSession, event: ProviderEvent) -> str:
        if self._missing(event, "provider_subscription_id"):
            return IGNORED
        subscription = await self._machine.resolve_by_provider_subscription(
            db, event.provider, event.provider_subscription_id
        )
        if subscription.status == SubscriptionStatus.PAST_DUE.value:
            return "unchanged"
        await self._machine.mark_past_due(db, subscription.id, provider_event_id=event.event_id)
        return "past_due"


webhook_dispatcher = WebhookDispatcher()

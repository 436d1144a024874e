"""Subscription state machine - the only writer of ``Subscription.status``.

Allowed transitions::

    none ──start_trial──────────────▶ trialing
    none|expired|cancelled|failed ──activate_from_payment──▶ active
    trialing ──activate_from_payment──▶ active          (trial conversion)
    active|past_due ──apply_recurring_renewal──▶ active
    active ──mark_past_due──▶ past_due
    active|trialing|past_due ──request_cancellation(False)──▶ cancelled
    active|trialing|past_due ──request_cancellation(True)───▶ same status, flag set
    active ──change_plan──▶ active                       (recurring plans only)
    active|past_due|trialing ──expire_if_past_period──▶ expired | cancelled
    none ──record_failed_payment──▶ failed               (one-time payments)

Every mutating operation runs under a per-key lock (``user:<id>`` for
creation paths, ``subscription:<id>`` otherwise; always user before
subscription when both are held), re-reads the row with FOR UPDATE,
commits inside the lock and sends email only after the lock is released.
Any other (state, operation) pair raises InvalidStateTransition and leaves
the record unchanged.
"""

import logging
import uuid as uuid_pkg
from collections.abc import AsyncIterator, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.clock import Clock, ensure_utc, system_clock
from app.core.exceptions import (
    BillingError,
    ConflictError,
    InvalidStateTransition,
    PersistenceError,
    PlanNotEligibleError,
    SubscriptionNotFoundError,
)
from app.core.locks import KeyedLockRegistry, subscription_key, subscription_locks, user_key
from app.domain.payment_operations import payment_ops
from app.domain.plan_operations import plan_ops
from app.domain.subscription_operations import subscription_ops
from app.domain.user_operations import user_ops
from app.models.billing import BillingEventType
from app.models.payment import PaymentStatus
from app.models.plan import Plan
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.email.notifier import EmailTemplate, Notifier, notifier
from app.services.payments import PaymentGateway, get_gateway

logger = logging.getLogger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE.value
TRIALING = SubscriptionStatus.TRIALING.value
PAST_DUE = SubscriptionStatus.PAST_DUE.value
CANCELLED = SubscriptionStatus.CANCELLED.value
EXPIRED = SubscriptionStatus.EXPIRED.value
FAILED = SubscriptionStatus.FAILED.value

RENEWABLE = frozenset({ACTIVE, PAST_DUE})
CANCELLABLE = frozenset({ACTIVE, TRIALING, PAST_DUE})
EXPIRABLE = frozenset({ACTIVE, PAST_DUE, TRIALING})


def evaluate_expiry(
    subscription: Subscription,
    now: datetime,
    renewal_recorded: bool,
) -> str | None:
    """
    Decide the time-based outcome for a subscription.

    Returns the new status, or None when nothing should change: the period
    has not ended, the status is not expirable, or a renewal payment was
    recorded at or after the period end.
    """
    if subscription.status not in EXPIRABLE:
        return None
    if ensure_utc(subscription.current_period_end) >= ensure_utc(now):
        return None
    if subscription.cancel_at_period_end:
        return CANCELLED
    if renewal_recorded:
        return None
    return EXPIRED


@dataclass
class _Email:
    to: str | None
    template: EmailTemplate
    data: dict[str, Any]


# Set while a caller collects emails to send later (see collect_notifications)
_outbox: ContextVar[list[_Email] | None] = ContextVar("notification_outbox", default=None)


def _fmt(value: datetime) -> str:
    return ensure_utc(value).strftime("%B %d, %Y")


def _snapshot(subscription: Subscription) -> dict[str, Any]:
    return {
        "status": subscription.status,
        "plan_id": subscription.plan_id,
        "current_period_end": ensure_utc(subscription.current_period_end).isoformat(),
        "cancel_at_period_end": subscription.cancel_at_period_end,
    }


class SubscriptionStateMachine:
    """Applies validated lifecycle transitions to Subscription records."""

    def __init__(
        self,
        clock: Clock | None = None,
        notifier: Notifier | None = None,
        locks: KeyedLockRegistry | None = None,
        gateway_lookup: Callable[[str], PaymentGateway] | None = None,
        lock_timeout: float | None = None,
    ) -> None:
        self._clock = clock or system_clock
        self._notifier = notifier
        self._locks = locks or subscription_locks
        self._gateway_lookup = gateway_lookup or get_gateway
        self._lock_timeout = lock_timeout

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def notifier(self) -> Notifier:
        return self._notifier or notifier

    # ─────────────────────────────────────────────────────────────────────────
    # Plumbing
    # ─────────────────────────────────────────────────────────────────────────

    def _hold(self, key: str):
        timeout = self._lock_timeout
        if timeout is None:
            timeout = settings.subscription_lock_timeout_seconds
        return self._locks.hold(key, timeout=timeout)

    @asynccontextmanager
    async def _unit_of_work(self, db: AsyncSession) -> AsyncIterator[None]:
        """Commit on success; roll back and translate storage errors otherwise."""
        try:
            yield
            await db.commit()
        except BillingError:
            await db.rollback()
            raise
        except IntegrityError as e:
            await db.rollback()
            logger.warning(f"Integrity conflict while applying transition: {e.orig}")
            raise ConflictError("Conflicting subscription or payment record") from e
        except SQLAlchemyError as e:
            await db.rollback()
            logger.exception("Storage failure while applying transition")
            raise PersistenceError() from e
        except BaseException:
            await db.rollback()
            raise

    def _reject(
        self,
        operation: str,
        subscription: Subscription | None,
        detail: str | None = None,
    ) -> InvalidStateTransition:
        state = subscription.status if subscription else "none"
        ref = subscription.id if subscription else "-"
        logger.warning(
            f"Rejected {operation} on subscription {ref} in state '{state}'"
            + (f": {detail}" if detail else "")
        )
        return InvalidStateTransition(operation, state, detail)

    async def _load(self, db: AsyncSession, subscription_id: uuid_pkg.UUID) -> Subscription:
        subscription = await subscription_ops.get(db, subscription_id, for_update=True)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def _email_for(self, db: AsyncSession, user_id: str) -> str | None:
        user = await user_ops.get_by_id(db, user_id)
        return user.email if user else None

    async def _send(self, emails: list[_Email]) -> None:
        outbox = _outbox.get()
        if outbox is not None:
            outbox.extend(emails)
            return
        await self.send_notifications(emails)

    async def send_notifications(self, emails: list[_Email]) -> None:
        for email in emails:
            await self.notifier.notify(email.to, email.template, email.data)

    @asynccontextmanager
    async def collect_notifications(self) -> AsyncIterator[list[_Email]]:
        """
        Hold back lifecycle emails for the duration of the block.

        Transitions committed inside the block append their emails to the
        yielded list instead of sending them; the caller passes that list
        to ``send_notifications`` once it is done.
        """
        outbox: list[_Email] = []
        token = _outbox.set(outbox)
        try:
            yield outbox
        finally:
            _outbox.reset(token)

    def _period_end(self, plan: Plan, start: datetime) -> datetime:
        return start + timedelta(days=plan.duration_days)

    async def resolve_by_provider_subscription(
        self,
        db: AsyncSession,
        provider: str,
        provider_subscription_id: str,
    ) -> Subscription:
        subscription = await subscription_ops.get_by_provider_subscription(
            db, provider, provider_subscription_id
        )
        if subscription is None:
            raise SubscriptionNotFoundError(f"{provider}:{provider_subscription_id}")
        return subscription

    # ─────────────────────────────────────────────────────────────────────────
    # Creation paths (locked per user)
    # ─────────────────────────────────────────────────────────────────────────

    async def start_trial(self, db: AsyncSession, user_id: str, plan_id: str) -> Subscription:
        """
        Start a free trial.

        Raises ConflictError if the user has a trialing, active or past-due
        subscription or has already used a trial, PlanNotEligibleError if
        the plan has no trial window.
        """
        emails: list[_Email] = []
        async with self._hold(user_key(user_id)):
            async with self._unit_of_work(db):
                plan = await plan_ops.get_or_404(db, plan_id)
                if not plan.is_trial or plan.duration_days <= 0:
                    raise PlanNotEligibleError(f"Plan '{plan_id}' does not offer a trial")

                live = await subscription_ops.get_live_for_user(db, user_id, for_update=True)
                if live is not None:
                    logger.info(f"Trial refused for {user_id}: {live.status} subscription exists")
                    raise ConflictError("User already has a trialing or active subscription")
                # A past-due subscription returns to active when the provider collects
                current = await subscription_ops.get_current_for_user(db, user_id)
                if current is not None and current.status == PAST_DUE:
                    logger.info(f"Trial refused for {user_id}: subscription {current.id} is past due")
                    raise ConflictError("User has a past-due subscription")
                if await subscription_ops.has_used_trial(db, user_id):
                    raise ConflictError("Free trial has already been used")

                now = self._clock.now()
                trial_end = self._period_end(plan, now)
                subscription = await subscription_ops.create(
                    db,
                    user_id=user_id,
                    plan_id=plan.id,
                    status=TRIALING,
                    current_period_start=now,
                    current_period_end=trial_end,
                    trial_start=now,
                    trial_end=trial_end,
                    created_at=now,
                )
                await subscription_ops.log_event(
                    db,
                    user_id=user_id,
                    subscription_id=subscription.id,
                    event_type=BillingEventType.TRIAL_STARTED,
                    new_value=_snapshot(subscription),
                    description=f"Started {plan.duration_days}-day trial",
                )
                emails.append(
                    _Email(
                        await self._email_for(db, user_id),
                        EmailTemplate.WELCOME,
                        {"plan_name": plan.name, "end_date": _fmt(trial_end)},
                    )
                )

        logger.info(f"Started trial {subscription.id} for user {user_id}")
        await self._send(emails)
        return subscription

    async def activate_from_payment(
        self,
        db: AsyncSession,
        user_id: str,
        plan_id: str,
        provider_payment_id: str,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        *,
        provider: str,
        amount_minor_units: int | None = None,
        currency: str | None = None,
        method: str | None = None,
        provider_customer_id: str | None = None,
        provider_subscription_id: str | None = None,
        provider_event_id: str | None = None,
    ) -> Subscription:
        """
        Activate a subscription from a confirmed payment.

        Idempotent on ``provider_payment_id``: a replay returns the
        subscription the payment already activated and changes nothing.
        A trialing subscription is converted in place; otherwise a new
        active subscription is created.
        """
        emails: list[_Email] = []
        async with AsyncExitStack() as stack:
            await stack.enter_async_context(self._hold(user_key(user_id)))
            async with self._unit_of_work(db):
                existing = await payment_ops.get_by_provider_payment_id(db, provider_payment_id)
                if existing is not None:
                    logger.info(f"Payment {provider_payment_id} already applied, skipping")
                    subscription = await self._load(db, existing.subscription_id)
                    return subscription

                plan = await plan_ops.get_or_404(db, plan_id)
                now = self._clock.now()
                start = period_start or now
                end = period_end or self._period_end(plan, start)

                live = await subscription_ops.get_live_for_user(db, user_id, for_update=True)
                if live is not None and live.status == ACTIVE:
                    raise ConflictError("User already has an active subscription")

                if live is None:
                    past_due = await subscription_ops.get_current_for_user(db, user_id)
                    if past_due is not None and past_due.status == PAST_DUE:
                        raise self._reject("activate", past_due, "settle the past-due subscription")

                    subscription = await subscription_ops.create(
                        db,
                        user_id=user_id,
                        plan_id=plan.id,
                        status=ACTIVE,
                        current_period_start=start,
                        current_period_end=end,
                        provider=provider,
                        provider_customer_id=provider_customer_id,
                        provider_subscription_id=provider_subscription_id,
                        created_at=now,
                    )
                    event_type = BillingEventType.SUBSCRIPTION_ACTIVATED
                    previous = None
                else:
                    # Trial conversion: the trial row is also guarded by its own key.
                    await stack.enter_async_context(self._hold(subscription_key(live.id)))
                    subscription = await self._load(db, live.id)
                    if subscription.status != TRIALING:
                        raise self._reject("convert", subscription)
                    previous = _snapshot(subscription)
                    subscription = await subscription_ops.update(
                        db,
                        subscription,
                        {
                            "status": ACTIVE,
                            "plan_id": plan.id,
                            "current_period_start": start,
                            "current_period_end": end,
                            "trial_end": min(ensure_utc(subscription.trial_end or now), ensure_utc(now)),
                            "cancel_at_period_end": False,
                            "provider": provider,
                            "provider_customer_id": provider_customer_id,
                            "provider_subscription_id": provider_subscription_id,
                        },
                    )
                    event_type = BillingEventType.TRIAL_CONVERTED

                await payment_ops.record(
                    db,
                    user_id=user_id,
                    subscription_id=subscription.id,
                    provider=provider,
                    provider_payment_id=provider_payment_id,
                    amount_minor_units=(
                        plan.price_minor_units if amount_minor_units is None else amount_minor_units
                    ),
                    currency=currency or plan.currency,
                    status=PaymentStatus.SUCCEEDED,
                    method=method,
                    created_at=now,
                )
                await subscription_ops.log_event(
                    db,
                    user_id=user_id,
                    subscription_id=subscription.id,
                    event_type=event_type,
                    previous_value=previous,
                    new_value=_snapshot(subscription),
                    provider_event_id=provider_event_id,
                    description=f"Activated {plan.name} via {provider} payment {provider_payment_id}",
                )
                emails.append(
                    _Email(
                        await self._email_for(db, user_id),
                        EmailTemplate.WELCOME,
                        {"plan_name": plan.name, "end_date": _fmt(end)},
                    )
                )

        logger.info(f"Activated subscription {subscription.id} ({plan_id}) for user {user_id}")
        await self._send(emails)
        return subscription

    async def record_failed_payment(
        self,
        db: AsyncSession,
        user_id: str,
        plan_id: str,
        provider_payment_id: str,
        *,
        provider: str,
        amount_minor_units: int | None = None,
        currency: str | None = None,
        method: str | None = None,
        provider_event_id: str | None = None,
    ) -> Subscription:
        """
        Record a failed one-time payment attempt.

        Creates a terminal ``failed`` subscription for the attempt plus a
        failed ledger entry. Live subscriptions are never touched.
        Idempotent on ``provider_payment_id``.
        """
        async with self._hold(user_key(user_id)):
            async with self._unit_of_work(db):
                existing = await payment_ops.get_by_provider_payment_id(db, provider_payment_id)
                if existing is not None:
                    return await self._load(db, existing.subscription_id)

                plan = await plan_ops.get_or_404(db, plan_id)
                now = self._clock.now()
                subscription = await subscription_ops.create(
                    db,
                    user_id=user_id,
                    plan_id=plan.id,
                    status=FAILED,
                    current_period_start=now,
                    current_period_end=now,
                    ended_at=now,
                    provider=provider,
                    created_at=now,
                )
                await payment_ops.record(
                    db,
                    user_id=user_id,
                    subscription_id=subscription.id,
                    provider=provider,
                    provider_payment_id=provider_payment_id,
                    amount_minor_units=(
                        plan.price_minor_units if amount_minor_units is None else amount_minor_units
                    ),
                    currency=currency or plan.currency,
                    status=PaymentStatus.FAILED,
                    method=method,
                    created_at=now,
                )
                await subscription_ops.log_event(
                    db,
                    user_id=user_id,
                    subscription_id=subscription.id,
                    event_type=BillingEventType.PAYMENT_FAILED,
                    new_value=_snapshot(subscription),
                    provider_event_id=provider_event_id,
                    description=f"{provider} payment {provider_payment_id} failed",
                )

        logger.info(f"Recorded failed payment {provider_payment_id} for user {user_id}")
        return subscription

    # ─────────────────────────────────────────────────────────────────────────
    # Transitions on an existing subscription (locked per subscription)
    # ─────────────────────────────────────────────────────────────────────────

    async def apply_recurring_renewal(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        new_period_end: datetime | None,
        provider_payment_id: str,
        *,
        amount_minor_units: int | None = None,
        currency: str | None = None,
        method: str | None = None,
        provider_event_id: str | None = None,
    ) -> Subscription:
        """
        Extend the period after a recurring charge and reset to active.

        Valid from active or past_due. Idempotent on ``provider_payment_id``.
        The period never moves backwards on an out-of-order renewal.
        """
        async with self._hold(subscription_key(subscription_id)):
            async with self._unit_of_work(db):
                subscription = await self._load(db, subscription_id)
                if await payment_ops.get_by_provider_payment_id(db, provider_payment_id):
                    logger.info(f"Renewal payment {provider_payment_id} already applied, skipping")
                    return subscription
                if subscription.status not in RENEWABLE:
                    raise self._reject("renew", subscription)

                plan = await plan_ops.get(db, subscription.plan_id)
                now = self._clock.now()
                old_end = ensure_utc(subscription.current_period_end)
                target_end = new_period_end
                if target_end is None and plan is not None:
                    target_end = self._period_end(plan, old_end)
                previous = _snapshot(subscription)

                updates: dict[str, Any] = {"status": ACTIVE}
                if target_end is not None and ensure_utc(target_end) > old_end:
                    updates["current_period_start"] = old_end
                    updates["current_period_end"] = ensure_utc(target_end)
                subscription = await subscription_ops.update(db, subscription, updates)

                await payment_ops.record(
                    db,
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    provider=subscription.provider or "unknown",
                    provider_payment_id=provider_payment_id,
                    amount_minor_units=(
                        amount_minor_units
                        if amount_minor_units is not None
                        else (plan.price_minor_units if plan else 0)
                    ),
                    currency=currency or (plan.currency if plan else "USD"),
                    status=PaymentStatus.SUCCEEDED,
                    method=method,
                    created_at=now,
                )
                await subscription_ops.log_event(
                    db,
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    event_type=BillingEventType.SUBSCRIPTION_RENEWED,
                    previous_value=previous,
                    new_value=_snapshot(subscription),
                    provider_event_id=provider_event_id,
                )

        logger.info(
            f"Renewed subscription {subscription.id} until "
            f"{ensure_utc(subscription.current_period_end).isoformat()}"
        )
        return subscription

    async def mark_past_due(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        provider_event_id: str | None = None,
    ) -> Subscription:
        """Flag a failed recurring charge. Access is not revoked here."""
        emails: list[_Email] = []
        async with self._hold(subscription_key(subscription_id)):
            async with self._unit_of_work(db):
                subscription = await self._load(db, subscription_id)
                if subscription.status != ACTIVE:
                    raise self._reject("mark past due", subscription)

                previous = _snapshot(subscription)
                subscription = await subscription_ops.update(db, subscription, {"status": PAST_DUE})
                await subscription_ops.log_event(
                    db,
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    event_type=BillingEventType.SUBSCRIPTION_PAST_DUE,
                    previous_value=previous,
                    new_value=_snapshot(subscription),
                    provider_event_id=provider_event_id,
                )
                plan = await plan_ops.get(db, subscription.plan_id)
                emails.append(
                    _Email(
                        await self._email_for(db, subscription.user_id),
                        EmailTemplate.PAST_DUE,
                        {"plan_name": plan.name if plan else subscription.plan_id},
                    )
                )

        logger.info(f"Subscription {subscription.id} is past due")
        await self._send(emails)
        return subscription

    async def request_cancellation(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        cancel_at_period_end: bool = True,
        provider_event_id: str | None = None,
        notify_provider: bool = True,
    ) -> Subscription:
        """
        Cancel now, or flag for cancellation at period end.

        Recurring subscriptions are cancelled with the provider first; a
        ProviderError leaves the record unchanged. ``notify_provider=False``
        is for cancellations the provider itself reported.
        """
        emails: list[_Email] = []
        async with self._hold(subscription_key(subscription_id)):
            async with self._unit_of_work(db):
                subscription = await self._load(db, subscription_id)
                if subscription.status not in CANCELLABLE:
                    raise self._reject("cancel", subscription)
                if cancel_at_period_end and subscription.cancel_at_period_end:
                    logger.info(f"Subscription {subscription.id} already pending cancellation")
                    return subscription

                if notify_provider and subscription.provider and subscription.provider_subscription_id:
                    gateway = self._gateway_lookup(subscription.provider)
                    await gateway.cancel_recurring(
                        subscription.provider_subscription_id, cancel_at_period_end
                    )

                now = self._clock.now()
                previous = _snapshot(subscription)
                if cancel_at_period_end:
                    updates: dict[str, Any] = {"cancel_at_period_end": True, "canceled_at": now}
                    event_type = BillingEventType.CANCELLATION_REQUESTED
                    access_until = ensure_utc(subscription.current_period_end)
                else:
                    updates = {"status": CANCELLED, "canceled_at": now, "ended_at": now}
                    event_type = BillingEventType.SUBSCRIPTION_CANCELLED
                    access_until = now
                subscription = await subscription_ops.update(db, subscription, updates)
                await subscription_ops.log_event(
                    db,
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    event_type=event_type,
                    previous_value=previous,
                    new_value=_snapshot(subscription),
                    provider_event_id=provider_event_id,
                )
                plan = await plan_ops.get(db, subscription.plan_id)
                emails.append(
                    _Email(
                        await self._email_for(db, subscription.user_id),
                        EmailTemplate.CANCELLED,
                        {
                            "plan_name": plan.name if plan else subscription.plan_id,
                            "end_date": _fmt(access_until),
                        },
                    )
                )

        logger.info(
            f"Cancellation applied to {subscription.id} "
            f"(at_period_end={cancel_at_period_end}, status={subscription.status})"
        )
        await self._send(emails)
        return subscription

    async def change_plan(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        new_plan_id: str,
    ) -> Subscription:
        """
        Move an active recurring subscription to another recurring plan.

        Proration is the provider's. Fixed-term subscriptions cannot change
        plan; the caller purchases a new subscription instead.
        """
        emails: list[_Email] = []
        async with self._hold(subscription_key(subscription_id)):
            async with self._unit_of_work(db):
                subscription = await self._load(db, subscription_id)
                if subscription.status != ACTIVE:
                    raise self._reject("change plan of", subscription)

                new_plan = await plan_ops.get_or_404(db, new_plan_id)
                current_plan = await plan_ops.get(db, subscription.plan_id)
                if new_plan.id == subscription.plan_id:
                    raise PlanNotEligibleError(f"Subscription is already on plan '{new_plan_id}'")
                if not (current_plan and current_plan.is_recurring and new_plan.is_recurring):
                    raise self._reject(
                        "change plan of",
                        subscription,
                        "fixed-term subscriptions cannot change plan",
                    )
                if not (subscription.provider and subscription.provider_subscription_id):
                    raise self._reject(
                        "change plan of", subscription, "no provider subscription to update"
                    )

                gateway = self._gateway_lookup(subscription.provider)
                price_handle = gateway.price_handle(new_plan)
                if not price_handle:
                    raise PlanNotEligibleError(
                        f"Plan '{new_plan_id}' is not available from {gateway.name}"
                    )
                await gateway.change_recurring_plan(
                    subscription.provider_subscription_id, price_handle
                )

                previous = _snapshot(subscription)
                subscription = await subscription_ops.update(
                    db, subscription, {"plan_id": new_plan.id}
                )
                await subscription_ops.log_event(
                    db,
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    event_type=BillingEventType.PLAN_CHANGED,
                    previous_value=previous,
                    new_value=_snapshot(subscription),
                    description=f"Changed plan {current_plan.id} -> {new_plan.id}",
                )
                emails.append(
                    _Email(
                        await self._email_for(db, subscription.user_id),
                        EmailTemplate.CHANGED,
                        {"old_plan_name": current_plan.name, "plan_name": new_plan.name},
                    )
                )

        logger.info(f"Changed plan of {subscription.id} to {new_plan_id}")
        await self._send(emails)
        return subscription

    async def expire_if_past_period(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Apply the time-based transition decided by ``evaluate_expiry``.

        Terminal subscriptions raise InvalidStateTransition; a subscription
        whose period has not ended is returned unchanged.
        """
        emails: list[_Email] = []
        now = now or self._clock.now()
        async with self._hold(subscription_key(subscription_id)):
            async with self._unit_of_work(db):
                subscription = await self._load(db, subscription_id)
                if subscription.status not in EXPIRABLE:
                    raise self._reject("expire", subscription)

                renewal_recorded = await payment_ops.has_succeeded_since(
                    db, subscription.id, ensure_utc(subscription.current_period_end)
                )
                decision = evaluate_expiry(subscription, now, renewal_recorded)
                if decision is None:
                    return subscription

                previous = _snapshot(subscription)
                subscription = await subscription_ops.update(
                    db, subscription, {"status": decision, "ended_at": now}
                )
                await subscription_ops.log_event(
                    db,
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    event_type=(
                        BillingEventType.SUBSCRIPTION_EXPIRED
                        if decision == EXPIRED
                        else BillingEventType.SUBSCRIPTION_CANCELLED
                    ),
                    previous_value=previous,
                    new_value=_snapshot(subscription),
                    description="Period ended",
                )
                plan = await plan_ops.get(db, subscription.plan_id)
                emails.append(
                    _Email(
                        await self._email_for(db, subscription.user_id),
                        EmailTemplate.EXPIRED if decision == EXPIRED else EmailTemplate.CANCELLED,
                        {
                            "plan_name": plan.name if plan else subscription.plan_id,
                            "end_date": _fmt(subscription.current_period_end),
                        },
                    )
                )

        logger.info(f"Subscription {subscription.id} moved to {decision} (period ended)")
        await self._send(emails)
        return subscription


subscription_machine = SubscriptionStateMachine()

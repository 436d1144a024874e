"""Reconciliation sweeps run by the scheduler.

Each sweep reads candidate subscriptions, lets the state machine decide
what (if anything) changes, and sends reminder notices at most once per
subscription per day. A failure on one subscription is logged and counted;
the sweep moves on and the next tick retries it.
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.clock import Clock, ensure_utc, system_clock
from app.core.exceptions import BillingError
from app.domain.notification_operations import notification_ops
from app.domain.payment_operations import payment_ops
from app.domain.plan_operations import plan_ops
from app.domain.subscription_operations import subscription_ops
from app.domain.user_operations import user_ops
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.email.notifier import EmailTemplate, Notifier, notifier
from app.services.subscription_machine import SubscriptionStateMachine, subscription_machine

logger = logging.getLogger(__name__)

ANALYTICS_WINDOWS = (7, 30)


@dataclass
class SweepReport:
    """Summary of a status or trial sweep run."""

    job: str
    checked: int = 0
    expired: int = 0
    cancelled: int = 0
    unchanged: int = 0
    notices_sent: int = 0
    notices_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class WindowStats:
    days: int
    start: str
    end: str
    new_subscriptions: int = 0
    new_per_day: dict[str, int] = field(default_factory=dict)
    revenue_by_currency: dict[str, int] = field(default_factory=dict)
    trials_started: int = 0
    trials_converted: int = 0
    conversion_rate: float = 0.0
    churned: int = 0
    churn_rate: float = 0.0


@dataclass
class AnalyticsSnapshot:
    """Read-only billing snapshot produced by the weekly analytics sweep."""

    generated_at: str
    counts_by_status: dict[str, int] = field(default_factory=dict)
    cancelling: int = 0
    plan_distribution: dict[str, int] = field(default_factory=dict)
    windows: dict[str, WindowStats] = field(default_factory=dict)


def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator, 4)


class Reconciler:
    def __init__(
        self,
        machine: SubscriptionStateMachine | None = None,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._machine = machine or subscription_machine
        self._notifier = notifier
        self._clock = clock or system_clock

    @property
    def notifier(self) -> Notifier:
        return self._notifier or notifier

    # ─────────────────────────────────────────────────────────────────────────
    # Sweeps
    # ─────────────────────────────────────────────────────────────────────────

    async def status_sweep(self, db: AsyncSession) -> SweepReport:
        """Expire ended paid subscriptions and warn those about to end."""
        return await self._sweep(
            db,
            job="status_sweep",
            statuses={SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value},
            notice_statuses={SubscriptionStatus.ACTIVE.value},
            lookahead=timedelta(days=settings.expiring_notice_days),
            template=EmailTemplate.EXPIRING,
        )

    async def trial_sweep(self, db: AsyncSession) -> SweepReport:
        """Expire ended trials and warn trials about to end."""
        return await self._sweep(
            db,
            job="trial_sweep",
            statuses={SubscriptionStatus.TRIALING.value},
            notice_statuses={SubscriptionStatus.TRIALING.value},
            lookahead=timedelta(hours=settings.trial_notice_hours),
            template=EmailTemplate.TRIAL_ENDING,
        )

    async def analytics_sweep(self, db: AsyncSession) -> AnalyticsSnapshot:
        """Compute counts, revenue and rates for the trailing windows. Mutates nothing."""
        now = self._clock.now()
        snapshot = AnalyticsSnapshot(
            generated_at=now.isoformat(),
            counts_by_status=await subscription_ops.count_by_status(db),
            cancelling=await subscription_ops.count_cancel_pending(db),
            plan_distribution=await subscription_ops.plan_distribution(db),
        )
        live_now = sum(snapshot.plan_distribution.values())

        for days in ANALYTICS_WINDOWS:
            start = now - timedelta(days=days)
            created = await subscription_ops.list_created_between(db, start, now)
            per_day = Counter(ensure_utc(s.created_at).date().isoformat() for s in created)
            trials_started = await subscription_ops.count_trials(db, start, now)
            trials_converted = await subscription_ops.count_trials(
                db, start, now, converted_only=True
            )
            churned = await subscription_ops.count_ended(db, start, now)

            snapshot.windows[f"last_{days}_days"] = WindowStats(
                days=days,
                start=start.isoformat(),
                end=now.isoformat(),
                new_subscriptions=len(created),
                new_per_day=dict(sorted(per_day.items())),
                revenue_by_currency=await payment_ops.revenue_by_currency(db, start, now),
                trials_started=trials_started,
                trials_converted=trials_converted,
                conversion_rate=_rate(trials_converted, trials_started),
                churned=churned,
                # Base: everything live now plus whatever left during the window
                churn_rate=_rate(churned, live_now + churned),
            )

        weekly = snapshot.windows["last_7_days"]
        logger.info(
            f"[reconcile] Analytics: {snapshot.counts_by_status} | "
            f"cancelling={snapshot.cancelling} | 7d new={weekly.new_subscriptions} "
            f"revenue={weekly.revenue_by_currency} churn={weekly.churn_rate} "
            f"conversion={weekly.conversion_rate}"
        )
        return snapshot

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    async def _sweep(
        self,
        db: AsyncSession,
        job: str,
        statuses: set[str],
        notice_statuses: set[str],
        lookahead: timedelta,
        template: EmailTemplate,
    ) -> SweepReport:
        started = time.monotonic()
        report = SweepReport(job=job)
        now = self._clock.now()

        for subscription_id in await subscription_ops.list_period_ended(db, statuses, now):
            report.checked += 1
            try:
                subscription = await self._machine.expire_if_past_period(db, subscription_id, now)
            except BillingError as e:
                logger.warning(f"[reconcile] {job}: {subscription_id} failed: {e}")
                report.errors.append(f"{subscription_id}: {e}")
                continue
            if subscription.status == SubscriptionStatus.EXPIRED.value:
                report.expired += 1
            elif subscription.status == SubscriptionStatus.CANCELLED.value:
                report.cancelled += 1
            else:
                report.unchanged += 1

        upcoming = await subscription_ops.list_ending_between(
            db, notice_statuses, now, now + lookahead
        )
        for subscription in upcoming:
            report.checked += 1
            if await self._notify_once(db, subscription, template, now):
                report.notices_sent += 1
            else:
                report.notices_skipped += 1

        report.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            f"[reconcile] {job}: {report.expired} expired, {report.cancelled} cancelled, "
            f"{report.notices_sent} notices, {len(report.errors)} errors "
            f"({report.duration_seconds}s)"
        )
        return report

    async def _notify_once(
        self,
        db: AsyncSession,
        subscription: Subscription,
        template: EmailTemplate,
        now: datetime,
    ) -> bool:
        """Send ``template`` unless it already went out today. Returns True if sent."""
        today = now.date()
        subscription_id = subscription.id
        if await notification_ops.was_sent(db, subscription_id, template.value, today):
            return False

        user = await user_ops.get_by_id(db, subscription.user_id)
        plan = await plan_ops.get(db, subscription.plan_id)
        end = ensure_utc(subscription.current_period_end)
        remaining = end - now
        sent = await self.notifier.notify(
            user.email if user else None,
            template,
            {
                "plan_name": plan.name if plan else subscription.plan_id,
                "end_date": end.strftime("%B %d, %Y"),
                "days_left": max(remaining.days, 0),
                "hours_left": max(int(remaining.total_seconds() // 3600), 0),
            },
        )
        if not sent:
            return False

        try:
            await notification_ops.record(db, subscription_id, template.value, today)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info(f"[reconcile] {template.value} for {subscription_id} already logged today")
        return True


reconciler = Reconciler()

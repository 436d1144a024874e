"""Domain operations for Subscription model."""

import uuid as uuid_pkg
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import BillingEvent, BillingEventType
from app.models.plan import Plan
from app.models.subscription import LIVE_STATUSES, Subscription, SubscriptionStatus


class SubscriptionOperations:
    """Queries and persistence helpers for Subscription.

    Status changes go through the subscription state machine; these
    helpers only read, insert and write fields they are given.
    """

    async def get(
        self,
        db: AsyncSession,
        id: uuid_pkg.UUID,
        for_update: bool = False,
    ) -> Subscription | None:
        """Get a subscription by ID, optionally locking the row."""
        statement = select(Subscription).where(Subscription.id == id)
        if for_update:
            # Row lock plus a refresh of any stale copy in the identity map
            statement = statement.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_live_for_user(
        self,
        db: AsyncSession,
        user_id: str,
        for_update: bool = False,
    ) -> Subscription | None:
        """Get the user's trialing or active subscription, if any."""
        statement = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status.in_(LIVE_STATUSES),  # type: ignore[attr-defined]
        )
        if for_update:
            statement = statement.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(statement)
        return result.scalars().first()

    async def get_current_for_user(
        self,
        db: AsyncSession,
        user_id: str,
    ) -> Subscription | None:
        """
        Get the subscription that currently governs the user's access.

        Prefers a live one, then a past-due one, then the most recent record.
        """
        statement = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        subscriptions = list(result.scalars().all())
        for wanted in (LIVE_STATUSES, {SubscriptionStatus.PAST_DUE.value}):
            for subscription in subscriptions:
                if subscription.status in wanted:
                    return subscription
        return subscriptions[0] if subscriptions else None

    async def get_by_provider_subscription(
        self,
        db: AsyncSession,
        provider: str,
        provider_subscription_id: str,
    ) -> Subscription | None:
        """Get the latest subscription bound to a provider-side subscription id."""
        statement = (
            select(Subscription)
            .where(
                Subscription.provider == provider,
                Subscription.provider_subscription_id == provider_subscription_id,
            )
            .order_by(Subscription.created_at.desc())  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        return result.scalars().first()

    async def has_used_trial(self, db: AsyncSession, user_id: str) -> bool:
        """True if the user has ever had a trial (trial_start is set)."""
        statement = select(Subscription.id).where(
            Subscription.user_id == user_id,
            Subscription.trial_start.is_not(None),  # type: ignore[union-attr]
        )
        result = await db.execute(statement.limit(1))
        return result.scalar_one_or_none() is not None

    async def list_for_user(
        self,
        db: AsyncSession,
        user_id: str,
        skip: int = 0,
        limit: int = 50,
    ) -> list[Subscription]:
        statement = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())  # type: ignore[attr-defined]
            .offset(skip)
            .limit(limit)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def list_period_ended(
        self,
        db: AsyncSession,
        statuses: set[str],
        now: datetime,
    ) -> list[uuid_pkg.UUID]:
        """IDs of subscriptions in ``statuses`` whose period ended before ``now``."""
        statement = (
            select(Subscription.id)
            .where(
                Subscription.status.in_(statuses),  # type: ignore[attr-defined]
                Subscription.current_period_end < now,  # type: ignore[operator]
            )
            .order_by(Subscription.current_period_end.asc())  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def list_ending_between(
        self,
        db: AsyncSession,
        statuses: set[str],
        start: datetime,
        end: datetime,
    ) -> list[Subscription]:
        """Subscriptions in ``statuses`` not pending cancellation whose period ends in [start, end]."""
        statement = (
            select(Subscription)
            .where(
                Subscription.status.in_(statuses),  # type: ignore[attr-defined]
                Subscription.cancel_at_period_end.is_(False),  # type: ignore[attr-defined]
                Subscription.current_period_end >= start,  # type: ignore[operator]
                Subscription.current_period_end <= end,  # type: ignore[operator]
            )
            .order_by(Subscription.current_period_end.asc())  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def count_by_status(self, db: AsyncSession) -> dict[str, int]:
        statement = select(Subscription.status, func.count()).group_by(Subscription.status)
        result = await db.execute(statement)
        return {status: int(count) for status, count in result.all()}

    async def count_cancel_pending(self, db: AsyncSession) -> int:
        """Live or past-due subscriptions flagged to cancel at period end."""
        statement = select(func.count()).where(
            Subscription.status.in_(LIVE_STATUSES | {SubscriptionStatus.PAST_DUE.value}),  # type: ignore[attr-defined]
            Subscription.cancel_at_period_end.is_(True),  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        return int(result.scalar_one())

    async def plan_distribution(self, db: AsyncSession) -> dict[str, int]:
        """Live subscriptions per plan."""
        statement = (
            select(Subscription.plan_id, func.count())
            .where(Subscription.status.in_(LIVE_STATUSES))  # type: ignore[attr-defined]
            .group_by(Subscription.plan_id)
        )
        result = await db.execute(statement)
        return {plan_id: int(count) for plan_id, count in result.all()}

    async def list_created_between(
        self,
        db: AsyncSession,
        start: datetime,
        end: datetime,
    ) -> list[Subscription]:
        """Subscriptions created in [start, end), excluding failed payment attempts."""
        statement = (
            select(Subscription)
            .where(
                Subscription.created_at >= start,  # type: ignore[operator]
                Subscription.created_at < end,  # type: ignore[operator]
                Subscription.status != SubscriptionStatus.FAILED.value,
            )
            .order_by(Subscription.created_at.asc())  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def count_trials(
        self,
        db: AsyncSession,
        start: datetime,
        end: datetime,
        converted_only: bool = False,
    ) -> int:
        """
        Trials started in [start, end).

        With ``converted_only`` counts those since moved onto a paid plan.
        """
        statement = select(func.count()).select_from(Subscription)
        if converted_only:
            statement = statement.join(Plan, Plan.id == Subscription.plan_id).where(
                Plan.price_minor_units > 0  # type: ignore[operator]
            )
        statement = statement.where(
            Subscription.trial_start >= start,  # type: ignore[operator]
            Subscription.trial_start < end,  # type: ignore[operator]
        )
        result = await db.execute(statement)
        return int(result.scalar_one())

    async def count_ended(self, db: AsyncSession, start: datetime, end: datetime) -> int:
        """Subscriptions that expired or were cancelled in [start, end)."""
        statement = select(func.count()).where(
            Subscription.status.in_(  # type: ignore[attr-defined]
                {SubscriptionStatus.EXPIRED.value, SubscriptionStatus.CANCELLED.value}
            ),
            Subscription.ended_at >= start,  # type: ignore[operator]
            Subscription.ended_at < end,  # type: ignore[operator]
        )
        result = await db.execute(statement)
        return int(result.scalar_one())

    async def create(self, db: AsyncSession, **fields: Any) -> Subscription:
        """Insert a new subscription row."""
        subscription = Subscription(**fields)
        db.add(subscription)
        await db.flush()
        await db.refresh(subscription)
        return subscription

    async def update(
        self,
        db: AsyncSession,
        subscription: Subscription,
        updates: dict[str, Any],
    ) -> Subscription:
        """Apply field updates. None values are written as-is."""
        for field, value in updates.items():
            setattr(subscription, field, value)
        db.add(subscription)
        await db.flush()
        await db.refresh(subscription)
        return subscription

    async def log_event(
        self,
        db: AsyncSession,
        user_id: str,
        event_type: BillingEventType,
        subscription_id: uuid_pkg.UUID | None = None,
        previous_value: dict[str, Any] | None = None,
        new_value: dict[str, Any] | None = None,
        description: str | None = None,
        provider_event_id: str | None = None,
    ) -> BillingEvent:
        """Log a billing event for audit trail."""
        event = BillingEvent(
            user_id=user_id,
            subscription_id=subscription_id,
            event_type=event_type.value,
            previous_value=previous_value,
            new_value=new_value,
            description=description,
            provider_event_id=provider_event_id,
        )
        db.add(event)
        await db.flush()
        return event

    async def get_events(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        skip: int = 0,
        limit: int = 50,
    ) -> list[BillingEvent]:
        """Get billing events for a subscription, newest first."""
        statement = (
            select(BillingEvent)
            .where(BillingEvent.subscription_id == subscription_id)
            .order_by(BillingEvent.created_at.desc())  # type: ignore[attr-defined]
            .offset(skip)
            .limit(limit)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


subscription_ops = SubscriptionOperations()

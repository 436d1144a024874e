"""Billing models - audit events, webhook idempotency and notification log."""

import uuid as uuid_pkg
from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column, Date, String, UniqueConstraint
from sqlalchemy import Uuid as SA_UUID
from sqlmodel import Field

from app.models.base import CreatedAtMixin, UTCDateTime, UUIDMixin, utcnow


class BillingEventType(str, Enum):
    """Types of billing events for audit logging."""

    TRIAL_STARTED = "trial.started"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    TRIAL_CONVERTED = "trial.converted"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_PAST_DUE = "subscription.past_due"
    CANCELLATION_REQUESTED = "subscription.cancellation_requested"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    PLAN_CHANGED = "plan.changed"
    PAYMENT_FAILED = "payment.failed"


class BillingEvent(UUIDMixin, CreatedAtMixin, table=True):
    """
    Billing event audit log.

    One row per state transition or billing action, for audit and debugging.
    """

    __tablename__ = "billing_events"

    subscription_id: uuid_pkg.UUID | None = Field(
        default=None,
        sa_column=Column(SA_UUID(as_uuid=True), nullable=True, index=True),
    )
    user_id: str = Field(
        sa_column=Column(String(128), nullable=False, index=True),
    )

    event_type: str = Field(
        sa_column=Column(String(50), nullable=False, index=True),
    )
    description: str | None = Field(default=None, max_length=500, nullable=True)

    # Change tracking
    previous_value: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    new_value: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )

    # Provider reference (if applicable)
    provider_event_id: str | None = Field(
        default=None,
        max_length=255,
        nullable=True,
        index=True,
    )


class ProcessedWebhookEvent(UUIDMixin, table=True):
    """
    Idempotency table for inbound provider webhooks.

    A row exists only once the event was applied successfully; the unique
    constraint makes a concurrent duplicate fail on insert.
    """

    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        UniqueConstraint(
            "provider_name",
            "provider_event_id",
            name="uq_processed_webhook_events_provider_event",
        ),
    )

    provider_name: str = Field(max_length=20, nullable=False)
    provider_event_id: str = Field(max_length=255, nullable=False)
    event_type: str | None = Field(default=None, max_length=100, nullable=True)
    received_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=utcnow, nullable=False, sa_type=UTCDateTime
    )
    processed_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=utcnow, nullable=False, sa_type=UTCDateTime
    )


class NotificationLog(UUIDMixin, CreatedAtMixin, table=True):
    """
    Reminders sent by the reconciliation sweeps.

    Unique per (subscription, template, day) so a sweep re-run on the same
    day never sends a duplicate.
    """

    __tablename__ = "notification_logs"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id",
            "template",
            "sent_on",
            name="uq_notification_logs_daily",
        ),
    )

    subscription_id: uuid_pkg.UUID = Field(
        sa_column=Column(SA_UUID(as_uuid=True), nullable=False, index=True),
    )
    template: str = Field(max_length=50, nullable=False)
    sent_on: date = Field(sa_column=Column(Date, nullable=False))

"""Subscription model - a user's plan enrollment and its lifecycle state."""

import uuid as uuid_pkg
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Column, ForeignKey, Index, String, false, text
from sqlmodel import Field, Relationship, SQLModel

from app.models.base import TimestampMixin, UTCDateTime, UUIDMixin

if TYPE_CHECKING:
    from app.models.payment import PaymentRecord
    from app.models.plan import Plan
    from app.models.user import User


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states.

    A pending cancellation is not a separate status: it is a live record
    with ``cancel_at_period_end=True``.
    """

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"


LIVE_STATUSES = frozenset({SubscriptionStatus.TRIALING.value, SubscriptionStatus.ACTIVE.value})
TERMINAL_STATUSES = frozenset(
    {
        SubscriptionStatus.CANCELLED.value,
        SubscriptionStatus.EXPIRED.value,
        SubscriptionStatus.FAILED.value,
    }
)

_LIVE_PREDICATE = text("status IN ('trialing', 'active')")


class Subscription(UUIDMixin, TimestampMixin, table=True):
    """
    Subscription model - the aggregate root for billing state.

    Only the subscription state machine mutates ``status``. Records are never
    deleted; terminal states are kept for history.

    At most one subscription per user may be trialing or active. The state
    machine checks this before creating one and the partial unique index
    ``uq_subscriptions_user_live`` backs it up at the database level.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_user_live",
            "user_id",
            unique=True,
            postgresql_where=_LIVE_PREDICATE,
            sqlite_where=_LIVE_PREDICATE,
        ),
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
    )

    user_id: str = Field(
        sa_column=Column(
            String(128),
            ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    plan_id: str = Field(
        sa_column=Column(String(50), ForeignKey("plans.id"), nullable=False),
    )
    status: str = Field(
        sa_column=Column(String(20), nullable=False, index=True),
    )

    # Billing period
    current_period_start: datetime = Field(  # type: ignore[call-overload]
        nullable=False, sa_type=UTCDateTime
    )
    current_period_end: datetime = Field(  # type: ignore[call-overload]
        nullable=False, sa_type=UTCDateTime
    )
    trial_start: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=UTCDateTime
    )
    trial_end: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=UTCDateTime
    )
    cancel_at_period_end: bool = Field(
        default=False,
        nullable=False,
        sa_column_kwargs={"server_default": false()},
    )
    canceled_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=UTCDateTime
    )
    ended_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=UTCDateTime
    )

    # Provider references (null for trials; subscription id null for one-time plans)
    provider: str | None = Field(default=None, max_length=20, nullable=True)
    provider_customer_id: str | None = Field(
        default=None, max_length=255, nullable=True, index=True
    )
    provider_subscription_id: str | None = Field(
        default=None, max_length=255, nullable=True, index=True
    )

    # Relationships
    user: Optional["User"] = Relationship(back_populates="subscriptions")
    plan: Optional["Plan"] = Relationship(back_populates="subscriptions")
    payments: list["PaymentRecord"] = Relationship(back_populates="subscription")

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_cancel_pending(self) -> bool:
        """Cancellation requested, effective when the current period ends."""
        return self.cancel_at_period_end and not self.is_terminal


class SubscriptionRead(SQLModel):
    """Subscription as returned by the API."""

    id: uuid_pkg.UUID
    plan_id: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    trial_start: datetime | None
    trial_end: datetime | None
    cancel_at_period_end: bool
    canceled_at: datetime | None
    provider: str | None
    is_cancel_pending: bool

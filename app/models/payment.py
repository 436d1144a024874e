"""Payment ledger - one append-only row per processed provider payment."""

import uuid as uuid_pkg
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Column, ForeignKey, String
from sqlalchemy import Uuid as SA_UUID
from sqlmodel import Field, Relationship, SQLModel

from app.models.base import CreatedAtMixin, UUIDMixin

if TYPE_CHECKING:
    from app.models.subscription import Subscription


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentRecord(UUIDMixin, CreatedAtMixin, table=True):
    """
    Append-only ledger entry.

    ``provider_payment_id`` is unique so a replayed payment event can never
    insert a second row.
    """

    __tablename__ = "payment_records"

    user_id: str = Field(
        sa_column=Column(
            String(128),
            ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    subscription_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            SA_UUID(as_uuid=True),
            ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    provider: str = Field(max_length=20, nullable=False)
    provider_payment_id: str = Field(max_length=255, nullable=False, unique=True)
    amount_minor_units: int = Field(nullable=False)
    currency: str = Field(max_length=3, nullable=False)
    status: str = Field(
        sa_column=Column(String(20), nullable=False),
    )
    method: str | None = Field(default=None, max_length=50, nullable=True)

    # Relationships
    subscription: Optional["Subscription"] = Relationship(back_populates="payments")


class PaymentRead(SQLModel):
    """Ledger entry as returned by the API."""

    id: uuid_pkg.UUID
    subscription_id: uuid_pkg.UUID
    provider: str
    provider_payment_id: str
    amount_minor_units: int
    currency: str
    status: str
    method: str | None
    created_at: datetime

from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Column, true
from sqlmodel import Field, Relationship, SQLModel

from app.models.base import TimestampMixin

if TYPE_CHECKING:
    from app.models.subscription import Subscription


class PlanBase(SQLModel):
    """Public plan fields shared by the table and API schemas."""

    name: str = Field(max_length=100)
    description: str | None = Field(default=None, max_length=500)
    price_minor_units: int = Field(ge=0, nullable=False)
    currency: str = Field(max_length=3, nullable=False)
    duration_days: int = Field(ge=0, nullable=False)
    is_recurring: bool = Field(default=False, nullable=False)


class Plan(PlanBase, TimestampMixin, table=True):
    """
    Subscription plan catalog entry.

    Seeded by an idempotent upsert keyed by name. After creation only
    ``is_active`` (soft-disable) and the provider handles change.
    """

    __tablename__ = "plans"

    id: str = Field(primary_key=True, max_length=50)
    name: str = Field(max_length=100, unique=True, nullable=False)
    features: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    is_active: bool = Field(
        default=True,
        nullable=False,
        sa_column_kwargs={"server_default": true()},
    )

    # Provider-side product/price handles (recurring plans only)
    stripe_product_id: str | None = Field(default=None, max_length=255, nullable=True)
    stripe_price_id: str | None = Field(default=None, max_length=255, nullable=True)

    # Relationships
    subscriptions: list["Subscription"] = Relationship(back_populates="plan")

    @property
    def is_trial(self) -> bool:
        """Zero-priced plans grant a trial window of ``duration_days``."""
        return self.price_minor_units == 0


class PlanRead(PlanBase):
    """Plan as returned by the API."""

    id: str
    features: dict[str, Any]
    is_active: bool

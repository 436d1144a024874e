from typing import TYPE_CHECKING

from sqlmodel import Field, Relationship, SQLModel

from app.models.base import CreatedAtMixin

if TYPE_CHECKING:
    from app.models.subscription import Subscription


class User(CreatedAtMixin, table=True):
    """
    User model - mirrors the identity provider's user record.

    The id is the identity provider's uid. User records are created
    on the first authenticated API call.
    """

    __tablename__ = "users"

    id: str = Field(
        primary_key=True,
        max_length=128,
        nullable=False,
        description="uid from the identity provider",
    )
    email: str | None = Field(default=None, max_length=255)
    display_name: str | None = Field(default=None, max_length=100)

    # Relationships
    subscriptions: list["Subscription"] = Relationship(back_populates="user")

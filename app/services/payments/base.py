"""Payment gateway interface shared by every provider adapter.

Providers have incompatible object models (Stripe customers and
subscriptions vs. Razorpay orders and payments). Each adapter normalizes its
provider into the operations and types below so the subscription state
machine never branches on provider identity.
"""

import abc
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from app.models.plan import Plan
from app.models.user import User


class EventKind(str, Enum):
    """The closed set of webhook events the dispatcher acts on."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"


@dataclass
class CheckoutResult:
    """What the client needs to complete payment with the provider."""

    provider: str
    amount_minor_units: int
    currency: str
    redirect_url: str | None = None  # hosted checkout (Stripe)
    order_id: str | None = None  # client-side checkout handle (Razorpay order, Stripe session)
    customer_id: str | None = None
    key_id: str | None = None  # public key the client widget needs


@dataclass
class PaymentDetails:
    """Provider payment as seen by fetch_payment."""

    payment_id: str
    status: str
    amount_minor_units: int
    currency: str
    order_id: str | None = None
    method: str | None = None
    notes: dict[str, Any] = field(default_factory=dict)

    @property
    def captured(self) -> bool:
        return self.status in ("captured", "succeeded")


@dataclass
class ProviderEvent:
    """A verified webhook mapped to an internal event kind."""

    provider: str
    event_id: str
    event_type: str
    kind: EventKind
    user_id: str | None = None
    plan_id: str | None = None
    provider_payment_id: str | None = None
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    order_id: str | None = None
    amount_minor_units: int | None = None
    currency: str | None = None
    method: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None


class PaymentGateway(abc.ABC):
    """Uniform interface over a payment provider."""

    name: str
    signature_header: str

    @abc.abstractmethod
    async def create_checkout(
        self,
        user: User,
        plan: Plan,
        success_url: str,
        cancel_url: str,
        customer_id: str | None = None,
    ) -> CheckoutResult:
        """Create the provider-side object the client pays against."""

    @abc.abstractmethod
    def verify_payment(self, payment_id: str, order_id: str, signature: str) -> bool:
        """Check a client-side payment confirmation signature."""

    @abc.abstractmethod
    async def fetch_payment(self, payment_id: str) -> PaymentDetails:
        """Fetch a payment to confirm it is captured before activation."""

    @abc.abstractmethod
    async def cancel_recurring(self, provider_subscription_id: str, at_period_end: bool) -> None:
        """Cancel a provider-side recurring subscription."""

    @abc.abstractmethod
    async def change_recurring_plan(
        self,
        provider_subscription_id: str,
        new_price_handle: str,
    ) -> None:
        """Move a recurring subscription to another price; proration is the provider's."""

    @abc.abstractmethod
    def verify_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify a webhook signature over the raw request body.

        Returns the parsed event. Raises SignatureError on mismatch.
        """

    @abc.abstractmethod
    def event_id(self, event: dict[str, Any], payload: bytes, headers: Mapping[str, str]) -> str:
        """Provider event id used for deduplication."""

    @abc.abstractmethod
    def parse_event(
        self,
        event: dict[str, Any],
        event_id: str,
    ) -> ProviderEvent | None:
        """Map a verified event to an EventKind. None means intentionally ignored."""

    async def sync_plan(self, plan: Plan) -> tuple[str, str] | None:
        """Create provider-side product/price for a plan. Default: nothing to sync."""
        return None

    def price_handle(self, plan: Plan) -> str | None:
        """Provider price id for a recurring plan, if this provider bills it."""
        return None

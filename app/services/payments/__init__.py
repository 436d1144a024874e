"""Payment gateway registry.

Recurring plans go to the configured recurring provider (Stripe by default),
everything else to the one-time provider (Razorpay by default). New
providers are added by implementing PaymentGateway and registering here.
"""

from app.config import settings
from app.core.exceptions import UnknownProviderError
from app.models.plan import Plan
from app.services.payments.base import (
    CheckoutResult,
    EventKind,
    PaymentDetails,
    PaymentGateway,
    ProviderEvent,
)
from app.services.payments.razorpay_gateway import razorpay_gateway
from app.services.payments.stripe_gateway import stripe_gateway

GATEWAYS: dict[str, PaymentGateway] = {
    stripe_gateway.name: stripe_gateway,
    razorpay_gateway.name: razorpay_gateway,
}


def get_gateway(name: str) -> PaymentGateway:
    """Look up a gateway by provider name."""
    gateway = GATEWAYS.get(name.lower())
    if gateway is None:
        raise UnknownProviderError(name)
    return gateway


def gateway_for_plan(plan: Plan) -> PaymentGateway:
    """Pick the gateway that bills this kind of plan."""
    if plan.is_recurring:
        return get_gateway(settings.recurring_provider)
    return get_gateway(settings.one_time_provider)


__all__ = [
    "CheckoutResult",
    "EventKind",
    "GATEWAYS",
    "PaymentDetails",
    "PaymentGateway",
    "ProviderEvent",
    "gateway_for_plan",
    "get_gateway",
]

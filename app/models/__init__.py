from app.models.billing import (
    BillingEvent,
    BillingEventType,
    NotificationLog,
    ProcessedWebhookEvent,
)
from app.models.payment import PaymentRead, PaymentRecord, PaymentStatus
from app.models.plan import Plan, PlanRead
from app.models.subscription import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    Subscription,
    SubscriptionRead,
    SubscriptionStatus,
)
from app.models.user import User

__all__ = [
    "BillingEvent",
    "BillingEventType",
    "NotificationLog",
    "ProcessedWebhookEvent",
    "PaymentRead",
    "PaymentRecord",
    "PaymentStatus",
    "Plan",
    "PlanRead",
    "Subscription",
    "SubscriptionRead",
    "SubscriptionStatus",
    "LIVE_STATUSES",
    "TERMINAL_STATUSES",
    "User",
]

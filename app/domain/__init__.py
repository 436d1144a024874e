from app.domain.notification_operations import notification_ops
from app.domain.payment_operations import payment_ops
from app.domain.plan_operations import plan_ops
from app.domain.subscription_operations import subscription_ops
from app.domain.user_operations import user_ops
from app.domain.webhook_event_operations import webhook_event_ops

__all__ = [
    "notification_ops",
    "payment_ops",
    "plan_ops",
    "subscription_ops",
    "user_ops",
    "webhook_event_ops",
]

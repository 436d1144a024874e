from app.api.v1 import internal, plans, subscriptions, webhooks

__all__ = [
    "plans",
    "subscriptions",
    "webhooks",
    "internal",
]

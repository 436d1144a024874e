"""Subscription lifecycle emails.

Maps a template id plus a small data payload to a subject, HTML and text
body, and hands it to the shared PostmarkService. Sending never raises:
a failed email is logged and reported as False.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from html import escape as html_escape
from typing import Any

from app.config import settings
from app.services.email.postmark import PostmarkService, postmark_service

logger = logging.getLogger(__name__)


class EmailTemplate(str, Enum):
    WELCOME = "subscription-welcome"
    EXPIRING = "subscription-expiring"
    TRIAL_ENDING = "trial-ending"
    EXPIRED = "subscription-expired"
    CANCELLED = "subscription-cancelled"
    CHANGED = "subscription-changed"
    PAST_DUE = "subscription-past-due"


@dataclass(frozen=True)
class _Copy:
    subject: str
    headline: str
    body: str


TEMPLATES: dict[EmailTemplate, _Copy] = {
    EmailTemplate.WELCOME: _Copy(
        subject="Your subscription is active",
        headline="Welcome aboard",
        body="Your {plan_name} plan is now active until {end_date}.",
    ),
    EmailTemplate.EXPIRING: _Copy(
        subject="Your subscription is expiring soon",
        headline="Your plan ends in {days_left} day(s)",
        body="Your {plan_name} plan ends on {end_date}. Renew to keep uninterrupted access.",
    ),
    EmailTemplate.TRIAL_ENDING: _Copy(
        subject="Your free trial is ending",
        headline="Your trial ends in {hours_left} hour(s)",
        body="Your free trial ends on {end_date}. Pick a plan to keep your projects running.",
    ),
    EmailTemplate.EXPIRED: _Copy(
        subject="Your subscription has expired",
        headline="Your plan has expired",
        body="Your {plan_name} plan expired on {end_date}. Choose a plan to restore access.",
    ),
    EmailTemplate.CANCELLED: _Copy(
        subject="Subscription cancellation confirmed",
        headline="Your subscription is cancelled",
        body="Your {plan_name} plan is cancelled. Access continues until {end_date}.",
    ),
    EmailTemplate.CHANGED: _Copy(
        subject="Subscription plan changed",
        headline="Your plan has changed",
        body="You moved from {old_plan_name} to {plan_name}.",
    ),
    EmailTemplate.PAST_DUE: _Copy(
        subject="We could not process your payment",
        headline="Payment failed",
        body="The renewal payment for your {plan_name} plan failed. Please update your payment method.",
    ),
}


class _Defaults(dict):
    """format_map source that leaves unknown placeholders readable."""

    def __missing__(self, key: str) -> str:
        return "-"


def render(template: EmailTemplate, data: dict[str, Any]) -> tuple[str, str, str]:
    """Return (subject, html_body, text_body) for a template."""
    copy = TEMPLATES[template]
    values = _Defaults({k: str(v) for k, v in data.items()})
    subject = copy.subject.format_map(values)
    headline = copy.headline.format_map(values)
    body = copy.body.format_map(values)
    cta_url = f"{settings.frontend_url.rstrip('/')}/subscription"

    html_body = f"""\
<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;">
  <h1 style="font-size: 22px;">{html_escape(headline)}</h1>
  <p style="font-size: 15px; line-height: 1.6;">{html_escape(body)}</p>
  <p><a href="{html_escape(cta_url)}">Manage subscription</a></p>
</body>
</html>
"""
    text_body = f"{headline}\n\n{body}\n\nManage subscription: {cta_url}\n"
    return subject, html_body, text_body


class Notifier:
    """Sends lifecycle emails through Postmark."""

    def __init__(self, postmark: PostmarkService | None = None) -> None:
        self._postmark = postmark

    @property
    def postmark(self) -> PostmarkService:
        return self._postmark or postmark_service

    async def notify(self, to: str | None, template: EmailTemplate, data: dict[str, Any]) -> bool:
        """Send ``template`` to ``to``. Returns False (never raises) if it was not sent."""
        if not to:
            logger.warning(f"[notifier] No address for {template.value}, skipping")
            return False
        subject, html_body, text_body = render(template, data)
        return await self.postmark.send(
            to=to,
            subject=subject,
            html_body=html_body,
            text_body=text_body,
            tag=template.value,
        )


notifier = Notifier()

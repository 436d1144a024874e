"""Postmark client for subscription lifecycle email.

Talks to Postmark's REST API over httpx. Each message is tagged with its
template id so deliveries can be filtered per template in Postmark.
"""

import logging

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

POSTMARK_API_URL = "https://api.postmarkapp.com/email"
POSTMARK_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
}


class PostmarkService:
    """Send transactional emails via Postmark's REST API."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=settings.provider_timeout_seconds,
            transport=self._transport,
        )

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        tag: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> bool:
        """
        Send one email.

        Returns True on success, False on failure. Delivery problems are
        logged and never raised: a missed email must not undo a committed
        subscription change.
        """
        if not settings.postmark_enabled:
            logger.warning(f"[postmark] Skipped {tag or subject!r} (POSTMARK_API_KEY not configured)")
            return False

        payload: dict[str, object] = {
            "From": settings.postmark_from_email,
            "To": to,
            "Subject": subject,
            "HtmlBody": html_body,
            "TextBody": text_body,
            "MessageStream": "outbound",
        }
        if tag:
            payload["Tag"] = tag
        if metadata:
            payload["Metadata"] = metadata

        headers = {
            **POSTMARK_HEADERS,
            "X-Postmark-Server-Token": settings.postmark_api_key,
        }

        try:
            async with self._client() as client:
                response = await client.post(POSTMARK_API_URL, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"[postmark] HTTP {e.response.status_code} sending {tag or 'email'} to {to}: "
                f"{e.response.text}"
            )
            return False
        except httpx.RequestError as e:
            logger.error(f"[postmark] Request failed sending {tag or 'email'} to {to}: {e}")
            return False

        logger.info(f"[postmark] Sent {tag or 'email'} to {to}")
        return True


postmark_service = PostmarkService()

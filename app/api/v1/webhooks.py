"""Provider webhook endpoint.

No user authentication: deliveries are authenticated by the provider's
signature over the raw request body.
"""

import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Request

from app.api.deps import DbSession
from app.services.webhooks import webhook_dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}")
async def handle_webhook(
    provider: str,
    request: Request,
    db: DbSession,
    background_tasks: BackgroundTasks,
) -> dict[str, Any]:
    """
    Verify, deduplicate and apply a provider webhook.

    Returns 200 for processed, ignored and duplicate deliveries. A bad
    signature is 400; any failure while applying the event is non-2xx so
    the provider redelivers it. Lifecycle emails go out after the response.
    """
    payload = await request.body()
    outcome = await webhook_dispatcher.handle(
        db, provider, payload, request.headers, background_tasks=background_tasks
    )
    return outcome.as_dict()

"""Domain operations for the webhook idempotency table."""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import ProcessedWebhookEvent


class WebhookEventOperations:
    async def is_processed(
        self,
        db: AsyncSession,
        provider_name: str,
        provider_event_id: str,
    ) -> bool:
        statement = select(ProcessedWebhookEvent.id).where(
            ProcessedWebhookEvent.provider_name == provider_name,
            ProcessedWebhookEvent.provider_event_id == provider_event_id,
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none() is not None

    async def mark_processed(
        self,
        db: AsyncSession,
        provider_name: str,
        provider_event_id: str,
        event_type: str | None,
        received_at: datetime,
        processed_at: datetime,
    ) -> ProcessedWebhookEvent:
        """Insert the processed marker. A concurrent duplicate raises IntegrityError."""
        record = ProcessedWebhookEvent(
            provider_name=provider_name,
            provider_event_id=provider_event_id,
            event_type=event_type,
            received_at=received_at,
            processed_at=processed_at,
        )
        db.add(record)
        await db.flush()
        return record


webhook_event_ops = WebhookEventOperations()

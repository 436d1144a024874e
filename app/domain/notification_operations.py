"""Domain operations for the sweep notification log."""

import uuid as uuid_pkg
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import NotificationLog


class NotificationOperations:
    async def was_sent(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        template: str,
        sent_on: date,
    ) -> bool:
        """True if ``template`` already went out for the subscription on ``sent_on``."""
        statement = select(NotificationLog.id).where(
            NotificationLog.subscription_id == subscription_id,
            NotificationLog.template == template,
            NotificationLog.sent_on == sent_on,
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none() is not None

    async def record(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        template: str,
        sent_on: date,
    ) -> NotificationLog:
        entry = NotificationLog(
            subscription_id=subscription_id,
            template=template,
            sent_on=sent_on,
        )
        db.add(entry)
        await db.flush()
        return entry


notification_ops = NotificationOperations()

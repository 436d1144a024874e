"""Domain operations for the PaymentRecord ledger."""

import uuid as uuid_pkg
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import PaymentRecord, PaymentStatus


class PaymentOperations:
    """Append-only access to payment records. Rows are never updated."""

    async def get_by_provider_payment_id(
        self,
        db: AsyncSession,
        provider_payment_id: str,
    ) -> PaymentRecord | None:
        statement = select(PaymentRecord).where(
            PaymentRecord.provider_payment_id == provider_payment_id
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def record(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        subscription_id: uuid_pkg.UUID,
        provider: str,
        provider_payment_id: str,
        amount_minor_units: int,
        currency: str,
        status: PaymentStatus,
        method: str | None = None,
        created_at: datetime | None = None,
    ) -> PaymentRecord:
        """Append a ledger entry. Duplicate payment ids fail on the unique index."""
        payment = PaymentRecord(
            user_id=user_id,
            subscription_id=subscription_id,
            provider=provider,
            provider_payment_id=provider_payment_id,
            amount_minor_units=amount_minor_units,
            currency=currency.upper(),
            status=status.value,
            method=method,
        )
        if created_at is not None:
            payment.created_at = created_at
        db.add(payment)
        await db.flush()
        return payment

    async def list_for_user(
        self,
        db: AsyncSession,
        user_id: str,
        skip: int = 0,
        limit: int = 50,
    ) -> list[PaymentRecord]:
        statement = (
            select(PaymentRecord)
            .where(PaymentRecord.user_id == user_id)
            .order_by(PaymentRecord.created_at.desc())  # type: ignore[attr-defined]
            .offset(skip)
            .limit(limit)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def list_for_subscription(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
    ) -> list[PaymentRecord]:
        statement = (
            select(PaymentRecord)
            .where(PaymentRecord.subscription_id == subscription_id)
            .order_by(PaymentRecord.created_at.asc())  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def has_succeeded_since(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        since: datetime,
    ) -> bool:
        """True if a succeeded payment for the subscription was recorded at or after ``since``."""
        statement = (
            select(PaymentRecord.id)
            .where(
                PaymentRecord.subscription_id == subscription_id,
                PaymentRecord.status == PaymentStatus.SUCCEEDED.value,
                PaymentRecord.created_at >= since,  # type: ignore[operator]
            )
            .limit(1)
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none() is not None

    async def revenue_by_currency(
        self,
        db: AsyncSession,
        start: datetime,
        end: datetime,
    ) -> dict[str, int]:
        """Sum of succeeded payments per currency in [start, end)."""
        statement = (
            select(PaymentRecord.currency, func.sum(PaymentRecord.amount_minor_units))
            .where(
                PaymentRecord.status == PaymentStatus.SUCCEEDED.value,
                PaymentRecord.created_at >= start,  # type: ignore[operator]
                PaymentRecord.created_at < end,  # type: ignore[operator]
            )
            .group_by(PaymentRecord.currency)
        )
        result = await db.execute(statement)
        return {currency: int(total or 0) for currency, total in result.all()}


payment_ops = PaymentOperations()

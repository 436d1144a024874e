"""Domain operations for the Plan catalog."""

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.plans import PLAN_CATALOG, PlanConfig
from app.core.exceptions import PlanNotFoundError
from app.models.plan import Plan

if TYPE_CHECKING:
    from app.services.payments.base import PaymentGateway

logger = logging.getLogger(__name__)


class PlanOperations:
    """Read-mostly operations on the plan catalog."""

    async def get(self, db: AsyncSession, plan_id: str) -> Plan | None:
        """Get a plan by id, including inactive plans."""
        statement = select(Plan).where(Plan.id == plan_id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_or_404(self, db: AsyncSession, plan_id: str) -> Plan:
        """Get an active plan by id, raising PlanNotFoundError otherwise."""
        plan = await self.get(db, plan_id)
        if plan is None or not plan.is_active:
            raise PlanNotFoundError(plan_id)
        return plan

    async def get_by_name(self, db: AsyncSession, name: str) -> Plan | None:
        statement = select(Plan).where(Plan.name == name)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def list_active(self, db: AsyncSession) -> list[Plan]:
        """Active plans ordered by price ascending."""
        statement = (
            select(Plan)
            .where(Plan.is_active.is_(True))  # type: ignore[attr-defined]
            .order_by(Plan.price_minor_units.asc(), Plan.duration_days.asc())  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def upsert(self, db: AsyncSession, config: PlanConfig) -> Plan:
        """
        Insert a plan or return the existing row with the same name.

        Existing plans are not modified: catalog entries are immutable
        apart from the active flag and provider handles.
        """
        existing = await self.get_by_name(db, config.name)
        if existing:
            return existing

        plan = Plan(**config.as_row())
        db.add(plan)
        await db.flush()
        await db.refresh(plan)
        logger.info(f"Seeded plan {plan.id} ({plan.name})")
        return plan

    async def seed(
        self,
        db: AsyncSession,
        gateway: "PaymentGateway | None" = None,
    ) -> list[Plan]:
        """
        Seed the catalog from PLAN_CATALOG (idempotent, keyed by name).

        When a recurring gateway is given, recurring plans without provider
        handles are synchronized to a provider-side product and price.
        """
        plans = [await self.upsert(db, config) for config in PLAN_CATALOG.values()]

        if gateway is not None:
            for plan in plans:
                if plan.is_recurring and not plan.stripe_price_id:
                    await self.sync_with_provider(db, plan, gateway)

        return plans

    async def sync_with_provider(
        self,
        db: AsyncSession,
        plan: Plan,
        gateway: "PaymentGateway",
    ) -> Plan:
        """Create the provider product/price for a plan and store the handles."""
        handles = await gateway.sync_plan(plan)
        if handles is None:
            return plan

        product_id, price_id = handles
        plan.stripe_product_id = product_id
        plan.stripe_price_id = price_id
        db.add(plan)
        await db.flush()
        await db.refresh(plan)
        logger.info(f"Synced plan {plan.id} to {gateway.name} price {price_id}")
        return plan

    async def set_active(self, db: AsyncSession, plan_id: str, is_active: bool) -> Plan:
        """Soft-enable or soft-disable a plan."""
        plan = await self.get(db, plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        plan.is_active = is_active
        db.add(plan)
        await db.flush()
        await db.refresh(plan)
        return plan


plan_ops = PlanOperations()

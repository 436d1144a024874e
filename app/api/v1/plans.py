"""Public plan catalog endpoints."""

from fastapi import APIRouter

from app.api.deps import DbSession
from app.domain.plan_operations import plan_ops
from app.models.plan import PlanRead

router = APIRouter(prefix="/plans", tags=["plans"])


@router.get("", response_model=list[PlanRead])
async def list_plans(db: DbSession) -> list[PlanRead]:
    """List active plans, cheapest first. No authentication required."""
    plans = await plan_ops.list_active(db)
    return [PlanRead.model_validate(plan) for plan in plans]


@router.get("/{plan_id}", response_model=PlanRead)
async def get_plan(plan_id: str, db: DbSession) -> PlanRead:
    plan = await plan_ops.get_or_404(db, plan_id)
    return PlanRead.model_validate(plan)

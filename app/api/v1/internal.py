"""Internal API endpoints - protected by shared secret, not user auth.

These endpoints are called by cron jobs / external schedulers and
operators, not by end users. They validate a shared secret via the
X-Cron-Secret header.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends

from app.api.deps import DbSession, verify_cron_secret
from app.config import settings
from app.domain.plan_operations import plan_ops
from app.models.plan import PlanRead
from app.services.payments import get_gateway
from app.services.scheduler import scheduler

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.post("/sweeps/{job_id}")
async def trigger_sweep(job_id: str) -> dict[str, Any]:
    """
    Run a reconciliation sweep now.

    Returns the sweep report, or ``skipped`` when the sweep is already
    running here or on another instance.
    """
    report = await scheduler.trigger_now(job_id)
    if report is None:
        return {"job_id": job_id, "status": "skipped"}
    return {"job_id": job_id, "status": "completed", "report": report}


@router.post("/plans/init", response_model=list[PlanRead])
async def init_plans(db: DbSession) -> list[PlanRead]:
    """Seed the plan catalog, syncing recurring plans to the recurring provider when configured."""
    gateway = None
    if settings.recurring_provider == "stripe" and settings.stripe_enabled:
        gateway = get_gateway(settings.recurring_provider)
    plans = await plan_ops.seed(db, gateway=gateway)
    logger.info(f"Plan catalog initialised ({len(plans)} plans)")
    return [PlanRead.model_validate(plan) for plan in plans]


@router.post("/plans/{plan_id}/deactivate", response_model=PlanRead)
async def deactivate_plan(plan_id: str, db: DbSession) -> PlanRead:
    """Soft-disable a plan. Existing subscriptions keep it."""
    plan = await plan_ops.set_active(db, plan_id, is_active=False)
    logger.info(f"Deactivated plan {plan_id}")
    return PlanRead.model_validate(plan)

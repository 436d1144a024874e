"""Internal job scheduler using APScheduler.

Runs the reconciliation sweeps inside the FastAPI process. Two guards keep
a sweep from overlapping itself: an in-process running set (a slow tick is
skipped rather than queued) and a PostgreSQL advisory lock so only one
instance runs a given sweep when several are deployed.
"""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.clock import Clock, system_clock
from app.core.database import async_session_maker
from app.core.exceptions import NotFoundError
from app.services.reconciliation import Reconciler

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


@dataclass(frozen=True)
class JobSpec:
    job_id: str
    name: str
    cron_setting: str
    lock_id: int  # arbitrary, unique per job


JOBS: dict[str, JobSpec] = {
    spec.job_id: spec
    for spec in (
        JobSpec("status_sweep", "Subscription Status Sweep", "status_sweep_cron", 731101),
        JobSpec("trial_sweep", "Trial Expiry Sweep", "trial_sweep_cron", 731102),
        JobSpec("analytics_sweep", "Billing Analytics Snapshot", "analytics_sweep_cron", 731103),
    )
}


@asynccontextmanager
async def advisory_lock(session_maker: SessionFactory, lock_id: int) -> AsyncIterator[bool]:
    """
    Hold a PostgreSQL advisory lock for the duration of the context.

    Uses pg_try_advisory_lock(), which returns immediately: if another
    instance holds the lock we yield False and the caller skips. Other
    dialects have no cross-process lock and always yield True.
    """
    async with session_maker() as session:
        if session.get_bind().dialect.name != "postgresql":
            yield True
            return

        result = await session.execute(
            text("SELECT pg_try_advisory_lock(:lock_id)"),
            {"lock_id": lock_id},
        )
        if not result.scalar():
            yield False
            return

        try:
            yield True
        finally:
            await session.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"),
                {"lock_id": lock_id},
            )
            await session.commit()


class Scheduler:
    """Owns the APScheduler instance and the sweep jobs."""

    def __init__(
        self,
        clock: Clock | None = None,
        session_maker: SessionFactory | None = None,
        reconciler: Reconciler | None = None,
    ) -> None:
        self._clock = clock or system_clock
        self._session_maker = session_maker or async_session_maker
        self._reconciler = reconciler or Reconciler(clock=self._clock)
        self._scheduler: AsyncIOScheduler | None = None
        self._running: set[str] = set()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _job(self, job_id: str) -> Callable[[AsyncSession], Awaitable[Any]]:
        return {
            "status_sweep": self._reconciler.status_sweep,
            "trial_sweep": self._reconciler.trial_sweep,
            "analytics_sweep": self._reconciler.analytics_sweep,
        }[job_id]

    async def run_job(self, job_id: str) -> dict[str, Any] | None:
        """
        Run one sweep under both guards.

        Returns the report dict, or None if skipped or failed (failures are
        logged; the next tick retries).
        """
        spec = JOBS[job_id]
        if job_id in self._running:
            logger.info(f"[scheduler] {spec.name}: skipped (previous run still in progress)")
            return None

        self._running.add(job_id)
        try:
            async with advisory_lock(self._session_maker, spec.lock_id) as acquired:
                if not acquired:
                    logger.info(f"[scheduler] {spec.name}: skipped (another instance is running)")
                    return None

                started_at = self._clock.now()
                logger.info(f"[scheduler] {spec.name}: starting")
                try:
                    async with self._session_maker() as db:
                        report = await self._job(job_id)(db)
                        await db.commit()
                except Exception as e:
                    logger.exception(f"[scheduler] {spec.name}: failed with error: {e}")
                    return None

                logger.info(f"[scheduler] {spec.name}: completed")
                return {"job": job_id, "started_at": started_at.isoformat(), **asdict(report)}
        finally:
            self._running.discard(job_id)

    def start(self) -> None:
        """Start the scheduler and register the sweeps."""
        if not settings.scheduler_enabled:
            logger.info("[scheduler] Disabled via SCHEDULER_ENABLED=false")
            return

        self._scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)
        for spec in JOBS.values():
            expression = getattr(settings, spec.cron_setting)
            self._scheduler.add_job(
                self.run_job,
                trigger=CronTrigger.from_crontab(expression, timezone=settings.scheduler_timezone),
                args=[spec.job_id],
                id=spec.job_id,
                name=spec.name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )

        self._scheduler.start()
        logger.info(
            "[scheduler] Started: "
            + ", ".join(
                f"{spec.job_id}='{getattr(settings, spec.cron_setting)}'" for spec in JOBS.values()
            )
            + f" ({settings.scheduler_timezone})"
        )

    def stop(self) -> None:
        """Shut down without waiting for running sweeps."""
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("[scheduler] Stopped")

    async def trigger_now(self, job_id: str) -> dict[str, Any] | None:
        """Run a job immediately (internal endpoint, tests)."""
        if job_id not in JOBS:
            raise NotFoundError(f"Job '{job_id}'")
        return await self.run_job(job_id)


scheduler = Scheduler()

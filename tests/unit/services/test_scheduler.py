"""Unit tests for the APScheduler wrapper and its overlap guards."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.core.exceptions import NotFoundError
from app.services.reconciliation import SweepReport
from app.services.scheduler import JOBS, Scheduler, advisory_lock


@pytest.fixture
def mock_reconciler():
    reconciler = MagicMock()
    reconciler.status_sweep = AsyncMock(return_value=SweepReport(job="status_sweep", expired=2))
    reconciler.trial_sweep = AsyncMock(return_value=SweepReport(job="trial_sweep"))
    reconciler.analytics_sweep = AsyncMock(return_value=SweepReport(job="analytics_sweep"))
    return reconciler


@pytest.fixture
def sched(clock, session_maker, mock_reconciler):
    return Scheduler(clock=clock, session_maker=session_maker, reconciler=mock_reconciler)


class TestJobs:
    def test_registered_jobs(self):
        assert set(JOBS) == {"status_sweep", "trial_sweep", "analytics_sweep"}
        assert len({spec.lock_id for spec in JOBS.values()}) == 3


class TestTriggerNow:
    async def test_returns_report(self, sched, mock_reconciler, clock):
        result = await sched.trigger_now("status_sweep")

        assert result["job"] == "status_sweep"
        assert result["expired"] == 2
        assert result["started_at"] == clock.now().isoformat()
        mock_reconciler.status_sweep.assert_awaited_once()

    async def test_unknown_job(self, sched):
        with pytest.raises(NotFoundError):
            await sched.trigger_now("nightly_backup")

    async def test_failure_is_logged_and_swallowed(self, sched, mock_reconciler):
        mock_reconciler.trial_sweep.side_effect = RuntimeError("db down")

        assert await sched.trigger_now("trial_sweep") is None
        # Guard released so the next tick can retry
        mock_reconciler.trial_sweep.side_effect = None
        assert await sched.trigger_now("trial_sweep") is not None

    async def test_overlapping_run_is_skipped(self, sched, mock_reconciler):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def slow_sweep(db):
            entered.set()
            await release.wait()
            return SweepReport(job="status_sweep")

        mock_reconciler.status_sweep.side_effect = slow_sweep
        first = asyncio.create_task(sched.run_job("status_sweep"))
        await entered.wait()

        assert await sched.run_job("status_sweep") is None

        release.set()
        assert (await first)["job"] == "status_sweep"


class TestAdvisoryLock:
    async def test_non_postgres_always_acquires(self, session_maker):
        async with advisory_lock(session_maker, 731101) as acquired:
            assert acquired is True


class TestLifecycle:
    @patch("app.services.scheduler.settings")
    def test_disabled_does_not_start(self, mock_settings, sched):
        mock_settings.scheduler_enabled = False

        sched.start()

        assert sched.running is False

    @patch("app.services.scheduler.settings")
    async def test_start_registers_cron_jobs(self, mock_settings, sched):
        mock_settings.scheduler_enabled = True
        mock_settings.scheduler_timezone = "UTC"
        mock_settings.status_sweep_cron = "0 9 * * *"
        mock_settings.trial_sweep_cron = "0 */6 * * *"
        mock_settings.analytics_sweep_cron = "0 8 * * 1"

        sched.start()
        try:
            assert sched.running is True
            jobs = {job.id: job for job in sched._scheduler.get_jobs()}
            assert set(jobs) == set(JOBS)
            assert jobs["trial_sweep"].args == ("trial_sweep",)
            assert jobs["status_sweep"].max_instances == 1
        finally:
            sched.stop()

        assert sched.running is False

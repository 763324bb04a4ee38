"""
Tests for the in-process APScheduler tick.
"""

from unittest.mock import AsyncMock, patch

from cms_kernel import scheduler as scheduler_module
from cms_kernel.services import scheduler_service


class TestSchedulerTick:
    async def test_tick_returns_summary(self, db_session):
        summary = await scheduler_module.run_scheduler_tick()

        assert summary["schedules"]["message"] == "schedules disabled"
        assert summary["domain_events"] == {"processed": 0}
        assert summary["webhooks"]["processed"] == 0

    async def test_tick_skipped_while_lock_held(self, db_session):
        holder = await scheduler_service.acquire_scheduler_lock(db_session)
        assert holder is not None

        assert await scheduler_module.run_scheduler_tick() is None

    async def test_tick_releases_lock(self, db_session):
        await scheduler_module.run_scheduler_tick()

        assert await scheduler_service.acquire_scheduler_lock(db_session) is not None

    async def test_failed_tick_logged_and_lock_released(self, db_session):
        with patch.object(scheduler_module, "run_maintenance", AsyncMock(side_effect=RuntimeError("boom"))):
            assert await scheduler_module.run_scheduler_tick() is None

        assert await scheduler_service.acquire_scheduler_lock(db_session) is not None


class TestSchedulerLifecycle:
    def test_disabled_scheduler_not_started(self):
        scheduler_module.start_scheduler()

        assert scheduler_module.scheduler.running is False
        assert scheduler_module.scheduler.get_job(scheduler_module.TICK_JOB_ID) is None

    def test_shutdown_when_not_running(self):
        scheduler_module.shutdown_scheduler()

        assert scheduler_module.scheduler.running is False

"""Tests for wiring the runtime from settings."""

from datetime import timedelta

import pytest

from kpisync.core.config import Settings
from kpisync.core.database import utcnow
from kpisync.services.queue import SyncJobPayload
from kpisync.services.runtime import SyncRuntime
from kpisync.services.worker import ExecutorRegistry


def _runtime(session_factory, executor, notifier, **overrides):
    settings = Settings(encryption_key_salt="runtime-test-salt", **overrides)
    return SyncRuntime(settings, session_factory, ExecutorRegistry({"meta": executor}), notifier=notifier)


async def _configure_and_queue(runtime):
    credential = await runtime.credentials.save_credential(1, "meta", "Ads", {"access_token": "x"})
    await runtime.credentials.configure_service(1, "meta", credential.id, True, spreadsheet_id="s-1")
    await runtime.queue.enqueue("meta", SyncJobPayload(tenant_id=1))


class TestSuccessNotifications:

    @pytest.mark.asyncio
    async def test_enabled_by_setting(self, session_factory, fake_executor, notifier, fake_channel):
        runtime = _runtime(session_factory, fake_executor, notifier, notify_success=True)
        await _configure_and_queue(runtime)

        assert await runtime.pool.run_once() is True
        assert "Sync Completed" in fake_channel.sent[0][0]

    @pytest.mark.asyncio
    async def test_off_by_default(self, session_factory, fake_executor, notifier, fake_channel):
        runtime = _runtime(session_factory, fake_executor, notifier)
        await _configure_and_queue(runtime)

        assert await runtime.pool.run_once() is True
        assert fake_channel.sent == []


class TestDailySummary:

    @pytest.mark.asyncio
    async def test_reports_jobs_finished_in_last_day(self, session_factory, fake_executor, notifier, fake_channel):
        runtime = _runtime(session_factory, fake_executor, notifier, queue_max_attempts=1)
        await _configure_and_queue(runtime)
        await runtime.queue.enqueue("ga4", SyncJobPayload(tenant_id=1))
        await runtime.pool.run_once()
        await runtime.pool.run_once()

        assert await runtime.send_daily_summary() == 2

        summaries = [message for subject, message in fake_channel.sent if subject == "[KPI Sync] Daily Summary"]
        assert len(summaries) == 1
        assert "Succeeded: 1 | Failed: 1" in summaries[0]

    @pytest.mark.asyncio
    async def test_quiet_day(self, session_factory, fake_executor, notifier, fake_channel):
        runtime = _runtime(session_factory, fake_executor, notifier)
        assert await runtime.send_daily_summary() == 0
        assert fake_channel.sent == []


class TestQueueHousekeeping:

    @pytest.mark.asyncio
    async def test_clean_uses_retention_settings(self, session_factory, fake_executor, notifier):
        runtime = _runtime(session_factory, fake_executor, notifier, completed_job_retention_hours=0)
        await _configure_and_queue(runtime)
        await runtime.pool.run_once()

        assert await runtime.clean_queue() == {"completed": 1, "failed": 0}
        assert (await runtime.queue.stats())["completed"] == 0

    @pytest.mark.asyncio
    async def test_recent_completion_kept(self, session_factory, fake_executor, notifier):
        runtime = _runtime(session_factory, fake_executor, notifier)
        await _configure_and_queue(runtime)
        await runtime.pool.run_once()

        assert await runtime.queue.clean(86400, now=utcnow() + timedelta(hours=1)) == {"completed": 0, "failed": 0}
        assert await runtime.clean_queue() == {"completed": 0, "failed": 0}


class TestMaintenanceJobs:

    @pytest.mark.asyncio
    async def test_registered_on_start(self, session_factory, fake_executor, notifier):
        runtime = _runtime(session_factory, fake_executor, notifier, daily_summary_cron="0 9 * * *")
        await runtime.start()
        try:
            assert runtime.scheduler.scheduler.get_job("maintenance:queue-clean") is not None
            assert runtime.scheduler.scheduler.get_job("maintenance:daily-summary") is not None
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_bad_summary_cron_skips_summary(self, session_factory, fake_executor, notifier):
        runtime = _runtime(session_factory, fake_executor, notifier, daily_summary_cron="every morning")
        await runtime.start()
        try:
            assert runtime.scheduler.scheduler.get_job("maintenance:queue-clean") is not None
            assert runtime.scheduler.scheduler.get_job("maintenance:daily-summary") is None
        finally:
            await runtime.stop()

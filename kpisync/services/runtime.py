"""Builds and runs the scheduler, queue and worker pool as one unit."""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kpisync.core.config import Settings
from kpisync.core.errors import PersistenceUnavailable
from kpisync.models.sync_job import JobStatus
from kpisync.services.audit import AuditLog
from kpisync.services.credentials import CredentialService
from kpisync.services.cron import build_trigger
from kpisync.services.notifier import Notifier, build_channels
from kpisync.services.queue import DatabaseSyncQueue
from kpisync.services.registry import ScheduleRegistry
from kpisync.services.scheduler import SyncScheduler
from kpisync.services.vault import CredentialVault
from kpisync.services.worker import (
    ExecutorRegistry,
    SlidingWindowRateLimiter,
    SyncJobProcessor,
    WorkerPool,
)

logger = logging.getLogger(__name__)


class SyncRuntime:
    """Every long-lived component, wired from settings."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        executors: ExecutorRegistry | None = None,
        notifier: Notifier | None = None,
    ):
        self.settings = settings
        self.executors = executors or ExecutorRegistry()

        self.vault = CredentialVault(settings.encryption_key_salt, settings.kdf_iterations)
        self.audit = AuditLog(session_factory)
        self.notifier = notifier or Notifier(
            build_channels(settings),
            cooldown_seconds=settings.notification_cooldown_seconds,
        )
        self.credentials = CredentialService(session_factory, self.vault, self.audit)
        self.registry = ScheduleRegistry(session_factory)
        self.queue = DatabaseSyncQueue(
            session_factory,
            max_attempts=settings.queue_max_attempts,
            backoff_seconds=settings.queue_backoff_seconds,
        )
        self.processor = SyncJobProcessor(
            self.credentials,
            self.executors,
            self.audit,
            self.notifier,
            notify_success=settings.notify_success,
        )
        self.pool = WorkerPool(
            self.queue,
            self.processor,
            concurrency=settings.worker_concurrency,
            rate_limiter=SlidingWindowRateLimiter(
                settings.rate_limit_max_jobs,
                settings.rate_limit_window_seconds,
            ),
            poll_interval=settings.worker_poll_interval_seconds,
            stall_window=settings.stall_window_seconds,
            shutdown_grace=settings.shutdown_grace_seconds,
        )
        self.scheduler = SyncScheduler(
            self.registry,
            self.queue,
            self.notifier,
            self.audit,
            retry_delay_seconds=settings.schedule_retry_delay_seconds,
        )

    async def start(self) -> None:
        if not self.executors.services():
            logger.warning("No sync executors registered, queued jobs will fail")
        await self.pool.start()
        await self.scheduler.start()
        self._register_maintenance()

    def _register_maintenance(self) -> None:
        settings = self.settings
        self.scheduler.add_maintenance_job(
            "queue-clean",
            self.clean_queue,
            IntervalTrigger(minutes=settings.queue_clean_interval_minutes, timezone="UTC"),
        )
        if not settings.daily_summary_cron:
            return
        try:
            trigger = build_trigger(settings.daily_summary_cron, settings.tz)
        except ValueError as e:
            logger.error(f"Daily summary disabled, bad cron '{settings.daily_summary_cron}': {e}")
            return
        self.scheduler.add_maintenance_job("daily-summary", self.send_daily_summary, trigger)

    async def clean_queue(self) -> dict[str, int]:
        """Drop finished jobs past their retention period."""
        try:
            return await self.queue.clean(
                self.settings.completed_job_retention_hours * 3600,
                self.settings.failed_job_retention_hours * 3600,
            )
        except (PersistenceUnavailable, SQLAlchemyError) as e:
            logger.warning(f"Queue clean skipped: {e}")
            return {}

    async def send_daily_summary(self, now: datetime | None = None) -> int:
        """Notify about every job that finished in the last 24 hours. Returns how many were listed."""
        now = now or datetime.now(timezone.utc)
        try:
            jobs = await self.queue.finished_since(now - timedelta(hours=24))
        except (PersistenceUnavailable, SQLAlchemyError) as e:
            logger.warning(f"Daily summary skipped: {e}")
            return 0

        results = []
        for job in jobs:
            outcome = job.result or {}
            results.append({
                "service": job.service,
                "success": job.status == JobStatus.COMPLETED.value,
                "target_date": outcome.get("target_date") or job.target_date,
                "mode": outcome.get("mode"),
                "row_number": outcome.get("row_number"),
                "error": job.last_error,
            })
        await self.notifier.send_daily_summary(results)
        return len(results)

    async def stop(self) -> None:
        """Stop timers first, drain the workers, then release the queue and channels."""
        self.scheduler.stop()
        await self.pool.stop()
        await self.queue.close()
        await self.notifier.close()

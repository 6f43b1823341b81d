"""
APScheduler-driven cron timers, one per active (tenant, service) schedule.

Each timer fires SyncScheduler.trigger(), which enqueues a sync job and then
updates the schedule's bookkeeping. Enqueueing always comes first: failures
writing last_run_at or next_run_at are logged and never undo a queued job.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from sqlalchemy.exc import SQLAlchemyError

from kpisync.core.errors import EnqueueFailure, InvalidCronExpression, PersistenceUnavailable
from kpisync.models.audit_log import AuditAction, AuditStatus
from kpisync.models.database import JobSchedule, parse_service
from kpisync.services.audit import AuditLog
from kpisync.services.cron import build_trigger, compute_next_run
from kpisync.services.notifier import Notifier
from kpisync.services.queue import SyncJobPayload, SyncQueue
from kpisync.services.registry import ScheduleRegistry

logger = logging.getLogger(__name__)

ScheduleKey = tuple[int, str]


def timer_id(key: ScheduleKey) -> str:
    return f"{key[0]}:{key[1]}"


class SyncScheduler:
    """Keeps one cron timer per active schedule and turns firings into queued jobs."""

    def __init__(
        self,
        registry: ScheduleRegistry,
        queue: SyncQueue,
        notifier: Notifier,
        audit: AuditLog,
        retry_delay_seconds: float = 600,
        scheduler: AsyncIOScheduler | None = None,
    ):
        self.registry = registry
        self.queue = queue
        self.notifier = notifier
        self.audit = audit
        self.retry_delay_seconds = retry_delay_seconds
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._timers: dict[ScheduleKey, Job] = {}
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    @property
    def registered_keys(self) -> set[ScheduleKey]:
        return set(self._timers)

    async def start(self) -> None:
        """Catch up missed runs, then register a timer for every active schedule."""
        if self.running:
            logger.warning("Scheduler already started")
            return

        # Catch-up runs are queued before any cron timer is registered
        self.scheduler.start()
        await self.handle_missed_jobs()
        await self.refresh()
        logger.info(f"Scheduler started with {len(self._timers)} active schedule(s)")

    def stop(self) -> None:
        """Stop firing timers. Jobs already queued are left to the workers."""
        if self.running:
            self.scheduler.shutdown(wait=False)
        self._timers.clear()
        logger.info("Scheduler stopped")

    async def handle_missed_jobs(self, now: datetime | None = None) -> int:
        """Enqueue one catch-up run per schedule whose next run passed while we were down."""
        now = now or datetime.now(dt_timezone.utc)
        try:
            missed = await self.registry.list_missed(now)
        except PersistenceUnavailable as e:
            logger.warning(f"Skipping missed-run recovery, schedule storage unavailable: {e}")
            return 0

        caught_up = 0
        for schedule in missed:
            logger.info(
                f"Catching up missed {schedule.service} run for tenant {schedule.tenant_id} "
                f"(was due {schedule.next_run_at})"
            )
            if await self.trigger(schedule, now=now):
                caught_up += 1
        return caught_up

    def _register(self, schedule: JobSchedule) -> None:
        key = schedule.key
        try:
            trigger = build_trigger(schedule.cron_expression, schedule.timezone)
        except (InvalidCronExpression, ValueError) as e:
            logger.error(f"Not scheduling tenant {schedule.tenant_id} {schedule.service}: {e}")
            self._unregister(key)
            return

        self._timers[key] = self.scheduler.add_job(
            self.trigger,
            trigger,
            args=[schedule],
            id=timer_id(key),
            name=f"{schedule.service} sync for tenant {schedule.tenant_id}",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=None,
        )
        logger.debug(f"Timer {timer_id(key)} registered with cron '{schedule.cron_expression}' ({schedule.timezone})")

    def _unregister(self, key: ScheduleKey) -> None:
        job = self._timers.pop(key, None)
        if job is None:
            return
        if self.scheduler.get_job(job.id):
            self.scheduler.remove_job(job.id)
        logger.debug(f"Timer {timer_id(key)} removed")

    async def refresh(self) -> None:
        """Bring registered timers in line with the active schedules in storage."""
        if not self.running:
            logger.warning("Scheduler is not running, refresh skipped")
            return

        async with self._lock:
            try:
                active = await self.registry.list_active()
            except PersistenceUnavailable as e:
                logger.warning(f"Refresh skipped, schedule storage unavailable: {e}")
                return

            wanted = {schedule.key: schedule for schedule in active}
            for key in set(self._timers) - set(wanted):
                self._unregister(key)
            for schedule in wanted.values():
                self._register(schedule)

        logger.info(f"Schedules refreshed: {len(self._timers)} active timer(s)")

    async def _bookkeeping(self, description: str, operation) -> None:
        try:
            await operation
        except (PersistenceUnavailable, SQLAlchemyError) as e:
            logger.warning(f"Could not {description}: {e}")

    async def _advance(self, schedule: JobSchedule, now: datetime) -> None:
        try:
            next_run = compute_next_run(schedule.cron_expression, schedule.timezone, now)
        except (InvalidCronExpression, ValueError) as e:
            logger.error(f"Could not compute next run for schedule {schedule.id}: {e}")
            return
        await self._bookkeeping(
            f"store next run for schedule {schedule.id}",
            self.registry.set_next_run(schedule.id, next_run),
        )

    async def trigger(self, schedule: JobSchedule, now: datetime | None = None) -> bool:
        """
        Timer callback: enqueue one sync job for the schedule.

        Returns True when the job was queued. An enqueue failure schedules a
        single delayed retry instead of raising.
        """
        now = now or datetime.now(dt_timezone.utc)
        logger.info(f"Triggering {schedule.service} sync for tenant {schedule.tenant_id}")

        await self._bookkeeping(
            f"mark schedule {schedule.id} triggered",
            self.registry.mark_triggered(schedule.id, now),
        )

        try:
            job_id = await self.queue.enqueue(schedule.service, SyncJobPayload(tenant_id=schedule.tenant_id))
        except EnqueueFailure as e:
            await self._handle_enqueue_failure(schedule, e)
            return False

        logger.info(f"Scheduled {schedule.service} sync queued as job {job_id} for tenant {schedule.tenant_id}")
        await self._advance(schedule, now)
        return True

    async def _handle_enqueue_failure(self, schedule: JobSchedule, error: EnqueueFailure) -> None:
        logger.error(f"Failed to queue {schedule.service} sync for tenant {schedule.tenant_id}: {error}")
        await self.notifier.send_schedule_failure(schedule.service, schedule.tenant_id, str(error))
        await self.audit.record(
            schedule.tenant_id,
            AuditAction.SCHEDULE_FAILURE,
            service=schedule.service,
            status=AuditStatus.FAILURE,
            error_message=str(error),
            metadata={"schedule_id": schedule.id, "retry_in_seconds": self.retry_delay_seconds},
        )

        if not self.running:
            logger.warning(f"Scheduler not running, no retry for schedule {schedule.id}")
            return
        run_date = datetime.now(dt_timezone.utc) + timedelta(seconds=self.retry_delay_seconds)
        self.scheduler.add_job(
            self.retry_enqueue,
            DateTrigger(run_date=run_date),
            args=[schedule],
            id=f"retry:{timer_id(schedule.key)}",
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.info(f"Retry for schedule {schedule.id} at {run_date.isoformat()}")

    async def retry_enqueue(self, schedule: JobSchedule) -> bool:
        """The one delayed retry after an enqueue failure. Does not retry again."""
        try:
            job_id = await self.queue.enqueue(schedule.service, SyncJobPayload(tenant_id=schedule.tenant_id))
        except EnqueueFailure as e:
            logger.error(f"Retry for schedule {schedule.id} failed, waiting for the next cron run: {e}")
            return False

        logger.info(f"Retry queued {schedule.service} sync as job {job_id} for tenant {schedule.tenant_id}")
        await self._advance(schedule, datetime.now(dt_timezone.utc))
        return True

    async def trigger_now(
        self,
        tenant_id: int,
        service: str,
        target_date: str | None = None,
        destination_overrides: dict[str, Any] | None = None,
        delay_seconds: float = 0.0,
    ) -> int:
        """
        Manual sync. Enqueues immediately, or after delay_seconds, and leaves
        next_run_at alone.

        Raises:
            EnqueueFailure: the job could not be queued.
        """
        service = parse_service(service).value
        payload = SyncJobPayload(
            tenant_id=tenant_id,
            target_date=target_date,
            destination_overrides=destination_overrides or {},
        )
        if delay_seconds:
            job_id = await self.queue.enqueue(service, payload, delay_seconds=delay_seconds)
        else:
            job_id = await self.queue.enqueue(service, payload)
        await self.audit.record(
            tenant_id,
            AuditAction.WORKFLOW_RUN,
            service=service,
            metadata={"job_id": job_id, "target_date": target_date, "trigger": "manual"},
        )
        return job_id

    async def trigger_all(
        self,
        tenant_id: int,
        services: list[str],
        target_date: str | None = None,
        stagger_seconds: float = 30.0,
    ) -> dict[str, int]:
        """
        Queue a manual sync for each service, spaced stagger_seconds apart.

        Returns service -> job id. The first enqueue failure is raised; jobs
        already queued stay queued.
        """
        queued = {}
        for position, service in enumerate(services):
            queued[service] = await self.trigger_now(
                tenant_id, service, target_date=target_date, delay_seconds=position * stagger_seconds
            )
        logger.info(f"Queued {len(queued)} sync(s) for tenant {tenant_id}, {stagger_seconds:.0f}s apart")
        return queued

    async def stats(self, tenant_id: int | None = None) -> dict:
        """Stored schedule counts plus the number of live timers."""
        counts = await self.registry.stats(tenant_id)
        if tenant_id is None:
            counts["timers"] = len(self._timers)
        else:
            counts["timers"] = sum(1 for key in self._timers if key[0] == tenant_id)
        return counts

    def add_maintenance_job(self, name: str, func, trigger) -> Job:
        """Run a housekeeping callable on the scheduler. Not touched by refresh()."""
        return self.scheduler.add_job(
            func,
            trigger,
            id=f"maintenance:{name}",
            name=name,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

    async def create_schedule(
        self,
        tenant_id: int,
        service: str,
        cron_expression: str,
        enabled: bool = True,
        timezone: str = "UTC",
    ) -> JobSchedule:
        schedule = await self.registry.create(tenant_id, service, cron_expression, enabled, timezone)
        await self.refresh()
        return schedule

    async def update_schedule(
        self,
        schedule_id: int,
        tenant_id: int,
        cron_expression: str,
        enabled: bool,
        timezone: str,
    ) -> JobSchedule | None:
        schedule = await self.registry.update(schedule_id, tenant_id, cron_expression, enabled, timezone)
        await self.refresh()
        return schedule

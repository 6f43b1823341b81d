"""Persisted (tenant, service) -> cron schedule table."""

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kpisync.core.database import session_scope, to_naive_utc, utcnow
from kpisync.core.errors import DuplicateScheduleError, PersistenceUnavailable, ScheduleNotFoundError
from kpisync.models.database import JobSchedule, parse_service
from kpisync.services.cron import compute_next_run, validate_cron, validate_timezone

logger = logging.getLogger(__name__)


class ScheduleRegistry:
    """CRUD over job_schedules. Every write touches a single row."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    def compute_next_run(cron_expression: str, timezone: str, now: datetime | None = None) -> datetime:
        return compute_next_run(cron_expression, timezone, now)

    @staticmethod
    def _initial_next_run(cron_expression: str, timezone: str, enabled: bool, now: datetime) -> datetime | None:
        if not enabled:
            return None
        return to_naive_utc(compute_next_run(cron_expression, timezone, now))

    async def create(
        self,
        tenant_id: int,
        service: str,
        cron_expression: str,
        enabled: bool = True,
        timezone: str = "UTC",
        now: datetime | None = None,
    ) -> JobSchedule:
        """
        Create the schedule for a tenant-service pair.

        Raises:
            DuplicateScheduleError: a schedule already exists for the pair.
            InvalidCronExpression / InvalidTimezoneError: bad configuration.
        """
        service = parse_service(service).value
        validate_cron(cron_expression)
        validate_timezone(timezone)
        now = to_naive_utc(now) if now else utcnow()

        schedule = JobSchedule(
            tenant_id=tenant_id,
            service=service,
            cron_expression=cron_expression,
            enabled=enabled,
            timezone=timezone,
            next_run_at=self._initial_next_run(cron_expression, timezone, enabled, now),
            created_at=now,
            updated_at=now,
        )

        async with session_scope(self.session_factory) as session:
            existing = await session.execute(
                select(JobSchedule.id).where(
                    JobSchedule.tenant_id == tenant_id,
                    JobSchedule.service == service,
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise DuplicateScheduleError(tenant_id, service)

            session.add(schedule)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateScheduleError(tenant_id, service)

        logger.info(
            f"New schedule created: id={schedule.id} tenant={tenant_id} service={service} "
            f"cron='{cron_expression}' tz={timezone} enabled={enabled}"
        )
        return schedule

    async def update(
        self,
        schedule_id: int,
        tenant_id: int,
        cron_expression: str,
        enabled: bool,
        timezone: str,
        now: datetime | None = None,
    ) -> JobSchedule | None:
        """
        Update a tenant's schedule.

        Returns None without raising when storage is unavailable.
        """
        validate_cron(cron_expression)
        validate_timezone(timezone)
        now = to_naive_utc(now) if now else utcnow()

        try:
            async with session_scope(self.session_factory) as session:
                result = await session.execute(
                    select(JobSchedule).where(
                        JobSchedule.id == schedule_id,
                        JobSchedule.tenant_id == tenant_id,
                    )
                )
                schedule = result.scalar_one_or_none()
                if schedule is None:
                    raise ScheduleNotFoundError(f"Schedule {schedule_id} not found for tenant {tenant_id}")

                schedule.cron_expression = cron_expression
                schedule.enabled = enabled
                schedule.timezone = timezone
                schedule.next_run_at = self._initial_next_run(cron_expression, timezone, enabled, now)
                schedule.updated_at = now
                await session.commit()
        except PersistenceUnavailable as e:
            logger.warning(f"Schedule storage unavailable, skipping update of schedule {schedule_id}: {e}")
            return None

        logger.info(
            f"Schedule updated: id={schedule_id} tenant={tenant_id} cron='{cron_expression}' "
            f"tz={timezone} enabled={enabled}"
        )
        return schedule

    async def get(self, tenant_id: int, service: str) -> JobSchedule | None:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(JobSchedule).where(
                    JobSchedule.tenant_id == tenant_id,
                    JobSchedule.service == service,
                )
            )
            return result.scalar_one_or_none()

    async def list_for_tenant(self, tenant_id: int) -> list[JobSchedule]:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(JobSchedule)
                .where(JobSchedule.tenant_id == tenant_id)
                .order_by(JobSchedule.service)
            )
            return list(result.scalars().all())

    async def stats(self, tenant_id: int | None = None) -> dict:
        """Schedule counts: total, enabled, and per service."""
        query = select(JobSchedule.service, JobSchedule.enabled, func.count(JobSchedule.id)).group_by(
            JobSchedule.service, JobSchedule.enabled
        )
        if tenant_id is not None:
            query = query.where(JobSchedule.tenant_id == tenant_id)
        async with session_scope(self.session_factory) as session:
            rows = (await session.execute(query)).all()

        by_service: dict[str, int] = {}
        for service, _, count in rows:
            by_service[service] = by_service.get(service, 0) + count
        return {
            "total": sum(count for _, _, count in rows),
            "enabled": sum(count for _, enabled, count in rows if enabled),
            "by_service": by_service,
        }

    async def list_active(self) -> list[JobSchedule]:
        """All enabled schedules."""
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(JobSchedule)
                .where(JobSchedule.enabled.is_(True))
                .order_by(JobSchedule.tenant_id, JobSchedule.service)
            )
            return list(result.scalars().all())

    async def list_missed(self, now: datetime | None = None) -> list[JobSchedule]:
        """Enabled schedules whose next run already passed."""
        now = to_naive_utc(now) if now else utcnow()
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(JobSchedule)
                .where(
                    JobSchedule.enabled.is_(True),
                    JobSchedule.next_run_at.is_not(None),
                    JobSchedule.next_run_at < now,
                )
                .order_by(JobSchedule.tenant_id, JobSchedule.service)
            )
            return list(result.scalars().all())

    async def mark_triggered(self, schedule_id: int, now: datetime | None = None) -> None:
        now = to_naive_utc(now) if now else utcnow()
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(JobSchedule)
                .where(JobSchedule.id == schedule_id)
                .values(last_run_at=now, updated_at=now)
            )
            await session.commit()

    async def set_next_run(self, schedule_id: int, next_run_at: datetime | None) -> None:
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(JobSchedule)
                .where(JobSchedule.id == schedule_id)
                .values(
                    next_run_at=to_naive_utc(next_run_at) if next_run_at else None,
                    updated_at=utcnow(),
                )
            )
            await session.commit()

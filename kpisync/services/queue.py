"""
Durable sync job queue.

Workers depend only on the SyncQueue interface: at-least-once delivery,
bounded per-job attempts with exponential backoff, and stall flagging.
DatabaseSyncQueue keeps jobs in the sync_jobs table.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kpisync.core.database import session_scope, to_naive_utc, utcnow
from kpisync.core.errors import EnqueueFailure, PersistenceUnavailable
from kpisync.models.database import parse_service
from kpisync.models.sync_job import JobStatus, SyncJob

logger = logging.getLogger(__name__)

# Claim attempts lost to other workers before dequeue gives up for this poll
MAX_CLAIM_ATTEMPTS = 5


@dataclass
class SyncJobPayload:
    tenant_id: int
    target_date: str | None = None
    destination_overrides: dict[str, Any] = field(default_factory=dict)


class SyncQueue(ABC):
    """Minimal broker contract the scheduler and workers rely on."""

    @abstractmethod
    async def enqueue(self, service: str, payload: SyncJobPayload, delay_seconds: float = 0.0) -> int:
        """Add a job and return its id. Raises EnqueueFailure."""

    @abstractmethod
    async def dequeue(self) -> SyncJob | None:
        """Claim the oldest due job, or None when nothing is due."""

    @abstractmethod
    async def complete(self, job_id: int, result: dict[str, Any] | None = None) -> None:
        ...

    @abstractmethod
    async def fail(self, job_id: int, error: str) -> JobStatus:
        """Record a failed attempt. Returns WAITING if it will be retried, else FAILED."""

    @abstractmethod
    async def release(self, job_id: int) -> None:
        """Hand an unfinished job back without consuming an attempt."""

    @abstractmethod
    async def recover_abandoned(self) -> int:
        ...

    @abstractmethod
    async def find_stalled(self, window_seconds: float) -> list[int]:
        ...

    @abstractmethod
    async def get_job(self, job_id: int) -> SyncJob | None:
        ...

    @abstractmethod
    async def stats(self, tenant_id: int | None = None) -> dict[str, int]:
        ...

    @abstractmethod
    async def recent_jobs(
        self, tenant_id: int | None = None, service: str | None = None, limit: int = 10
    ) -> list[SyncJob]:
        """Newest jobs first."""

    @abstractmethod
    async def clean(
        self, completed_grace_seconds: float = 86400, failed_grace_seconds: float | None = None
    ) -> dict[str, int]:
        """Delete finished jobs older than their grace period."""

    @abstractmethod
    async def pause(self) -> None:
        """Stop handing out jobs. Enqueueing keeps working."""

    @abstractmethod
    async def resume(self) -> None:
        ...

    @property
    @abstractmethod
    def paused(self) -> bool:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class DatabaseSyncQueue(SyncQueue):
    """SyncQueue backed by the relational store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._closed = False
        self._paused = False

    def retry_delay(self, attempts_made: int, backoff_seconds: float | None = None) -> timedelta:
        """Exponential backoff before the next attempt."""
        base = self.backoff_seconds if backoff_seconds is None else backoff_seconds
        return timedelta(seconds=base * 2 ** max(attempts_made - 1, 0))

    async def enqueue(
        self,
        service: str,
        payload: SyncJobPayload,
        now: datetime | None = None,
        delay_seconds: float = 0.0,
    ) -> int:
        if self._closed:
            raise EnqueueFailure("Queue is closed")
        service = parse_service(service).value
        now = to_naive_utc(now) if now else utcnow()

        job = SyncJob(
            service=service,
            tenant_id=payload.tenant_id,
            target_date=payload.target_date,
            destination_overrides=payload.destination_overrides or None,
            status=JobStatus.WAITING.value,
            attempts_made=0,
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            run_at=now + timedelta(seconds=delay_seconds),
            created_at=now,
        )
        try:
            async with session_scope(self.session_factory) as session:
                session.add(job)
                await session.commit()
        except (PersistenceUnavailable, SQLAlchemyError) as e:
            logger.error(f"Failed to enqueue {service} sync for tenant {payload.tenant_id}: {e}")
            raise EnqueueFailure(f"Could not enqueue {service} sync: {e}") from e

        logger.info(f"Queued {service} sync job {job.id} for tenant {payload.tenant_id}")
        return job.id

    async def dequeue(self, now: datetime | None = None) -> SyncJob | None:
        if self._paused:
            return None
        now = to_naive_utc(now) if now else utcnow()
        async with session_scope(self.session_factory) as session:
            for _ in range(MAX_CLAIM_ATTEMPTS):
                candidate = await session.execute(
                    select(SyncJob.id)
                    .where(SyncJob.status == JobStatus.WAITING.value, SyncJob.run_at <= now)
                    .order_by(SyncJob.id)
                    .limit(1)
                )
                job_id = candidate.scalar_one_or_none()
                if job_id is None:
                    return None

                # Guarded claim: only one worker can move the row out of waiting
                claimed = await session.execute(
                    update(SyncJob)
                    .where(SyncJob.id == job_id, SyncJob.status == JobStatus.WAITING.value)
                    .values(
                        status=JobStatus.ACTIVE.value,
                        locked_at=now,
                        stalled=False,
                        attempts_made=SyncJob.attempts_made + 1,
                    )
                )
                await session.commit()
                if claimed.rowcount == 1:
                    job = await session.get(SyncJob, job_id, populate_existing=True)
                    logger.debug(f"Claimed job {job_id} (attempt {job.attempts_made}/{job.max_attempts})")
                    return job
        return None

    async def complete(self, job_id: int, result: dict[str, Any] | None = None) -> None:
        now = utcnow()
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id)
                .values(
                    status=JobStatus.COMPLETED.value,
                    result=result,
                    last_error=None,
                    locked_at=None,
                    completed_at=now,
                )
            )
            await session.commit()
        logger.info(f"Job {job_id} completed")

    async def fail(self, job_id: int, error: str, now: datetime | None = None) -> JobStatus:
        now = to_naive_utc(now) if now else utcnow()
        async with session_scope(self.session_factory) as session:
            job = await session.get(SyncJob, job_id)
            if job is None:
                logger.warning(f"Cannot fail job {job_id}: not found")
                return JobStatus.FAILED

            job.last_error = error
            job.locked_at = None
            job.stalled = False
            if job.attempts_made >= job.max_attempts:
                job.status = JobStatus.FAILED.value
                job.completed_at = now
                logger.error(f"Job {job_id} failed permanently after {job.attempts_made} attempts")
            else:
                delay = self.retry_delay(job.attempts_made, job.backoff_seconds)
                job.status = JobStatus.WAITING.value
                job.run_at = now + delay
                logger.warning(
                    f"Job {job_id} attempt {job.attempts_made}/{job.max_attempts} failed, "
                    f"retrying in {delay.total_seconds():.0f}s"
                )
            status = JobStatus(job.status)
            await session.commit()
        return status

    async def release(self, job_id: int) -> None:
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == JobStatus.ACTIVE.value)
                .values(
                    status=JobStatus.WAITING.value,
                    locked_at=None,
                    stalled=False,
                    attempts_made=func.max(SyncJob.attempts_made - 1, 0),
                )
            )
            await session.commit()
        logger.info(f"Job {job_id} released back to the queue")

    async def recover_abandoned(self) -> int:
        """
        Return jobs left active by a dead process to the queue.

        The interrupted run counts as an attempt; jobs with no attempts left
        are failed instead.
        """
        now = utcnow()
        async with session_scope(self.session_factory) as session:
            exhausted = await session.execute(
                update(SyncJob)
                .where(
                    SyncJob.status == JobStatus.ACTIVE.value,
                    SyncJob.attempts_made >= SyncJob.max_attempts,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    last_error="Worker stopped while the job was running",
                    locked_at=None,
                    completed_at=now,
                )
            )
            recovered = await session.execute(
                update(SyncJob)
                .where(SyncJob.status == JobStatus.ACTIVE.value)
                .values(status=JobStatus.WAITING.value, locked_at=None, stalled=False, run_at=now)
            )
            await session.commit()

        if recovered.rowcount or exhausted.rowcount:
            logger.warning(
                f"Recovered {recovered.rowcount} abandoned job(s), "
                f"failed {exhausted.rowcount} with no attempts left"
            )
        return recovered.rowcount

    async def find_stalled(self, window_seconds: float, now: datetime | None = None) -> list[int]:
        """Flag active jobs locked longer than the window. Flagged jobs keep running."""
        now = to_naive_utc(now) if now else utcnow()
        cutoff = now - timedelta(seconds=window_seconds)
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(SyncJob.id).where(
                    SyncJob.status == JobStatus.ACTIVE.value,
                    SyncJob.stalled.is_(False),
                    SyncJob.locked_at < cutoff,
                )
            )
            job_ids = list(result.scalars().all())
            if job_ids:
                await session.execute(
                    update(SyncJob).where(SyncJob.id.in_(job_ids)).values(stalled=True)
                )
                await session.commit()
        return job_ids

    async def get_job(self, job_id: int) -> SyncJob | None:
        async with session_scope(self.session_factory) as session:
            return await session.get(SyncJob, job_id)

    async def stats(self, tenant_id: int | None = None) -> dict[str, int]:
        """Number of jobs per status, across all tenants unless one is given."""
        query = select(SyncJob.status, func.count(SyncJob.id)).group_by(SyncJob.status)
        if tenant_id is not None:
            query = query.where(SyncJob.tenant_id == tenant_id)
        async with session_scope(self.session_factory) as session:
            result = await session.execute(query)
            counts = {status.value: 0 for status in JobStatus}
            counts.update({status: count for status, count in result.all()})
            return counts

    async def recent_jobs(
        self, tenant_id: int | None = None, service: str | None = None, limit: int = 10
    ) -> list[SyncJob]:
        query = select(SyncJob).order_by(SyncJob.id.desc()).limit(limit)
        if tenant_id is not None:
            query = query.where(SyncJob.tenant_id == tenant_id)
        if service is not None:
            query = query.where(SyncJob.service == parse_service(service).value)
        async with session_scope(self.session_factory) as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def finished_since(self, since: datetime) -> list[SyncJob]:
        """Completed and failed jobs that finished at or after `since`, oldest first."""
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(SyncJob)
                .where(
                    SyncJob.status.in_([JobStatus.COMPLETED.value, JobStatus.FAILED.value]),
                    SyncJob.completed_at >= to_naive_utc(since),
                )
                .order_by(SyncJob.completed_at, SyncJob.id)
            )
            return list(result.scalars().all())

    async def clean(
        self,
        completed_grace_seconds: float = 86400,
        failed_grace_seconds: float | None = None,
        now: datetime | None = None,
    ) -> dict[str, int]:
        """
        Delete finished jobs older than their grace period.

        Failed jobs are kept seven times longer than completed ones unless a
        separate grace period is given.
        """
        if failed_grace_seconds is None:
            failed_grace_seconds = completed_grace_seconds * 7
        now = to_naive_utc(now) if now else utcnow()
        removed = {}
        async with session_scope(self.session_factory) as session:
            for status, grace in (
                (JobStatus.COMPLETED, completed_grace_seconds),
                (JobStatus.FAILED, failed_grace_seconds),
            ):
                result = await session.execute(
                    delete(SyncJob).where(
                        SyncJob.status == status.value,
                        SyncJob.completed_at < now - timedelta(seconds=grace),
                    )
                )
                removed[status.value] = result.rowcount
            await session.commit()

        if any(removed.values()):
            logger.info(f"Cleaned {removed['completed']} completed and {removed['failed']} failed job(s)")
        return removed

    @property
    def paused(self) -> bool:
        return self._paused

    async def pause(self) -> None:
        self._paused = True
        logger.info("Sync queue paused")

    async def resume(self) -> None:
        self._paused = False
        logger.info("Sync queue resumed")

    async def close(self) -> None:
        self._closed = True
        logger.info("Sync queue closed")

"""
Worker pool that drains the sync queue.

A small fixed number of workers share one sliding-window rate limiter, so
upstream API quotas are respected across all tenants and services. Each job
goes through SyncJobProcessor.handle(), whose single failure handler does
classification, audit logging and alerting before re-raising so the queue's
own retry policy decides whether the job runs again.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from sqlalchemy.exc import SQLAlchemyError

from kpisync.core.errors import (
    ExecutorFailure,
    FailureCategory,
    NoConfigurationError,
    PersistenceUnavailable,
    UnknownServiceError,
    public_message,
)
from kpisync.models.audit_log import AuditAction, AuditStatus
from kpisync.models.database import ServiceConfig, parse_service
from kpisync.models.sync_job import SyncJob
from kpisync.services.audit import AuditLog, redact_text
from kpisync.services.credentials import CredentialService
from kpisync.services.notifier import Notifier
from kpisync.services.queue import SyncQueue

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """At most max_jobs admissions in any rolling window_seconds."""

    def __init__(
        self,
        max_jobs: int = 5,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_jobs < 1:
            raise ValueError("max_jobs must be at least 1")
        self.max_jobs = max_jobs
        self.window_seconds = window_seconds
        self._clock = clock
        self._admitted: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._admitted and now - self._admitted[0] >= self.window_seconds:
            self._admitted.popleft()

    def time_until_available(self) -> float:
        """Seconds until another job may start. 0 when a slot is free."""
        now = self._clock()
        self._prune(now)
        if len(self._admitted) < self.max_jobs:
            return 0.0
        return self._admitted[0] + self.window_seconds - now

    def record(self) -> None:
        self._admitted.append(self._clock())

    async def acquire(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        """Wait for a free slot and take it."""
        while (wait := self.time_until_available()) > 0:
            await sleep(wait)
        self.record()


@dataclass
class ExecutorResult:
    """What a sync executor reports back."""

    success: bool
    mode: str | None = None  # "append", "update" or "skip"
    row_number: int | None = None
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncOutcome:
    success: bool
    mode: str | None = None
    row_number: int | None = None
    duration_ms: int = 0
    error: str | None = None
    target_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@runtime_checkable
class SyncExecutor(Protocol):
    """Platform-specific sync. Receives decrypted credentials for one call only."""

    async def execute(self, credential: dict[str, Any], params: dict[str, Any]) -> ExecutorResult:
        ...


class ExecutorRegistry:
    """Maps a service to the executor that syncs it."""

    def __init__(self, executors: dict[str, SyncExecutor] | None = None):
        self._executors: dict[str, SyncExecutor] = {}
        for service, executor in (executors or {}).items():
            self.register(service, executor)

    def register(self, service: str, executor: SyncExecutor) -> None:
        self._executors[parse_service(service).value] = executor

    def get(self, service: str) -> SyncExecutor:
        try:
            return self._executors[service]
        except KeyError:
            raise UnknownServiceError(service)

    def services(self) -> list[str]:
        return sorted(self._executors)

    def __contains__(self, service: str) -> bool:
        return service in self._executors

    async def verify(self, service: str, credential: dict[str, Any]) -> None:
        """Check a credential with the service's executor, when it can verify."""
        executor = self.get(service)
        verify = getattr(executor, "verify", None)
        if verify is None:
            logger.info(f"Executor for {service} has no verifier, accepting credential")
            return
        await verify(credential)


class SyncJobProcessor:
    """Runs one queued job end to end."""

    def __init__(
        self,
        credentials: CredentialService,
        executors: ExecutorRegistry,
        audit: AuditLog,
        notifier: Notifier,
        notify_success: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.credentials = credentials
        self.executors = executors
        self.audit = audit
        self.notifier = notifier
        self.notify_success = notify_success
        self._clock = clock

    async def _resolve_configuration(self, job: SyncJob) -> ServiceConfig:
        config = await self.credentials.get_enabled_configuration(job.tenant_id, job.service)
        if config is None or config.credential_id is None:
            raise NoConfigurationError(job.tenant_id, job.service)
        return config

    @staticmethod
    def _build_params(job: SyncJob, config: ServiceConfig) -> dict[str, Any]:
        # Per-job overrides win over the stored destination
        destination = {**config.destination(), **(job.destination_overrides or {})}
        return {
            "tenant_id": job.tenant_id,
            "target_date": job.target_date,
            "destination": destination,
        }

    async def _invoke(self, service: str, credential: dict[str, Any], params: dict[str, Any]) -> ExecutorResult:
        executor = self.executors.get(service)
        try:
            result = await executor.execute(credential, params)
        except Exception as e:
            raise ExecutorFailure.from_exception(service, e) from e

        if not result.success:
            raise ExecutorFailure(service, result.error or f"{service} sync reported failure")
        return result

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    async def handle(self, job: SyncJob) -> SyncOutcome:
        """
        Process a job, or raise after auditing and alerting the failure.

        Raises:
            NoConfigurationError, CredentialNotFoundError, DecryptionError,
            ExecutorFailure: re-raised for the queue's retry policy.
        """
        started = self._clock()
        logger.info(f"Processing {job.service} sync job {job.id} for tenant {job.tenant_id}")
        try:
            config = await self._resolve_configuration(job)
            credential = await self.credentials.load_secrets(config.credential_id, job.tenant_id)
            params = self._build_params(job, config)
            result = await self._invoke(job.service, credential, params)
        except Exception as e:
            await self._on_failure(job, e, self._elapsed_ms(started))
            raise

        outcome = SyncOutcome(
            success=True,
            mode=result.mode,
            row_number=result.row_number,
            duration_ms=self._elapsed_ms(started),
            target_date=job.target_date,
        )
        await self._on_success(job, outcome)
        return outcome

    async def _on_success(self, job: SyncJob, outcome: SyncOutcome) -> None:
        logger.info(
            f"Job {job.id} ({job.service}, tenant {job.tenant_id}) completed in {outcome.duration_ms}ms"
            f" mode={outcome.mode}"
        )
        await self.audit.record(
            job.tenant_id,
            AuditAction.WORKFLOW_COMPLETED,
            service=job.service,
            status=AuditStatus.SUCCESS,
            metadata={"job_id": job.id, "attempt": job.attempts_made, **outcome.to_dict()},
        )
        if self.notify_success:
            await self.notifier.send_sync_success(job.service, job.target_date, outcome.mode, outcome.row_number)

    async def _on_failure(self, job: SyncJob, error: Exception, duration_ms: int) -> None:
        category = error.category if isinstance(error, ExecutorFailure) else FailureCategory.GENERIC
        error_text = redact_text(str(error) or type(error).__name__)
        logger.error(
            f"Job {job.id} ({job.service}, tenant {job.tenant_id}) failed on attempt "
            f"{job.attempts_made}/{job.max_attempts} [{category.value}]: {error_text}"
        )

        outcome = SyncOutcome(
            success=False,
            duration_ms=duration_ms,
            error=public_message(error),
            target_date=job.target_date,
        )
        await self.audit.record(
            job.tenant_id,
            AuditAction.WORKFLOW_FAILED,
            service=job.service,
            status=AuditStatus.FAILURE,
            error_message=error_text,
            metadata={
                "job_id": job.id,
                "attempt": job.attempts_made,
                "category": category.value,
                **outcome.to_dict(),
            },
        )

        if category == FailureCategory.TOKEN_EXPIRED:
            await self.notifier.send_token_expiry_alert(job.service)
        elif category == FailureCategory.RATE_LIMITED:
            await self.notifier.send_rate_limit_alert(job.service)
        else:
            await self.notifier.send_sync_failure(job.service, job.target_date, public_message(error))


class WorkerPool:
    """Fixed-size set of asyncio workers pulling from a SyncQueue."""

    def __init__(
        self,
        queue: SyncQueue,
        processor: SyncJobProcessor,
        concurrency: int = 1,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        poll_interval: float = 1.0,
        stall_window: float = 300.0,
        shutdown_grace: float = 30.0,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency
        self.rate_limiter = rate_limiter
        self.poll_interval = poll_interval
        self.stall_window = stall_window
        self.shutdown_grace = shutdown_grace

        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._admission_lock = asyncio.Lock()
        self._in_flight: dict[int, SyncJob] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def in_flight(self) -> list[int]:
        return list(self._in_flight)

    def in_flight_for(self, tenant_id: int) -> list[int]:
        return [job_id for job_id, job in self._in_flight.items() if job.tenant_id == tenant_id]

    async def start(self) -> None:
        if self._tasks:
            logger.warning("Worker pool already started")
            return

        await self.queue.recover_abandoned()
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"sync-worker-{i}")
            for i in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._monitor_stalls(), name="sync-stall-monitor"))
        logger.info(f"Worker pool started with {self.concurrency} worker(s)")

    async def stop(self) -> None:
        """Stop dequeuing, let in-flight jobs finish within the grace period, then abandon them."""
        if not self._tasks:
            return

        self._stopping.set()
        _, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_grace)
        if pending:
            logger.warning(f"Cancelling {len(pending)} worker task(s) after {self.shutdown_grace}s grace period")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._tasks = []
        logger.info("Worker pool stopped")

    async def _pause(self, seconds: float) -> None:
        """Sleep, waking early when the pool is stopping."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=max(seconds, 0.01))
        except asyncio.TimeoutError:
            pass

    async def _next_job(self) -> tuple[SyncJob | None, float]:
        async with self._admission_lock:
            if self.rate_limiter:
                wait = self.rate_limiter.time_until_available()
                if wait > 0:
                    return None, wait
            job = await self.queue.dequeue()
            if job is not None and self.rate_limiter:
                self.rate_limiter.record()
            return job, self.poll_interval

    async def run_once(self) -> bool:
        """Process at most one due job. Returns True if one was run."""
        job, _ = await self._next_job()
        if job is None:
            return False
        await self._run(job)
        return True

    async def _worker(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                job, wait = await self._next_job()
            except (PersistenceUnavailable, SQLAlchemyError) as e:
                logger.warning(f"Worker {index} could not poll the queue: {e}")
                job, wait = None, self.poll_interval

            if job is None:
                await self._pause(wait)
                continue
            await self._run(job)

    async def _run(self, job: SyncJob) -> None:
        self._in_flight[job.id] = job
        try:
            outcome = await self.processor.handle(job)
        except asyncio.CancelledError:
            logger.warning(f"Job {job.id} interrupted by shutdown, returning it to the queue")
            await self._settle(self.queue.release(job.id), job.id)
            raise
        except Exception as e:
            await self._settle(self.queue.fail(job.id, redact_text(str(e) or type(e).__name__)), job.id)
        else:
            await self._settle(self.queue.complete(job.id, outcome.to_dict()), job.id)
        finally:
            self._in_flight.pop(job.id, None)

    @staticmethod
    async def _settle(operation: Awaitable[Any], job_id: int) -> None:
        try:
            await operation
        except (PersistenceUnavailable, SQLAlchemyError) as e:
            logger.error(f"Could not record the result of job {job_id}: {e}")

    async def _monitor_stalls(self) -> None:
        interval = max(self.stall_window / 4, self.poll_interval)
        while not self._stopping.is_set():
            await self._pause(interval)
            if self._stopping.is_set():
                break
            try:
                stalled = await self.queue.find_stalled(self.stall_window)
            except (PersistenceUnavailable, SQLAlchemyError) as e:
                logger.warning(f"Stall check failed: {e}")
                continue
            for job_id in stalled:
                logger.warning(f"Job {job_id} has been running longer than {self.stall_window:.0f}s")

"""Schedule API endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from kpisync.api.deps import get_runtime, get_tenant_id
from kpisync.core.errors import (
    DuplicateScheduleError,
    EnqueueFailure,
    InvalidCronExpression,
    InvalidTimezoneError,
    PersistenceUnavailable,
    ScheduleNotFoundError,
    UnknownServiceError,
    public_message,
)
from kpisync.schemas.responses import (
    JobQueuedResponse,
    RunAllRequest,
    RunAllResponse,
    RunNowRequest,
    ScheduleCreate,
    ScheduleResponse,
    ScheduleStatsResponse,
    ScheduleUpdate,
)
from kpisync.services.runtime import SyncRuntime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/schedules", tags=["schedules"])


@router.get("", response_model=list[ScheduleResponse])
async def list_schedules(
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
):
    """All schedules of the calling tenant."""
    try:
        return await runtime.registry.list_for_tenant(tenant_id)
    except PersistenceUnavailable as e:
        raise HTTPException(status_code=503, detail=public_message(e))


@router.get("/stats", response_model=ScheduleStatsResponse)
async def schedule_stats(
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
) -> ScheduleStatsResponse:
    """Schedule counts for the calling tenant, with its live timers."""
    try:
        return ScheduleStatsResponse(**await runtime.scheduler.stats(tenant_id))
    except PersistenceUnavailable as e:
        raise HTTPException(status_code=503, detail=public_message(e))


@router.post("", response_model=ScheduleResponse, status_code=201)
async def create_schedule(
    body: ScheduleCreate,
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
):
    try:
        return await runtime.scheduler.create_schedule(
            tenant_id,
            body.service,
            body.cron_expression or runtime.settings.default_cron,
            body.enabled,
            body.timezone or runtime.settings.tz,
        )
    except DuplicateScheduleError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (InvalidCronExpression, InvalidTimezoneError, UnknownServiceError) as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PersistenceUnavailable as e:
        raise HTTPException(status_code=503, detail=public_message(e))


@router.put("/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(
    schedule_id: int,
    body: ScheduleUpdate,
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
):
    try:
        schedule = await runtime.scheduler.update_schedule(
            schedule_id, tenant_id, body.cron_expression, body.enabled, body.timezone
        )
    except ScheduleNotFoundError:
        raise HTTPException(status_code=404, detail=f"Schedule {schedule_id} not found")
    except (InvalidCronExpression, InvalidTimezoneError) as e:
        raise HTTPException(status_code=422, detail=str(e))

    if schedule is None:
        raise HTTPException(status_code=503, detail="Storage is temporarily unavailable.")
    return schedule


@router.post("/{service}/run", response_model=JobQueuedResponse, status_code=202)
async def run_now(
    service: str,
    body: RunNowRequest | None = None,
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
) -> JobQueuedResponse:
    """Queue a sync right away without touching the schedule's next run."""
    body = body or RunNowRequest()
    try:
        job_id = await runtime.scheduler.trigger_now(
            tenant_id,
            service,
            target_date=body.target_date,
            destination_overrides=body.destination_overrides(),
        )
    except UnknownServiceError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except EnqueueFailure as e:
        logger.error(f"Manual {service} sync for tenant {tenant_id} could not be queued: {e}")
        raise HTTPException(status_code=503, detail="Sync could not be queued. Please try again shortly.")

    return JobQueuedResponse(job_id=job_id, service=service, message=f"{service} sync queued")


@router.post("/run-all", response_model=RunAllResponse, status_code=202)
async def run_all(
    body: RunAllRequest | None = None,
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
) -> RunAllResponse:
    """Queue a sync for every enabled service, staggered so they do not start together."""
    body = body or RunAllRequest()
    stagger = runtime.settings.run_all_stagger_seconds
    try:
        services = await runtime.credentials.list_enabled_services(tenant_id)
        jobs = await runtime.scheduler.trigger_all(
            tenant_id, services, target_date=body.target_date, stagger_seconds=stagger
        )
    except PersistenceUnavailable as e:
        raise HTTPException(status_code=503, detail=public_message(e))
    except EnqueueFailure as e:
        logger.error(f"Run-all for tenant {tenant_id} could not be queued: {e}")
        raise HTTPException(status_code=503, detail="Syncs could not be queued. Please try again shortly.")

    return RunAllResponse(jobs=jobs, stagger_seconds=stagger)

"""Sync queue status and control endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from kpisync.api.deps import get_runtime, get_tenant_id
from kpisync.core.errors import PersistenceUnavailable, UnknownServiceError, public_message
from kpisync.schemas.responses import (
    JobResponse,
    QueueCleanResponse,
    QueueControlResponse,
    QueueStatsResponse,
)
from kpisync.services.runtime import SyncRuntime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.get("/queue", response_model=QueueStatsResponse)
async def queue_stats(
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
) -> QueueStatsResponse:
    """Job counts per status for the calling tenant."""
    counts = await runtime.queue.stats(tenant_id)
    return QueueStatsResponse(
        **counts,
        in_flight=runtime.pool.in_flight_for(tenant_id),
        paused=runtime.queue.paused,
    )


@router.get("/jobs", response_model=list[JobResponse])
async def recent_jobs(
    service: str | None = None,
    limit: int = Query(10, ge=1, le=100),
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
):
    """The tenant's most recent jobs, newest first."""
    try:
        return await runtime.queue.recent_jobs(tenant_id, service=service, limit=limit)
    except UnknownServiceError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PersistenceUnavailable as e:
        raise HTTPException(status_code=503, detail=public_message(e))


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: int,
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
):
    job = await runtime.queue.get_job(job_id)
    # Other tenants' jobs look exactly like missing ones
    if job is None or job.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


@router.post("/queue/pause", response_model=QueueControlResponse)
async def pause_queue(
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
) -> QueueControlResponse:
    """Stop workers picking up jobs. Applies to every tenant; jobs keep queueing."""
    await runtime.queue.pause()
    logger.warning(f"Sync queue paused by tenant {tenant_id}")
    return QueueControlResponse(paused=True)


@router.post("/queue/resume", response_model=QueueControlResponse)
async def resume_queue(
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
) -> QueueControlResponse:
    await runtime.queue.resume()
    logger.info(f"Sync queue resumed by tenant {tenant_id}")
    return QueueControlResponse(paused=False)


@router.post("/queue/clean", response_model=QueueCleanResponse)
async def clean_queue(
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
) -> QueueCleanResponse:
    """Delete finished jobs past the configured retention."""
    removed = await runtime.clean_queue()
    return QueueCleanResponse(**removed)

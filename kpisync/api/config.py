from fastapi import APIRouter, Depends
from pydantic import BaseModel

from kpisync.api.deps import get_runtime
from kpisync.core.config import get_settings
from kpisync.schemas.responses import NotificationTestResponse
from kpisync.services.runtime import SyncRuntime

router = APIRouter(prefix="/api", tags=["config"])


class HealthResponse(BaseModel):
    status: str
    version: str
    scheduler_running: bool
    workers_running: bool


class ConfigResponse(BaseModel):
    tz: str
    default_cron: str
    worker_concurrency: int
    rate_limit_max_jobs: int
    rate_limit_window_seconds: float
    queue_max_attempts: int
    notification_channels: list[str]
    executors: list[str]
    debug: bool


@router.get("/health", response_model=HealthResponse)
async def health_check(runtime: SyncRuntime = Depends(get_runtime)) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        version="0.1.0",
        scheduler_running=runtime.scheduler.running,
        workers_running=runtime.pool.running,
    )


@router.get("/config", response_model=ConfigResponse)
async def get_config(runtime: SyncRuntime = Depends(get_runtime)) -> ConfigResponse:
    """Get current configuration (excluding secrets)."""
    settings = get_settings()
    return ConfigResponse(
        tz=settings.tz,
        default_cron=settings.default_cron,
        worker_concurrency=settings.worker_concurrency,
        rate_limit_max_jobs=settings.rate_limit_max_jobs,
        rate_limit_window_seconds=settings.rate_limit_window_seconds,
        queue_max_attempts=settings.queue_max_attempts,
        notification_channels=[channel.name for channel in runtime.notifier.channels],
        executors=runtime.executors.services(),
        debug=settings.debug,
    )


@router.post("/notifications/test", response_model=NotificationTestResponse)
async def test_notifications(runtime: SyncRuntime = Depends(get_runtime)) -> NotificationTestResponse:
    """Send a test message through every configured channel."""
    return NotificationTestResponse(channels=await runtime.notifier.test_notifications())

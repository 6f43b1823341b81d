import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from kpisync.api import activity, config, credentials, schedules, sync
from kpisync.core.config import get_settings
from kpisync.core.database import async_session_maker, init_db
from kpisync.services.runtime import SyncRuntime
from kpisync.services.worker import ExecutorRegistry


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def create_app(executors: ExecutorRegistry | None = None, db_engine: AsyncEngine | None = None) -> FastAPI:
    """Build the application. Executors are supplied by the deployment."""
    settings = get_settings()
    session_factory = (
        async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
        if db_engine is not None
        else async_session_maker
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan - startup and shutdown events."""
        # Startup
        configure_logging(settings.debug)
        await init_db(db_engine)
        runtime = SyncRuntime(settings, session_factory, executors)
        await runtime.start()
        app.state.runtime = runtime
        yield
        # Shutdown
        app.state.runtime = None
        await runtime.stop()

    app = FastAPI(
        title="KPI Sync",
        description="Schedules and runs per-tenant metric syncs into spreadsheets",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Include routers
    app.include_router(config.router)
    app.include_router(schedules.router)
    app.include_router(sync.router)
    app.include_router(credentials.router)
    app.include_router(activity.router)
    return app


app = create_app()

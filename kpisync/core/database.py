from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
from sqlalchemy.orm import declarative_base

from kpisync.core.config import get_settings
from kpisync.core.errors import PersistenceUnavailable

settings = get_settings()

# Create async engine
engine = create_async_engine(
    f"sqlite+aiosqlite:///{settings.db_path}",
    echo=settings.debug,
)

# Create async session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Create declarative base
Base = declarative_base()


def utcnow() -> datetime:
    """Current time as naive UTC, the format stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Open a session, translating store outages into PersistenceUnavailable."""
    try:
        async with session_factory() as session:
            yield session
    except (OperationalError, InterfaceError) as e:
        raise PersistenceUnavailable(str(e.orig) if e.orig else str(e)) from e


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Initialize database - create all tables."""
    # Import models so their metadata is registered on Base
    import kpisync.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

"""Shared test fixtures for the kpisync test suite."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from kpisync.core.database import Base
# Import all models so their metadata is registered on Base
import kpisync.models  # noqa: F401
from kpisync.services.audit import AuditLog
from kpisync.services.credentials import CredentialService
from kpisync.services.notifier import NotificationChannel, Notifier
from kpisync.services.vault import CredentialVault
from kpisync.services.worker import ExecutorResult

TEST_SALT = "test-salt-for-unit-tests"


class FakeExecutor:
    """Records calls and returns a canned result, or raises `error`."""

    def __init__(self, result: ExecutorResult | None = None, error: Exception | None = None):
        self.result = result or ExecutorResult(success=True, mode="append", row_number=7)
        self.error = error
        self.calls: list[tuple[dict, dict]] = []
        self.verify_error: Exception | None = None
        self.verified: list[dict] = []

    async def execute(self, credential, params):
        self.calls.append((credential, params))
        if self.error:
            raise self.error
        return self.result

    async def verify(self, credential):
        self.verified.append(credential)
        if self.verify_error:
            raise self.verify_error


class FakeChannel(NotificationChannel):
    """Collects (subject, message) pairs instead of sending them."""

    def __init__(self, name: str = "fake", fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent: list[tuple[str, str]] = []
        self.closed = False

    async def send(self, subject, message):
        if self.fail:
            raise RuntimeError(f"{self.name} is down")
        self.sent.append((subject, message))

    async def close(self):
        self.closed = True


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """
    Provide a throwaway SQLite database file for tests.

    Creates all tables before the test and disposes the engine after. Each
    test gets a clean database.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'kpisync-test.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def async_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def vault():
    return CredentialVault(TEST_SALT)


@pytest.fixture
def audit(session_factory):
    return AuditLog(session_factory)


@pytest.fixture
def credential_service(session_factory, vault, audit):
    return CredentialService(session_factory, vault, audit)


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def notifier(fake_channel):
    return Notifier([fake_channel], cooldown_seconds=300)


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def make_channel():
    """Factory for extra fake channels."""
    return FakeChannel


@pytest.fixture
def make_executor():
    return FakeExecutor

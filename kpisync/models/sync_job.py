"""Durable queue rows for pending and finished sync jobs."""

from enum import Enum
from sqlalchemy import Boolean, Column, Float, Integer, String, DateTime, Text, JSON, Index

from kpisync.core.database import Base, utcnow


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncJob(Base):
    """A queued sync of one service for one tenant."""

    __tablename__ = "sync_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service = Column(String, nullable=False)
    tenant_id = Column(Integer, nullable=False, index=True)
    target_date = Column(String, nullable=True)  # ISO date override, executor default when null
    destination_overrides = Column(JSON, nullable=True)
    status = Column(String, nullable=False, default=JobStatus.WAITING.value)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_seconds = Column(Float, nullable=False, default=5.0)
    run_at = Column(DateTime, nullable=False, default=utcnow)
    locked_at = Column(DateTime, nullable=True)
    stalled = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("ix_sync_jobs_status_run_at", "status", "run_at"),)

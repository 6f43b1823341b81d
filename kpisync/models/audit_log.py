"""Append-only audit log of credential and sync lifecycle events."""

from enum import Enum
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON

from kpisync.core.database import Base, utcnow


class AuditAction(str, Enum):
    CREDENTIAL_SAVED = "credential_saved"
    CREDENTIAL_UPDATED = "credential_updated"
    CREDENTIAL_DELETED = "credential_deleted"
    CREDENTIAL_VERIFIED = "credential_verified"
    VERIFICATION_FAILED = "verification_failed"
    SERVICE_ENABLED = "service_enabled"
    SERVICE_DISABLED = "service_disabled"
    SCHEDULE_FAILURE = "schedule_failure"
    WORKFLOW_RUN = "workflow_run"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


class AuditLogEntry(Base):
    """One audit event. Metadata is redacted before it reaches this table."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    action = Column(String, nullable=False)
    service = Column(String, nullable=True)
    status = Column(String, nullable=False)  # "success", "failure", "partial"
    error_message = Column(Text, nullable=True)
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

# Database models
from kpisync.models.database import (
    Service,
    JobSchedule,
    Credential,
    ServiceConfig,
)
from kpisync.models.audit_log import AuditAction, AuditStatus, AuditLogEntry
from kpisync.models.sync_job import JobStatus, SyncJob

__all__ = [
    "Service",
    "JobSchedule",
    "Credential",
    "ServiceConfig",
    "AuditAction",
    "AuditStatus",
    "AuditLogEntry",
    "JobStatus",
    "SyncJob",
]

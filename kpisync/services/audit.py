"""
Audit logging for credential and sync lifecycle events.

Metadata is redacted before it is written: any key containing a deny-listed
substring has its value replaced, at any depth and inside lists. Audit writes
never raise into the caller.
"""

import logging
import re
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kpisync.core.database import session_scope
from kpisync.core.errors import PersistenceUnavailable
from kpisync.models.audit_log import AuditAction, AuditLogEntry, AuditStatus

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

SENSITIVE_KEY_FRAGMENTS = (
    "token",
    "secret",
    "key",
    "credential",
    "password",
    "auth",
    "encrypted",
    "private",
)

# Secret-looking values inside free text such as exception messages
SECRET_VALUE_PATTERNS = [
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE),
    re.compile(
        r"((?:access_token|refresh_token|client_secret|api_key|apikey|password|token)[\"']?\s*[=:]\s*[\"']?)[^\s&\"',}]+",
        re.IGNORECASE,
    ),
    re.compile(r"()\b(?:EAA[A-Za-z0-9]{20,}|shpat_[a-fA-F0-9]{32,}|ya29\.[A-Za-z0-9._-]{20,})"),
]

MAX_ERROR_LENGTH = 2000


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in SENSITIVE_KEY_FRAGMENTS)


def redact_metadata(value: Any) -> Any:
    """Return a copy of value with sensitive keys redacted at every depth."""
    if isinstance(value, dict):
        return {
            k: REDACTED if _is_sensitive(str(k)) else redact_metadata(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_metadata(item) for item in value]
    return value


def redact_text(text: str) -> str:
    """Scrub secret-looking values out of free text."""
    for pattern in SECRET_VALUE_PATTERNS:
        text = pattern.sub(lambda m: f"{m.group(1)}{REDACTED}", text)
    return text[:MAX_ERROR_LENGTH]


class AuditLog:
    """Append-only audit trail, always scoped by tenant on read."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        tenant_id: int,
        action: AuditAction,
        service: str | None = None,
        status: AuditStatus = AuditStatus.SUCCESS,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry | None:
        """Persist one audit entry. Returns None if it could not be written."""
        try:
            entry = AuditLogEntry(
                tenant_id=tenant_id,
                action=AuditAction(action).value,
                service=service,
                status=AuditStatus(status).value,
                error_message=redact_text(str(error_message)) if error_message else None,
                details=redact_metadata(metadata or {}),
            )
            async with session_scope(self.session_factory) as session:
                session.add(entry)
                await session.commit()
        except (PersistenceUnavailable, SQLAlchemyError, TypeError, ValueError) as e:
            logger.warning(f"Failed to write audit entry {action} for tenant {tenant_id}: {e}")
            return None

        logger.debug(f"Audit logged: tenant={tenant_id} action={entry.action} service={service} status={entry.status}")
        return entry

    async def query(
        self,
        tenant_id: int,
        action: AuditAction | None = None,
        service: str | None = None,
        status: AuditStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditLogEntry]:
        """Audit entries for one tenant, newest first."""
        # Tenant predicate first, always
        stmt = select(AuditLogEntry).where(AuditLogEntry.tenant_id == tenant_id)
        if action is not None:
            stmt = stmt.where(AuditLogEntry.action == AuditAction(action).value)
        if service is not None:
            stmt = stmt.where(AuditLogEntry.service == service)
        if status is not None:
            stmt = stmt.where(AuditLogEntry.status == AuditStatus(status).value)
        stmt = stmt.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc()).limit(limit).offset(offset)

        async with session_scope(self.session_factory) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def summary(self, tenant_id: int) -> dict[str, int]:
        """Count of entries per action for one tenant."""
        stmt = (
            select(AuditLogEntry.action, func.count(AuditLogEntry.id))
            .where(AuditLogEntry.tenant_id == tenant_id)
            .group_by(AuditLogEntry.action)
            .order_by(func.count(AuditLogEntry.id).desc())
        )
        async with session_scope(self.session_factory) as session:
            result = await session.execute(stmt)
            return {action: count for action, count in result.all()}

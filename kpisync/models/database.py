from enum import Enum
from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    DateTime,
    UniqueConstraint,
)
from kpisync.core.database import Base, utcnow
from kpisync.core.errors import UnknownServiceError


class Service(str, Enum):
    """External platforms a tenant can sync from."""

    META = "meta"
    GA4 = "ga4"
    SHOPIFY = "shopify"


def parse_service(value: "str | Service") -> Service:
    """Coerce a service name, raising UnknownServiceError for anything else."""
    try:
        return Service(value)
    except ValueError:
        raise UnknownServiceError(str(value))


class JobSchedule(Base):
    """Cron trigger bound to one tenant-service pair."""

    __tablename__ = "job_schedules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    service = Column(String, nullable=False)
    cron_expression = Column(String, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    timezone = Column(String, nullable=False, default="UTC")
    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("tenant_id", "service", name="uix_schedule_tenant_service"),)

    @property
    def key(self) -> tuple[int, str]:
        return (self.tenant_id, self.service)


class Credential(Base):
    """Tenant secrets for one service, stored as an opaque vault blob."""

    __tablename__ = "credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    service = Column(String, nullable=False)
    label = Column(String, nullable=False)
    encrypted_payload = Column(Text, nullable=False)
    verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)  # soft delete, rows are never removed
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ServiceConfig(Base):
    """Which credential and destination a tenant uses for a service."""

    __tablename__ = "service_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    service = Column(String, nullable=False)
    credential_id = Column(Integer, ForeignKey("credentials.id"), nullable=True)
    enabled = Column(Boolean, nullable=False, default=False)
    spreadsheet_id = Column(String, nullable=True)
    sheet_name = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("tenant_id", "service", name="uix_service_config_tenant_service"),)

    def destination(self) -> dict[str, str]:
        """Destination fields that are set on this config."""
        fields = {"spreadsheet_id": self.spreadsheet_id, "sheet_name": self.sheet_name}
        return {k: v for k, v in fields.items() if v}

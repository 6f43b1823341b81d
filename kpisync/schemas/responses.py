"""Pydantic request and response models for API endpoints."""

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator


class ScheduleCreate(BaseModel):
    """New schedule for one service. Cron and timezone default to the configured values."""
    service: str
    cron_expression: str | None = None
    enabled: bool = True
    timezone: str | None = None


class ScheduleUpdate(BaseModel):
    cron_expression: str
    enabled: bool
    timezone: str


class ScheduleResponse(BaseModel):
    """Stored schedule."""
    id: int
    tenant_id: int
    service: str
    cron_expression: str
    enabled: bool
    timezone: str
    last_run_at: datetime | None
    next_run_at: datetime | None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RunNowRequest(BaseModel):
    target_date: str | None = None
    spreadsheet_id: str | None = None
    sheet_name: str | None = None

    @field_validator("target_date")
    @classmethod
    def validate_target_date(cls, v):
        if v is not None:
            datetime.strptime(v, "%Y-%m-%d")
        return v

    def destination_overrides(self) -> dict[str, str]:
        fields = {"spreadsheet_id": self.spreadsheet_id, "sheet_name": self.sheet_name}
        return {k: v for k, v in fields.items() if v}


class JobQueuedResponse(BaseModel):
    job_id: int
    service: str
    message: str


class JobResponse(BaseModel):
    """Queued or finished sync job."""
    id: int
    service: str
    tenant_id: int
    target_date: str | None
    status: str
    attempts_made: int
    max_attempts: int
    stalled: bool
    last_error: str | None
    result: dict[str, Any] | None
    created_at: datetime
    completed_at: datetime | None

    class Config:
        from_attributes = True


class QueueStatsResponse(BaseModel):
    """The calling tenant's jobs per status."""
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    in_flight: list[int] = Field(default_factory=list)
    paused: bool = False


class QueueControlResponse(BaseModel):
    paused: bool


class QueueCleanResponse(BaseModel):
    completed: int = 0
    failed: int = 0


class RunAllRequest(BaseModel):
    target_date: str | None = None

    @field_validator("target_date")
    @classmethod
    def validate_target_date(cls, v):
        if v is not None:
            datetime.strptime(v, "%Y-%m-%d")
        return v


class RunAllResponse(BaseModel):
    jobs: dict[str, int]
    stagger_seconds: float


class ScheduleStatsResponse(BaseModel):
    total: int = 0
    enabled: int = 0
    by_service: dict[str, int] = Field(default_factory=dict)
    timers: int = 0


class CredentialCreate(BaseModel):
    service: str
    label: str
    secrets: dict[str, Any]


class CredentialUpdate(BaseModel):
    label: str | None = None
    secrets: dict[str, Any] | None = None


class CredentialResponse(BaseModel):
    """Credential metadata. The encrypted payload is never returned."""
    id: int
    service: str
    label: str
    verified: bool
    verified_at: datetime | None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class VerificationResponse(BaseModel):
    credential_id: int
    verified: bool
    error: str | None = None


class ServiceConfigUpdate(BaseModel):
    credential_id: int | None = None
    enabled: bool = False
    spreadsheet_id: str | None = None
    sheet_name: str | None = None


class ServiceConfigResponse(BaseModel):
    service: str
    credential_id: int | None
    enabled: bool
    spreadsheet_id: str | None
    sheet_name: str | None

    class Config:
        from_attributes = True


class AuditEntryResponse(BaseModel):
    """One activity log entry."""
    id: int
    action: str
    service: str | None
    status: str
    error_message: str | None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias=AliasChoices("details", "metadata"))
    created_at: datetime

    class Config:
        from_attributes = True


class ActivitySummaryResponse(BaseModel):
    tenant_id: int
    total: int
    by_action: dict[str, int]


class NotificationTestResponse(BaseModel):
    channels: dict[str, bool]

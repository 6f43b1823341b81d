"""Activity (audit log) endpoints."""

from fastapi import APIRouter, Depends, Query

from kpisync.api.deps import get_runtime, get_tenant_id
from kpisync.models.audit_log import AuditAction, AuditStatus
from kpisync.schemas.responses import ActivitySummaryResponse, AuditEntryResponse
from kpisync.services.runtime import SyncRuntime

router = APIRouter(prefix="/api/activity", tags=["activity"])


@router.get("", response_model=list[AuditEntryResponse])
async def list_activity(
    action: AuditAction | None = None,
    service: str | None = None,
    status: AuditStatus | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
):
    """Newest-first audit entries for the calling tenant."""
    entries = await runtime.audit.query(
        tenant_id, action=action, service=service, status=status, limit=limit, offset=offset
    )
    return [AuditEntryResponse.model_validate(entry) for entry in entries]


@router.get("/summary", response_model=ActivitySummaryResponse)
async def activity_summary(
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
) -> ActivitySummaryResponse:
    counts = await runtime.audit.summary(tenant_id)
    return ActivitySummaryResponse(tenant_id=tenant_id, total=sum(counts.values()), by_action=counts)

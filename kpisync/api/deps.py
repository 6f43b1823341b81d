"""Shared FastAPI dependencies."""

from fastapi import Header, HTTPException, Request

from kpisync.services.runtime import SyncRuntime


def get_runtime(request: Request) -> SyncRuntime:
    """The runtime started by the application lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Sync runtime is not running")
    return runtime


def get_tenant_id(x_tenant_id: int = Header(..., gt=0)) -> int:
    """Tenant identity, already verified by the gateway in front of this service."""
    return x_tenant_id

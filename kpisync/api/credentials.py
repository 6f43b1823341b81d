"""Credential and service configuration endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from kpisync.api.deps import get_runtime, get_tenant_id
from kpisync.core.errors import (
    CredentialNotFoundError,
    DecryptionError,
    UnknownServiceError,
    public_message,
)
from kpisync.schemas.responses import (
    CredentialCreate,
    CredentialResponse,
    CredentialUpdate,
    ServiceConfigResponse,
    ServiceConfigUpdate,
    VerificationResponse,
)
from kpisync.services.runtime import SyncRuntime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["credentials"])


@router.get("/credentials", response_model=list[CredentialResponse])
async def list_credentials(
    service: str | None = None,
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
):
    return await runtime.credentials.list_credentials(tenant_id, service)


@router.post("/credentials", response_model=CredentialResponse, status_code=201)
async def save_credential(
    body: CredentialCreate,
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
):
    try:
        return await runtime.credentials.save_credential(tenant_id, body.service, body.label, body.secrets)
    except UnknownServiceError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.patch("/credentials/{credential_id}", response_model=CredentialResponse)
async def update_credential(
    credential_id: int,
    body: CredentialUpdate,
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
):
    try:
        return await runtime.credentials.update_credential(credential_id, tenant_id, body.label, body.secrets)
    except CredentialNotFoundError:
        raise HTTPException(status_code=404, detail=f"Credential {credential_id} not found")


@router.delete("/credentials/{credential_id}", status_code=204)
async def delete_credential(
    credential_id: int,
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
) -> None:
    try:
        await runtime.credentials.delete_credential(credential_id, tenant_id)
    except CredentialNotFoundError:
        raise HTTPException(status_code=404, detail=f"Credential {credential_id} not found")


@router.post("/credentials/{credential_id}/verify", response_model=VerificationResponse)
async def verify_credential(
    credential_id: int,
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
) -> VerificationResponse:
    """Check the credential against the service and record the result."""
    try:
        verified, error = await runtime.credentials.verify_credential(
            credential_id, tenant_id, runtime.executors.verify
        )
    except CredentialNotFoundError:
        raise HTTPException(status_code=404, detail=f"Credential {credential_id} not found")
    except DecryptionError as e:
        raise HTTPException(status_code=422, detail=public_message(e))

    return VerificationResponse(credential_id=credential_id, verified=verified, error=error)


@router.put("/services/{service}", response_model=ServiceConfigResponse)
async def configure_service(
    service: str,
    body: ServiceConfigUpdate,
    tenant_id: int = Depends(get_tenant_id),
    runtime: SyncRuntime = Depends(get_runtime),
):
    """Choose the credential and destination a service syncs with."""
    try:
        return await runtime.credentials.configure_service(
            tenant_id,
            service,
            body.credential_id,
            body.enabled,
            spreadsheet_id=body.spreadsheet_id,
            sheet_name=body.sheet_name,
        )
    except UnknownServiceError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except CredentialNotFoundError:
        raise HTTPException(status_code=404, detail=f"Credential {body.credential_id} not found")

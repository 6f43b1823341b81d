"""Tenant credential CRUD and per-service configuration."""

import json
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kpisync.core.database import session_scope, utcnow
from kpisync.core.errors import CredentialNotFoundError, DecryptionError, ExecutorFailure, public_message
from kpisync.models.audit_log import AuditAction, AuditStatus
from kpisync.models.database import Credential, Service, ServiceConfig, parse_service
from kpisync.services.audit import AuditLog
from kpisync.services.vault import CredentialVault

logger = logging.getLogger(__name__)

# (service, decrypted secrets) -> raises on rejection
Verifier = Callable[[str, dict[str, Any]], Awaitable[Any]]


class CredentialService:
    """
    Stores tenant secrets through the vault and tracks which credential each
    service uses. Decrypted secrets are only returned by load_secrets() and
    are never persisted or logged.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        audit: AuditLog,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.audit = audit

    async def _get_active(self, session: AsyncSession, credential_id: int, tenant_id: int) -> Credential:
        result = await session.execute(
            select(Credential).where(
                Credential.id == credential_id,
                Credential.tenant_id == tenant_id,
                Credential.deleted_at.is_(None),
            )
        )
        credential = result.scalar_one_or_none()
        if credential is None:
            raise CredentialNotFoundError(credential_id, tenant_id)
        return credential

    async def save_credential(
        self, tenant_id: int, service: str, label: str, secrets: dict[str, Any]
    ) -> Credential:
        service = parse_service(service).value
        blob = self.vault.encrypt(json.dumps(secrets), tenant_id)
        now = utcnow()
        credential = Credential(
            tenant_id=tenant_id,
            service=service,
            label=label,
            encrypted_payload=blob,
            verified=False,
            created_at=now,
            updated_at=now,
        )
        async with session_scope(self.session_factory) as session:
            session.add(credential)
            await session.commit()

        logger.info(f"Saved {service} credential {credential.id} for tenant {tenant_id}")
        await self.audit.record(
            tenant_id,
            AuditAction.CREDENTIAL_SAVED,
            service=service,
            metadata={"id": credential.id, "label": label, "fields": sorted(secrets)},
        )
        return credential

    async def update_credential(
        self,
        credential_id: int,
        tenant_id: int,
        label: str | None = None,
        secrets: dict[str, Any] | None = None,
    ) -> Credential:
        """Change the label and/or secrets. New secrets reset verification."""
        async with session_scope(self.session_factory) as session:
            credential = await self._get_active(session, credential_id, tenant_id)
            if label is not None:
                credential.label = label
            if secrets is not None:
                credential.encrypted_payload = self.vault.encrypt(json.dumps(secrets), tenant_id)
                credential.verified = False
                credential.verified_at = None
            credential.updated_at = utcnow()
            await session.commit()

        await self.audit.record(
            tenant_id,
            AuditAction.CREDENTIAL_UPDATED,
            service=credential.service,
            metadata={"id": credential_id, "payload_changed": secrets is not None},
        )
        return credential

    async def delete_credential(self, credential_id: int, tenant_id: int) -> None:
        """Soft delete. Syncs of service configs pointing at it fail with CredentialNotFoundError."""
        async with session_scope(self.session_factory) as session:
            credential = await self._get_active(session, credential_id, tenant_id)
            credential.deleted_at = utcnow()
            service = credential.service
            await session.commit()

        logger.info(f"Deleted credential {credential_id} for tenant {tenant_id}")
        await self.audit.record(
            tenant_id,
            AuditAction.CREDENTIAL_DELETED,
            service=service,
            metadata={"id": credential_id},
        )

    async def list_credentials(self, tenant_id: int, service: str | None = None) -> list[Credential]:
        stmt = select(Credential).where(
            Credential.tenant_id == tenant_id,
            Credential.deleted_at.is_(None),
        )
        if service is not None:
            stmt = stmt.where(Credential.service == service)
        async with session_scope(self.session_factory) as session:
            result = await session.execute(stmt.order_by(Credential.id))
            return list(result.scalars().all())

    async def load_secrets(self, credential_id: int, tenant_id: int) -> dict[str, Any]:
        """
        Decrypt a credential for immediate use.

        Raises:
            CredentialNotFoundError: missing, deleted or owned by another tenant.
            DecryptionError: the stored blob cannot be decrypted.
        """
        async with session_scope(self.session_factory) as session:
            credential = await self._get_active(session, credential_id, tenant_id)
            blob = credential.encrypted_payload

        plaintext = self.vault.decrypt(blob, tenant_id)
        try:
            secrets = json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise DecryptionError("Stored credential is not valid JSON") from e
        if not isinstance(secrets, dict):
            raise DecryptionError("Stored credential is not a JSON object")
        return secrets

    async def verify_credential(
        self, credential_id: int, tenant_id: int, verifier: Verifier
    ) -> tuple[bool, str | None]:
        """
        Run the service's verifier against the decrypted secrets and record the result.

        Returns (verified, tenant-visible error).
        """
        async with session_scope(self.session_factory) as session:
            credential = await self._get_active(session, credential_id, tenant_id)
            service = credential.service

        secrets = await self.load_secrets(credential_id, tenant_id)
        try:
            await verifier(service, secrets)
        except Exception as e:
            failure = ExecutorFailure.from_exception(service, e)
            logger.warning(f"Verification of credential {credential_id} failed ({failure.category.value})")
            await self._set_verified(credential_id, tenant_id, False)
            await self.audit.record(
                tenant_id,
                AuditAction.VERIFICATION_FAILED,
                service=service,
                status=AuditStatus.FAILURE,
                error_message=str(failure),
                metadata={"id": credential_id, "category": failure.category.value},
            )
            return False, public_message(failure)

        await self._set_verified(credential_id, tenant_id, True)
        await self.audit.record(
            tenant_id,
            AuditAction.CREDENTIAL_VERIFIED,
            service=service,
            metadata={"id": credential_id},
        )
        return True, None

    async def _set_verified(self, credential_id: int, tenant_id: int, verified: bool) -> None:
        async with session_scope(self.session_factory) as session:
            credential = await self._get_active(session, credential_id, tenant_id)
            credential.verified = verified
            credential.verified_at = utcnow() if verified else None
            await session.commit()

    async def configure_service(
        self,
        tenant_id: int,
        service: str,
        credential_id: int | None,
        enabled: bool,
        spreadsheet_id: str | None = None,
        sheet_name: str | None = None,
    ) -> ServiceConfig:
        """Create or update the tenant's configuration for one service."""
        service = parse_service(service).value
        async with session_scope(self.session_factory) as session:
            if credential_id is not None:
                credential = await self._get_active(session, credential_id, tenant_id)
                if credential.service != service:
                    raise CredentialNotFoundError(credential_id, tenant_id)

            result = await session.execute(
                select(ServiceConfig).where(
                    ServiceConfig.tenant_id == tenant_id,
                    ServiceConfig.service == service,
                )
            )
            config = result.scalar_one_or_none()
            if config is None:
                config = ServiceConfig(tenant_id=tenant_id, service=service)
                session.add(config)

            config.credential_id = credential_id
            config.enabled = enabled
            config.spreadsheet_id = spreadsheet_id
            config.sheet_name = sheet_name
            config.updated_at = utcnow()
            await session.commit()

        action = AuditAction.SERVICE_ENABLED if enabled else AuditAction.SERVICE_DISABLED
        await self.audit.record(
            tenant_id,
            action,
            service=service,
            metadata={"linked_id": credential_id, "destination": config.destination()},
        )
        return config

    async def get_enabled_configuration(self, tenant_id: int, service: str) -> ServiceConfig | None:
        """
        Enabled config for (tenant, service), or None.

        The linked credential is not checked here: a deleted one surfaces as
        CredentialNotFoundError from load_secrets().
        """
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(ServiceConfig).where(
                    ServiceConfig.tenant_id == tenant_id,
                    ServiceConfig.service == service,
                    ServiceConfig.enabled.is_(True),
                )
            )
            return result.scalar_one_or_none()

    async def list_enabled_services(self, tenant_id: int) -> list[str]:
        """Services the tenant has enabled, in platform order."""
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(ServiceConfig.service).where(
                    ServiceConfig.tenant_id == tenant_id,
                    ServiceConfig.enabled.is_(True),
                )
            )
            enabled = set(result.scalars().all())
        return [service.value for service in Service if service.value in enabled]

"""
Credential manager: direct (non-OAuth) credential submission.

API keys, basic auth, bearer tokens and custom credential maps enter the
system here. Every write is validated for its connection type, sealed by
the vault and test-connected through the integration's provider before the
connection is trusted.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any
import logging

from core.integrations.audit import AuditTrail
from core.integrations.errors import IntegrationError, NotFound, log_status_for_kind
from core.integrations.registry import ProviderRegistry
from core.integrations.schemas import validate_credentials
from core.integrations.store import IntegrationStore
from core.integrations.types import (
    Connection,
    ConnectionStatus,
    ConnectionType,
    IntegrationStatus,
    LogStatus,
    OperationResult,
    utcnow,
)
from core.integrations.vault import CredentialVault

logger = logging.getLogger(__name__)

READABLE_STATUSES = (ConnectionStatus.CONNECTED, ConnectionStatus.ERROR)


def token_expiry(credentials: dict[str, Any]) -> datetime | None:
    """Datetime form of a canonical ``expires_at`` (epoch seconds)."""
    expires_at = credentials.get("expires_at")
    if not expires_at:
        return None
    return datetime.fromtimestamp(float(expires_at), tz=timezone.utc)


def granted_scopes(credentials: dict[str, Any]) -> list[str]:
    scope = credentials.get("scope") or ""
    if isinstance(scope, (list, tuple)):
        return list(scope)
    return str(scope).replace(",", " ").split()


class CredentialManager:
    def __init__(
        self,
        store: IntegrationStore,
        vault: CredentialVault,
        registry: ProviderRegistry,
        audit: AuditTrail,
    ):
        self.store = store
        self.vault = vault
        self.registry = registry
        self.audit = audit

    async def store_credentials(
        self,
        integration_id: str,
        credentials: dict[str, Any],
        connection_type: ConnectionType | str,
        organization_id: str,
        name: str | None = None,
        actor: str | None = None,
    ) -> OperationResult:
        """Validate, seal and test a new set of credentials.

        The connection row is written even when the test fails (status
        ``error``) so the attempt can be inspected and retried.
        """
        integration = await self.store.get_integration(integration_id, organization_id)
        if integration is None:
            return OperationResult.failure(NotFound(f"Integration {integration_id} not found"))
        try:
            validated = validate_credentials(connection_type, credentials)
            connection_type = ConnectionType(connection_type)
            provider = self.registry.require(integration.provider)
        except IntegrationError as exc:
            await self.audit.record_failure(
                integration_id, "credentials_stored", exc, actor=actor,
                request={"connection_type": str(getattr(connection_type, "value", connection_type))},
            )
            return OperationResult.failure(exc)

        connection = await self.store.create_connection(Connection(
            integration_id=integration_id,
            name=name or f"Connection-{int(utcnow().timestamp() * 1000)}",
            connection_type=connection_type,
            credentials=self.vault.encrypt(validated),
            settings=self.vault.encrypt({"connection_type": connection_type.value, **self.vault.metadata()}),
            status=ConnectionStatus.PENDING,
            scopes=granted_scopes(validated),
            token_expires_at=token_expiry(validated),
        ))

        result = await provider.test_connection(validated, integration.config)
        now = utcnow()
        await self.store.update_connection(
            connection.id,
            status=ConnectionStatus.CONNECTED if result.success else ConnectionStatus.ERROR,
            last_connected=now if result.success else None,
            last_error=None if result.success else result.message,
            rate_limit=result.rate_limit.to_dict() if result.rate_limit else None,
        )
        if result.success and integration.status != IntegrationStatus.ACTIVE:
            await self.store.update_integration(integration_id, status=IntegrationStatus.ACTIVE, last_error=None)

        await self.audit.record(
            integration_id,
            "credentials_stored",
            LogStatus.SUCCESS if result.success else LogStatus(log_status_for_kind(result.error_kind)),
            request={"connection_type": connection_type.value},
            response={
                "connection_id": connection.id,
                "test_result": {"success": result.success, "message": result.message},
            },
            error=None if result.success else result.message,
            kind=result.error_kind,
            actor=actor,
        )
        if not result.success:
            return OperationResult(
                success=False,
                connection_id=connection.id,
                error=f"Connection test failed: {result.message}",
                error_kind=result.error_kind or "connection_test_failed",
            )
        return OperationResult(success=True, connection_id=connection.id)

    async def get_credentials(self, connection_id: str, organization_id: str) -> dict[str, Any] | None:
        """Decrypt a usable connection's credentials.

        Returns None for unknown or retired connections. Blobs written under
        an old key version or past the rotation interval are rotated on read.
        """
        connection = await self.store.get_connection(connection_id, organization_id)
        if connection is None or connection.status not in READABLE_STATUSES:
            return None
        credentials = self.vault.decrypt(connection.credentials)
        metadata = self.vault.decrypt(connection.settings) if connection.settings else None
        if self.vault.needs_rotation(metadata):
            await self.vault.rotate(connection_id, organization_id)
        return credentials

    async def update_credentials(
        self,
        connection_id: str,
        new_credentials: dict[str, Any],
        organization_id: str,
        actor: str | None = None,
    ) -> OperationResult:
        """Replace a connection's credentials, but only if the new ones test green."""
        connection = await self.store.get_connection(connection_id, organization_id)
        if connection is None:
            return OperationResult.failure(NotFound("Connection not found"), connection_id)
        integration = await self.store.get_integration(connection.integration_id, organization_id)
        try:
            if integration is None:
                raise NotFound(f"Integration {connection.integration_id} not found")
            validated = validate_credentials(connection.connection_type, new_credentials)
            provider = self.registry.require(integration.provider)
        except IntegrationError as exc:
            await self.audit.record_failure(
                connection.integration_id, "credentials_updated", exc, actor=actor,
                request={"connection_id": connection_id},
            )
            return OperationResult.failure(exc, connection_id)

        result = await provider.test_connection(validated, integration.config)
        if not result.success:
            await self.audit.record(
                connection.integration_id, "credentials_updated", LogStatus(log_status_for_kind(result.error_kind)),
                request={"connection_id": connection_id},
                error=result.message, kind=result.error_kind, actor=actor,
            )
            return OperationResult(
                success=False,
                connection_id=connection_id,
                error=f"New credentials test failed: {result.message}",
                error_kind=result.error_kind or "connection_test_failed",
            )

        metadata = self.vault.decrypt(connection.settings) if connection.settings else {}
        metadata = dict(metadata or {})
        metadata.update(self.vault.metadata(_created_at(metadata)))
        metadata["updated_at"] = utcnow().isoformat()
        await self.store.update_connection(
            connection_id,
            credentials=self.vault.encrypt(validated),
            settings=self.vault.encrypt(metadata),
            status=ConnectionStatus.CONNECTED,
            scopes=granted_scopes(validated) or connection.scopes,
            token_expires_at=token_expiry(validated),
            last_connected=utcnow(),
            last_error=None,
            retry_count=0,
        )
        await self.audit.record(
            connection.integration_id, "credentials_updated", LogStatus.SUCCESS,
            request={"connection_id": connection_id}, response={"updated": True}, actor=actor,
        )
        return OperationResult(success=True, connection_id=connection_id)

    async def delete_credentials(
        self,
        connection_id: str,
        organization_id: str,
        actor: str | None = None,
    ) -> OperationResult:
        """Zero the credential blob and retire the connection. The row stays for audit."""
        connection = await self.store.get_connection(connection_id, organization_id)
        if connection is None:
            return OperationResult.failure(NotFound("Connection not found"), connection_id)
        await self.store.update_connection(
            connection_id,
            credentials=self.vault.encrypt({}),
            status=ConnectionStatus.INACTIVE,
            token_expires_at=None,
        )
        await self.audit.record(
            connection.integration_id, "credentials_deleted", LogStatus.SUCCESS,
            request={"connection_id": connection_id}, response={"deleted": True}, actor=actor,
        )
        return OperationResult(success=True, connection_id=connection_id)

    async def audit_access(
        self,
        connection_id: str,
        action: str,
        user_id: str,
        organization_id: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record who touched a connection's credentials and why."""
        connection = await self.store.get_connection(connection_id, organization_id)
        if connection is None:
            raise NotFound(f"Connection {connection_id} not found")
        await self.audit.record(
            connection.integration_id,
            f"credential_{action}",
            LogStatus.SUCCESS,
            request={"connection_id": connection_id, "action": action},
            sealed={"user_id": user_id, "details": details or {}, "timestamp": utcnow().isoformat()},
            actor=user_id,
        )


def _created_at(metadata: dict[str, Any]) -> datetime | None:
    value = metadata.get("created_at")
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None

"""
Integration hub facade.

Builds every lifecycle service once, around one store, one vault and one
explicitly constructed provider registry, and exposes the operations the
surrounding HTTP/CLI layer calls. Nothing here is a module-level singleton:
tests build a hub with stub providers and an in-memory store.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Iterable
import logging
import time

import httpx

from core.config import HubSettings
from core.integrations.audit import AuditTrail, elapsed_ms
from core.integrations.credentials import READABLE_STATUSES, CredentialManager
from core.integrations.errors import NotFound, error_message
from core.integrations.health import ConnectionHealthService
from core.integrations.oauth import OAuthOrchestrator
from core.integrations.registry import ProviderRegistry
from core.integrations.store import InMemoryIntegrationStore, IntegrationStore
from core.integrations.sync import SyncOrchestrator
from core.integrations.types import ConnectionStatus, Integration, LogStatus
from core.integrations.vault import CredentialVault
from core.integrations.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


@dataclass
class IntegrationHub:
    settings: HubSettings
    store: IntegrationStore
    registry: ProviderRegistry
    vault: CredentialVault
    audit: AuditTrail
    credentials: CredentialManager
    oauth: OAuthOrchestrator
    health: ConnectionHealthService
    sync: SyncOrchestrator
    webhooks: WebhookDispatcher

    @classmethod
    def create(
        cls,
        store: IntegrationStore | None = None,
        settings: HubSettings | None = None,
        registry: ProviderRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        tracer=None,
    ) -> "IntegrationHub":
        """Wire a hub. Defaults: in-memory store, env settings, built-in providers."""
        settings = settings or HubSettings.from_env()
        store = store if store is not None else InMemoryIntegrationStore()
        registry = registry or ProviderRegistry.with_builtins(transport, settings.http.timeout_seconds)
        vault = CredentialVault(settings.vault, store)
        audit = AuditTrail(store, vault)
        return cls(
            settings=settings,
            store=store,
            registry=registry,
            vault=vault,
            audit=audit,
            credentials=CredentialManager(store, vault, registry, audit),
            oauth=OAuthOrchestrator(store, vault, registry, audit, settings.oauth),
            health=ConnectionHealthService(store, vault, registry, audit, settings.health, tracer=tracer),
            sync=SyncOrchestrator(store, vault, registry, audit, settings.sync, tracer=tracer),
            webhooks=WebhookDispatcher(store, registry, audit, settings.webhooks, transport=transport),
        )

    # --- Integrations ---

    async def list_integrations(self, organization_id: str) -> list[Integration]:
        return await self.store.list_integrations(organization_id=organization_id)

    async def get_integration(self, integration_id: str, organization_id: str) -> Integration:
        integration = await self.store.get_integration(integration_id, organization_id)
        if integration is None:
            raise NotFound(f"Integration {integration_id} not found")
        return integration

    async def delete_integration(self, integration_id: str, organization_id: str, actor: str | None = None) -> bool:
        """Revoke every live connection, then delete the integration and its rows."""
        integration = await self.get_integration(integration_id, organization_id)
        for connection in await self.store.list_connections(integration_id=integration.id):
            if connection.status != ConnectionStatus.INACTIVE:
                await self.oauth.revoke_connection(connection.id, organization_id, actor=actor)
        deleted = await self.store.delete_integration(integration.id)
        logger.info("Deleted integration %s (%s) for %s", integration.id, integration.provider, organization_id)
        return deleted

    # --- Actions ---

    async def execute_action(
        self,
        integration_id: str,
        action: str,
        parameters: dict[str, Any] | None,
        organization_id: str,
        actor: str | None = None,
    ) -> Any:
        """Run a named provider action with the integration's first usable connection."""
        integration = await self.get_integration(integration_id, organization_id)
        provider = self.registry.require(integration.provider)
        started = time.monotonic()
        try:
            connections = await self.store.list_connections(
                integration_id=integration_id, statuses=READABLE_STATUSES,
            )
            if not connections:
                raise NotFound("No active connection found")
            credentials = await self.credentials.get_credentials(connections[0].id, organization_id)
            if credentials is None:
                raise NotFound("No active connection found")
            result = await provider.execute_action(action, credentials, integration.config, parameters)
        except Exception as exc:
            logger.warning("Action %s on %s failed: %s", action, integration_id, error_message(exc))
            await self.audit.record_failure(
                integration_id, f"action_{action}", exc, actor=actor,
                request={"action": action}, duration_ms=elapsed_ms(started),
            )
            raise
        await self.audit.record(
            integration_id, f"action_{action}", LogStatus.SUCCESS,
            request={"action": action}, actor=actor, duration_ms=elapsed_ms(started),
        )
        return result

    # --- Maintenance ---

    async def run_maintenance(self, organization_ids: Iterable[str] = ()) -> dict[str, Any]:
        """Scheduler entry point: expire OAuth states, purge old logs, rotate stale keys."""
        report: dict[str, Any] = {
            "oauth": await self.oauth.cleanup_expired_states(),
            "logs_purged": await self.audit.purge(self.settings.audit.retention_days),
            "rotation": {},
        }
        for organization_id in organization_ids:
            report["rotation"][organization_id] = await self.vault.bulk_rotate(organization_id)
        return report

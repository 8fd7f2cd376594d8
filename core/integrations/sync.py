"""
Sync orchestrator.

Runs ``Provider.sync`` for an Integration with its connected Connection's
credentials, then records the outcome on the Integration (``last_sync``,
``last_error``) and as a ``sync`` audit row with duration and counts.

A run in flight is marked by a ``sync_started`` row in ``pending`` status.
A second request for the same Integration is rejected while that row is
younger than ``SyncSettings.stale_after_minutes``; older rows are treated as
abandoned and expired.
"""
from __future__ import annotations
from datetime import datetime, timedelta
from typing import Any, Callable
import logging
import time

from core.config import SyncSettings
from core.integrations.audit import AuditTrail, elapsed_ms
from core.integrations.errors import IntegrationError, NotFound, ValidationError, error_kind, error_message
from core.integrations.registry import ProviderRegistry
from core.integrations.store import IntegrationStore
from core.integrations.types import (
    ConnectionStatus,
    Integration,
    IntegrationLog,
    IntegrationStatus,
    LogStatus,
    SyncMode,
    SyncResult,
    utcnow,
)
from core.integrations.vault import CredentialVault
from core.observability.otel_setup import create_operation_span, end_span

logger = logging.getLogger(__name__)

SYNC_STARTED = "sync_started"


def _log_status(result: SyncResult) -> LogStatus:
    if result.success:
        return LogStatus.SUCCESS
    kinds = {e.error_kind for e in result.errors}
    if kinds == {"timeout"}:
        return LogStatus.TIMEOUT
    if kinds == {"rate_limited"}:
        return LogStatus.RATE_LIMITED
    return LogStatus.ERROR


def _age_key(log: IntegrationLog) -> tuple:
    return log.timestamp, log.id


def summarize_errors(result: SyncResult) -> str | None:
    if not result.errors:
        return None
    return "; ".join(f"{e.record}: {e.error}" for e in result.errors)


class SyncOrchestrator:
    def __init__(
        self,
        store: IntegrationStore,
        vault: CredentialVault,
        registry: ProviderRegistry,
        audit: AuditTrail,
        settings: SyncSettings | None = None,
        tracer=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.vault = vault
        self.registry = registry
        self.audit = audit
        self.settings = settings or SyncSettings()
        self._tracer = tracer
        self._clock = clock

    @property
    def stale_after(self) -> timedelta:
        return timedelta(minutes=self.settings.stale_after_minutes)

    # --- In-progress tracking ---

    async def _active_marker(self, integration_id: str, exclude: str | None = None) -> IntegrationLog | None:
        """Oldest live ``sync_started`` row; abandoned ones are expired on the way."""
        live = []
        for log in await self.store.list_logs(integration_id=integration_id, actions=[SYNC_STARTED], status=LogStatus.PENDING):
            if log.id == exclude:
                continue
            if self._clock() - log.timestamp > self.stale_after:
                logger.warning("Expiring abandoned sync marker %s for %s", log.id, integration_id)
                await self.store.transition_log(log.id, LogStatus.PENDING, LogStatus.EXPIRED)
                continue
            live.append(log)
        return min(live, key=_age_key) if live else None

    async def is_syncing(self, integration_id: str) -> bool:
        return await self._active_marker(integration_id) is not None

    # --- Sync ---

    async def sync(
        self,
        integration_id: str,
        organization_id: str,
        mode: SyncMode | str = SyncMode.FULL,
        options: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> SyncResult:
        """Sync one Integration. Failures come back inside the SyncResult."""
        integration = await self.store.get_integration(integration_id, organization_id)
        if integration is None:
            raise NotFound(f"Integration {integration_id} not found")
        try:
            mode = SyncMode(mode)
        except ValueError:
            raise ValidationError(f"Unknown sync mode: {mode}") from None

        started = time.monotonic()
        marker = await self.audit.record(
            integration_id, SYNC_STARTED, LogStatus.PENDING, request={"mode": mode.value}, actor=actor,
        )
        # The oldest live marker runs; ties go to the lower id
        other = await self._active_marker(integration_id, exclude=marker.id)
        if other is not None and _age_key(other) < _age_key(marker):
            await self.store.transition_log(marker.id, LogStatus.PENDING, LogStatus.CANCELLED)
            result = SyncResult.failed("Sync already in progress", "sync_in_progress", elapsed_ms(started))
            await self.audit.record(
                integration_id, "sync", LogStatus.CANCELLED,
                request={"mode": mode.value}, error=summarize_errors(result), kind="sync_in_progress",
                actor=actor, duration_ms=result.duration_ms,
            )
            return result

        span = create_operation_span(
            self._tracer, "sync.run",
            {"integration.id": integration_id, "integration.provider": integration.provider, "sync.mode": mode.value},
        )
        try:
            result = await self._run(integration, mode, options)
            result.duration_ms = elapsed_ms(started)
        finally:
            await self.store.transition_log(marker.id, LogStatus.PENDING, LogStatus.COMPLETED)

        await self._record(integration, mode, result, actor)
        end_span(
            span,
            **{"sync.success": result.success, "sync.records_processed": result.records_processed,
               "sync.error_count": len(result.errors)},
        )
        return result

    async def _run(self, integration: Integration, mode: SyncMode, options: dict[str, Any] | None) -> SyncResult:
        try:
            connections = await self.store.list_connections(
                integration_id=integration.id, statuses=[ConnectionStatus.CONNECTED],
            )
            if not connections:
                raise NotFound("No active connection found")
            provider = self.registry.require(integration.provider)
            credentials = self.vault.decrypt(connections[0].credentials)
            options = dict(options or {})
            if mode == SyncMode.INCREMENTAL and options.get("since") is None and integration.last_sync:
                options["since"] = integration.last_sync
            return await provider.sync(credentials, integration.config, mode, options)
        except Exception as exc:
            if isinstance(exc, IntegrationError):
                logger.warning("Sync of %s failed: %s", integration.id, error_message(exc))
            else:
                logger.exception("Sync of %s failed", integration.id)
            return SyncResult.failed(error_message(exc), error_kind(exc))

    async def _record(self, integration: Integration, mode: SyncMode, result: SyncResult, actor: str | None) -> None:
        last_error = summarize_errors(result)
        changes: dict[str, Any] = {"last_sync": self._clock(), "last_error": last_error}
        aborted = not result.success and any(e.record == "sync" for e in result.errors)
        if aborted:
            changes["status"] = IntegrationStatus.ERROR
        elif result.success and integration.status == IntegrationStatus.ERROR:
            changes["status"] = IntegrationStatus.ACTIVE
        await self.store.update_integration(integration.id, **changes)

        await self.audit.record(
            integration.id,
            "sync",
            _log_status(result),
            request={"mode": mode.value},
            response={
                **result.to_dict(),
                "resources": {
                    name: {
                        "processed": c.processed,
                        "created": c.created,
                        "updated": c.updated,
                        "deleted": c.deleted,
                    }
                    for name, c in result.resources.items()
                },
            },
            error=last_error,
            kind=result.errors[0].error_kind if result.errors else None,
            actor=actor,
            duration_ms=result.duration_ms,
        )
        logger.info(
            "Sync of %s (%s) finished: success=%s processed=%d errors=%d",
            integration.id, mode.value, result.success, result.records_processed, len(result.errors),
        )

    async def sync_status(self, integration_id: str, organization_id: str) -> dict[str, Any]:
        """Last run, whether one is in flight, and when the next is due."""
        integration = await self.store.get_integration(integration_id, organization_id)
        if integration is None:
            raise NotFound(f"Integration {integration_id} not found")
        provider = self.registry.get(integration.provider)
        next_sync_at = None
        if integration.last_sync and provider is not None:
            next_sync_at = integration.last_sync + timedelta(minutes=provider.sync_interval_minutes)
        return {
            "in_progress": await self.is_syncing(integration_id),
            "last_sync": integration.last_sync.isoformat() if integration.last_sync else None,
            "last_error": integration.last_error,
            "next_sync_at": next_sync_at.isoformat() if next_sync_at else None,
        }

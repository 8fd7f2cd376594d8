"""
Connection health service.

Tests stored connections against their providers and writes the outcome
back to the Connection and its Integration. Bulk operations fan out in
fixed-width chunks: a chunk's tests run concurrently, and the next chunk
starts only once the previous one has finished, so no more than
``HealthSettings.concurrency`` calls are ever in flight to third parties.
Scheduled sweeps also pause between chunks.

Failures are results here, not exceptions: one broken connection must not
hide the outcome of the others.
"""
from __future__ import annotations
from datetime import timedelta
from typing import Any, Awaitable, Callable, Iterable, Sequence, TypeVar
import asyncio
import logging
import time

from core.config import HealthSettings
from core.integrations.audit import AuditTrail, elapsed_ms
from core.integrations.errors import NotFound, error_kind, error_message, log_status_for_kind
from core.integrations.registry import ProviderRegistry
from core.integrations.store import IntegrationStore
from core.integrations.types import (
    Connection,
    ConnectionStatus,
    ConnectionTestResult,
    Integration,
    IntegrationStatus,
    LogStatus,
    utcnow,
)
from core.integrations.vault import CredentialVault
from core.observability.otel_setup import create_operation_span, end_span

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHECKED_STATUSES = (ConnectionStatus.CONNECTED, ConnectionStatus.ERROR)
EXPIRY_WARNING = timedelta(days=7)


def chunked(items: Sequence[T], size: int) -> list[Sequence[T]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _failed(exc: BaseException) -> ConnectionTestResult:
    return ConnectionTestResult(
        success=False,
        message=f"Connection test failed: {error_message(exc)}",
        details={"error": error_message(exc)},
        error_kind=error_kind(exc),
    )


class ConnectionHealthService:
    def __init__(
        self,
        store: IntegrationStore,
        vault: CredentialVault,
        registry: ProviderRegistry,
        audit: AuditTrail,
        settings: HealthSettings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        tracer=None,
    ):
        self.store = store
        self.vault = vault
        self.registry = registry
        self.audit = audit
        self.settings = settings or HealthSettings()
        self._sleep = sleep
        self._tracer = tracer

    async def _resolve(self, connection_id: str, organization_id: str) -> tuple[Connection, Integration]:
        connection = await self.store.get_connection(connection_id, organization_id)
        if connection is None:
            raise NotFound(f"Connection {connection_id} not found")
        integration = await self.store.get_integration(connection.integration_id, organization_id)
        if integration is None:
            raise NotFound(f"Integration {connection.integration_id} not found")
        return connection, integration

    # --- Single connection ---

    async def test_one(self, connection_id: str, organization_id: str) -> ConnectionTestResult:
        """Test one stored connection and persist the outcome."""
        started = time.monotonic()
        try:
            connection, integration = await self._resolve(connection_id, organization_id)
        except NotFound as exc:
            return _failed(exc)

        span = create_operation_span(
            self._tracer, "health.test_connection",
            {"integration.provider": integration.provider, "connection.id": connection_id},
        )
        try:
            provider = self.registry.require(integration.provider)
            credentials = await asyncio.to_thread(self.vault.decrypt, connection.credentials)
            result = await provider.test_connection(credentials, integration.config)
        except Exception as exc:
            logger.warning("Health check for %s could not run: %s", connection_id, error_message(exc))
            result = _failed(exc)
        finally:
            end_span(span)

        await self._apply(connection, integration, result)
        await self.audit.record(
            integration.id,
            "connection_test",
            LogStatus.SUCCESS if result.success else LogStatus(log_status_for_kind(result.error_kind)),
            request={"connection_id": connection_id},
            response={"success": result.success, "message": result.message},
            error=None if result.success else result.message,
            kind=result.error_kind,
            duration_ms=elapsed_ms(started),
        )
        return result

    async def _apply(self, connection: Connection, integration: Integration, result: ConnectionTestResult) -> None:
        if result.success:
            await self.store.update_connection(
                connection.id,
                status=ConnectionStatus.CONNECTED,
                last_connected=utcnow(),
                last_error=None,
                retry_count=0,
                rate_limit=result.rate_limit.to_dict() if result.rate_limit else connection.rate_limit,
            )
            await self.store.update_integration(integration.id, status=IntegrationStatus.ACTIVE, last_error=None)
        else:
            await self.store.update_connection(
                connection.id,
                status=ConnectionStatus.ERROR,
                last_error=result.message,
                retry_count=connection.retry_count + 1,
            )
            await self.store.update_integration(integration.id, status=IntegrationStatus.ERROR, last_error=result.message)

    async def test_credentials(
        self,
        provider_key: str,
        credentials: dict[str, Any],
        config: dict[str, Any] | None = None,
    ) -> ConnectionTestResult:
        """Try credentials against a provider without storing anything."""
        try:
            provider = self.registry.require(provider_key)
        except NotFound as exc:
            return _failed(exc)
        return await provider.test_connection(credentials, config)

    # --- Bulk ---

    async def _run_chunk(self, connection_ids: Sequence[str], organization_id: str) -> list[ConnectionTestResult]:
        outcomes = await asyncio.gather(
            *(self.test_one(cid, organization_id) for cid in connection_ids),
            return_exceptions=True,
        )
        results = []
        for cid, outcome in zip(connection_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Health check for %s raised", cid, exc_info=outcome)
                outcome = _failed(outcome)
            results.append(outcome)
        return results

    async def test_many(self, connection_ids: Iterable[str], organization_id: str) -> dict[str, ConnectionTestResult]:
        """Test a list of connections, ``concurrency`` at a time."""
        ids = list(dict.fromkeys(connection_ids))
        results: dict[str, ConnectionTestResult] = {}
        for chunk in chunked(ids, self.settings.concurrency):
            results.update(zip(chunk, await self._run_chunk(chunk, organization_id)))
        return results

    async def run_health_checks(self, organization_id: str) -> dict[str, Any]:
        """Scheduled sweep over every connected or failing connection of an organization."""
        connections = await self.store.list_connections(organization_id=organization_id, statuses=CHECKED_STATUSES)
        entries: list[dict[str, Any]] = []
        for index, chunk in enumerate(chunked(connections, self.settings.concurrency)):
            if index:
                await self._sleep(self.settings.batch_delay_seconds)
            results = await self._run_chunk([c.id for c in chunk], organization_id)
            for connection, result in zip(chunk, results):
                entries.append({
                    "connection_id": connection.id,
                    "integration_id": connection.integration_id,
                    **result.to_dict(),
                })

        passed = sum(1 for e in entries if e["success"])
        logger.info(
            "Health checks for %s: %d tested, %d passed, %d failed",
            organization_id, len(entries), passed, len(entries) - passed,
        )
        return {
            "tested": len(entries),
            "passed": passed,
            "failed": len(entries) - passed,
            "results": entries,
        }

    # --- Diagnostics ---

    async def test_capabilities(self, connection_id: str, organization_id: str) -> dict[str, Any]:
        """User-facing capability report. Never raises."""
        report: dict[str, Any] = {
            "capabilities": [],
            "permissions": {},
            "limitations": [],
            "recommendations": [],
        }
        try:
            connection, integration = await self._resolve(connection_id, organization_id)
            provider = self.registry.require(integration.provider)
            credentials = await asyncio.to_thread(self.vault.decrypt, connection.credentials)

            basic = await provider.test_connection(credentials, integration.config)
            if not basic.success:
                report["limitations"].append(f"Basic connection failed: {basic.message}")
                report["recommendations"].append("Check the credentials and reconnect the integration")
                return report
            report["capabilities"] = list(basic.capabilities)

            for capability in provider.capabilities:
                try:
                    limitation = await provider.probe_capability(capability, credentials, integration.config)
                except Exception as exc:
                    limitation = f"{capability.capitalize()} probe failed: {error_message(exc)}"
                report["permissions"][capability] = limitation is None
                if limitation:
                    report["limitations"].append(limitation)

            if report["permissions"].get("write") is False:
                report["recommendations"].append("Grant write scopes to enable actions")
            if report["permissions"].get("read") is False:
                report["recommendations"].append("Grant read scopes to enable sync")
            if connection.token_expires_at and connection.token_expires_at - utcnow() < EXPIRY_WARNING:
                report["recommendations"].append("Access token expires soon; refresh the connection")
        except Exception as exc:
            logger.warning("Capability test for %s failed: %s", connection_id, error_message(exc))
            report["limitations"].append(f"Capability test failed: {error_message(exc)}")
            report["recommendations"].append("Check the connection configuration")
        return report

    async def summary(self, organization_id: str) -> dict[str, Any]:
        """Healthy / unhealthy / pending connection counts, overall and per provider."""
        integrations = {i.id: i for i in await self.store.list_integrations(organization_id=organization_id)}
        connections = await self.store.list_connections(organization_id=organization_id)
        totals = {"total": 0, "healthy": 0, "unhealthy": 0, "pending": 0}
        by_provider: dict[str, dict[str, int]] = {}
        for connection in connections:
            if connection.status == ConnectionStatus.INACTIVE:
                continue
            integration = integrations.get(connection.integration_id)
            provider_key = integration.provider if integration else "unknown"
            bucket = by_provider.setdefault(provider_key, {"total": 0, "healthy": 0, "unhealthy": 0, "pending": 0})
            if connection.status == ConnectionStatus.CONNECTED:
                state = "healthy"
            elif connection.status in (ConnectionStatus.PENDING, ConnectionStatus.REFRESHING):
                state = "pending"
            else:
                state = "unhealthy"
            for counts in (totals, bucket):
                counts["total"] += 1
                counts[state] += 1
        return {**totals, "by_provider": by_provider}

    async def test_history(self, connection_id: str, organization_id: str, limit: int = 10) -> list[dict[str, Any]]:
        connection, _ = await self._resolve(connection_id, organization_id)
        logs = await self.store.list_logs(integration_id=connection.integration_id, actions=["connection_test"])
        history = [
            {
                "timestamp": log.timestamp.isoformat(),
                "success": log.status == LogStatus.SUCCESS,
                "message": (log.response_data or {}).get("message") or log.error,
                "duration_ms": log.duration_ms,
            }
            for log in logs
            if (log.request_data or {}).get("connection_id") == connection_id
        ]
        return history[:limit]

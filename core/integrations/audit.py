"""
Audit trail.

Thin writer over IntegrationStore logs. Every mutating service call goes
through here so rows share one shape: action name, LogStatus, optional
structured request/response snapshots, an optional vault-sealed snapshot
for anything secret, error text + kind, actor, duration.
"""
from __future__ import annotations
from datetime import timedelta
from typing import Any, Iterable
import logging
import time

from core.integrations.errors import error_kind, error_message, log_status_for
from core.integrations.store import IntegrationStore
from core.integrations.types import IntegrationLog, LogStatus, utcnow

logger = logging.getLogger(__name__)


def elapsed_ms(started: float) -> float:
    """Milliseconds since a ``time.monotonic()`` reading."""
    return (time.monotonic() - started) * 1000


class AuditTrail:
    def __init__(self, store: IntegrationStore, vault=None):
        self.store = store
        self.vault = vault

    async def record(
        self,
        integration_id: str | None,
        action: str,
        status: LogStatus,
        *,
        webhook_id: str | None = None,
        request: dict[str, Any] | None = None,
        response: dict[str, Any] | None = None,
        sealed: Any = None,
        error: str | None = None,
        kind: str | None = None,
        actor: str | None = None,
        duration_ms: float | None = None,
    ) -> IntegrationLog:
        sealed_data = None
        if sealed is not None:
            if self.vault is None:
                raise ValueError("Sealed audit snapshots need a vault")
            sealed_data = self.vault.encrypt(sealed)
        return await self.store.append_log(IntegrationLog(
            integration_id=integration_id,
            action=action,
            status=status,
            webhook_id=webhook_id,
            request_data=request,
            response_data=response,
            sealed_data=sealed_data,
            error=error,
            error_kind=kind,
            actor=actor,
            duration_ms=round(duration_ms, 1) if duration_ms is not None else None,
        ))

    async def record_failure(
        self,
        integration_id: str | None,
        action: str,
        exc: BaseException,
        **kwargs: Any,
    ) -> IntegrationLog:
        """Log a failed operation with the status its error maps to."""
        return await self.record(
            integration_id,
            action,
            LogStatus(log_status_for(exc)),
            error=error_message(exc),
            kind=error_kind(exc),
            **kwargs,
        )

    def unseal(self, log: IntegrationLog) -> Any:
        if log.sealed_data is None:
            return None
        if self.vault is None:
            raise ValueError("Unsealing audit snapshots needs a vault")
        return self.vault.decrypt(log.sealed_data)

    async def history(
        self,
        integration_id: str,
        actions: Iterable[str] | None = None,
        limit: int = 50,
    ) -> list[IntegrationLog]:
        return await self.store.list_logs(integration_id=integration_id, actions=actions, limit=limit)

    async def purge(self, retention_days: int) -> int:
        """Retention sweep: delete rows older than ``retention_days``."""
        cutoff = utcnow() - timedelta(days=retention_days)
        deleted = await self.store.delete_logs_before(cutoff)
        logger.info("Purged %d audit rows older than %s", deleted, cutoff.isoformat())
        return deleted

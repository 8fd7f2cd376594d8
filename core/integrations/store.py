"""
Persistence interface for integration records.

IntegrationStore is the seam between the lifecycle services and whatever
actually holds the rows. InMemoryIntegrationStore backs tests and local
development; SqlAlchemyIntegrationStore (core.integrations.sql_store) backs
production.

Scoping rule: every lookup that takes an ``organization_id`` resolves the
owning Integration and refuses rows that belong to another organization.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import replace
import copy
from datetime import datetime
from typing import Any, Iterable

from core.integrations.types import (
    Connection,
    ConnectionStatus,
    Integration,
    IntegrationLog,
    IntegrationStatus,
    LogStatus,
    Webhook,
    utcnow,
)


def _clone(record):
    return copy.deepcopy(record)


class IntegrationStore(ABC):
    """CRUD + filtered finds over integration records."""

    # --- Integrations ---

    @abstractmethod
    async def create_integration(self, integration: Integration) -> Integration: ...

    @abstractmethod
    async def get_integration(
        self, integration_id: str, organization_id: str | None = None
    ) -> Integration | None: ...

    @abstractmethod
    async def update_integration(self, integration_id: str, **changes: Any) -> Integration | None: ...

    @abstractmethod
    async def list_integrations(
        self,
        organization_id: str | None = None,
        statuses: Iterable[IntegrationStatus] | None = None,
        created_before: datetime | None = None,
    ) -> list[Integration]: ...

    @abstractmethod
    async def delete_integration(self, integration_id: str) -> bool:
        """Delete an integration with its connections, webhooks and logs."""

    # --- Connections ---

    @abstractmethod
    async def create_connection(self, connection: Connection) -> Connection: ...

    @abstractmethod
    async def get_connection(
        self, connection_id: str, organization_id: str | None = None
    ) -> Connection | None: ...

    @abstractmethod
    async def update_connection(self, connection_id: str, **changes: Any) -> Connection | None: ...

    @abstractmethod
    async def list_connections(
        self,
        organization_id: str | None = None,
        integration_id: str | None = None,
        statuses: Iterable[ConnectionStatus] | None = None,
    ) -> list[Connection]: ...

    async def count_connections(
        self, integration_id: str, statuses: Iterable[ConnectionStatus] | None = None
    ) -> int:
        return len(await self.list_connections(integration_id=integration_id, statuses=statuses))

    # --- Logs ---

    @abstractmethod
    async def append_log(self, log: IntegrationLog) -> IntegrationLog: ...

    @abstractmethod
    async def list_logs(
        self,
        integration_id: str | None = None,
        actions: Iterable[str] | None = None,
        status: LogStatus | None = None,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[IntegrationLog]:
        """Logs matching the filters, newest first."""

    async def latest_log(
        self, integration_id: str, action: str, status: LogStatus | None = None
    ) -> IntegrationLog | None:
        logs = await self.list_logs(integration_id=integration_id, actions=[action], status=status, limit=1)
        return logs[0] if logs else None

    @abstractmethod
    async def transition_log(self, log_id: str, from_status: LogStatus, to_status: LogStatus) -> bool:
        """Conditionally move a log row between statuses.

        Returns True only if exactly one row was in ``from_status`` and is
        now in ``to_status``. Concurrent callers racing on the same row see
        exactly one winner.
        """

    @abstractmethod
    async def delete_logs_before(self, cutoff: datetime) -> int: ...

    # --- Webhooks ---

    @abstractmethod
    async def create_webhook(self, webhook: Webhook) -> Webhook: ...

    @abstractmethod
    async def get_webhook(self, webhook_id: str, organization_id: str | None = None) -> Webhook | None: ...

    @abstractmethod
    async def update_webhook(self, webhook_id: str, **changes: Any) -> Webhook | None: ...

    @abstractmethod
    async def list_webhooks(self, integration_id: str) -> list[Webhook]: ...


class InMemoryIntegrationStore(IntegrationStore):
    """Dict-backed store. Returns copies so callers cannot mutate stored rows."""

    def __init__(self):
        self._integrations: dict[str, Integration] = {}
        self._connections: dict[str, Connection] = {}
        self._logs: dict[str, IntegrationLog] = {}
        self._webhooks: dict[str, Webhook] = {}

    # --- Integrations ---

    async def create_integration(self, integration: Integration) -> Integration:
        self._integrations[integration.id] = _clone(integration)
        return _clone(integration)

    async def get_integration(self, integration_id, organization_id=None):
        row = self._integrations.get(integration_id)
        if row is None or (organization_id is not None and row.organization_id != organization_id):
            return None
        return _clone(row)

    async def update_integration(self, integration_id, **changes):
        row = self._integrations.get(integration_id)
        if row is None:
            return None
        updated = replace(row, **changes, updated_at=utcnow())
        self._integrations[integration_id] = updated
        return _clone(updated)

    async def list_integrations(self, organization_id=None, statuses=None, created_before=None):
        wanted = set(statuses) if statuses is not None else None
        rows = [
            r for r in self._integrations.values()
            if (organization_id is None or r.organization_id == organization_id)
            and (wanted is None or r.status in wanted)
            and (created_before is None or r.created_at < created_before)
        ]
        return [_clone(r) for r in sorted(rows, key=lambda r: r.created_at)]

    async def delete_integration(self, integration_id):
        if self._integrations.pop(integration_id, None) is None:
            return False
        self._connections = {k: c for k, c in self._connections.items() if c.integration_id != integration_id}
        self._webhooks = {k: w for k, w in self._webhooks.items() if w.integration_id != integration_id}
        self._logs = {k: l for k, l in self._logs.items() if l.integration_id != integration_id}
        return True

    # --- Connections ---

    def _owned(self, integration_id: str, organization_id: str | None) -> bool:
        if organization_id is None:
            return True
        integration = self._integrations.get(integration_id)
        return integration is not None and integration.organization_id == organization_id

    async def create_connection(self, connection):
        self._connections[connection.id] = _clone(connection)
        return _clone(connection)

    async def get_connection(self, connection_id, organization_id=None):
        row = self._connections.get(connection_id)
        if row is None or not self._owned(row.integration_id, organization_id):
            return None
        return _clone(row)

    async def update_connection(self, connection_id, **changes):
        row = self._connections.get(connection_id)
        if row is None:
            return None
        updated = replace(row, **changes, updated_at=utcnow())
        self._connections[connection_id] = updated
        return _clone(updated)

    async def list_connections(self, organization_id=None, integration_id=None, statuses=None):
        wanted = set(statuses) if statuses is not None else None
        rows = [
            c for c in self._connections.values()
            if self._owned(c.integration_id, organization_id)
            and (integration_id is None or c.integration_id == integration_id)
            and (wanted is None or c.status in wanted)
        ]
        return [_clone(c) for c in sorted(rows, key=lambda c: c.created_at)]

    # --- Logs ---

    async def append_log(self, log):
        self._logs[log.id] = _clone(log)
        return _clone(log)

    async def list_logs(self, integration_id=None, actions=None, status=None, before=None, limit=None):
        wanted = set(actions) if actions is not None else None
        rows = [
            l for l in self._logs.values()
            if (integration_id is None or l.integration_id == integration_id)
            and (wanted is None or l.action in wanted)
            and (status is None or l.status == status)
            and (before is None or l.timestamp < before)
        ]
        rows.sort(key=lambda l: l.timestamp, reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [_clone(l) for l in rows]

    async def transition_log(self, log_id, from_status, to_status):
        # No await between check and write: atomic on a single event loop
        row = self._logs.get(log_id)
        if row is None or row.status != from_status:
            return False
        self._logs[log_id] = replace(row, status=to_status)
        return True

    async def delete_logs_before(self, cutoff):
        stale = [k for k, l in self._logs.items() if l.timestamp < cutoff]
        for key in stale:
            del self._logs[key]
        return len(stale)

    # --- Webhooks ---

    async def create_webhook(self, webhook):
        self._webhooks[webhook.id] = _clone(webhook)
        return _clone(webhook)

    async def get_webhook(self, webhook_id, organization_id=None):
        row = self._webhooks.get(webhook_id)
        if row is None or not self._owned(row.integration_id, organization_id):
            return None
        return _clone(row)

    async def update_webhook(self, webhook_id, **changes):
        row = self._webhooks.get(webhook_id)
        if row is None:
            return None
        updated = replace(row, **changes)
        self._webhooks[webhook_id] = updated
        return _clone(updated)

    async def list_webhooks(self, integration_id):
        return [_clone(w) for w in self._webhooks.values() if w.integration_id == integration_id]

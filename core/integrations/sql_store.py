"""
SQLAlchemy-backed IntegrationStore.

One short unit of work per call (``session_scope``: commit on success,
rollback on error). Organization scoping for connections and webhooks joins
through the owning integration row. ``transition_log`` is a single
conditional UPDATE, so concurrent callers across processes see exactly one
winner.
"""
from __future__ import annotations
from dataclasses import fields
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.database import session_scope
from core.integrations.store import IntegrationStore
from core.integrations.types import utcnow
from core.models.base import column_value
from core.models.integration import ConnectionRow, IntegrationLogRow, IntegrationRow, WebhookRow


def _values(record) -> dict[str, Any]:
    return {f.name: column_value(getattr(record, f.name)) for f in fields(record)}


def _apply(row, changes: dict[str, Any]) -> None:
    for key, value in changes.items():
        if key in ("id", "created_at"):
            continue
        setattr(row, key, column_value(value))


def _statuses(statuses) -> list[str] | None:
    return [column_value(s) for s in statuses] if statuses is not None else None


class SqlAlchemyIntegrationStore(IntegrationStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._factory = session_factory

    def _session(self):
        return session_scope(self._factory)

    @staticmethod
    def _owned(stmt, model, organization_id: str | None):
        if organization_id is None:
            return stmt
        return stmt.join(IntegrationRow, IntegrationRow.id == model.integration_id).where(
            IntegrationRow.organization_id == organization_id
        )

    # --- Integrations ---

    async def create_integration(self, integration):
        async with self._session() as session:
            row = IntegrationRow(**_values(integration))
            session.add(row)
            await session.flush()
            return row.to_record()

    async def get_integration(self, integration_id, organization_id=None):
        stmt = select(IntegrationRow).where(IntegrationRow.id == integration_id)
        if organization_id is not None:
            stmt = stmt.where(IntegrationRow.organization_id == organization_id)
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return row.to_record() if row else None

    async def update_integration(self, integration_id, **changes):
        async with self._session() as session:
            row = await session.get(IntegrationRow, integration_id)
            if row is None:
                return None
            _apply(row, changes)
            row.updated_at = utcnow()
            await session.flush()
            return row.to_record()

    async def list_integrations(self, organization_id=None, statuses=None, created_before=None):
        stmt = select(IntegrationRow).order_by(IntegrationRow.created_at)
        if organization_id is not None:
            stmt = stmt.where(IntegrationRow.organization_id == organization_id)
        if statuses is not None:
            stmt = stmt.where(IntegrationRow.status.in_(_statuses(statuses)))
        if created_before is not None:
            stmt = stmt.where(IntegrationRow.created_at < created_before)
        async with self._session() as session:
            return [r.to_record() for r in (await session.execute(stmt)).scalars().all()]

    async def delete_integration(self, integration_id):
        async with self._session() as session:
            row = await session.get(IntegrationRow, integration_id)
            if row is None:
                return False
            # Explicit cascade: SQLite does not enforce ON DELETE without a pragma
            for model in (IntegrationLogRow, WebhookRow, ConnectionRow):
                await session.execute(delete(model).where(model.integration_id == integration_id))
            await session.delete(row)
            return True

    # --- Connections ---

    async def create_connection(self, connection):
        async with self._session() as session:
            row = ConnectionRow(**_values(connection))
            session.add(row)
            await session.flush()
            return row.to_record()

    async def get_connection(self, connection_id, organization_id=None):
        stmt = self._owned(select(ConnectionRow), ConnectionRow, organization_id).where(ConnectionRow.id == connection_id)
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return row.to_record() if row else None

    async def update_connection(self, connection_id, **changes):
        async with self._session() as session:
            row = await session.get(ConnectionRow, connection_id)
            if row is None:
                return None
            _apply(row, changes)
            row.updated_at = utcnow()
            await session.flush()
            return row.to_record()

    def _connection_filters(self, stmt, organization_id, integration_id, statuses):
        stmt = self._owned(stmt, ConnectionRow, organization_id)
        if integration_id is not None:
            stmt = stmt.where(ConnectionRow.integration_id == integration_id)
        if statuses is not None:
            stmt = stmt.where(ConnectionRow.status.in_(_statuses(statuses)))
        return stmt

    async def list_connections(self, organization_id=None, integration_id=None, statuses=None):
        stmt = self._connection_filters(select(ConnectionRow), organization_id, integration_id, statuses)
        async with self._session() as session:
            result = await session.execute(stmt.order_by(ConnectionRow.created_at))
            return [r.to_record() for r in result.scalars().all()]

    async def count_connections(self, integration_id, statuses=None):
        stmt = self._connection_filters(
            select(func.count()).select_from(ConnectionRow), None, integration_id, statuses,
        )
        async with self._session() as session:
            return (await session.execute(stmt)).scalar() or 0

    # --- Logs ---

    async def append_log(self, log):
        async with self._session() as session:
            row = IntegrationLogRow(**_values(log))
            session.add(row)
            await session.flush()
            return row.to_record()

    async def list_logs(self, integration_id=None, actions=None, status=None, before=None, limit=None):
        stmt = select(IntegrationLogRow).order_by(IntegrationLogRow.timestamp.desc())
        if integration_id is not None:
            stmt = stmt.where(IntegrationLogRow.integration_id == integration_id)
        if actions is not None:
            stmt = stmt.where(IntegrationLogRow.action.in_(list(actions)))
        if status is not None:
            stmt = stmt.where(IntegrationLogRow.status == column_value(status))
        if before is not None:
            stmt = stmt.where(IntegrationLogRow.timestamp < before)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session() as session:
            return [r.to_record() for r in (await session.execute(stmt)).scalars().all()]

    async def transition_log(self, log_id, from_status, to_status):
        stmt = (
            update(IntegrationLogRow)
            .where(IntegrationLogRow.id == log_id, IntegrationLogRow.status == column_value(from_status))
            .values(status=column_value(to_status))
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def delete_logs_before(self, cutoff):
        async with self._session() as session:
            result = await session.execute(delete(IntegrationLogRow).where(IntegrationLogRow.timestamp < cutoff))
            return result.rowcount or 0

    # --- Webhooks ---

    async def create_webhook(self, webhook):
        async with self._session() as session:
            row = WebhookRow(**_values(webhook))
            session.add(row)
            await session.flush()
            return row.to_record()

    async def get_webhook(self, webhook_id, organization_id=None):
        stmt = self._owned(select(WebhookRow), WebhookRow, organization_id).where(WebhookRow.id == webhook_id)
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return row.to_record() if row else None

    async def update_webhook(self, webhook_id, **changes):
        async with self._session() as session:
            row = await session.get(WebhookRow, webhook_id)
            if row is None:
                return None
            _apply(row, changes)
            await session.flush()
            return row.to_record()

    async def list_webhooks(self, integration_id):
        stmt = select(WebhookRow).where(WebhookRow.integration_id == integration_id).order_by(WebhookRow.created_at)
        async with self._session() as session:
            return [r.to_record() for r in (await session.execute(stmt)).scalars().all()]

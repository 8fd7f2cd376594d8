"""SQLAlchemy models for integration records.

Each row class mirrors one record dataclass from core.integrations.types and
converts back to it with ``to_record()``. Connection credential columns only
ever hold vault ciphertext.
"""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.integrations.types import (
    Connection,
    ConnectionStatus,
    ConnectionType,
    Integration,
    IntegrationLog,
    IntegrationStatus,
    LogStatus,
    Webhook,
    new_id,
    utcnow,
)
from core.models.base import Base, OrganizationMixin, RecordMixin, aware


class IntegrationRow(RecordMixin, OrganizationMixin, Base):
    """A configured link between an organization and a provider."""

    __tablename__ = "integrations"

    provider: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=IntegrationStatus.PENDING.value, index=True)
    last_sync: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def to_record(self) -> Integration:
        return Integration(
            id=self.id,
            organization_id=self.organization_id,
            provider=self.provider,
            name=self.name,
            type=self.type,
            category=self.category,
            config=dict(self.config or {}),
            status=IntegrationStatus(self.status),
            last_sync=aware(self.last_sync),
            last_error=self.last_error,
            created_by=self.created_by,
            created_at=aware(self.created_at),
            updated_at=aware(self.updated_at),
        )


class ConnectionRow(RecordMixin, Base):
    """One set of sealed credentials for an integration."""

    __tablename__ = "integration_connections"

    integration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    connection_type: Mapped[str] = mapped_column(String(20), nullable=False, default=ConnectionType.OAUTH.value)
    credentials: Mapped[str] = mapped_column(Text, nullable=False)
    settings: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ConnectionStatus.PENDING.value, index=True)
    scopes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_connected: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    rate_limit: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    def to_record(self) -> Connection:
        return Connection(
            id=self.id,
            integration_id=self.integration_id,
            name=self.name,
            connection_type=ConnectionType(self.connection_type),
            credentials=self.credentials,
            settings=self.settings,
            status=ConnectionStatus(self.status),
            scopes=list(self.scopes or []),
            token_expires_at=aware(self.token_expires_at),
            retry_count=self.retry_count,
            last_connected=aware(self.last_connected),
            last_error=self.last_error,
            rate_limit=dict(self.rate_limit) if self.rate_limit else None,
            created_at=aware(self.created_at),
            updated_at=aware(self.updated_at),
        )


class WebhookRow(Base):
    """A registered webhook bound to an integration."""

    __tablename__ = "integration_webhooks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    integration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    secret: Mapped[str] = mapped_column(String(128), nullable=False)
    events: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    method: Mapped[str] = mapped_column(String(10), nullable=False, default="POST")
    headers: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    retry_policy: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    timeout_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=10.0)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_triggered: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_record(self) -> Webhook:
        return Webhook(
            id=self.id,
            integration_id=self.integration_id,
            name=self.name,
            url=self.url,
            secret=self.secret,
            events=list(self.events or []),
            method=self.method,
            headers=dict(self.headers or {}),
            retry_policy=dict(self.retry_policy or {}),
            timeout_seconds=self.timeout_seconds,
            enabled=self.enabled,
            success_count=self.success_count,
            failure_count=self.failure_count,
            last_triggered=aware(self.last_triggered),
            created_at=aware(self.created_at),
        )


class IntegrationLogRow(Base):
    """Append-only audit row."""

    __tablename__ = "integration_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    integration_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("integrations.id", ondelete="CASCADE"), nullable=True, index=True
    )
    webhook_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    request_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    response_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    sealed_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actor: Mapped[str | None] = mapped_column(String(64), nullable=True)
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def to_record(self) -> IntegrationLog:
        return IntegrationLog(
            id=self.id,
            integration_id=self.integration_id,
            webhook_id=self.webhook_id,
            action=self.action,
            status=LogStatus(self.status),
            request_data=self.request_data,
            response_data=self.response_data,
            sealed_data=self.sealed_data,
            error=self.error,
            error_kind=self.error_kind,
            actor=self.actor,
            duration_ms=self.duration_ms,
            timestamp=aware(self.timestamp),
        )

"""
Integration records and result envelopes.

Records (Integration, Connection, IntegrationLog, Webhook) are what the
persistence layer stores. Result envelopes are what the services hand back
to the HTTP/CLI layer: each one carries a human-readable message or error
plus a machine-usable ``error_kind``.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid

from core.integrations.errors import error_kind, error_message


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ProviderKind(str, Enum):
    SLACK = "slack"
    SALESFORCE = "salesforce"
    JIRA = "jira"
    GOOGLE_DRIVE = "google_drive"
    STRIPE = "stripe"
    WEBHOOK = "webhook"


class IntegrationStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    INACTIVE = "inactive"


class ConnectionType(str, Enum):
    OAUTH = "oauth"
    API_KEY = "api_key"
    BASIC_AUTH = "basic_auth"
    BEARER_TOKEN = "bearer_token"
    CUSTOM = "custom"


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    EXPIRED = "expired"
    ERROR = "error"
    REFRESHING = "refreshing"
    INACTIVE = "inactive"


class LogStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    PENDING = "pending"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXPIRED = "expired"


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class Integration:
    """One configured link between an organization and a provider."""
    organization_id: str
    provider: str
    name: str = ""
    type: str = ""
    category: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    status: IntegrationStatus = IntegrationStatus.PENDING
    last_sync: datetime | None = None
    last_error: str | None = None
    created_by: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "provider": self.provider,
            "name": self.name,
            "type": self.type,
            "category": self.category,
            "status": self.status.value,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "last_error": self.last_error,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Connection:
    """One set of credentials realizing an Integration.

    ``credentials`` and ``settings`` only ever hold vault ciphertext.
    """
    integration_id: str
    credentials: str
    settings: str
    name: str = ""
    connection_type: ConnectionType = ConnectionType.OAUTH
    status: ConnectionStatus = ConnectionStatus.PENDING
    scopes: list[str] = field(default_factory=list)
    token_expires_at: datetime | None = None
    retry_count: int = 0
    last_connected: datetime | None = None
    last_error: str | None = None
    rate_limit: dict[str, Any] | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class IntegrationLog:
    """Append-only audit row.

    ``sealed_data`` holds a vault ciphertext for snapshots that must not be
    stored in the clear (OAuth state, client secrets).
    """
    integration_id: str | None
    action: str
    status: LogStatus
    webhook_id: str | None = None
    request_data: dict[str, Any] | None = None
    response_data: dict[str, Any] | None = None
    sealed_data: str | None = None
    error: str | None = None
    error_kind: str | None = None
    actor: str | None = None
    duration_ms: float | None = None
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class Webhook:
    """A registered notification target bound to an Integration."""
    integration_id: str
    url: str
    secret: str
    name: str = ""
    events: list[str] = field(default_factory=list)  # empty = all events
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    retry_policy: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: float = 10.0
    enabled: bool = True
    success_count: int = 0
    failure_count: int = 0
    last_triggered: datetime | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Provider results
# ---------------------------------------------------------------------------

@dataclass
class RateLimitInfo:
    remaining: int
    limit: int
    reset_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
        }


@dataclass
class ConnectionTestResult:
    success: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    capabilities: list[str] = field(default_factory=list)
    rate_limit: RateLimitInfo | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "capabilities": list(self.capabilities),
            "rate_limit": self.rate_limit.to_dict() if self.rate_limit else None,
            "error_kind": self.error_kind,
        }


@dataclass
class AuthorizationUrl:
    url: str
    state: str
    code_verifier: str | None = None


@dataclass
class ResourceCounts:
    """Counts from syncing one resource type."""
    processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0


@dataclass
class SyncError:
    record: str
    error: str
    error_kind: str = "error"


@dataclass
class SyncResult:
    success: bool
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_deleted: int = 0
    errors: list[SyncError] = field(default_factory=list)
    resources: dict[str, ResourceCounts] = field(default_factory=dict)
    duration_ms: float = 0.0
    next_sync_at: datetime | None = None

    @classmethod
    def failed(cls, error: str, error_kind: str = "error", duration_ms: float = 0.0) -> "SyncResult":
        return cls(
            success=False,
            errors=[SyncError(record="sync", error=error, error_kind=error_kind)],
            duration_ms=duration_ms,
        )

    def add(self, resource: str, counts: ResourceCounts) -> None:
        self.resources[resource] = counts
        self.records_processed += counts.processed
        self.records_created += counts.created
        self.records_updated += counts.updated
        self.records_deleted += counts.deleted

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "records_processed": self.records_processed,
            "records_created": self.records_created,
            "records_updated": self.records_updated,
            "records_deleted": self.records_deleted,
            "errors": [{"record": e.record, "error": e.error, "error_kind": e.error_kind} for e in self.errors],
            "duration_ms": round(self.duration_ms, 1),
            "next_sync_at": self.next_sync_at.isoformat() if self.next_sync_at else None,
        }


@dataclass
class WebhookProcessing:
    """Provider-normalized inbound event."""
    processed: bool
    data: dict[str, Any] | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Service results
# ---------------------------------------------------------------------------

@dataclass
class OperationResult:
    success: bool
    connection_id: str | None = None
    error: str | None = None
    error_kind: str | None = None

    @classmethod
    def failure(cls, exc: BaseException, connection_id: str | None = None) -> "OperationResult":
        return cls(
            success=False,
            connection_id=connection_id,
            error=error_message(exc),
            error_kind=error_kind(exc),
        )


@dataclass
class AuthorizationStart:
    auth_url: str
    state: str
    integration_id: str

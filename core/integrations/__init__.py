"""
Integration hub core: connection lifecycle for third-party providers.

- Provider / ProviderRegistry: per-service protocol specifics
- CredentialVault: AES-256-GCM sealing, key versioning, rotation
- OAuthOrchestrator: authorization-code flow with CSRF state
- CredentialManager: direct API key / basic / bearer credentials
- ConnectionHealthService: bounded-concurrency connection tests
- SyncOrchestrator: per-resource partial-failure sync
- WebhookDispatcher: inbound verification, outbound signed delivery
- IntegrationHub: wires all of the above

The SQL store lives in ``core.integrations.sql_store`` and is imported
explicitly by deployments that use it.
"""
from core.integrations.audit import AuditTrail
from core.integrations.credentials import CredentialManager
from core.integrations.errors import (
    AuthenticationFailed,
    IntegrationError,
    InvalidFormat,
    NoRefreshToken,
    NotFound,
    NotSupported,
    ProviderHttpError,
    ProviderTimeoutError,
    RateLimited,
    StateMismatch,
    UnsupportedAction,
    UnsupportedOperation,
    ValidationError,
)
from core.integrations.health import ConnectionHealthService
from core.integrations.hub import IntegrationHub
from core.integrations.oauth import OAuthOrchestrator
from core.integrations.providers import BUILTIN_PROVIDERS, Provider
from core.integrations.registry import ProviderRegistry
from core.integrations.signatures import SignatureScheme, verify_signature
from core.integrations.store import InMemoryIntegrationStore, IntegrationStore
from core.integrations.sync import SyncOrchestrator
from core.integrations.types import (
    Connection,
    ConnectionStatus,
    ConnectionTestResult,
    ConnectionType,
    Integration,
    IntegrationLog,
    IntegrationStatus,
    LogStatus,
    OperationResult,
    SyncMode,
    SyncResult,
    Webhook,
)
from core.integrations.vault import CredentialVault
from core.integrations.webhooks import WebhookDelivery, WebhookDispatcher

__all__ = [
    # Services
    "AuditTrail",
    "ConnectionHealthService",
    "CredentialManager",
    "CredentialVault",
    "IntegrationHub",
    "OAuthOrchestrator",
    "SyncOrchestrator",
    "WebhookDispatcher",
    # Providers
    "BUILTIN_PROVIDERS",
    "Provider",
    "ProviderRegistry",
    "SignatureScheme",
    "verify_signature",
    # Persistence
    "InMemoryIntegrationStore",
    "IntegrationStore",
    # Records and results
    "Connection",
    "ConnectionStatus",
    "ConnectionTestResult",
    "ConnectionType",
    "Integration",
    "IntegrationLog",
    "IntegrationStatus",
    "LogStatus",
    "OperationResult",
    "SyncMode",
    "SyncResult",
    "Webhook",
    "WebhookDelivery",
    # Errors
    "AuthenticationFailed",
    "IntegrationError",
    "InvalidFormat",
    "NoRefreshToken",
    "NotFound",
    "NotSupported",
    "ProviderHttpError",
    "ProviderTimeoutError",
    "RateLimited",
    "StateMismatch",
    "UnsupportedAction",
    "UnsupportedOperation",
    "ValidationError",
]

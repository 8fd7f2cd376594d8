"""Shared fixtures: a stub provider, test settings and a wired hub."""
import asyncio
import time

import pytest

from core.config import HealthSettings, HubSettings, VaultSettings
from core.integrations.errors import ProviderHttpError
from core.integrations.hub import IntegrationHub
from core.integrations.providers.base import Provider
from core.integrations.registry import ProviderRegistry
from core.integrations.types import (
    ConnectionTestResult,
    ConnectionType,
    Integration,
    IntegrationStatus,
    ResourceCounts,
)

MASTER_KEY = "test-master-key-0123456789abcdef"
ORG = "org-1"
OTHER_ORG = "org-2"
STUB_CONFIG = {
    "client_id": "stub-client",
    "client_secret": "stub-secret",
    "redirect_uri": "https://app.example.com/oauth/callback",
}


class StubProvider(Provider):
    """In-process provider that records calls and tracks concurrent tests."""

    key = "stub"
    name = "Stub"
    type = "testing"
    category = "testing"
    supported_features = ("channels", "users")
    default_features = ("channels", "users")
    authorize_url = "https://stub.example.com/authorize"
    token_url = "https://stub.example.com/token"
    default_scopes = ("read", "write")
    write_scopes = ("write",)
    webhook_events = ("thing.created", "thing.deleted")

    def __init__(self, test_ok=True, failing_resources=(), delay=0.0):
        super().__init__()
        self.test_ok = test_ok
        self.failing_resources = set(failing_resources)
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.test_calls = 0
        self.exchanged = []
        self.refreshed = []
        self.revoked = []

    async def _test(self, credentials, cfg):
        self.test_calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        if not self.test_ok:
            return ConnectionTestResult(success=False, message="invalid_auth", error_kind="authentication_failed")
        return ConnectionTestResult(success=True, message="Connected to stub", capabilities=list(self.supported_features))

    async def exchange_code(self, code, state, config, code_verifier=None):
        self.exchanged.append(code)
        if code != "good-code":
            raise ProviderHttpError(400, {"error": "invalid_grant"}, "Stub returned HTTP 400: invalid_grant")
        return {
            "access_token": "stub-access-token",
            "refresh_token": "stub-refresh-token",
            "expires_at": int(time.time()) + 3600,
            "scope": "read write",
            "token_type": "Bearer",
        }

    async def refresh_tokens(self, refresh_token, config):
        self.refreshed.append(refresh_token)
        return {
            "access_token": "stub-access-token-2",
            "refresh_token": None,
            "expires_at": int(time.time()) + 7200,
            "scope": "read write",
        }

    async def revoke_tokens(self, credentials, config):
        self.revoked.append(credentials.get("access_token"))

    def resource_syncers(self):
        return {"channels": self._sync_channels, "users": self._sync_users}

    async def _sync_channels(self, credentials, cfg, since, options):
        if "channels" in self.failing_resources:
            raise ProviderHttpError(500, None, "channels exploded")
        return ResourceCounts(processed=3, created=3)

    async def _sync_users(self, credentials, cfg, since, options):
        if "users" in self.failing_resources:
            raise ProviderHttpError(500, None, "users exploded")
        return ResourceCounts(processed=5, created=2, updated=3)


@pytest.fixture
def settings():
    return HubSettings(
        vault=VaultSettings(master_key=MASTER_KEY),
        health=HealthSettings(concurrency=5, batch_delay_seconds=0),
    )


@pytest.fixture
def stub():
    return StubProvider()


@pytest.fixture
def hub(settings, stub):
    return IntegrationHub.create(settings=settings, registry=ProviderRegistry([stub]))


@pytest.fixture
def connect(hub):
    """Create an active stub integration with one connected connection."""

    async def _connect(org=ORG, credentials=None, config=None):
        integration = await hub.store.create_integration(Integration(
            organization_id=org,
            provider="stub",
            name="Stub Integration",
            config=dict(config or {}),
            status=IntegrationStatus.ACTIVE,
        ))
        result = await hub.credentials.store_credentials(
            integration.id,
            credentials or {"access_token": "tok-1", "refresh_token": "ref-1", "scope": "read write"},
            ConnectionType.OAUTH,
            org,
        )
        assert result.success, result.error
        return integration, result.connection_id

    return _connect

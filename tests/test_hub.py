"""Test settings, the error taxonomy and the hub facade."""
from datetime import timedelta

import pytest

from core.config import HealthSettings, HubSettings, VaultSettings
from core.integrations.errors import (
    IntegrationError,
    NotFound,
    ProviderTimeoutError,
    RateLimited,
    StateMismatch,
    UnsupportedAction,
    ValidationError,
    error_kind,
    error_message,
    log_status_for,
)
from core.integrations.hub import IntegrationHub
from core.integrations.types import ConnectionStatus, IntegrationLog, LogStatus, utcnow

from conftest import ORG, OTHER_ORG


# --- Settings ---

def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("INTEGRATION_ENCRYPTION_KEY", "env-key")
    monkeypatch.setenv("ENCRYPTION_KEY_VERSION", "3")
    monkeypatch.setenv("INTEGRATION_PREVIOUS_KEYS", "1:first, 2:second")
    monkeypatch.setenv("HEALTH_CHECK_CONCURRENCY", "2")
    monkeypatch.setenv("WEBHOOK_TIMESTAMP_TOLERANCE", "300")

    settings = HubSettings.from_env()
    assert settings.vault.master_key == "env-key"
    assert settings.vault.key_version == 3
    assert settings.vault.previous_keys == ((1, "first"), (2, "second"))
    assert settings.health.concurrency == 2
    assert settings.webhooks.timestamp_tolerance_seconds == 300
    assert settings.oauth.state_ttl_minutes == 30


def test_settings_from_env_without_key(monkeypatch):
    monkeypatch.delenv("INTEGRATION_ENCRYPTION_KEY", raising=False)
    monkeypatch.delenv("INTEGRATION_PREVIOUS_KEYS", raising=False)
    monkeypatch.delenv("ENCRYPTION_KEY_VERSION", raising=False)
    assert len(HubSettings.from_env().vault.master_key) == 64


@pytest.mark.parametrize(
    "kwargs",
    [
        {"master_key": ""},
        {"master_key": "k", "key_version": 0},
        {"master_key": "k", "key_version": 2, "previous_keys": ((2, "old"),)},
    ],
)
def test_vault_settings_validation(kwargs):
    with pytest.raises(ValueError):
        VaultSettings(**kwargs)


def test_health_settings_validation():
    with pytest.raises(ValueError):
        HealthSettings(concurrency=0)
    with pytest.raises(ValueError):
        HealthSettings(batch_delay_seconds=-1)


def test_malformed_previous_keys(monkeypatch):
    monkeypatch.setenv("INTEGRATION_ENCRYPTION_KEY", "env-key")
    monkeypatch.setenv("ENCRYPTION_KEY_VERSION", "2")
    monkeypatch.setenv("INTEGRATION_PREVIOUS_KEYS", "no-separator")
    with pytest.raises(ValueError):
        HubSettings.from_env()


# --- Errors ---

def test_error_kinds():
    assert error_kind(StateMismatch("x")) == "state_mismatch"
    assert error_kind(RateLimited()) == "rate_limited"
    assert error_kind(KeyError("k")) == "internal"
    assert error_message(IntegrationError()) == "IntegrationError"
    assert error_message(RuntimeError()) == "RuntimeError"
    assert ValidationError("bad").errors == ["bad"]


def test_log_status_mapping():
    assert log_status_for(ProviderTimeoutError()) == "timeout"
    assert log_status_for(RateLimited()) == "rate_limited"
    assert log_status_for(NotFound("x")) == "error"


# --- Hub ---

def test_create_with_builtins(settings):
    hub = IntegrationHub.create(settings=settings)
    assert hub.registry.provider_count == 6
    assert hub.oauth.vault is hub.vault
    assert hub.sync.store is hub.store


@pytest.mark.asyncio
async def test_get_and_list_integrations(hub, connect):
    integration, _ = await connect()
    await connect(org=OTHER_ORG)
    assert [i.id for i in await hub.list_integrations(ORG)] == [integration.id]
    assert (await hub.get_integration(integration.id, ORG)).provider == "stub"
    with pytest.raises(NotFound):
        await hub.get_integration(integration.id, OTHER_ORG)


@pytest.mark.asyncio
async def test_delete_integration_revokes_connections(hub, stub, connect):
    integration, connection_id = await connect()
    assert await hub.delete_integration(integration.id, ORG, actor="admin")
    assert stub.revoked == ["tok-1"]
    assert await hub.store.get_integration(integration.id) is None
    assert await hub.store.get_connection(connection_id) is None


@pytest.mark.asyncio
async def test_execute_action(hub, stub, connect, monkeypatch):
    integration, _ = await connect()

    async def ping(credentials, cfg, params):
        return {"pong": params["n"], "token": credentials["access_token"]}

    monkeypatch.setattr(stub, "actions", lambda: {"ping": ping})
    result = await hub.execute_action(integration.id, "ping", {"n": 1}, ORG, actor="u1")
    assert result == {"pong": 1, "token": "tok-1"}
    [row] = await hub.store.list_logs(actions=["action_ping"])
    assert row.status == LogStatus.SUCCESS

    with pytest.raises(UnsupportedAction):
        await hub.execute_action(integration.id, "launch", {}, ORG)
    [failed] = await hub.store.list_logs(actions=["action_launch"])
    assert failed.error_kind == "unsupported_action"


@pytest.mark.asyncio
async def test_execute_action_without_connection(hub, connect):
    integration, connection_id = await connect()
    await hub.store.update_connection(connection_id, status=ConnectionStatus.INACTIVE)
    with pytest.raises(NotFound, match="No active connection"):
        await hub.execute_action(integration.id, "ping", {}, ORG)


@pytest.mark.asyncio
async def test_run_maintenance(hub, connect):
    await hub.oauth.begin_authorization("stub", {"client_id": "c"}, ORG)
    await connect()
    old = IntegrationLog(integration_id=None, action="old", status=LogStatus.SUCCESS)
    old.timestamp = utcnow() - timedelta(days=120)
    await hub.store.append_log(old)

    report = await hub.run_maintenance([ORG])
    assert report["oauth"] == {"states_expired": 0, "integrations_expired": 0}
    assert report["logs_purged"] == 1
    assert report["rotation"] == {ORG: {"rotated": 0, "failed": 0, "errors": []}}


class RecordingSpan:
    def __init__(self, name, attributes):
        self.name = name
        self.attributes = dict(attributes)
        self.ended = False

    def set_attribute(self, key, value):
        self.attributes[key] = value

    def end(self):
        self.ended = True


class RecordingTracer:
    def __init__(self):
        self.spans = []

    def start_span(self, name, attributes=None):
        span = RecordingSpan(name, attributes or {})
        self.spans.append(span)
        return span


@pytest.mark.asyncio
async def test_operations_emit_spans(hub, connect):
    tracer = RecordingTracer()
    hub.sync._tracer = tracer
    hub.health._tracer = tracer
    integration, connection_id = await connect()

    await hub.sync.sync(integration.id, ORG)
    await hub.health.test_one(connection_id, ORG)

    sync_span, health_span = tracer.spans
    assert sync_span.name == "integration.sync.run"
    assert sync_span.attributes["integration.provider"] == "stub"
    assert sync_span.attributes["sync.records_processed"] == 8
    assert health_span.name == "integration.health.test_connection"
    assert health_span.attributes["connection.id"] == connection_id
    assert all(span.ended for span in tracer.spans)
    # No credentials leak into span attributes
    assert "tok-1" not in str([span.attributes for span in tracer.spans])


def test_setup_otel_without_sdk_or_with_tracer():
    from core.observability.otel_setup import setup_otel

    tracer = setup_otel("integration-hub-tests")
    assert tracer is None or hasattr(tracer, "start_span")

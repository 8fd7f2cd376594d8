"""Test the OAuth authorization-code lifecycle."""
import asyncio
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from core.integrations.errors import NoRefreshToken, ProviderHttpError, UnsupportedOperation, ValidationError
from core.integrations.hub import IntegrationHub
from core.integrations.oauth import OAUTH_INITIATED, states_match
from core.integrations.providers import SlackProvider, WebhookSinkProvider
from core.integrations.registry import ProviderRegistry
from core.integrations.types import (
    ConnectionStatus,
    IntegrationStatus,
    LogStatus,
    utcnow,
)

from conftest import ORG, OTHER_ORG, STUB_CONFIG


async def begin(hub):
    return await hub.oauth.begin_authorization("stub", STUB_CONFIG, ORG, user_id="user-1")


async def attempts(hub, integration_id):
    return await hub.store.list_logs(integration_id=integration_id, actions=[OAUTH_INITIATED])


def test_states_match():
    assert states_match("abc", "abc")
    assert not states_match("abc", "abd")
    assert not states_match("abc", "ab")
    assert not states_match(None, "abc")
    assert not states_match("", "")


# --- begin_authorization ---

@pytest.mark.asyncio
async def test_begin_creates_pending_integration(hub):
    start = await begin(hub)
    params = parse_qs(urlparse(start.auth_url).query)
    assert start.auth_url.startswith("https://stub.example.com/authorize?")
    assert params["state"] == [start.state]
    assert len(start.state) == 64

    integration = await hub.store.get_integration(start.integration_id, ORG)
    assert integration.status == IntegrationStatus.PENDING
    assert integration.name == "Stub Integration"
    assert integration.created_by == "user-1"

    [log] = await attempts(hub, start.integration_id)
    assert log.status == LogStatus.PENDING
    # The state is only stored sealed
    assert start.state not in str(log.request_data)
    assert hub.audit.unseal(log)["state"] == start.state


@pytest.mark.asyncio
async def test_begin_rejects_bad_config_without_creating_rows(hub):
    with pytest.raises(ValidationError):
        await hub.oauth.begin_authorization("stub", {**STUB_CONFIG, "features": ["teleport"]}, ORG)
    with pytest.raises(ValidationError):
        await hub.oauth.begin_authorization("stub", {"redirect_uri": "https://x"}, ORG)
    assert await hub.store.list_integrations(organization_id=ORG) == []


@pytest.mark.asyncio
async def test_begin_rejects_non_oauth_provider(settings):
    hub = IntegrationHub.create(settings=settings, registry=ProviderRegistry([WebhookSinkProvider()]))
    with pytest.raises(UnsupportedOperation):
        await hub.oauth.begin_authorization("webhook", {}, ORG)


@pytest.mark.asyncio
async def test_validate_state_does_not_consume(hub):
    start = await begin(hub)
    assert await hub.oauth.validate_state(start.integration_id, start.state, ORG)
    assert await hub.oauth.validate_state(start.integration_id, start.state, ORG)
    assert not await hub.oauth.validate_state(start.integration_id, "0" * 64, ORG)
    assert not await hub.oauth.validate_state(start.integration_id, start.state, OTHER_ORG)


# --- handle_callback ---

@pytest.mark.asyncio
async def test_callback_success(hub, stub):
    start = await begin(hub)
    result = await hub.oauth.handle_callback(start.integration_id, "good-code", start.state, ORG)
    assert result.success, result.error
    assert stub.exchanged == ["good-code"]

    integration = await hub.store.get_integration(start.integration_id, ORG)
    assert integration.status == IntegrationStatus.ACTIVE

    connection = await hub.store.get_connection(result.connection_id, ORG)
    assert connection.status == ConnectionStatus.CONNECTED
    assert connection.scopes == ["read", "write"]
    assert connection.token_expires_at is not None
    assert hub.vault.decrypt(connection.credentials)["access_token"] == "stub-access-token"

    [log] = await attempts(hub, start.integration_id)
    assert log.status == LogStatus.COMPLETED
    [completed] = await hub.store.list_logs(integration_id=start.integration_id, actions=["oauth_completed"])
    assert completed.response_data["connection_id"] == result.connection_id


@pytest.mark.asyncio
async def test_callback_state_mismatch(hub, stub):
    start = await begin(hub)
    result = await hub.oauth.handle_callback(start.integration_id, "good-code", "f" * 64, ORG)
    assert not result.success
    assert result.error_kind == "state_mismatch"
    assert stub.exchanged == []

    # The genuine state still works afterwards
    [log] = await attempts(hub, start.integration_id)
    assert log.status == LogStatus.PENDING
    retry = await hub.oauth.handle_callback(start.integration_id, "good-code", start.state, ORG)
    assert retry.success


@pytest.mark.asyncio
async def test_callback_cannot_be_replayed(hub, stub):
    start = await begin(hub)
    first = await hub.oauth.handle_callback(start.integration_id, "good-code", start.state, ORG)
    second = await hub.oauth.handle_callback(start.integration_id, "good-code", start.state, ORG)
    assert first.success
    assert not second.success
    assert second.error_kind == "authentication_failed"
    assert stub.exchanged == ["good-code"]
    assert len(await hub.store.list_connections(integration_id=start.integration_id)) == 1


@pytest.mark.asyncio
async def test_concurrent_callbacks_claim_state_once(hub, stub):
    start = await begin(hub)
    results = await asyncio.gather(*(
        hub.oauth.handle_callback(start.integration_id, "good-code", start.state, ORG) for _ in range(3)
    ))
    assert sum(r.success for r in results) == 1
    assert len(stub.exchanged) == 1
    assert len(await hub.store.list_connections(integration_id=start.integration_id)) == 1


@pytest.mark.asyncio
async def test_callback_expired_state(hub, stub):
    start = await begin(hub)
    hub.oauth._clock = lambda: utcnow() + timedelta(minutes=31)

    result = await hub.oauth.handle_callback(start.integration_id, "good-code", start.state, ORG)
    assert not result.success
    assert result.error == "OAuth state expired"
    assert stub.exchanged == []
    [log] = await attempts(hub, start.integration_id)
    assert log.status == LogStatus.EXPIRED


@pytest.mark.asyncio
async def test_callback_from_other_organization(hub, stub):
    start = await begin(hub)
    result = await hub.oauth.handle_callback(start.integration_id, "good-code", start.state, OTHER_ORG)
    assert not result.success
    assert result.error_kind == "not_found"
    assert stub.exchanged == []

    [error_row] = await hub.store.list_logs(actions=["oauth_error"])
    assert error_row.integration_id is None
    integration = await hub.store.get_integration(start.integration_id, ORG)
    assert integration.status == IntegrationStatus.PENDING


@pytest.mark.asyncio
async def test_callback_exchange_failure_consumes_state(hub, stub):
    start = await begin(hub)
    result = await hub.oauth.handle_callback(start.integration_id, "bad-code", start.state, ORG)
    assert not result.success
    assert result.error_kind == "provider_http"

    [log] = await attempts(hub, start.integration_id)
    assert log.status == LogStatus.COMPLETED
    [error_row] = await hub.store.list_logs(integration_id=start.integration_id, actions=["oauth_error"])
    assert error_row.error_kind == "provider_http"


@pytest.mark.asyncio
async def test_callback_failed_connection_test(hub, stub):
    stub.test_ok = False
    start = await begin(hub)
    result = await hub.oauth.handle_callback(start.integration_id, "good-code", start.state, ORG)
    assert not result.success
    assert result.error == "invalid_auth"

    integration = await hub.store.get_integration(start.integration_id, ORG)
    assert integration.status == IntegrationStatus.ERROR
    assert integration.last_error == "invalid_auth"
    assert await hub.store.list_connections(integration_id=start.integration_id) == []
    assert await hub.store.list_logs(integration_id=start.integration_id, actions=["oauth_failed"])


@pytest.mark.asyncio
async def test_slack_end_to_end(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/oauth.v2.access":
            return httpx.Response(200, json={
                "ok": True,
                "access_token": "xoxb-live",
                "scope": "channels:read,chat:write",
                "team": {"id": "T1", "name": "Acme"},
                "bot_user_id": "B1",
            })
        if request.url.path == "/api/auth.test":
            return httpx.Response(200, json={"ok": True, "user": "bot", "user_id": "B1"})
        if request.url.path == "/api/team.info":
            return httpx.Response(200, json={"ok": True, "team": {"name": "Acme"}})
        return httpx.Response(404)

    registry = ProviderRegistry([SlackProvider(transport=httpx.MockTransport(handler))])
    hub = IntegrationHub.create(settings=settings, registry=registry)

    start = await hub.oauth.begin_authorization("slack", STUB_CONFIG, ORG)
    assert start.auth_url.startswith("https://slack.com/oauth/v2/authorize?")
    result = await hub.oauth.handle_callback(start.integration_id, "code-1", start.state, ORG)
    assert result.success, result.error

    connection = await hub.store.get_connection(result.connection_id, ORG)
    assert connection.scopes == ["channels:read", "chat:write"]
    credentials = hub.vault.decrypt(connection.credentials)
    assert credentials["team_id"] == "T1"
    assert credentials["bot_user_id"] == "B1"


# --- Cleanup ---

@pytest.mark.asyncio
async def test_cleanup_expired_states(hub):
    stale = await begin(hub)
    assert await hub.oauth.cleanup_expired_states() == {"states_expired": 0, "integrations_expired": 0}

    hub.oauth._clock = lambda: utcnow() + timedelta(minutes=31)
    counts = await hub.oauth.cleanup_expired_states()
    assert counts == {"states_expired": 1, "integrations_expired": 1}

    integration = await hub.store.get_integration(stale.integration_id, ORG)
    assert integration.status == IntegrationStatus.EXPIRED
    [log] = await attempts(hub, stale.integration_id)
    assert log.status == LogStatus.EXPIRED

    assert await hub.oauth.cleanup_expired_states() == {"states_expired": 0, "integrations_expired": 0}


# --- Refresh and revoke ---

@pytest.mark.asyncio
async def test_refresh_merges_credentials(hub, stub, connect):
    _, connection_id = await connect()
    result = await hub.oauth.refresh_tokens(connection_id, ORG)
    assert result.success
    assert stub.refreshed == ["ref-1"]

    connection = await hub.store.get_connection(connection_id, ORG)
    assert connection.status == ConnectionStatus.CONNECTED
    credentials = hub.vault.decrypt(connection.credentials)
    assert credentials["access_token"] == "stub-access-token-2"
    # The provider sent no new refresh token; the old one is kept
    assert credentials["refresh_token"] == "ref-1"
    assert await hub.store.list_logs(actions=["tokens_refreshed"])


@pytest.mark.asyncio
async def test_refresh_without_refresh_token(hub, stub, connect):
    _, connection_id = await connect(credentials={"access_token": "only-access"})
    with pytest.raises(NoRefreshToken):
        await hub.oauth.refresh_tokens(connection_id, ORG)
    assert stub.refreshed == []
    connection = await hub.store.get_connection(connection_id, ORG)
    assert connection.status == ConnectionStatus.CONNECTED
    [row] = await hub.store.list_logs(actions=["token_refresh_failed"])
    assert row.error_kind == "no_refresh_token"


@pytest.mark.asyncio
async def test_refresh_failure_marks_connection_error(hub, stub, connect, monkeypatch):
    _, connection_id = await connect()

    async def rejected(refresh_token, config):
        raise ProviderHttpError(400, {"error": "invalid_grant"}, "Stub returned HTTP 400: invalid_grant")

    monkeypatch.setattr(stub, "refresh_tokens", rejected)
    with pytest.raises(ProviderHttpError):
        await hub.oauth.refresh_tokens(connection_id, ORG)

    connection = await hub.store.get_connection(connection_id, ORG)
    assert connection.status == ConnectionStatus.ERROR
    assert "invalid_grant" in connection.last_error
    assert hub.vault.decrypt(connection.credentials)["access_token"] == "tok-1"


@pytest.mark.asyncio
async def test_revoke_connection(hub, stub, connect):
    integration, connection_id = await connect()
    result = await hub.oauth.revoke_connection(connection_id, ORG, actor="user-1")
    assert result.success
    assert stub.revoked == ["tok-1"]

    connection = await hub.store.get_connection(connection_id, ORG)
    assert connection.status == ConnectionStatus.INACTIVE
    assert hub.vault.decrypt(connection.credentials) == {}
    assert (await hub.store.get_integration(integration.id, ORG)).status == IntegrationStatus.INACTIVE

    [row] = await hub.store.list_logs(actions=["connection_revoked"])
    assert row.response_data == {"revoked": True, "provider_revoked": True}
    assert row.actor == "user-1"


@pytest.mark.asyncio
async def test_revoke_survives_provider_failure(hub, stub, connect, monkeypatch):
    _, connection_id = await connect()

    async def broken(credentials, config):
        raise ProviderHttpError(503, None, "Stub returned HTTP 503")

    monkeypatch.setattr(stub, "revoke_tokens", broken)
    result = await hub.oauth.revoke_connection(connection_id, ORG)
    assert result.success
    connection = await hub.store.get_connection(connection_id, ORG)
    assert connection.status == ConnectionStatus.INACTIVE


@pytest.mark.asyncio
async def test_revoke_unknown_or_foreign_connection(hub, connect):
    _, connection_id = await connect()
    assert (await hub.oauth.revoke_connection("missing", ORG)).error_kind == "not_found"
    assert (await hub.oauth.revoke_connection(connection_id, OTHER_ORG)).error_kind == "not_found"
    connection = await hub.store.get_connection(connection_id, ORG)
    assert connection.status == ConnectionStatus.CONNECTED

"""Test direct credential submission, reads, updates and deletion."""
import pytest

from core.config import HubSettings, VaultSettings
from core.integrations.errors import NotFound, ProviderTimeoutError, ValidationError
from core.integrations.hub import IntegrationHub
from core.integrations.registry import ProviderRegistry
from core.integrations.schemas import validate_credentials
from core.integrations.types import ConnectionStatus, ConnectionType, Integration, IntegrationStatus, LogStatus

from conftest import MASTER_KEY, ORG, OTHER_ORG, StubProvider


async def pending_integration(hub, org=ORG):
    return await hub.store.create_integration(Integration(organization_id=org, provider="stub", name="Stub"))


@pytest.mark.parametrize(
    "connection_type, credentials",
    [
        ("oauth", {"access_token": "t"}),
        ("api_key", {"api_key": "k"}),
        ("api_key", {"apiKey": "k"}),
        ("basic_auth", {"username": "u", "password": "p"}),
        ("bearer_token", {"token": "t"}),
        ("custom", {"anything": "goes"}),
    ],
)
def test_validate_credentials_accepts(connection_type, credentials):
    assert validate_credentials(connection_type, credentials) == credentials


@pytest.mark.parametrize(
    "connection_type, credentials",
    [
        ("oauth", {}),
        ("oauth", {"access_token": ""}),
        ("api_key", {"key": "k"}),
        ("basic_auth", {"username": "u"}),
        ("bearer_token", {}),
        ("telepathy", {"x": 1}),
        ("custom", ["not", "a", "map"]),
    ],
)
def test_validate_credentials_rejects(connection_type, credentials):
    with pytest.raises(ValidationError):
        validate_credentials(connection_type, credentials)


@pytest.mark.asyncio
async def test_store_credentials_activates_integration(hub):
    integration = await pending_integration(hub)
    result = await hub.credentials.store_credentials(integration.id, {"api_key": "sk-1"}, "api_key", ORG, actor="u1")
    assert result.success

    connection = await hub.store.get_connection(result.connection_id, ORG)
    assert connection.status == ConnectionStatus.CONNECTED
    assert connection.connection_type == ConnectionType.API_KEY
    assert "sk-1" not in connection.credentials
    assert hub.vault.decrypt(connection.settings)["connection_type"] == "api_key"
    assert (await hub.store.get_integration(integration.id, ORG)).status == IntegrationStatus.ACTIVE

    [row] = await hub.store.list_logs(actions=["credentials_stored"])
    assert row.actor == "u1"
    assert "sk-1" not in str(row.request_data) + str(row.response_data)


@pytest.mark.asyncio
async def test_store_credentials_invalid_shape(hub):
    integration = await pending_integration(hub)
    result = await hub.credentials.store_credentials(integration.id, {"username": "u"}, "basic_auth", ORG)
    assert not result.success
    assert result.error_kind == "validation"
    assert await hub.store.list_connections(integration_id=integration.id) == []


@pytest.mark.asyncio
async def test_store_credentials_failing_test_keeps_error_row(hub, stub):
    stub.test_ok = False
    integration = await pending_integration(hub)
    result = await hub.credentials.store_credentials(integration.id, {"token": "t"}, "bearer_token", ORG)
    assert not result.success
    assert result.error == "Connection test failed: invalid_auth"

    connection = await hub.store.get_connection(result.connection_id, ORG)
    assert connection.status == ConnectionStatus.ERROR
    assert connection.last_error == "invalid_auth"
    assert (await hub.store.get_integration(integration.id, ORG)).status == IntegrationStatus.PENDING


@pytest.mark.asyncio
async def test_store_credentials_unknown_integration(hub):
    integration = await pending_integration(hub, org=OTHER_ORG)
    result = await hub.credentials.store_credentials(integration.id, {"api_key": "k"}, "api_key", ORG)
    assert result.error_kind == "not_found"


@pytest.mark.asyncio
async def test_get_credentials(hub, connect):
    _, connection_id = await connect()
    assert (await hub.credentials.get_credentials(connection_id, ORG))["access_token"] == "tok-1"
    assert await hub.credentials.get_credentials(connection_id, OTHER_ORG) is None
    assert await hub.credentials.get_credentials("missing", ORG) is None

    await hub.store.update_connection(connection_id, status=ConnectionStatus.INACTIVE)
    assert await hub.credentials.get_credentials(connection_id, ORG) is None


@pytest.mark.asyncio
async def test_get_credentials_rotates_old_key_version(hub, connect):
    _, connection_id = await connect()
    upgraded = IntegrationHub.create(
        store=hub.store,
        settings=HubSettings(vault=VaultSettings(
            master_key="second-generation-key", key_version=2, previous_keys=((1, MASTER_KEY),),
        )),
        registry=ProviderRegistry([StubProvider()]),
    )
    assert (await upgraded.credentials.get_credentials(connection_id, ORG))["access_token"] == "tok-1"

    connection = await hub.store.get_connection(connection_id, ORG)
    _, version = upgraded.vault.decrypt_with_version(connection.credentials)
    assert version == 2


@pytest.mark.asyncio
async def test_update_credentials(hub, stub, connect):
    _, connection_id = await connect()
    result = await hub.credentials.update_credentials(
        connection_id, {"access_token": "tok-2", "scope": "read"}, ORG,
    )
    assert result.success
    connection = await hub.store.get_connection(connection_id, ORG)
    assert hub.vault.decrypt(connection.credentials)["access_token"] == "tok-2"
    assert connection.scopes == ["read"]
    assert "updated_at" in hub.vault.decrypt(connection.settings)


@pytest.mark.asyncio
async def test_update_credentials_keeps_old_on_failed_test(hub, stub, connect):
    _, connection_id = await connect()
    stub.test_ok = False
    result = await hub.credentials.update_credentials(connection_id, {"access_token": "tok-2"}, ORG)
    assert not result.success
    assert result.error == "New credentials test failed: invalid_auth"
    connection = await hub.store.get_connection(connection_id, ORG)
    assert hub.vault.decrypt(connection.credentials)["access_token"] == "tok-1"

    invalid = await hub.credentials.update_credentials(connection_id, {"access_token": ""}, ORG)
    assert invalid.error_kind == "validation"


@pytest.mark.asyncio
async def test_delete_credentials(hub, connect):
    _, connection_id = await connect()
    assert (await hub.credentials.delete_credentials(connection_id, ORG)).success
    connection = await hub.store.get_connection(connection_id, ORG)
    assert connection.status == ConnectionStatus.INACTIVE
    assert hub.vault.decrypt(connection.credentials) == {}
    assert not (await hub.credentials.delete_credentials("missing", ORG)).success


@pytest.mark.asyncio
async def test_audit_access_seals_details(hub, connect):
    _, connection_id = await connect()
    await hub.credentials.audit_access(connection_id, "viewed", "user-9", ORG, {"reason": "support"})
    [row] = await hub.store.list_logs(actions=["credential_viewed"])
    assert row.actor == "user-9"
    sealed = hub.audit.unseal(row)
    assert sealed["details"] == {"reason": "support"}
    assert "support" not in str(row.request_data)

    with pytest.raises(NotFound):
        await hub.credentials.audit_access(connection_id, "viewed", "user-9", OTHER_ORG)


@pytest.mark.asyncio
async def test_store_credentials_timeout_is_logged_as_timeout(hub, stub, monkeypatch):
    async def times_out(credentials, cfg):
        raise ProviderTimeoutError()

    monkeypatch.setattr(stub, "_test", times_out)
    integration = await pending_integration(hub)
    result = await hub.credentials.store_credentials(integration.id, {"api_key": "k"}, "api_key", ORG)
    assert result.error_kind == "timeout"
    [row] = await hub.store.list_logs(actions=["credentials_stored"])
    assert row.status == LogStatus.TIMEOUT

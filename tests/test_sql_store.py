"""Test the SQLAlchemy store on in-memory SQLite, alone and behind a hub."""
from datetime import timedelta

import pytest
import pytest_asyncio

from core.database import close_db, create_engine, create_session_factory, init_db
from core.integrations.hub import IntegrationHub
from core.integrations.registry import ProviderRegistry
from core.integrations.sql_store import SqlAlchemyIntegrationStore
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

from conftest import ORG, OTHER_ORG, STUB_CONFIG


@pytest_asyncio.fixture
async def store():
    engine = create_engine("sqlite+aiosqlite:///:memory:", echo=False)
    await init_db(engine)
    yield SqlAlchemyIntegrationStore(create_session_factory(engine))
    await close_db(engine)


@pytest.fixture
def sql_hub(store, settings, stub):
    return IntegrationHub.create(store=store, settings=settings, registry=ProviderRegistry([stub]))


async def seed(store, org=ORG):
    integration = await store.create_integration(Integration(
        organization_id=org, provider="stub", name="Stub", config={"features": ["users"]},
    ))
    connection = await store.create_connection(Connection(
        integration_id=integration.id, credentials="c", settings="s", scopes=["read"],
    ))
    return integration, connection


@pytest.mark.asyncio
async def test_integration_round_trip(store):
    integration, _ = await seed(store)
    loaded = await store.get_integration(integration.id, ORG)
    assert loaded.config == {"features": ["users"]}
    assert loaded.status == IntegrationStatus.PENDING
    assert loaded.created_at.tzinfo is not None
    assert await store.get_integration(integration.id, OTHER_ORG) is None

    now = utcnow()
    updated = await store.update_integration(integration.id, status=IntegrationStatus.ACTIVE, last_sync=now)
    assert updated.status == IntegrationStatus.ACTIVE
    assert abs(updated.last_sync - now) < timedelta(seconds=1)
    assert await store.update_integration("missing", status=IntegrationStatus.ACTIVE) is None


@pytest.mark.asyncio
async def test_list_integrations_filters(store):
    first, _ = await seed(store)
    await seed(store, org=OTHER_ORG)
    await store.update_integration(first.id, status=IntegrationStatus.ACTIVE)

    assert len(await store.list_integrations()) == 2
    assert [i.id for i in await store.list_integrations(organization_id=ORG)] == [first.id]
    assert await store.list_integrations(organization_id=ORG, statuses=[IntegrationStatus.PENDING]) == []
    cutoff = utcnow() + timedelta(minutes=1)
    assert len(await store.list_integrations(created_before=cutoff)) == 2
    assert await store.list_integrations(created_before=utcnow() - timedelta(days=1)) == []


@pytest.mark.asyncio
async def test_connection_scoping_and_counts(store):
    integration, connection = await seed(store)
    loaded = await store.get_connection(connection.id, ORG)
    assert loaded.scopes == ["read"]
    assert loaded.status == ConnectionStatus.PENDING
    assert await store.get_connection(connection.id, OTHER_ORG) is None

    await store.update_connection(connection.id, status=ConnectionStatus.CONNECTED, retry_count=2)
    assert (await store.get_connection(connection.id)).retry_count == 2
    assert await store.count_connections(integration.id) == 1
    assert await store.count_connections(integration.id, statuses=[ConnectionStatus.CONNECTED]) == 1
    assert await store.count_connections(integration.id, statuses=[ConnectionStatus.ERROR]) == 0
    assert len(await store.list_connections(organization_id=ORG, statuses=[ConnectionStatus.CONNECTED])) == 1
    assert await store.list_connections(organization_id=OTHER_ORG) == []


@pytest.mark.asyncio
async def test_transition_log_has_one_winner(store):
    integration, _ = await seed(store)
    log = await store.append_log(IntegrationLog(
        integration_id=integration.id, action="oauth_initiated", status=LogStatus.PENDING,
    ))
    outcomes = [await store.transition_log(log.id, LogStatus.PENDING, LogStatus.COMPLETED) for _ in range(3)]
    assert outcomes == [True, False, False]
    assert not await store.transition_log(log.id, LogStatus.PENDING, LogStatus.EXPIRED)
    [stored] = await store.list_logs(integration_id=integration.id)
    assert stored.status == LogStatus.COMPLETED


@pytest.mark.asyncio
async def test_logs_filters_and_purge(store):
    integration, _ = await seed(store)
    for action in ("sync", "sync", "connection_test"):
        await store.append_log(IntegrationLog(
            integration_id=integration.id, action=action, status=LogStatus.SUCCESS, request_data={"a": 1},
        ))
    await store.append_log(IntegrationLog(integration_id=None, action="oauth_error", status=LogStatus.ERROR))

    assert len(await store.list_logs(integration_id=integration.id, actions=["sync"])) == 2
    assert len(await store.list_logs(status=LogStatus.ERROR)) == 1
    assert len(await store.list_logs(limit=2)) == 2
    latest = await store.latest_log(integration.id, "connection_test", LogStatus.SUCCESS)
    assert latest.request_data == {"a": 1}

    assert await store.delete_logs_before(utcnow() - timedelta(days=1)) == 0
    assert await store.delete_logs_before(utcnow() + timedelta(seconds=1)) == 4
    assert await store.list_logs() == []


@pytest.mark.asyncio
async def test_webhooks_and_cascading_delete(store):
    integration, connection = await seed(store)
    webhook = await store.create_webhook(Webhook(
        integration_id=integration.id, url="https://x.example.com", secret="s", events=["a"],
    ))
    assert (await store.get_webhook(webhook.id, ORG)).events == ["a"]
    assert await store.get_webhook(webhook.id, OTHER_ORG) is None
    assert (await store.update_webhook(webhook.id, success_count=3)).success_count == 3
    await store.append_log(IntegrationLog(integration_id=integration.id, action="x", status=LogStatus.SUCCESS))

    assert await store.delete_integration(integration.id)
    assert await store.get_integration(integration.id) is None
    assert await store.get_connection(connection.id) is None
    assert await store.get_webhook(webhook.id) is None
    assert await store.list_logs(integration_id=integration.id) == []
    assert not await store.delete_integration(integration.id)


@pytest.mark.asyncio
async def test_oauth_and_sync_on_sql_store(sql_hub):
    start = await sql_hub.oauth.begin_authorization("stub", STUB_CONFIG, ORG)
    result = await sql_hub.oauth.handle_callback(start.integration_id, "good-code", start.state, ORG)
    assert result.success, result.error
    replay = await sql_hub.oauth.handle_callback(start.integration_id, "good-code", start.state, ORG)
    assert not replay.success

    sync = await sql_hub.sync.sync(start.integration_id, ORG)
    assert sync.success
    assert sync.records_processed == 8
    status = await sql_hub.sync.sync_status(start.integration_id, ORG)
    assert status["in_progress"] is False
    assert status["last_sync"] is not None

    report = await sql_hub.health.run_health_checks(ORG)
    assert report["tested"] == 1
    assert report["passed"] == 1

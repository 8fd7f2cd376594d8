"""
OAuth orchestrator.

Drives the authorization-code flow for OAuth providers:

    begin_authorization -> (user consents at provider) -> handle_callback
                                                       -> refresh_tokens
                                                       -> revoke_connection

Each attempt is an ``oauth_initiated`` log row in ``pending`` status whose
sealed snapshot holds the CSRF state (and the PKCE verifier, when used).
The row moves to exactly one terminal status: ``completed`` when a
callback claims it, ``expired`` when it outlives the TTL.

Claiming is a conditional ``pending -> completed`` transition made before
the code exchange, so duplicate callback deliveries cannot both proceed.
"""
from __future__ import annotations
from datetime import timedelta
from typing import Any, Callable
import hmac
import logging
import secrets
import time

from core.config import OAuthSettings
from core.integrations.audit import AuditTrail, elapsed_ms
from core.integrations.credentials import granted_scopes, token_expiry
from core.integrations.errors import (
    AuthenticationFailed,
    IntegrationError,
    NoRefreshToken,
    NotFound,
    NotSupported,
    StateMismatch,
    UnsupportedOperation,
    error_message,
)
from core.integrations.registry import ProviderRegistry
from core.integrations.store import IntegrationStore
from core.integrations.types import (
    AuthorizationStart,
    Connection,
    ConnectionStatus,
    ConnectionType,
    Integration,
    IntegrationLog,
    IntegrationStatus,
    LogStatus,
    OperationResult,
    utcnow,
)
from core.integrations.vault import CredentialVault

logger = logging.getLogger(__name__)

OAUTH_INITIATED = "oauth_initiated"


def states_match(expected: str | None, supplied: str | None) -> bool:
    """Exact, constant-time state comparison. Missing values never match."""
    if not expected or not supplied:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


class OAuthOrchestrator:
    def __init__(
        self,
        store: IntegrationStore,
        vault: CredentialVault,
        registry: ProviderRegistry,
        audit: AuditTrail,
        settings: OAuthSettings | None = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.vault = vault
        self.registry = registry
        self.audit = audit
        self.settings = settings or OAuthSettings()
        self._clock = clock

    @property
    def state_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.state_ttl_minutes)

    def _is_expired(self, log: IntegrationLog) -> bool:
        return self._clock() - log.timestamp > self.state_ttl

    # --- Authorization ---

    async def begin_authorization(
        self,
        provider_key: str,
        config: dict[str, Any],
        organization_id: str,
        user_id: str | None = None,
    ) -> AuthorizationStart:
        """Create a pending Integration and issue the provider's consent URL."""
        provider = self.registry.require(provider_key)
        if not provider.supports_oauth:
            raise UnsupportedOperation(f"{provider.name} does not support OAuth")
        validated = self.registry.validate_config(provider_key, config)

        state = secrets.token_hex(32)
        # Build the URL first so a bad config leaves no half-created rows
        auth = provider.authorization_url(validated, state)

        integration = await self.store.create_integration(Integration(
            organization_id=organization_id,
            provider=provider.key,
            name=f"{provider.name} Integration",
            type=provider.type,
            category=provider.category,
            config=validated,
            status=IntegrationStatus.PENDING,
            created_by=user_id,
        ))
        await self.audit.record(
            integration.id,
            OAUTH_INITIATED,
            LogStatus.PENDING,
            request={"provider": provider.key, "pkce": auth.code_verifier is not None},
            sealed={"state": state, "code_verifier": auth.code_verifier},
            actor=user_id,
        )
        logger.info("OAuth started for %s integration %s", provider.key, integration.id)
        return AuthorizationStart(auth_url=auth.url, state=state, integration_id=integration.id)

    async def _pending_attempt(self, integration_id: str) -> IntegrationLog | None:
        return await self.store.latest_log(integration_id, OAUTH_INITIATED, LogStatus.PENDING)

    async def validate_state(self, integration_id: str, state: str, organization_id: str) -> bool:
        """Check a state without consuming it."""
        integration = await self.store.get_integration(integration_id, organization_id)
        if integration is None:
            return False
        pending = await self._pending_attempt(integration_id)
        if pending is None or self._is_expired(pending):
            return False
        try:
            stored = self.audit.unseal(pending) or {}
        except IntegrationError:
            return False
        return states_match(stored.get("state"), state)

    async def handle_callback(
        self,
        integration_id: str,
        code: str,
        state: str,
        organization_id: str,
    ) -> OperationResult:
        """Finish an authorization attempt.

        Only an exact match with the state issued for this integration
        proceeds. Credentials are test-connected before any Connection is
        created; a failing test marks the Integration ``error`` instead.
        """
        started = time.monotonic()
        owned = False
        try:
            integration = await self.store.get_integration(integration_id, organization_id)
            if integration is None:
                raise NotFound("Integration not found or already processed")
            owned = True
            if integration.status != IntegrationStatus.PENDING:
                raise AuthenticationFailed("Integration not found or already processed")

            pending = await self._pending_attempt(integration_id)
            if pending is None:
                raise AuthenticationFailed("OAuth state not found")
            if self._is_expired(pending):
                await self.store.transition_log(pending.id, LogStatus.PENDING, LogStatus.EXPIRED)
                raise AuthenticationFailed("OAuth state expired")

            stored = self.audit.unseal(pending) or {}
            if not states_match(stored.get("state"), state):
                raise StateMismatch("Invalid state parameter")
            if not await self.store.transition_log(pending.id, LogStatus.PENDING, LogStatus.COMPLETED):
                raise StateMismatch("OAuth state already used")

            provider = self.registry.require(integration.provider)
            credentials = await provider.exchange_code(
                code, state, integration.config, code_verifier=stored.get("code_verifier"),
            )
            result = await provider.test_connection(credentials, integration.config)

            if not result.success:
                await self.store.update_integration(
                    integration_id, status=IntegrationStatus.ERROR, last_error=result.message,
                )
                await self.audit.record(
                    integration_id, "oauth_failed", LogStatus.ERROR,
                    response={"test_result": {"success": False, "message": result.message}},
                    error=result.message,
                    kind=result.error_kind or "connection_test_failed",
                    duration_ms=elapsed_ms(started),
                )
                return OperationResult(
                    success=False,
                    error=result.message,
                    error_kind=result.error_kind or "connection_test_failed",
                )

            now = self._clock()
            connection = await self.store.create_connection(Connection(
                integration_id=integration_id,
                name=f"{provider.name} Connection",
                connection_type=ConnectionType.OAUTH,
                credentials=self.vault.encrypt(credentials),
                settings=self.vault.encrypt({"connection_type": ConnectionType.OAUTH.value, **self.vault.metadata()}),
                status=ConnectionStatus.CONNECTED,
                scopes=granted_scopes(credentials),
                token_expires_at=token_expiry(credentials),
                last_connected=now,
                rate_limit=result.rate_limit.to_dict() if result.rate_limit else None,
            ))
            await self.store.update_integration(integration_id, status=IntegrationStatus.ACTIVE, last_error=None)
            await self.audit.record(
                integration_id, "oauth_completed", LogStatus.SUCCESS,
                response={
                    "connection_id": connection.id,
                    "test_result": {
                        "success": True,
                        "message": result.message,
                        "capabilities": result.capabilities,
                    },
                },
                duration_ms=elapsed_ms(started),
            )
            logger.info("OAuth completed for integration %s (connection %s)", integration_id, connection.id)
            return OperationResult(success=True, connection_id=connection.id)

        except Exception as exc:
            if isinstance(exc, IntegrationError):
                logger.warning("OAuth callback rejected for %s: %s", integration_id, error_message(exc))
            else:
                logger.exception("OAuth callback failed for %s", integration_id)
            # Never write audit rows against another organization's integration
            await self.audit.record_failure(
                integration_id if owned else None, "oauth_error", exc,
                request={"integration_id": integration_id},
                duration_ms=elapsed_ms(started),
            )
            return OperationResult.failure(exc)

    # --- Token maintenance ---

    async def refresh_tokens(self, connection_id: str, organization_id: str) -> OperationResult:
        """Swap the refresh token for fresh credentials. Raises on failure after logging it."""
        connection = await self.store.get_connection(connection_id, organization_id)
        if connection is None:
            raise NotFound(f"Connection {connection_id} not found")
        integration = await self.store.get_integration(connection.integration_id, organization_id)
        started = time.monotonic()
        refreshing = False
        try:
            if integration is None:
                raise NotFound(f"Integration {connection.integration_id} not found")
            credentials = self.vault.decrypt(connection.credentials)
            refresh_token = (credentials or {}).get("refresh_token")
            if not refresh_token:
                raise NoRefreshToken("No refresh token available")
            provider = self.registry.require(integration.provider)

            await self.store.update_connection(connection_id, status=ConnectionStatus.REFRESHING)
            refreshing = True
            fresh = await provider.refresh_tokens(refresh_token, integration.config)
            merged = {**credentials, **{k: v for k, v in fresh.items() if v is not None}}

            settings = self.vault.decrypt(connection.settings) if connection.settings else {}
            settings = dict(settings or {})
            settings.update(self.vault.metadata())
            await self.store.update_connection(
                connection_id,
                credentials=self.vault.encrypt(merged),
                settings=self.vault.encrypt(settings),
                status=ConnectionStatus.CONNECTED,
                token_expires_at=token_expiry(merged),
                scopes=granted_scopes(merged) or connection.scopes,
                last_connected=self._clock(),
                last_error=None,
                retry_count=0,
            )
        except Exception as exc:
            if refreshing:
                await self.store.update_connection(
                    connection_id, status=ConnectionStatus.ERROR, last_error=error_message(exc),
                )
            await self.audit.record_failure(
                connection.integration_id, "token_refresh_failed", exc,
                request={"connection_id": connection_id},
                duration_ms=elapsed_ms(started),
            )
            raise

        await self.audit.record(
            connection.integration_id, "tokens_refreshed", LogStatus.SUCCESS,
            request={"connection_id": connection_id}, response={"refreshed": True},
            duration_ms=elapsed_ms(started),
        )
        return OperationResult(success=True, connection_id=connection_id)

    async def revoke_connection(
        self,
        connection_id: str,
        organization_id: str,
        actor: str | None = None,
    ) -> OperationResult:
        """Disconnect: best-effort provider revocation, then always wipe locally."""
        connection = await self.store.get_connection(connection_id, organization_id)
        if connection is None:
            return OperationResult.failure(NotFound("Connection not found"), connection_id)
        integration = await self.store.get_integration(connection.integration_id, organization_id)

        provider_revoked = False
        if integration is not None and integration.provider in self.registry:
            provider = self.registry.require(integration.provider)
            try:
                credentials = self.vault.decrypt(connection.credentials)
                await provider.revoke_tokens(credentials, integration.config)
                provider_revoked = True
            except NotSupported:
                logger.debug("%s has no revocation endpoint", provider.key)
            except Exception as exc:
                logger.warning(
                    "Failed to revoke tokens for %s connection %s: %s",
                    provider.key, connection_id, error_message(exc),
                )

        await self.store.update_connection(
            connection_id,
            credentials=self.vault.encrypt({}),
            status=ConnectionStatus.INACTIVE,
            token_expires_at=None,
        )
        remaining = await self.store.count_connections(
            connection.integration_id, statuses=[ConnectionStatus.CONNECTED],
        )
        if remaining == 0:
            await self.store.update_integration(connection.integration_id, status=IntegrationStatus.INACTIVE)

        await self.audit.record(
            connection.integration_id, "connection_revoked", LogStatus.SUCCESS,
            request={"connection_id": connection_id},
            response={"revoked": True, "provider_revoked": provider_revoked},
            actor=actor,
        )
        return OperationResult(success=True, connection_id=connection_id)

    # --- Maintenance ---

    async def cleanup_expired_states(self) -> dict[str, int]:
        """Expire stale authorization attempts and their pending integrations.

        Meant for a periodic scheduler; errors are logged, not raised.
        """
        cutoff = self._clock() - self.state_ttl
        counts = {"states_expired": 0, "integrations_expired": 0}
        try:
            stale = await self.store.list_logs(
                actions=[OAUTH_INITIATED], status=LogStatus.PENDING, before=cutoff,
            )
            for log in stale:
                if await self.store.transition_log(log.id, LogStatus.PENDING, LogStatus.EXPIRED):
                    counts["states_expired"] += 1
            for integration in await self.store.list_integrations(
                statuses=[IntegrationStatus.PENDING], created_before=cutoff,
            ):
                await self.store.update_integration(integration.id, status=IntegrationStatus.EXPIRED)
                counts["integrations_expired"] += 1
        except Exception:
            logger.exception("OAuth state cleanup failed")
        if counts["states_expired"] or counts["integrations_expired"]:
            logger.info(
                "Expired %d OAuth states and %d pending integrations",
                counts["states_expired"], counts["integrations_expired"],
            )
        return counts

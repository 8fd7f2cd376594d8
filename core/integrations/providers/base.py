"""
Provider base class.

Every external service the hub can connect to is a Provider subclass. The
base class supplies:
- One outbound HTTP path (auth header selection, timeout, uniform errors)
- The OAuth2 authorization-code flow (URL building, PKCE, code exchange,
  token normalization, refresh)
- A sync loop over enabled resource types with per-resource error capture
- Named-action dispatch
- Webhook signature verification and event normalization
- Static descriptive metadata

Subclasses declare class attributes and override the hooks they need:
``_test``, ``resource_syncers``, ``actions``, ``_token_extras``,
``_normalize_event``.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping
from urllib.parse import urlencode
import base64
import hashlib
import logging
import secrets
import time

import httpx

from core.integrations.errors import (
    NotSupported,
    ProviderHttpError,
    ProviderTimeoutError,
    RateLimited,
    UnsupportedAction,
    UnsupportedOperation,
    ValidationError,
    error_kind,
    error_message,
)
from core.integrations.schemas import ProviderConfig, validate_model
from core.integrations.signatures import SignatureScheme, verify_signature
from core.integrations.types import (
    AuthorizationUrl,
    ConnectionTestResult,
    RateLimitInfo,
    ResourceCounts,
    SyncError,
    SyncMode,
    SyncResult,
    WebhookProcessing,
    utcnow,
)

logger = logging.getLogger(__name__)

Credentials = dict[str, Any]
ResourceSyncer = Callable[[Credentials, Any, "datetime | None", dict[str, Any]], Awaitable[ResourceCounts]]
Action = Callable[[Credentials, Any, dict[str, Any]], Awaitable[Any]]


def _parse_since(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def counted(items: list | None, since: datetime | None) -> ResourceCounts:
    """Counts for a fetched page: new on a full pass, updated on an incremental one."""
    n = len(items or [])
    if since is None:
        return ResourceCounts(processed=n, created=n)
    return ResourceCounts(processed=n, updated=n)


def rate_limit_from_headers(headers: Mapping[str, str]) -> RateLimitInfo | None:
    """Read the common ``X-RateLimit-*`` header family, if present."""
    headers = httpx.Headers(headers)
    remaining = headers.get("x-ratelimit-remaining")
    limit = headers.get("x-ratelimit-limit")
    if remaining is None or limit is None:
        return None
    reset = headers.get("x-ratelimit-reset")
    try:
        reset_at = (
            datetime.fromtimestamp(int(reset), tz=timezone.utc)
            if reset else utcnow() + timedelta(minutes=1)
        )
        return RateLimitInfo(remaining=int(remaining), limit=int(limit), reset_at=reset_at)
    except ValueError:
        return None


class Provider(ABC):
    """Base class for all integration providers."""

    key: str = ""
    name: str = ""
    type: str = ""
    category: str = ""
    description: str = ""
    website_url: str = ""
    documentation_url: str = ""

    supported_features: tuple[str, ...] = ()
    default_features: tuple[str, ...] = ()
    capabilities: tuple[str, ...] = ("read", "write", "webhooks")
    config_model: type[ProviderConfig] = ProviderConfig

    # OAuth
    supports_oauth: bool = True
    uses_pkce: bool = False
    authorize_url: str = ""
    token_url: str = ""
    revoke_url: str = ""
    token_request_json: bool = False
    default_scopes: tuple[str, ...] = ()
    available_scopes: tuple[str, ...] = ()
    write_scopes: tuple[str, ...] = ()
    scope_separator: str = " "

    # Webhooks
    signature_scheme: SignatureScheme = SignatureScheme.HMAC_HEX
    signature_header: str = "X-Hub-Signature"
    timestamp_header: str | None = None
    webhook_events: tuple[str, ...] = ()

    sync_interval_minutes: int = 15

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 30.0):
        self._transport = transport
        self.timeout = timeout

    # --- Config ---

    def parse_config(self, config: Mapping[str, Any] | None) -> ProviderConfig:
        return validate_model(self.config_model, dict(config or {}), f"{self.key} configuration")

    def enabled_features(self, cfg: ProviderConfig) -> list[str]:
        if cfg.features is None:
            return list(self.default_features)
        return list(cfg.features)

    # --- HTTP ---

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self.timeout)

    def auth_headers(self, credentials: Credentials | None) -> dict[str, str]:
        """Bearer access token, then API key, then HTTP Basic."""
        if not credentials:
            return {}
        token = credentials.get("access_token") or credentials.get("token") or credentials.get("bearer_token")
        if token:
            return {"Authorization": f"Bearer {token}"}
        api_key = credentials.get("api_key") or credentials.get("apiKey")
        if api_key:
            return {"Authorization": f"Bearer {api_key}"}
        if credentials.get("username") and credentials.get("password"):
            encoded = base64.b64encode(
                f"{credentials['username']}:{credentials['password']}".encode()
            ).decode()
            return {"Authorization": f"Basic {encoded}"}
        return {}

    async def send(
        self,
        method: str,
        url: str,
        credentials: Credentials | None = None,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        data: Mapping[str, Any] | None = None,
        content: bytes | str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """Issue one request; any non-2xx becomes a ProviderHttpError."""
        merged = {**self.auth_headers(credentials), **(headers or {})}
        try:
            async with self._client() as client:
                resp = await client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    data=data,
                    content=content,
                    headers=merged,
                )
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"{self.name} request timed out: {method} {url}") from exc
        except httpx.HTTPError as exc:
            raise ProviderHttpError(0, None, f"{self.name} request failed: {exc}") from exc

        if 200 <= resp.status_code < 300:
            return resp
        body = self._body(resp)
        if resp.status_code == 429:
            retry_after = resp.headers.get("retry-after")
            raise RateLimited(body, float(retry_after) if retry_after and retry_after.isdigit() else None)
        raise ProviderHttpError(resp.status_code, body, self._error_text(resp.status_code, body))

    async def request(self, method: str, url: str, credentials: Credentials | None = None, **kwargs: Any) -> Any:
        return self._body(await self.send(method, url, credentials, **kwargs))

    @staticmethod
    def _body(resp: httpx.Response) -> Any:
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    def _error_text(self, status: int, body: Any) -> str:
        detail = None
        if isinstance(body, dict):
            err = body.get("error")
            if isinstance(err, dict):
                detail = err.get("message")
            detail = detail or body.get("error_description") or body.get("message") or (err if isinstance(err, str) else None)
        return f"{self.name} returned HTTP {status}" + (f": {detail}" if detail else "")

    # --- Connection test ---

    async def test_connection(self, credentials: Credentials, config: Mapping[str, Any] | None) -> ConnectionTestResult:
        """Cheap authenticated probe. Never raises."""
        try:
            return await self._test(credentials, self.parse_config(config))
        except Exception as exc:
            logger.warning("%s connection test failed: %s", self.key, error_message(exc))
            return ConnectionTestResult(
                success=False,
                message=f"Connection failed: {error_message(exc)}",
                details={"error": error_message(exc)},
                error_kind=error_kind(exc),
            )

    @abstractmethod
    async def _test(self, credentials: Credentials, cfg: ProviderConfig) -> ConnectionTestResult:
        ...

    async def rate_limit_info(self, credentials: Credentials, config: Mapping[str, Any] | None = None) -> RateLimitInfo | None:
        return None

    # --- OAuth ---

    def _require_oauth(self) -> None:
        if not self.supports_oauth:
            raise UnsupportedOperation(f"{self.name} does not support OAuth")

    def authorize_endpoint(self, cfg: ProviderConfig) -> str:
        return self.authorize_url

    def token_endpoint(self, cfg: ProviderConfig) -> str:
        return self.token_url

    def _extra_authorization_params(self, cfg: ProviderConfig) -> dict[str, str]:
        return {}

    def authorization_url(self, config: Mapping[str, Any] | None, state: str) -> AuthorizationUrl:
        self._require_oauth()
        cfg = self.parse_config(config)
        if not cfg.client_id:
            raise ValidationError("client_id is required for OAuth")
        params = {
            "client_id": cfg.client_id,
            "response_type": "code",
            "state": state,
            "scope": self.scope_separator.join(cfg.scopes or self.default_scopes),
        }
        if cfg.redirect_uri:
            params["redirect_uri"] = cfg.redirect_uri
        params.update(self._extra_authorization_params(cfg))

        verifier = None
        if self.uses_pkce:
            verifier = secrets.token_urlsafe(64)
            challenge = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode("ascii")).digest())
            params["code_challenge"] = challenge.rstrip(b"=").decode("ascii")
            params["code_challenge_method"] = "S256"

        url = f"{self.authorize_endpoint(cfg)}?{urlencode(params)}"
        return AuthorizationUrl(url=url, state=state, code_verifier=verifier)

    async def _token_request(self, cfg: ProviderConfig, payload: dict[str, Any]) -> dict[str, Any]:
        body = {k: v for k, v in payload.items() if v is not None}
        headers = {"Accept": "application/json"}
        if self.token_request_json:
            data = await self.request("POST", self.token_endpoint(cfg), json=body, headers=headers)
        else:
            data = await self.request("POST", self.token_endpoint(cfg), data=body, headers=headers)
        if not isinstance(data, dict):
            raise ProviderHttpError(200, data, f"{self.name} token endpoint returned an unexpected body")
        return data

    async def _token_extras(self, tokens: dict[str, Any], cfg: ProviderConfig) -> dict[str, Any]:
        """Provider-specific fields added to the canonical credential shape."""
        return {}

    async def _canonical(self, tokens: dict[str, Any], cfg: ProviderConfig) -> Credentials:
        if not tokens.get("access_token"):
            raise ProviderHttpError(200, tokens, f"{self.name} token response has no access_token")
        expires_in = tokens.get("expires_in")
        credentials = {
            "access_token": tokens["access_token"],
            "refresh_token": tokens.get("refresh_token"),
            "expires_at": int(time.time()) + int(expires_in) if expires_in else None,
            "scope": tokens.get("scope") or "",
            "token_type": tokens.get("token_type", "Bearer"),
        }
        credentials.update(await self._token_extras(tokens, cfg))
        return credentials

    async def exchange_code(
        self,
        code: str,
        state: str,
        config: Mapping[str, Any] | None,
        code_verifier: str | None = None,
    ) -> Credentials:
        """Trade an authorization code for canonical credentials."""
        self._require_oauth()
        cfg = self.parse_config(config)
        tokens = await self._token_request(cfg, {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": cfg.redirect_uri,
            "client_id": cfg.client_id,
            "client_secret": cfg.client_secret,
            "code_verifier": code_verifier,
        })
        return await self._canonical(tokens, cfg)

    async def refresh_tokens(self, refresh_token: str, config: Mapping[str, Any] | None) -> Credentials:
        raise NotSupported(f"{self.name} does not support token refresh")

    async def _refresh_via_token_endpoint(self, refresh_token: str, config: Mapping[str, Any] | None) -> Credentials:
        cfg = self.parse_config(config)
        tokens = await self._token_request(cfg, {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": cfg.client_id,
            "client_secret": cfg.client_secret,
        })
        credentials = await self._canonical(tokens, cfg)
        # Most providers only rotate the refresh token occasionally
        credentials["refresh_token"] = credentials.get("refresh_token") or refresh_token
        return credentials

    async def revoke_tokens(self, credentials: Credentials, config: Mapping[str, Any] | None) -> None:
        raise NotSupported(f"{self.name} does not support token revocation")

    # --- Sync ---

    def resource_syncers(self) -> dict[str, ResourceSyncer]:
        return {}

    async def sync(
        self,
        credentials: Credentials,
        config: Mapping[str, Any] | None,
        mode: SyncMode | str = SyncMode.FULL,
        options: dict[str, Any] | None = None,
    ) -> SyncResult:
        """Sync every enabled resource type.

        A failing resource type is recorded as one error entry and the loop
        moves on. Anything that fails outside a single resource yields one
        ``sync`` error and zero counts.
        """
        started = time.monotonic()
        options = dict(options or {})
        try:
            mode = SyncMode(mode)
            cfg = self.parse_config(config)
            since = _parse_since(options.get("since")) if mode == SyncMode.INCREMENTAL else None
            syncers = self.resource_syncers()
            result = SyncResult(success=True)
            for resource in self.enabled_features(cfg):
                syncer = syncers.get(resource)
                if syncer is None:
                    continue
                try:
                    result.add(resource, await syncer(credentials, cfg, since, options))
                except Exception as exc:
                    logger.warning("%s sync of %s failed: %s", self.key, resource, error_message(exc))
                    result.errors.append(SyncError(
                        record=resource, error=error_message(exc), error_kind=error_kind(exc),
                    ))
        except Exception as exc:
            logger.exception("%s sync aborted", self.key)
            return SyncResult.failed(
                error_message(exc), error_kind(exc), (time.monotonic() - started) * 1000,
            )

        result.success = not result.errors
        result.duration_ms = (time.monotonic() - started) * 1000
        result.next_sync_at = utcnow() + timedelta(minutes=self.sync_interval_minutes)
        return result

    # --- Actions ---

    def actions(self) -> dict[str, Action]:
        return {}

    async def execute_action(
        self,
        action: str,
        credentials: Credentials,
        config: Mapping[str, Any] | None,
        parameters: dict[str, Any] | None = None,
    ) -> Any:
        handler = self.actions().get(action)
        if handler is None:
            raise UnsupportedAction(f"Action {action} not supported by {self.name} provider")
        return await handler(credentials, self.parse_config(config), dict(parameters or {}))

    # --- Webhooks ---

    def verify_webhook_signature(
        self,
        payload: str | bytes,
        signature: str | None,
        secret: str | None,
        timestamp: str | None = None,
        tolerance: int | None = None,
    ) -> bool:
        return verify_signature(
            self.signature_scheme, payload, signature, secret,
            timestamp=timestamp, tolerance=tolerance,
        )

    def signature_from_headers(self, headers: Mapping[str, str]) -> tuple[str | None, str | None]:
        """(signature, timestamp) as sent by the provider."""
        headers = httpx.Headers(headers)
        timestamp = headers.get(self.timestamp_header) if self.timestamp_header else None
        return headers.get(self.signature_header), timestamp

    def event_name(self, payload: Mapping[str, Any], headers: Mapping[str, str] | None = None) -> str | None:
        return payload.get("type") or payload.get("event")

    def process_webhook(self, payload: Mapping[str, Any], headers: Mapping[str, str] | None = None) -> WebhookProcessing:
        try:
            event = self.event_name(payload, headers)
            return WebhookProcessing(processed=True, data=self._normalize_event(event, payload))
        except Exception as exc:
            logger.warning("%s webhook normalization failed: %s", self.key, exc)
            return WebhookProcessing(processed=False, error=error_message(exc))

    def _normalize_event(self, event: str | None, payload: Mapping[str, Any]) -> dict[str, Any]:
        return {"type": event, "payload": dict(payload)}

    # --- Capability probes ---

    async def probe_capability(self, capability: str, credentials: Credentials, config: Mapping[str, Any] | None) -> str | None:
        """Try a minimal operation; returns a limitation message or None."""
        if capability == "read":
            cfg = self.parse_config(config)
            syncers = self.resource_syncers()
            resource = next((f for f in self.enabled_features(cfg) if f in syncers), None)
            if resource is None:
                return None
            try:
                await syncers[resource](credentials, cfg, None, {"limit": 1})
            except Exception as exc:
                return f"Read access failed: {error_message(exc)}"
            return None
        if capability == "write":
            granted = str(credentials.get("scope") or "").replace(",", " ").split()
            if self.write_scopes and granted and not any(s in granted for s in self.write_scopes):
                return "Missing write scopes: " + ", ".join(self.write_scopes)
            return None
        if capability == "webhooks":
            return None if self.webhook_events else "Provider does not emit webhook events"
        return f"Unknown capability: {capability}"

    # --- Descriptive metadata ---

    def get_available_scopes(self) -> list[str]:
        return list(self.available_scopes or self.default_scopes)

    def get_default_config(self) -> dict[str, Any]:
        return {
            "features": {f: True for f in self.default_features},
            "scopes": list(self.default_scopes),
        }

    def get_supported_webhook_events(self) -> list[str]:
        return list(self.webhook_events)

    def get_provider_metadata(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "display_name": self.name,
            "type": self.type,
            "category": self.category,
            "description": self.description,
            "website_url": self.website_url,
            "documentation_url": self.documentation_url,
            "supports_oauth": self.supports_oauth,
            "supported_features": list(self.supported_features),
            "capabilities": list(self.capabilities),
            "signature_scheme": self.signature_scheme.value,
        }

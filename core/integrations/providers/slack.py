"""Slack: workspace messaging (OAuth v2, ``ok``-envelope Web API)."""
from __future__ import annotations
from typing import Any

from core.integrations.errors import ProviderHttpError
from core.integrations.providers.base import Credentials, Provider, counted
from core.integrations.schemas import SlackConfig
from core.integrations.signatures import SignatureScheme
from core.integrations.types import ConnectionTestResult, ResourceCounts

API = "https://slack.com/api"


class SlackProvider(Provider):
    key = "slack"
    name = "Slack"
    type = "communication"
    category = "productivity"
    description = "Send messages, manage channels and sync team data"
    website_url = "https://slack.com"
    documentation_url = "https://api.slack.com/docs"

    supported_features = ("messages", "channels", "users", "files", "reactions", "webhooks")
    default_features = ("messages", "files", "channels", "users", "reactions")
    config_model = SlackConfig

    authorize_url = "https://slack.com/oauth/v2/authorize"
    token_url = f"{API}/oauth.v2.access"
    revoke_url = f"{API}/auth.revoke"
    scope_separator = ","
    default_scopes = ("channels:read", "chat:write", "users:read", "files:read")
    available_scopes = (
        "channels:read", "channels:write", "channels:manage",
        "chat:write", "chat:write.public",
        "users:read", "users:read.email",
        "files:read", "files:write",
        "reactions:read", "reactions:write",
        "groups:read", "groups:write",
        "im:read", "im:write",
        "mpim:read", "mpim:write",
    )
    write_scopes = ("chat:write", "channels:write", "channels:manage", "files:write")

    signature_scheme = SignatureScheme.SLACK
    signature_header = "X-Slack-Signature"
    timestamp_header = "X-Slack-Request-Timestamp"
    webhook_events = (
        "message", "channel_created", "channel_deleted", "channel_rename",
        "user_change", "team_join", "file_shared", "reaction_added", "reaction_removed",
    )

    sync_interval_minutes = 15

    async def call(self, method: str, credentials: Credentials, http: str = "GET", **kwargs: Any) -> dict[str, Any]:
        """Call a Web API method. Slack reports failures as ``ok: false`` on HTTP 200."""
        data = await self.request(http, f"{API}/{method}", credentials, **kwargs)
        if not isinstance(data, dict) or not data.get("ok"):
            error = data.get("error") if isinstance(data, dict) else None
            raise ProviderHttpError(200, data, f"Slack {method} failed: {error or 'unknown error'}")
        return data

    async def _test(self, credentials, cfg):
        identity = await self.request("GET", f"{API}/auth.test", credentials)
        if not isinstance(identity, dict) or not identity.get("ok"):
            return ConnectionTestResult(
                success=False,
                message=(identity or {}).get("error", "Authentication failed"),
                details=identity if isinstance(identity, dict) else {},
                error_kind="authentication_failed",
            )
        team = (await self.request("GET", f"{API}/team.info", credentials) or {}).get("team") or {}
        return ConnectionTestResult(
            success=True,
            message=f"Connected to {team.get('name') or 'Slack workspace'}",
            details={
                "user": identity.get("user"),
                "user_id": identity.get("user_id"),
                "team": team,
                "url": identity.get("url"),
            },
            capabilities=list(self.supported_features),
        )

    # --- OAuth ---

    def _extra_authorization_params(self, cfg):
        if cfg.user_scopes:
            return {"user_scope": ",".join(cfg.user_scopes)}
        return {}

    async def _token_request(self, cfg, payload):
        data = await super()._token_request(cfg, payload)
        if data.get("ok") is False:
            raise ProviderHttpError(200, data, f"Slack OAuth failed: {data.get('error', 'unknown error')}")
        return data

    async def _token_extras(self, tokens, cfg):
        team = tokens.get("team") or {}
        user = tokens.get("authed_user") or {}
        return {
            "team_id": team.get("id"),
            "team_name": team.get("name"),
            "user_id": user.get("id"),
            "bot_user_id": tokens.get("bot_user_id"),
        }

    async def refresh_tokens(self, refresh_token, config):
        # Only issued when token rotation is enabled on the Slack app
        return await self._refresh_via_token_endpoint(refresh_token, config)

    async def revoke_tokens(self, credentials, config):
        await self.call("auth.revoke", credentials)

    # --- Sync ---

    def resource_syncers(self):
        return {
            "channels": self._sync_channels,
            "users": self._sync_users,
            "messages": self._sync_messages,
        }

    async def _sync_channels(self, credentials, cfg, since, options) -> ResourceCounts:
        params = {"types": "public_channel,private_channel"}
        if options.get("limit"):
            params["limit"] = options["limit"]
        data = await self.call("conversations.list", credentials, params=params)
        return counted(data.get("channels"), since)

    async def _sync_users(self, credentials, cfg, since, options) -> ResourceCounts:
        params = {"limit": options["limit"]} if options.get("limit") else None
        data = await self.call("users.list", credentials, params=params)
        return counted(data.get("members"), since)

    async def _sync_messages(self, credentials, cfg, since, options) -> ResourceCounts:
        if not cfg.default_channel:
            return ResourceCounts()
        params: dict[str, Any] = {"channel": cfg.default_channel}
        if since is not None:
            params["oldest"] = f"{since.timestamp():.6f}"
        if options.get("limit"):
            params["limit"] = options["limit"]
        data = await self.call("conversations.history", credentials, params=params)
        return counted(data.get("messages"), since)

    # --- Actions ---

    def actions(self):
        return {
            "send_message": self._send_message,
            "create_channel": self._create_channel,
            "upload_file": self._upload_file,
            "get_user_info": self._get_user_info,
        }

    async def _send_message(self, credentials, cfg, params):
        body = {
            "channel": params.get("channel") or cfg.default_channel,
            "text": params.get("text"),
            "blocks": params.get("blocks"),
            "attachments": params.get("attachments"),
        }
        return await self.call(
            "chat.postMessage", credentials, http="POST",
            json={k: v for k, v in body.items() if v is not None},
        )

    async def _create_channel(self, credentials, cfg, params):
        return await self.call(
            "conversations.create", credentials, http="POST",
            json={"name": params["name"], "is_private": bool(params.get("is_private", False))},
        )

    async def _upload_file(self, credentials, cfg, params):
        form = {k: params[k] for k in ("channels", "title", "initial_comment", "filename") if params.get(k)}
        form["content"] = params.get("content", "")
        return await self.call("files.upload", credentials, http="POST", data=form)

    async def _get_user_info(self, credentials, cfg, params):
        return await self.call("users.info", credentials, params={"user": params["user"]})

    # --- Webhooks ---

    def event_name(self, payload, headers=None):
        # Events API wraps the real event; url_verification has no inner event
        inner = payload.get("event")
        if isinstance(inner, dict) and inner.get("type"):
            return inner["type"]
        return payload.get("type")

    def _normalize_event(self, event, payload):
        inner = payload.get("event") or {}
        if event == "message":
            return {
                "type": "message",
                "channel": inner.get("channel"),
                "user": inner.get("user"),
                "text": inner.get("text"),
                "timestamp": inner.get("ts"),
            }
        if event == "channel_created":
            return {"type": "channel_created", "channel": inner.get("channel")}
        return {"type": event, "payload": dict(payload)}

"""Generic webhook sink: accepts signed pushes from any system, no OAuth."""
from __future__ import annotations
import json
import time
import uuid

from core.integrations.errors import ValidationError
from core.integrations.providers.base import Provider
from core.integrations.schemas import WebhookSinkConfig
from core.integrations.signatures import sign_hex
from core.integrations.types import ConnectionTestResult

SIGNATURE_HEADER = "X-Integration-Signature"


class WebhookSinkProvider(Provider):
    key = "webhook"
    name = "Webhook"
    type = "webhook"
    category = "developer"
    description = "Receive signed events from any system and forward events to an endpoint"

    supported_features = ("inbound", "outbound", "webhooks")
    capabilities = ("write", "webhooks")
    config_model = WebhookSinkConfig

    supports_oauth = False
    signature_header = SIGNATURE_HEADER
    webhook_events = ("*",)

    async def _test(self, credentials, cfg):
        if not cfg.url:
            return ConnectionTestResult(
                success=True,
                message="Webhook sink ready (inbound only)",
                capabilities=list(self.supported_features),
            )
        resp = await self.send("HEAD", cfg.url, headers=cfg.headers)
        return ConnectionTestResult(
            success=True,
            message=f"Endpoint reachable (HTTP {resp.status_code})",
            details={"url": cfg.url, "status": resp.status_code},
            capabilities=list(self.supported_features),
        )

    def actions(self):
        return {"send_event": self._send_event}

    async def _send_event(self, credentials, cfg, params):
        if not cfg.url:
            raise ValidationError("Webhook sink has no destination url")
        body = json.dumps(
            {
                "id": str(uuid.uuid4()),
                "event": params.get("event", "custom"),
                "timestamp": int(time.time()),
                "data": params.get("data") or {},
            },
            default=str,
            sort_keys=True,
        )
        headers = {"Content-Type": "application/json", **cfg.headers}
        secret = credentials.get("secret") or cfg.webhook_secret
        if secret:
            headers[SIGNATURE_HEADER] = f"sha256={sign_hex(body, secret)}"
        resp = await self.send(cfg.method, cfg.url, content=body, headers=headers)
        return {"success": True, "status": resp.status_code}

    def verify_webhook_signature(self, payload, signature, secret, timestamp=None, tolerance=None):
        # Accept both bare hex and the "sha256=<hex>" form this hub sends
        if signature and signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        return super().verify_webhook_signature(payload, signature, secret, timestamp, tolerance)

    def event_name(self, payload, headers=None):
        return payload.get("event") or payload.get("type")

    def _normalize_event(self, event, payload):
        return {"type": event, "data": payload.get("data", dict(payload))}

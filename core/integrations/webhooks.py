"""
Webhook dispatcher.

Inbound: verifies a provider push against the registered Webhook's secret
using the provider's signature scheme on the raw request body, filters by
the registered event list, and hands the parsed payload to the provider for
normalization. Success and failure counters live on the Webhook row.

Outbound: ``send_test_event`` delivers a signed sample event to the
registered URL with retry and backoff:
- ``X-Integration-Signature: sha256=<hex HMAC-SHA256 of the body>``
- ``X-Integration-Event`` / ``X-Integration-Delivery`` headers
- Retries on transport errors, 408, 429 and 5xx only
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Mapping
from urllib.parse import urlparse
import asyncio
import json
import logging
import secrets
import time

import httpx

from core.config import WebhookSettings
from core.integrations.audit import AuditTrail, elapsed_ms
from core.integrations.errors import NotFound, ProviderHttpError, ValidationError, error_kind, error_message
from core.integrations.providers.webhook_sink import SIGNATURE_HEADER
from core.integrations.registry import ProviderRegistry
from core.integrations.signatures import sign_hex
from core.integrations.store import IntegrationStore
from core.integrations.types import LogStatus, Webhook, WebhookProcessing, new_id, utcnow

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 429}


def should_retry(outcome: BaseException | int) -> bool:
    """Transport failures, timeouts, throttling and server errors are worth retrying."""
    if isinstance(outcome, ProviderHttpError):
        return outcome.transient
    if isinstance(outcome, httpx.HTTPError):
        return True
    if isinstance(outcome, int):
        return outcome == 0 or outcome in RETRYABLE_STATUS or outcome >= 500
    return False


@dataclass
class WebhookDelivery:
    """Outcome of one outbound delivery (after retries)."""
    webhook_id: str
    event: str
    url: str
    status_code: int = 0
    latency_ms: float = 0.0
    attempts: int = 1
    success: bool = False
    error: str | None = None
    id: str = field(default_factory=new_id)
    delivered_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "webhook_id": self.webhook_id,
            "event": self.event,
            "url": self.url,
            "status_code": self.status_code,
            "latency_ms": round(self.latency_ms, 1),
            "attempts": self.attempts,
            "success": self.success,
            "error": self.error,
            "delivered_at": self.delivered_at.isoformat(),
        }


class WebhookDispatcher:
    def __init__(
        self,
        store: IntegrationStore,
        registry: ProviderRegistry,
        audit: AuditTrail,
        settings: WebhookSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.registry = registry
        self.audit = audit
        self.settings = settings or WebhookSettings()
        self._transport = transport
        self._sleep = sleep

    def default_retry_policy(self) -> dict[str, Any]:
        return {
            "max_retries": self.settings.max_retries,
            "retry_delays": list(self.settings.retry_delays),
            "backoff_multiplier": self.settings.backoff_multiplier,
        }

    # --- Registration ---

    async def register_webhook(
        self,
        integration_id: str,
        organization_id: str,
        url: str,
        events: Iterable[str] | None = None,
        name: str | None = None,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        retry_policy: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> Webhook:
        """Bind a new webhook to an Integration. The generated secret is on the returned row."""
        integration = await self.store.get_integration(integration_id, organization_id)
        if integration is None:
            raise NotFound(f"Integration {integration_id} not found")
        provider = self.registry.require(integration.provider)

        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError(f"Invalid webhook url: {url}")
        events = list(events or [])
        supported = provider.get_supported_webhook_events()
        if supported and "*" not in supported:
            unknown = [e for e in events if e not in supported]
            if unknown:
                errors = [f"Unsupported event for {provider.key}: {e}" for e in unknown]
                raise ValidationError("; ".join(errors), errors)

        webhook = await self.store.create_webhook(Webhook(
            integration_id=integration_id,
            url=url,
            secret=secrets.token_hex(32),
            name=name or f"{provider.name} Webhook",
            events=events,
            method=method.upper(),
            headers=dict(headers or {}),
            retry_policy=retry_policy or self.default_retry_policy(),
            timeout_seconds=self.settings.delivery_timeout_seconds,
        ))
        await self.audit.record(
            integration_id, "webhook_registered", LogStatus.SUCCESS,
            webhook_id=webhook.id, request={"url": url, "events": events}, actor=actor,
        )
        logger.info("Registered webhook %s for integration %s", webhook.id, integration_id)
        return webhook

    async def _require(self, webhook_id: str, organization_id: str | None) -> Webhook:
        webhook = await self.store.get_webhook(webhook_id, organization_id)
        if webhook is None:
            raise NotFound(f"Webhook {webhook_id} not found")
        return webhook

    async def set_enabled(self, webhook_id: str, organization_id: str, enabled: bool, actor: str | None = None) -> Webhook:
        webhook = await self._require(webhook_id, organization_id)
        updated = await self.store.update_webhook(webhook_id, enabled=enabled)
        await self.audit.record(
            webhook.integration_id, "webhook_enabled" if enabled else "webhook_disabled", LogStatus.SUCCESS,
            webhook_id=webhook_id, actor=actor,
        )
        return updated

    async def rotate_secret(self, webhook_id: str, organization_id: str, actor: str | None = None) -> str:
        """Issue a new signing secret; the old one stops verifying immediately."""
        webhook = await self._require(webhook_id, organization_id)
        secret = secrets.token_hex(32)
        await self.store.update_webhook(webhook_id, secret=secret)
        await self.audit.record(
            webhook.integration_id, "webhook_secret_rotated", LogStatus.SUCCESS, webhook_id=webhook_id, actor=actor,
        )
        return secret

    async def list_webhooks(self, integration_id: str, organization_id: str) -> list[Webhook]:
        if await self.store.get_integration(integration_id, organization_id) is None:
            raise NotFound(f"Integration {integration_id} not found")
        return await self.store.list_webhooks(integration_id)

    # --- Inbound ---

    async def process_webhook(
        self,
        webhook_id: str,
        raw_body: str | bytes,
        headers: Mapping[str, str],
        organization_id: str | None = None,
    ) -> WebhookProcessing:
        """Verify, filter and normalize one inbound push. Never raises."""
        started = time.monotonic()
        webhook = await self.store.get_webhook(webhook_id, organization_id)
        if webhook is None:
            return WebhookProcessing(processed=False, error="Webhook not found")

        async def reject(message: str, kind: str, count: bool = True, status: LogStatus = LogStatus.ERROR) -> WebhookProcessing:
            if count:
                await self.store.update_webhook(webhook_id, failure_count=webhook.failure_count + 1)
            await self.audit.record(
                webhook.integration_id, "webhook_received", status,
                webhook_id=webhook_id, error=message, kind=kind, duration_ms=elapsed_ms(started),
            )
            return WebhookProcessing(processed=False, error=message)

        if not webhook.enabled:
            return await reject("Webhook is disabled", "webhook_disabled", count=False, status=LogStatus.CANCELLED)

        integration = await self.store.get_integration(webhook.integration_id)
        provider = self.registry.get(integration.provider) if integration else None
        if provider is None:
            return await reject("No provider for webhook", "not_found")

        signature, timestamp = provider.signature_from_headers(headers)
        if not provider.verify_webhook_signature(
            raw_body, signature, webhook.secret, timestamp, self.settings.timestamp_tolerance_seconds,
        ):
            logger.warning("Rejected webhook %s: invalid signature", webhook_id)
            return await reject("Invalid signature", "invalid_signature")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            return await reject("Invalid JSON payload", "invalid_format")
        if not isinstance(payload, dict):
            return await reject("Webhook payload must be a JSON object", "invalid_format")

        try:
            event = provider.event_name(payload, headers)
        except Exception as exc:
            return await reject(f"Could not read event type: {error_message(exc)}", error_kind(exc))
        if webhook.events and "*" not in webhook.events and event not in webhook.events:
            return await reject(f"Event {event} is not subscribed", "event_filtered", count=False, status=LogStatus.CANCELLED)

        result = provider.process_webhook(payload, headers)
        if result.processed:
            await self.store.update_webhook(
                webhook_id, success_count=webhook.success_count + 1, last_triggered=utcnow(),
            )
        else:
            await self.store.update_webhook(
                webhook_id, failure_count=webhook.failure_count + 1, last_triggered=utcnow(),
            )
        await self.audit.record(
            webhook.integration_id, "webhook_received",
            LogStatus.SUCCESS if result.processed else LogStatus.ERROR,
            webhook_id=webhook_id,
            request={"event": event},
            response={"processed": result.processed},
            error=result.error,
            kind=None if result.processed else "processing_failed",
            duration_ms=elapsed_ms(started),
        )
        return result

    # --- Outbound ---

    def retry_delay(self, attempt: int, policy: Mapping[str, Any] | None = None) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based).

        Uses the listed delays in order, then keeps multiplying the last one.
        """
        policy = policy or self.default_retry_policy()
        delays = list(policy.get("retry_delays") or self.settings.retry_delays)
        multiplier = float(policy.get("backoff_multiplier", self.settings.backoff_multiplier))
        if attempt <= len(delays):
            return float(delays[attempt - 1])
        return float(delays[-1]) * multiplier ** (attempt - len(delays))

    async def send_test_event(
        self,
        webhook_id: str,
        organization_id: str,
        event: str = "test",
        data: dict[str, Any] | None = None,
    ) -> WebhookDelivery:
        """Deliver a signed sample event to the webhook's URL."""
        webhook = await self._require(webhook_id, organization_id)
        body = json.dumps(
            {
                "id": new_id(),
                "event": event,
                "timestamp": int(time.time()),
                "data": data or {"message": "This is a test webhook event", "webhook_id": webhook_id},
            },
            default=str,
            sort_keys=True,
        )
        headers = {
            **webhook.headers,
            "Content-Type": "application/json",
            "X-Integration-Event": event,
            "X-Integration-Delivery": new_id(),
            SIGNATURE_HEADER: f"sha256={sign_hex(body, webhook.secret)}",
        }
        delivery = await self._deliver(webhook, event, body, headers)

        if delivery.success:
            await self.store.update_webhook(
                webhook_id, success_count=webhook.success_count + 1, last_triggered=delivery.delivered_at,
            )
        else:
            await self.store.update_webhook(
                webhook_id, failure_count=webhook.failure_count + 1, last_triggered=delivery.delivered_at,
            )
        await self.audit.record(
            webhook.integration_id, "webhook_test",
            LogStatus.SUCCESS if delivery.success else LogStatus.ERROR,
            webhook_id=webhook_id,
            request={"event": event, "url": webhook.url},
            response=delivery.to_dict(),
            error=delivery.error,
            kind=None if delivery.success else "delivery_failed",
            duration_ms=delivery.latency_ms,
        )
        return delivery

    async def _deliver(self, webhook: Webhook, event: str, body: str, headers: dict[str, str]) -> WebhookDelivery:
        """POST with retries. Non-retryable responses stop the loop early."""
        policy = webhook.retry_policy or self.default_retry_policy()
        max_attempts = 1 + int(policy.get("max_retries", self.settings.max_retries))
        started = time.monotonic()
        last_error: str | None = None
        status = 0

        async with httpx.AsyncClient(transport=self._transport, timeout=webhook.timeout_seconds) as client:
            for attempt in range(1, max_attempts + 1):
                try:
                    resp = await client.request(webhook.method, webhook.url, content=body, headers=headers)
                    status = resp.status_code
                    if 200 <= status < 300:
                        return WebhookDelivery(
                            webhook_id=webhook.id, event=event, url=webhook.url, status_code=status,
                            latency_ms=elapsed_ms(started), attempts=attempt, success=True,
                        )
                    last_error = f"HTTP {status}"
                    retry = should_retry(status)
                except httpx.HTTPError as exc:
                    status = 0
                    last_error = str(exc) or type(exc).__name__
                    retry = True

                if not retry or attempt == max_attempts:
                    break
                delay = self.retry_delay(attempt, policy)
                logger.info("Webhook %s delivery attempt %d failed (%s); retrying in %.1fs", webhook.id, attempt, last_error, delay)
                await self._sleep(delay)

        logger.warning("Webhook %s delivery failed after %d attempts: %s", webhook.id, attempt, last_error)
        return WebhookDelivery(
            webhook_id=webhook.id, event=event, url=webhook.url, status_code=status,
            latency_ms=elapsed_ms(started), attempts=attempt, success=False, error=last_error,
        )

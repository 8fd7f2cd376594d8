"""Dataclass-based settings for the integration hub.

Every tunable the connection lifecycle depends on lives here as a frozen
dataclass section. Sections have safe defaults, validate themselves on
construction and can be loaded from environment variables::

    settings = HubSettings.from_env()
    hub = IntegrationHub.create(store, settings)
"""

import logging
import os
import secrets
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

MIN_KDF_ITERATIONS = 100_000


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VaultSettings:
    """Master key material and rotation policy for stored credentials."""

    master_key: str = ""
    key_version: int = 1
    previous_keys: tuple[tuple[int, str], ...] = ()
    kdf_iterations: int = MIN_KDF_ITERATIONS
    rotation_interval_days: int = 90

    def __post_init__(self) -> None:
        if not self.master_key:
            raise ValueError("Vault master key must not be empty")
        if self.kdf_iterations < MIN_KDF_ITERATIONS:
            raise ValueError(
                f"kdf_iterations must be at least {MIN_KDF_ITERATIONS}, got {self.kdf_iterations}"
            )
        if self.key_version < 1:
            raise ValueError("key_version starts at 1")
        for version, _ in self.previous_keys:
            if version >= self.key_version:
                raise ValueError(
                    f"Previous key version {version} is not older than current version {self.key_version}"
                )


@dataclass(frozen=True)
class OAuthSettings:
    """Authorization attempt lifetime."""

    state_ttl_minutes: int = 30


@dataclass(frozen=True)
class HealthSettings:
    """Bounded fan-out for connection probes."""

    concurrency: int = 5
    batch_delay_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("Health check concurrency must be at least 1")
        if self.batch_delay_seconds < 0:
            raise ValueError("Batch delay cannot be negative")


@dataclass(frozen=True)
class HttpSettings:
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class SyncSettings:
    # A sync_started row older than this is treated as abandoned
    stale_after_minutes: int = 60


@dataclass(frozen=True)
class WebhookSettings:
    """Inbound verification and outbound delivery policy."""

    max_retries: int = 3
    retry_delays: tuple[float, ...] = (1.0, 5.0, 15.0)
    backoff_multiplier: float = 2.0
    delivery_timeout_seconds: float = 10.0
    timestamp_tolerance_seconds: int | None = None


@dataclass(frozen=True)
class AuditSettings:
    retention_days: int = 90


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HubSettings:
    """Complete configuration for the integration hub."""

    vault: VaultSettings
    oauth: OAuthSettings = field(default_factory=OAuthSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    http: HttpSettings = field(default_factory=HttpSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    webhooks: WebhookSettings = field(default_factory=WebhookSettings)
    audit: AuditSettings = field(default_factory=AuditSettings)

    @classmethod
    def default(cls, master_key: str | None = None) -> "HubSettings":
        return cls(vault=VaultSettings(master_key=master_key or secrets.token_hex(32)))

    @classmethod
    def from_env(cls) -> "HubSettings":
        """Build settings from environment variables."""
        master_key = os.getenv("INTEGRATION_ENCRYPTION_KEY", "")
        if not master_key:
            logger.warning(
                "INTEGRATION_ENCRYPTION_KEY is not set; generating an ephemeral key. "
                "Stored credentials will not survive a restart."
            )
            master_key = secrets.token_hex(32)

        vault = VaultSettings(
            master_key=master_key,
            key_version=int(os.getenv("ENCRYPTION_KEY_VERSION", "1")),
            previous_keys=_parse_previous_keys(os.getenv("INTEGRATION_PREVIOUS_KEYS", "")),
            kdf_iterations=int(os.getenv("INTEGRATION_KDF_ITERATIONS", str(MIN_KDF_ITERATIONS))),
            rotation_interval_days=int(os.getenv("KEY_ROTATION_INTERVAL_DAYS", "90")),
        )
        tolerance = os.getenv("WEBHOOK_TIMESTAMP_TOLERANCE")
        return cls(
            vault=vault,
            oauth=OAuthSettings(
                state_ttl_minutes=int(os.getenv("OAUTH_STATE_TTL_MINUTES", "30")),
            ),
            health=HealthSettings(
                concurrency=int(os.getenv("HEALTH_CHECK_CONCURRENCY", "5")),
                batch_delay_seconds=float(os.getenv("HEALTH_CHECK_BATCH_DELAY", "1.0")),
            ),
            http=HttpSettings(
                timeout_seconds=float(os.getenv("PROVIDER_HTTP_TIMEOUT", "30")),
            ),
            sync=SyncSettings(
                stale_after_minutes=int(os.getenv("SYNC_STALE_AFTER_MINUTES", "60")),
            ),
            webhooks=WebhookSettings(
                timestamp_tolerance_seconds=int(tolerance) if tolerance else None,
            ),
            audit=AuditSettings(
                retention_days=int(os.getenv("AUDIT_RETENTION_DAYS", "90")),
            ),
        )


def _parse_previous_keys(raw: str) -> tuple[tuple[int, str], ...]:
    """Parse ``"1:oldkey,2:otherkey"`` into ``((1, "oldkey"), (2, "otherkey"))``."""
    keys = []
    for item in filter(None, (part.strip() for part in raw.split(","))):
        version, sep, key = item.partition(":")
        if not sep or not key:
            raise ValueError(f"Malformed previous key entry: {item!r}")
        keys.append((int(version), key))
    return tuple(keys)

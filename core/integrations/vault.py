"""
Credential vault: authenticated encryption for credential blobs at rest.

Ciphertext format (colon-delimited hex)::

    iv:salt:authTag:ciphertext

- iv:    12 random bytes, fresh per call
- salt:  32 random bytes, fresh per call; the AES-256 key is derived from
         the master secret with PBKDF2-HMAC-SHA512 over this salt
- AAD:   the fixed context string ``integration-credentials``

The vault keeps a keyring: the current master key plus any previous
versions still configured. Decryption tries the current key first, then
older ones, so blobs written before a key change stay readable until
``rotate``/``bulk_rotate`` re-encrypts them under the current version.
"""
from __future__ import annotations
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable
import json
import logging
import os
import threading

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.config import VaultSettings
from core.integrations.errors import AuthenticationFailed, IntegrationError, InvalidFormat, NotFound
from core.integrations.store import IntegrationStore
from core.integrations.types import ConnectionStatus, IntegrationLog, LogStatus, utcnow

logger = logging.getLogger(__name__)

AAD = b"integration-credentials"
IV_BYTES = 12
SALT_BYTES = 32
TAG_BYTES = 16
KEY_BYTES = 32
DERIVED_KEY_CACHE_SIZE = 512


def _parse_time(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


class CredentialVault:
    """Encrypts, decrypts and rotates credential blobs.

    The vault knows nothing about providers. ``store`` is only required for
    the connection-level maintenance operations (rotate, bulk_rotate, health).
    """

    def __init__(
        self,
        settings: VaultSettings,
        store: IntegrationStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.store = store
        self._clock = clock
        self._keys: dict[int, bytes] = {settings.key_version: settings.master_key.encode("utf-8")}
        for version, key in settings.previous_keys:
            self._keys[version] = key.encode("utf-8")
        # (key version, salt) -> derived AES key, least recently used first
        self._derived: OrderedDict[tuple[int, bytes], bytes] = OrderedDict()
        self._derived_lock = threading.Lock()

    @property
    def key_version(self) -> int:
        return self.settings.key_version

    # --- Primitives ---

    def _derive(self, version: int, salt: bytes) -> bytes:
        """PBKDF2 key for one blob. Stored blobs are re-read often, so keys are cached."""
        cache_key = (version, salt)
        with self._derived_lock:
            key = self._derived.get(cache_key)
            if key is not None:
                self._derived.move_to_end(cache_key)
                return key
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_BYTES,
            salt=salt,
            iterations=self.settings.kdf_iterations,
        )
        key = kdf.derive(self._keys[version])
        with self._derived_lock:
            self._derived[cache_key] = key
            while len(self._derived) > DERIVED_KEY_CACHE_SIZE:
                self._derived.popitem(last=False)
        return key

    def encrypt(self, record: Any) -> str:
        """Serialize ``record`` and seal it under the current key version."""
        plaintext = json.dumps(record, default=str).encode("utf-8")
        iv = os.urandom(IV_BYTES)
        salt = os.urandom(SALT_BYTES)
        key = self._derive(self.key_version, salt)
        sealed = AESGCM(key).encrypt(iv, plaintext, AAD)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return ":".join(part.hex() for part in (iv, salt, tag, ciphertext))

    def decrypt(self, blob: str) -> Any:
        record, _ = self.decrypt_with_version(blob)
        return record

    def decrypt_with_version(self, blob: str) -> tuple[Any, int]:
        """Decrypt and report which key version opened the blob."""
        if not isinstance(blob, str):
            raise InvalidFormat("Encrypted data must be a string")
        parts = blob.split(":")
        if len(parts) != 4 or not all(parts[:3]):
            raise InvalidFormat("Invalid encrypted data format")
        try:
            iv, salt, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as exc:
            raise InvalidFormat("Encrypted data is not valid hex") from exc
        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES or not salt:
            raise InvalidFormat("Invalid encrypted data format")

        versions = [self.key_version] + sorted(
            (v for v in self._keys if v != self.key_version), reverse=True
        )
        for version in versions:
            key = self._derive(version, salt)
            try:
                plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, AAD)
            except InvalidTag:
                continue
            return json.loads(plaintext.decode("utf-8")), version
        raise AuthenticationFailed("Credential blob failed authentication")

    # --- Rotation policy ---

    def metadata(self, created_at: datetime | None = None) -> dict[str, Any]:
        """Settings block stamped onto a freshly written connection."""
        now = self._clock()
        return {
            "key_version": self.key_version,
            "created_at": (created_at or now).isoformat(),
            "rotated_at": now.isoformat(),
        }

    def needs_rotation(self, metadata: dict[str, Any] | None) -> bool:
        if not metadata or "key_version" not in metadata or "created_at" not in metadata:
            return True
        try:
            if int(metadata["key_version"]) < self.key_version:
                return True
        except (TypeError, ValueError):
            return True
        written = _parse_time(metadata.get("rotated_at")) or _parse_time(metadata.get("created_at"))
        if written is None:
            return True
        return self._clock() - written > timedelta(days=self.settings.rotation_interval_days)

    # --- Connection maintenance ---

    def _require_store(self) -> IntegrationStore:
        if self.store is None:
            raise IntegrationError("Vault has no store configured")
        return self.store

    async def rotate(self, connection_id: str, organization_id: str | None = None) -> bool:
        """Re-encrypt one connection under the current key version.

        Best-effort: failures are logged and reported as False. Both blobs
        are written in a single update so no reader sees a half-rotated row.
        """
        store = self._require_store()
        try:
            connection = await store.get_connection(connection_id, organization_id)
            if connection is None:
                raise NotFound(f"Connection {connection_id} not found")
            credentials = self.decrypt(connection.credentials)
            previous = self.decrypt(connection.settings) if connection.settings else {}
            old_version = previous.get("key_version") if isinstance(previous, dict) else None
            settings = dict(previous) if isinstance(previous, dict) else {}
            settings.update(self.metadata(_parse_time(settings.get("created_at"))))
            await store.update_connection(
                connection_id,
                credentials=self.encrypt(credentials),
                settings=self.encrypt(settings),
            )
            await store.append_log(IntegrationLog(
                integration_id=connection.integration_id,
                action="credentials_rotated",
                status=LogStatus.SUCCESS,
                request_data={
                    "connection_id": connection_id,
                    "old_key_version": old_version,
                    "new_key_version": self.key_version,
                },
            ))
            return True
        except Exception:
            logger.exception("Credential rotation failed for connection %s", connection_id)
            return False

    async def bulk_rotate(self, organization_id: str) -> dict[str, Any]:
        store = self._require_store()
        rotated = 0
        failed = 0
        errors: list[str] = []
        for connection in await store.list_connections(organization_id=organization_id):
            if connection.status == ConnectionStatus.INACTIVE:
                continue
            try:
                settings = self.decrypt(connection.settings) if connection.settings else None
            except IntegrationError as exc:
                failed += 1
                errors.append(f"Connection {connection.id}: {exc.message}")
                continue
            if not self.needs_rotation(settings):
                continue
            if await self.rotate(connection.id, organization_id):
                rotated += 1
            else:
                failed += 1
                errors.append(f"Connection {connection.id}: rotation failed")
        logger.info("Bulk rotation for %s: %d rotated, %d failed", organization_id, rotated, failed)
        return {"rotated": rotated, "failed": failed, "errors": errors}

    async def health(self, organization_id: str) -> dict[str, Any]:
        """Read-only aggregate over the organization's stored credentials."""
        store = self._require_store()
        report = {"total": 0, "active": 0, "expired": 0, "needs_rotation": 0, "errors": 0}
        now = self._clock()
        for connection in await store.list_connections(organization_id=organization_id):
            if connection.status == ConnectionStatus.INACTIVE:
                continue
            report["total"] += 1
            if connection.status == ConnectionStatus.CONNECTED:
                report["active"] += 1
            if connection.status == ConnectionStatus.EXPIRED or (
                connection.token_expires_at is not None and connection.token_expires_at <= now
            ):
                report["expired"] += 1
            try:
                settings = self.decrypt(connection.settings) if connection.settings else None
            except IntegrationError:
                report["errors"] += 1
                continue
            if self.needs_rotation(settings):
                report["needs_rotation"] += 1
        return report

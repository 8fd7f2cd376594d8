"""
Integration error taxonomy.

Every error carries a machine-usable ``kind`` so result values and audit
rows can record what went wrong without string matching on messages.
"""
from __future__ import annotations
from typing import Any


class IntegrationError(Exception):
    """Base class for all integration failures."""

    kind: str = "error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(IntegrationError):
    """Malformed credentials or config for the declared connection type."""

    kind = "validation"

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or [message]


class ProviderHttpError(IntegrationError):
    """Non-2xx response (or transport failure) from a third-party API."""

    kind = "provider_http"

    def __init__(self, status: int, body: Any = None, message: str | None = None):
        super().__init__(message or f"Provider returned HTTP {status}")
        self.status = status
        self.body = body

    @property
    def transient(self) -> bool:
        return self.status == 0 or self.status >= 500


class ProviderTimeoutError(ProviderHttpError):
    kind = "timeout"

    def __init__(self, message: str = "Provider request timed out"):
        super().__init__(status=0, body=None, message=message)

    @property
    def transient(self) -> bool:
        return True


class RateLimited(ProviderHttpError):
    """Provider signaled throttling (HTTP 429)."""

    kind = "rate_limited"

    def __init__(self, body: Any = None, retry_after: float | None = None):
        super().__init__(status=429, body=body, message="Provider rate limit exceeded")
        self.retry_after = retry_after

    @property
    def transient(self) -> bool:
        return True


class AuthenticationFailed(IntegrationError):
    """AEAD tag mismatch on decrypt, or an OAuth state that does not match."""

    kind = "authentication_failed"


class StateMismatch(AuthenticationFailed):
    kind = "state_mismatch"


class InvalidFormat(IntegrationError):
    """Stored ciphertext is not ``iv:salt:authTag:ciphertext``."""

    kind = "invalid_format"


class NotSupported(IntegrationError):
    kind = "not_supported"


class UnsupportedOperation(NotSupported):
    kind = "unsupported_operation"


class UnsupportedAction(NotSupported):
    kind = "unsupported_action"


class NoRefreshToken(IntegrationError):
    kind = "no_refresh_token"


class NotFound(IntegrationError):
    kind = "not_found"


def error_kind(exc: BaseException) -> str:
    """Machine-usable kind for any exception."""
    if isinstance(exc, IntegrationError):
        return exc.kind
    return "internal"


def error_message(exc: BaseException) -> str:
    if isinstance(exc, IntegrationError):
        return exc.message
    return str(exc) or exc.__class__.__name__


def log_status_for(exc: BaseException) -> str:
    """Audit log status recorded for a failed operation."""
    return log_status_for_kind(error_kind(exc))


def log_status_for_kind(kind: str | None) -> str:
    """Audit log status for a failure reported as a result's ``error_kind``."""
    if kind == ProviderTimeoutError.kind:
        return "timeout"
    if kind == RateLimited.kind:
        return "rate_limited"
    return "error"

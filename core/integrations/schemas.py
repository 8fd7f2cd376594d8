"""Pydantic models for provider configuration and submitted credentials."""
from __future__ import annotations
from typing import Any, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from core.integrations.errors import ValidationError
from core.integrations.types import ConnectionType


def _flatten(exc: PydanticValidationError) -> list[str]:
    messages = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        messages.append(f"{location}: {err['msg']}" if location else err["msg"])
    return messages


def validate_model(model: type[BaseModel], data: dict[str, Any], what: str) -> BaseModel:
    """Validate ``data`` against ``model``, raising the integration ValidationError."""
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as exc:
        errors = _flatten(exc)
        raise ValidationError(f"Invalid {what}: {'; '.join(errors)}", errors) from exc


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------

class ProviderConfig(BaseModel):
    """Settings common to every provider. Unknown keys are kept."""
    model_config = ConfigDict(extra="allow")

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    scopes: list[str] = Field(default_factory=list)
    features: Optional[list[str]] = None
    webhook_secret: Optional[str] = None

    @field_validator("features", mode="before")
    @classmethod
    def _enabled_features(cls, value: Any) -> Any:
        # {"channels": true, "users": false} -> ["channels"]
        if isinstance(value, dict):
            return [name for name, enabled in value.items() if enabled]
        return value


class SlackConfig(ProviderConfig):
    default_channel: Optional[str] = None
    user_scopes: list[str] = Field(default_factory=list)


class SalesforceConfig(ProviderConfig):
    sandbox: bool = False
    instance_url: Optional[str] = None
    api_version: str = "v58.0"


class JiraConfig(ProviderConfig):
    project_keys: list[str] = Field(default_factory=list)
    jql: Optional[str] = None
    cloud_id: Optional[str] = None


class GoogleDriveConfig(ProviderConfig):
    folder_ids: list[str] = Field(default_factory=list)
    include_shared: bool = True


class StripeConfig(ProviderConfig):
    access: Literal["read_only", "read_write"] = "read_write"
    api_version: Optional[str] = None


class WebhookSinkConfig(ProviderConfig):
    url: Optional[str] = None
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Credentials per connection type
# ---------------------------------------------------------------------------

class _Credentials(BaseModel):
    model_config = ConfigDict(extra="allow")


class OAuthCredentials(_Credentials):
    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    scope: Optional[str] = None


class ApiKeyCredentials(_Credentials):
    api_key: Optional[str] = None
    apiKey: Optional[str] = None

    @model_validator(mode="after")
    def _require_key(self) -> "ApiKeyCredentials":
        if not (self.api_key or self.apiKey):
            raise ValueError("API key is required")
        return self


class BasicAuthCredentials(_Credentials):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class BearerTokenCredentials(_Credentials):
    token: Optional[str] = None
    bearer_token: Optional[str] = None

    @model_validator(mode="after")
    def _require_token(self) -> "BearerTokenCredentials":
        if not (self.token or self.bearer_token):
            raise ValueError("Bearer token is required")
        return self


CREDENTIAL_MODELS: dict[ConnectionType, type[BaseModel]] = {
    ConnectionType.OAUTH: OAuthCredentials,
    ConnectionType.API_KEY: ApiKeyCredentials,
    ConnectionType.BASIC_AUTH: BasicAuthCredentials,
    ConnectionType.BEARER_TOKEN: BearerTokenCredentials,
}


def validate_credentials(connection_type: ConnectionType | str, credentials: Any) -> dict[str, Any]:
    """Check that ``credentials`` has the fields its connection type needs.

    Returns the credentials unchanged (extra keys preserved).
    """
    try:
        connection_type = ConnectionType(connection_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown connection type: {connection_type}") from exc
    if not isinstance(credentials, dict):
        raise ValidationError("Credentials must be an object")
    model = CREDENTIAL_MODELS.get(connection_type)
    if model is not None:
        validate_model(model, credentials, f"{connection_type.value} credentials")
    return dict(credentials)

"""
Provider registry.

Maps a provider key to a Provider instance. The registry is built once at
process start and passed to the services that need it; tests build their
own with stub providers.
"""
from __future__ import annotations
from typing import Any, Iterable, Mapping, Optional

import httpx

from core.integrations.errors import NotFound, ValidationError
from core.integrations.providers import BUILTIN_PROVIDERS, Provider


class ProviderRegistry:
    """Lookup table of available providers."""

    def __init__(self, providers: Iterable[Provider] = ()):
        self._providers: dict[str, Provider] = {}
        for provider in providers:
            self.register(provider)

    @classmethod
    def with_builtins(
        cls,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> "ProviderRegistry":
        """Registry holding every built-in provider, sharing one transport/timeout."""
        return cls(provider_cls(transport=transport, timeout=timeout) for provider_cls in BUILTIN_PROVIDERS)

    def register(self, provider: Provider) -> None:
        if not provider.key:
            raise ValueError(f"{type(provider).__name__} has no key")
        self._providers[provider.key] = provider

    def deregister(self, key: str) -> None:
        self._providers.pop(key, None)

    def get(self, key: str) -> Optional[Provider]:
        return self._providers.get(key)

    def require(self, key: str) -> Provider:
        provider = self._providers.get(key)
        if provider is None:
            raise NotFound(f"Provider {key} not found")
        return provider

    def __contains__(self, key: str) -> bool:
        return key in self._providers

    @property
    def provider_count(self) -> int:
        return len(self._providers)

    def list_providers(self) -> list[dict[str, Any]]:
        return [p.get_provider_metadata() for p in self._providers.values()]

    def metadata(self, key: str) -> dict[str, Any]:
        """Everything a setup screen needs to know about one provider."""
        provider = self.require(key)
        return {
            **provider.get_provider_metadata(),
            "scopes": provider.get_available_scopes(),
            "default_config": provider.get_default_config(),
            "webhook_events": provider.get_supported_webhook_events(),
        }

    def validate_config(self, key: str, config: Mapping[str, Any] | None) -> dict[str, Any]:
        """Validate a provider config; returns it normalized.

        Enabled features must be ones the provider supports.
        """
        provider = self.require(key)
        cfg = provider.parse_config(config)
        unknown = [f for f in cfg.features or () if f not in provider.supported_features]
        if unknown:
            errors = [f"Unsupported feature for {key}: {name}" for name in unknown]
            raise ValidationError("; ".join(errors), errors)
        return cfg.model_dump(exclude_none=True)

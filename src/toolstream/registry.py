"""Provider registry: explicitly constructed, owned by the composition root."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from toolstream.errors import ConfigurationError
from toolstream.providers.base import Provider, ProviderCapabilities

if TYPE_CHECKING:
    from collections.abc import Iterable

log = logging.getLogger(__name__)


class ProviderRegistry:
    """Registered providers in registration order plus the active one."""

    def __init__(self, providers: Iterable[Provider] = ()) -> None:
        self._providers: dict[str, Provider] = {}
        self._active_id: str | None = None
        for provider in providers:
            self.register(provider)

    def register(self, provider: Provider, *, activate: bool = False) -> None:
        """Add a provider after checking it implements the full contract.

        The first registered provider becomes active.
        """
        if not isinstance(provider, Provider):
            raise ConfigurationError(
                f"{type(provider).__name__} does not implement the Provider interface",
            )
        caps = provider.capabilities
        if not isinstance(caps, ProviderCapabilities):
            raise ConfigurationError(f"Provider {provider.id!r} must expose ProviderCapabilities")
        descriptor = provider.descriptor
        if caps.tool_calling and descriptor.tool_format is None:
            raise ConfigurationError(
                f"Provider {provider.id!r} claims tool calling but declares no tool format",
            )
        if provider.id in self._providers:
            raise ConfigurationError(f"Provider {provider.id!r} is already registered")

        self._providers[provider.id] = provider
        log.debug("Registered provider %s", provider.id)
        if activate or self._active_id is None:
            self._active_id = provider.id

    def unregister(self, provider_id: str) -> Provider | None:
        """Remove a provider; the active one falls back to the first remaining."""
        removed = self._providers.pop(provider_id, None)
        if removed is not None and self._active_id == provider_id:
            self._active_id = next(iter(self._providers), None)
        return removed

    def clear(self) -> None:
        self._providers.clear()
        self._active_id = None

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    def get(self, provider_id: str) -> Provider:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise ConfigurationError(
                f"Unknown provider: {provider_id!r}",
                hint=f"Registered providers: {', '.join(self._providers) or 'none'}",
            ) from None

    def ids(self) -> list[str]:
        return list(self._providers)

    # --- Active provider -----------------------------------------------------

    @property
    def active_id(self) -> str | None:
        return self._active_id

    def set_active(self, provider_id: str) -> Provider:
        provider = self.get(provider_id)
        self._active_id = provider_id
        log.info("Active provider set to %s", provider_id)
        return provider

    def active(self) -> Provider:
        if self._active_id is None:
            raise ConfigurationError("No providers registered")
        return self._providers[self._active_id]

    # --- Discovery -----------------------------------------------------------

    def describe_all(self) -> list[dict[str, Any]]:
        return [
            {
                "id": p.id,
                "name": p.descriptor.name,
                "models": p.list_models(),
                "default_model": p.descriptor.default_model,
                "supports_streaming": p.capabilities.streaming,
                "supports_tool_calling": p.capabilities.tool_calling,
                "active": p.id == self._active_id,
            }
            for p in self._providers.values()
        ]

    def with_tool_support(self) -> list[Provider]:
        return [p for p in self._providers.values() if p.capabilities.tool_calling]

    def with_streaming_support(self) -> list[Provider]:
        return [p for p in self._providers.values() if p.capabilities.streaming]

    def validate_api_key(self, provider_id: str, api_key: str | None) -> bool:
        return self.get(provider_id).validate_api_key(api_key)

    def validate_model(self, provider_id: str, model: str) -> bool:
        return self.get(provider_id).validate_model(model)

    # --- Statistics ----------------------------------------------------------

    def stats_all(self) -> dict[str, dict[str, Any]]:
        return {pid: p.stats() for pid, p in self._providers.items()}

    def active_stats(self) -> dict[str, Any]:
        return self.active().stats()

    def reset_all_stats(self) -> None:
        for provider in self._providers.values():
            provider.reset_stats()

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()

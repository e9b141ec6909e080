"""Provider registry: name lookup and callback auto-detection."""

from typing import Any, Iterable, Iterator

import httpx

from mediagen.core.config import Settings
from mediagen.models.pending_job import Provider
from mediagen.services.exceptions import ProviderConfigurationError
from mediagen.services.providers.base import ProviderAdapter
from mediagen.services.providers.bindings import SignatureHeaderAuth, TokenAuth
from mediagen.services.providers.falai import FalAIAdapter
from mediagen.services.providers.runware import RunwareAdapter
from mediagen.services.providers.wavespeed import WaveSpeedAdapter

# Most specific shape first: fal.ai needs request_id plus an OK/ERROR status, Runware
# needs taskUUID, WaveSpeed only an id with a terminal status.
DETECTION_ORDER = (Provider.FALAI, Provider.RUNWARE, Provider.WAVESPEED)


class ProviderRegistry:
    """Adapters keyed by provider name."""

    def __init__(self, adapters: Iterable[ProviderAdapter]):
        self._adapters: dict[Provider, ProviderAdapter] = {a.name: a for a in adapters}

    def __iter__(self) -> Iterator[ProviderAdapter]:
        return iter(self._adapters.values())

    def get(self, name: str | Provider) -> ProviderAdapter:
        """Return the adapter for ``name``.

        Raises:
            ProviderConfigurationError: If the provider is unknown or not registered
        """
        try:
            provider = Provider(name)
        except ValueError as e:
            raise ProviderConfigurationError(f"Unknown provider: {name}") from e

        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ProviderConfigurationError(f"Provider not configured: {provider.value}")
        return adapter

    def detect(self, payload: Any) -> ProviderAdapter | None:
        """Guess the provider of an unlabelled callback from its payload shape."""
        for provider in DETECTION_ORDER:
            adapter = self._adapters.get(provider)
            if adapter is not None and adapter.matches_callback(payload):
                return adapter
        return None


def build_provider_registry(
    settings: Settings, http_client: httpx.AsyncClient | None = None
) -> ProviderRegistry:
    """Construct all adapters from settings.

    Args:
        settings: Application settings (API keys, webhook base URL and secrets)
        http_client: Optional shared client used by every adapter

    Returns:
        Registry with Runware, fal.ai and WaveSpeed adapters
    """
    webhook_base_url = settings.webhook_base_url or None
    token_auth = TokenAuth(settings.webhook_secret)

    return ProviderRegistry(
        [
            RunwareAdapter(
                settings.runware_api_key,
                token_auth,
                webhook_base_url,
                http_client,
                settings.provider_timeout_seconds,
            ),
            FalAIAdapter(
                settings.fal_api_key,
                token_auth,
                webhook_base_url,
                http_client,
                settings.provider_timeout_seconds,
            ),
            WaveSpeedAdapter(
                settings.wavespeed_api_key,
                SignatureHeaderAuth(settings.wavespeed_webhook_secret),
                webhook_base_url if settings.wavespeed_use_webhook else None,
                http_client,
                settings.provider_timeout_seconds,
            ),
        ]
    )

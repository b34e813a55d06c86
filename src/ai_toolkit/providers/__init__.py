"""Provider adapters and the factory that selects one from configuration."""

from __future__ import annotations

from typing import Dict, Optional, Type

import aiohttp

from ..config import GenerationDefaults, ProviderSettings
from ..errors import ConfigError
from .anthropic import AnthropicClient
from .anthropic_enhanced import EnhancedAnthropicClient
from .http import HTTPProviderClient
from .ollama import OllamaClient
from .openai import OpenAIClient

PROVIDERS: Dict[str, Type[HTTPProviderClient]] = {
    "openai": OpenAIClient,
    "anthropic": AnthropicClient,
    "anthropic_enhanced": EnhancedAnthropicClient,
    "ollama": OllamaClient,
}

_KEYLESS = {"ollama"}


def create_client(
    settings: ProviderSettings,
    *,
    generation: Optional[GenerationDefaults] = None,
    max_concurrent_requests: int = 3,
    session: Optional[aiohttp.ClientSession] = None,
) -> HTTPProviderClient:
    """Build the adapter for ``settings.provider``.

    Raises:
        ConfigError: If the provider is unknown or its API key is missing.
    """
    client_cls = PROVIDERS.get(settings.provider)
    if client_cls is None:
        raise ConfigError(
            f"Unsupported provider '{settings.provider}'. Choose one of: {', '.join(sorted(PROVIDERS))}",
            provider=settings.provider,
        )
    if settings.provider not in _KEYLESS and not settings.api_key:
        raise ConfigError(
            f"No API key configured for provider '{settings.provider}'. "
            "Set AI_TOOLKIT_API_KEY or add it to the config file.",
            provider=settings.provider,
        )
    generation = generation or GenerationDefaults()
    return client_cls(
        settings,
        session=session,
        max_tokens=generation.max_tokens,
        temperature=generation.temperature,
        max_concurrent_requests=max_concurrent_requests,
    )


__all__ = [
    "PROVIDERS",
    "AnthropicClient",
    "EnhancedAnthropicClient",
    "HTTPProviderClient",
    "OllamaClient",
    "OpenAIClient",
    "create_client",
]

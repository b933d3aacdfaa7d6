from __future__ import annotations

import httpx

from ..config import ProviderConfig
from ..contracts import ProviderName
from .anthropic import AnthropicAdapter
from .base import ProviderAdapter
from .google import GoogleAdapter
from .openai import OpenAIAdapter
from .openrouter import OpenRouterAdapter

PROVIDER_ADAPTERS: dict[ProviderName, type[ProviderAdapter]] = {
    ProviderName.ANTHROPIC: AnthropicAdapter,
    ProviderName.OPENAI: OpenAIAdapter,
    ProviderName.GOOGLE: GoogleAdapter,
    ProviderName.OPENROUTER: OpenRouterAdapter,
}


def create_adapter(
    provider: ProviderName,
    config: ProviderConfig,
    *,
    client: httpx.AsyncClient | None = None,
    app_url: str | None = None,
) -> ProviderAdapter:
    if provider is ProviderName.OPENROUTER and app_url:
        return OpenRouterAdapter(config, client=client, app_url=app_url)
    return PROVIDER_ADAPTERS[provider](config, client=client)

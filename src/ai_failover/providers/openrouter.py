from __future__ import annotations

import httpx

from ..config import ProviderConfig
from ..contracts import ProviderName
from .openai import OpenAIAdapter


class OpenRouterAdapter(OpenAIAdapter):
    """OpenRouter speaks the OpenAI chat-completions format behind its own base URL."""

    name = ProviderName.OPENROUTER
    default_base_url = "https://openrouter.ai/api/v1"
    health_model = "openai/gpt-4o-mini"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        client: httpx.AsyncClient | None = None,
        app_url: str = "http://localhost:3000",
        app_title: str = "Law Transcribed",
    ):
        super().__init__(config, client=client)
        self.app_url = app_url
        self.app_title = app_title

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["HTTP-Referer"] = self.app_url
        headers["X-Title"] = self.app_title
        return headers

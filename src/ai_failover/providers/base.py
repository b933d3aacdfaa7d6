from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from typing import Any, ClassVar

import httpx
import structlog

from ..config import ProviderConfig
from ..contracts import (
    ChatMessage,
    CompletionDone,
    CompletionRequest,
    CompletionResult,
    NormalizedChunk,
    ProviderName,
    ProviderStatus,
    Usage,
)
from ..errors import (
    AuthenticationError,
    CapabilityMismatchError,
    ProviderError,
    RateLimitError,
    TransientError,
    UpstreamProtocolError,
)
from ..pricing import ModelInfo, calculate_cost, find_model, models_for

log = structlog.get_logger()


def parse_retry_after(value: str | None) -> int | None:
    if value and value.strip().isdigit():
        return int(value.strip())
    return None


def decode_json(raw: str | bytes, *, provider: str) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise UpstreamProtocolError(f"Failed to decode {provider} response JSON.", provider=provider) from e


def parse_tool_arguments(raw: str, *, provider: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    args = decode_json(raw, provider=provider)
    if not isinstance(args, dict):
        raise UpstreamProtocolError(f"{provider} tool call arguments are not a JSON object.", provider=provider)
    return args


class StreamParser:
    """Incremental translation of vendor stream events into normalized chunks."""

    def feed(self, event: dict[str, Any]) -> list[NormalizedChunk]:
        raise NotImplementedError

    def finish(self) -> CompletionDone:
        raise NotImplementedError


class ProviderAdapter:
    """
    One upstream vendor behind the normalized completion contract.

    Adapters hold no cross-request state: each instance is built from a
    ProviderConfig for one request-handling session and performs exactly one
    outbound call per `stream()` / `complete()` invocation.
    """

    name: ClassVar[ProviderName]
    default_base_url: ClassVar[str]
    health_model: ClassVar[str]

    def __init__(self, config: ProviderConfig, *, client: httpx.AsyncClient | None = None):
        self.config = config
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=config.timeout_seconds,
            transport=httpx.AsyncHTTPTransport(retries=config.max_retries),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def models(self) -> list[ModelInfo]:
        return models_for(self.name)

    def model_info(self, model: str) -> ModelInfo:
        info = find_model(self.name, model)
        if info is None:
            raise CapabilityMismatchError(
                f"Model {model!r} is not served by provider {self.name.value}.",
                provider=self.name.value,
                model=model,
            )
        return info

    def check_capabilities(self, request: CompletionRequest, *, stream: bool) -> ModelInfo:
        info = self.model_info(request.model)
        provider = self.name.value
        if stream and not info.supports_streaming:
            raise CapabilityMismatchError(f"{info.id} does not support streaming.", provider=provider, model=info.id)
        if request.tools and not info.supports_tools:
            raise CapabilityMismatchError(f"{info.id} does not support tools.", provider=provider, model=info.id)
        if request.uses_vision and not info.supports_vision:
            raise CapabilityMismatchError(f"{info.id} does not support images.", provider=provider, model=info.id)
        return info

    def calculate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        return calculate_cost(self.name, model, prompt_tokens, completion_tokens)

    def usage(self, model: str, prompt_tokens: int, completion_tokens: int) -> Usage:
        return Usage.from_counts(
            prompt_tokens,
            completion_tokens,
            cost=self.calculate_cost(model, prompt_tokens, completion_tokens),
        )

    # Vendor hooks

    def _headers(self) -> dict[str, str]:
        raise NotImplementedError

    def _url(self, request: CompletionRequest, *, stream: bool) -> str:
        raise NotImplementedError

    def _payload(self, request: CompletionRequest, *, stream: bool) -> dict[str, Any]:
        raise NotImplementedError

    def _stream_parser(self, request: CompletionRequest) -> StreamParser:
        raise NotImplementedError

    def _parse_completion(self, data: Any, request: CompletionRequest) -> CompletionResult:
        raise NotImplementedError

    # Transport

    def _raise_for_status(self, resp: httpx.Response, body: bytes, model: str) -> None:
        provider = self.name.value
        status = resp.status_code
        if status < 400:
            return
        if status in (401, 403):
            raise AuthenticationError(
                f"{provider} rejected credentials ({status}).", provider=provider, model=model
            )
        if status == 429:
            raise RateLimitError(
                retry_after_seconds=parse_retry_after(resp.headers.get("retry-after")),
                message=f"{provider} rate limited the request.",
                provider=provider,
                model=model,
            )
        if status == 408 or 500 <= status <= 599:
            log.warning(
                "upstream_5xx",
                provider=provider,
                model=model,
                status_code=status,
                body=body[:500].decode("utf-8", "replace"),
            )
            raise TransientError(f"{provider} upstream error {status}.", provider=provider, model=model)
        raise UpstreamProtocolError(f"{provider} upstream error {status}.", provider=provider, model=model)

    def _wrap_transport_error(self, e: httpx.HTTPError, model: str) -> ProviderError:
        provider = self.name.value
        if isinstance(e, httpx.TimeoutException):
            return TransientError(f"{provider} request timed out.", provider=provider, model=model)
        return TransientError(f"{provider} request failed: {type(e).__name__}.", provider=provider, model=model)

    async def stream(self, request: CompletionRequest) -> AsyncIterator[NormalizedChunk]:
        self.check_capabilities(request, stream=True)
        url = self._url(request, stream=True)
        payload = self._payload(request, stream=True)
        parser = self._stream_parser(request)
        try:
            async with self._client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                if resp.status_code >= 400:
                    body = await resp.aread()
                    self._raise_for_status(resp, body, request.model)
                async for line in resp.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    raw = line[len("data:") :].strip()
                    if not raw or raw == "[DONE]":
                        continue
                    event = decode_json(raw, provider=self.name.value)
                    if not isinstance(event, dict):
                        raise UpstreamProtocolError(
                            f"Unexpected {self.name.value} stream event.", provider=self.name.value
                        )
                    for chunk in parser.feed(event):
                        yield chunk
        except httpx.HTTPError as e:
            raise self._wrap_transport_error(e, request.model) from e
        yield parser.finish()

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.check_capabilities(request, stream=False)
        url = self._url(request, stream=False)
        try:
            resp = await self._client.post(url, json=self._payload(request, stream=False), headers=self._headers())
        except httpx.HTTPError as e:
            raise self._wrap_transport_error(e, request.model) from e
        self._raise_for_status(resp, resp.content, request.model)
        data = decode_json(resp.content, provider=self.name.value)
        if not isinstance(data, dict):
            raise UpstreamProtocolError(f"Unexpected {self.name.value} response shape.", provider=self.name.value)
        return self._parse_completion(data, request)

    async def check_health(self) -> ProviderStatus:
        probe = CompletionRequest(
            messages=(ChatMessage(role="user", content="test"),),
            model=self.health_model,
            max_tokens=10,
        )
        start = time.monotonic()
        try:
            await self.complete(probe)
        except ProviderError as e:
            log.warning("provider_health_check_failed", provider=self.name.value, error_kind=e.kind, error=str(e))
            return ProviderStatus(provider=self.name.value, available=False, error=str(e))
        return ProviderStatus(
            provider=self.name.value,
            available=True,
            latency_ms=(time.monotonic() - start) * 1000,
        )

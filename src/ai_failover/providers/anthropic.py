from __future__ import annotations

from typing import Any

from ..contracts import (
    ChatMessage,
    CompletionDone,
    CompletionRequest,
    CompletionResult,
    ContentDelta,
    FinishReason,
    ImagePart,
    NormalizedChunk,
    ProviderName,
    TextPart,
    ToolCall,
    ToolCallChunk,
    ToolChoiceByName,
)
from ..errors import UpstreamProtocolError
from .base import ProviderAdapter, StreamParser, parse_tool_arguments

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


def _image_block(part: ImagePart) -> dict[str, Any]:
    if part.url:
        return {"type": "image", "source": {"type": "url", "url": part.url}}
    return {"type": "image", "source": {"type": "base64", "media_type": part.mime_type, "data": part.data}}


def split_messages(messages: tuple[ChatMessage, ...]) -> tuple[str | None, list[dict[str, Any]]]:
    system_parts: list[str] = []
    out: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "system":
            if msg.text():
                system_parts.append(msg.text())
        elif msg.role == "tool":
            out.append(
                {
                    "role": "user",
                    "content": [
                        {"type": "tool_result", "tool_use_id": msg.tool_call_id or "", "content": msg.text()}
                    ],
                }
            )
        elif isinstance(msg.content, str):
            out.append({"role": msg.role, "content": msg.content})
        else:
            blocks: list[dict[str, Any]] = []
            for part in msg.content:
                if isinstance(part, TextPart):
                    blocks.append({"type": "text", "text": part.text})
                elif isinstance(part, ImagePart):
                    blocks.append(_image_block(part))
            out.append({"role": msg.role, "content": blocks})
    system = "\n\n".join(system_parts).strip() or None
    return system, out


def _finish_reason(stop_reason: str | None, has_tool_calls: bool) -> FinishReason:
    if has_tool_calls or stop_reason == "tool_use":
        return "tool_calls"
    if stop_reason == "max_tokens":
        return "length"
    return "stop"


class _AnthropicStreamParser(StreamParser):
    def __init__(self, adapter: AnthropicAdapter, model: str):
        self._adapter = adapter
        self._model = model
        self._tool: dict[str, str] | None = None
        self._emitted_tools = False
        self._stop_reason: str | None = None
        self._input_tokens = 0
        self._output_tokens = 0

    def feed(self, event: dict[str, Any]) -> list[NormalizedChunk]:
        provider = self._adapter.name.value
        kind = event.get("type")

        if kind == "error":
            error = event.get("error") or {}
            raise UpstreamProtocolError(
                f"{provider} stream error: {error.get('message', 'unknown')}", provider=provider, model=self._model
            )

        if kind == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            self._input_tokens = int(usage.get("input_tokens") or 0)
            self._output_tokens = int(usage.get("output_tokens") or 0)
        elif kind == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                self._tool = {"id": block.get("id") or "", "name": block.get("name") or "", "json": ""}
        elif kind == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [ContentDelta(delta["text"])]
            if delta.get("type") == "input_json_delta" and self._tool is not None:
                self._tool["json"] += delta.get("partial_json") or ""
        elif kind == "content_block_stop" and self._tool is not None:
            tool, self._tool = self._tool, None
            if tool["id"] and tool["name"]:
                self._emitted_tools = True
                args = parse_tool_arguments(tool["json"], provider=provider)
                return [ToolCallChunk(ToolCall(id=tool["id"], name=tool["name"], arguments=args))]
        elif kind == "message_delta":
            usage = event.get("usage") or {}
            if "input_tokens" in usage:
                self._input_tokens = int(usage.get("input_tokens") or 0)
            if "output_tokens" in usage:
                self._output_tokens = int(usage.get("output_tokens") or 0)
            self._stop_reason = (event.get("delta") or {}).get("stop_reason") or self._stop_reason
        return []

    def finish(self) -> CompletionDone:
        usage = self._adapter.usage(self._model, self._input_tokens, self._output_tokens)
        return CompletionDone(usage=usage, finish_reason=_finish_reason(self._stop_reason, self._emitted_tools))


class AnthropicAdapter(ProviderAdapter):
    name = ProviderName.ANTHROPIC
    default_base_url = "https://api.anthropic.com/v1"
    health_model = "claude-3-5-haiku-20241022"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.config.api_key.get_secret_value(),
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _url(self, request: CompletionRequest, *, stream: bool) -> str:
        return f"{self.base_url}/messages"

    def _payload(self, request: CompletionRequest, *, stream: bool) -> dict[str, Any]:
        system, messages = split_messages(request.messages)
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": messages,
        }
        if system:
            payload["system"] = system
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.stop_sequences:
            payload["stop_sequences"] = list(request.stop_sequences)
        if request.tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters} for t in request.tools
            ]
            choice = request.tool_choice
            if isinstance(choice, ToolChoiceByName):
                payload["tool_choice"] = {"type": "tool", "name": choice.name}
            elif choice == "required":
                payload["tool_choice"] = {"type": "any"}
            elif choice == "auto":
                payload["tool_choice"] = {"type": "auto"}
        if stream:
            payload["stream"] = True
        return payload

    def _stream_parser(self, request: CompletionRequest) -> StreamParser:
        return _AnthropicStreamParser(self, request.model)

    def _parse_completion(self, data: Any, request: CompletionRequest) -> CompletionResult:
        provider = self.name.value
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise UpstreamProtocolError(f"Missing content in {provider} response.", provider=provider)

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in blocks:
            if block.get("type") == "text":
                text_parts.append(block.get("text") or "")
            elif block.get("type") == "tool_use":
                arguments = block.get("input") or {}
                if not isinstance(arguments, dict):
                    raise UpstreamProtocolError(f"{provider} tool input is not an object.", provider=provider)
                tool_calls.append(ToolCall(id=block.get("id") or "", name=block.get("name") or "", arguments=arguments))

        usage = data.get("usage") or {}
        return CompletionResult(
            provider=provider,
            model=request.model,
            content="".join(text_parts),
            tool_calls=tuple(tool_calls),
            usage=self.usage(
                request.model,
                int(usage.get("input_tokens") or 0),
                int(usage.get("output_tokens") or 0),
            ),
            finish_reason=_finish_reason(data.get("stop_reason"), bool(tool_calls)),
        )

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


def _format_content(msg: ChatMessage) -> str | list[dict[str, Any]]:
    if isinstance(msg.content, str):
        return msg.content
    parts: list[dict[str, Any]] = []
    for part in msg.content:
        if isinstance(part, TextPart):
            parts.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart):
            parts.append({"type": "image_url", "image_url": {"url": part.as_data_url()}})
    return parts


def format_messages(messages: tuple[ChatMessage, ...]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "user":
            out.append({"role": "user", "content": _format_content(msg)})
        elif msg.role == "tool":
            out.append({"role": "tool", "content": msg.text(), "tool_call_id": msg.tool_call_id or ""})
        else:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.text()}
            if msg.name:
                entry["name"] = msg.name
            out.append(entry)
    return out


def format_tools(request: CompletionRequest) -> dict[str, Any]:
    if not request.tools:
        return {}
    out: dict[str, Any] = {
        "tools": [
            {
                "type": "function",
                "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
            }
            for t in request.tools
        ]
    }
    choice = request.tool_choice
    if isinstance(choice, ToolChoiceByName):
        out["tool_choice"] = {"type": "function", "function": {"name": choice.name}}
    elif choice is not None:
        out["tool_choice"] = choice
    return out


def _finish_reason(raw: str | None, has_tool_calls: bool) -> FinishReason:
    if has_tool_calls or raw == "tool_calls":
        return "tool_calls"
    if raw == "length":
        return "length"
    return "stop"


class _OpenAIStreamParser(StreamParser):
    def __init__(self, adapter: OpenAIAdapter, model: str):
        self._adapter = adapter
        self._model = model
        self._pending: dict[int, dict[str, str]] = {}
        self._emitted_tools = False
        self._finish: str | None = None
        self._prompt_tokens = 0
        self._completion_tokens = 0

    def feed(self, event: dict[str, Any]) -> list[NormalizedChunk]:
        if "error" in event:
            message = event["error"].get("message") if isinstance(event["error"], dict) else event["error"]
            provider = self._adapter.name.value
            raise UpstreamProtocolError(f"{provider} stream error: {message}", provider=provider, model=self._model)

        usage = event.get("usage")
        if isinstance(usage, dict):
            self._prompt_tokens = int(usage.get("prompt_tokens") or 0)
            self._completion_tokens = int(usage.get("completion_tokens") or 0)

        choices = event.get("choices")
        if not isinstance(choices, list) or not choices:
            return []
        choice = choices[0]
        delta = choice.get("delta") or {}
        out: list[NormalizedChunk] = []

        content = delta.get("content")
        if isinstance(content, str) and content:
            out.append(ContentDelta(content))

        for call in delta.get("tool_calls") or []:
            slot = self._pending.setdefault(int(call.get("index", 0)), {"id": "", "name": "", "arguments": ""})
            function = call.get("function") or {}
            if call.get("id"):
                slot["id"] = call["id"]
            if function.get("name"):
                slot["name"] = function["name"]
            if function.get("arguments"):
                slot["arguments"] += function["arguments"]

        if choice.get("finish_reason"):
            self._finish = choice["finish_reason"]
            out.extend(self._flush_tool_calls())
        return out

    def _flush_tool_calls(self) -> list[NormalizedChunk]:
        provider = self._adapter.name.value
        out: list[NormalizedChunk] = []
        for index in sorted(self._pending):
            slot = self._pending[index]
            if not slot["id"] or not slot["name"]:
                continue
            args = parse_tool_arguments(slot["arguments"], provider=provider)
            out.append(ToolCallChunk(ToolCall(id=slot["id"], name=slot["name"], arguments=args)))
            self._emitted_tools = True
        self._pending.clear()
        return out

    def finish(self) -> CompletionDone:
        if self._pending:
            provider = self._adapter.name.value
            raise UpstreamProtocolError(
                f"{provider} stream ended inside a tool call.", provider=provider, model=self._model
            )
        usage =self._adapter.usage(self._model, self._prompt_tokens, self._completion_tokens)
        return CompletionDone(usage=usage, finish_reason=_finish_reason(self._finish, self._emitted_tools))


class OpenAIAdapter(ProviderAdapter):
    name = ProviderName.OPENAI
    default_base_url = "https://api.openai.com/v1"
    health_model = "gpt-4o-mini"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key.get_secret_value()}"}

    def _url(self, request: CompletionRequest, *, stream: bool) -> str:
        return f"{self.base_url}/chat/completions"

    def _payload(self, request: CompletionRequest, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": request.model, "messages": format_messages(request.messages)}
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.stop_sequences:
            payload["stop"] = list(request.stop_sequences)
        payload.update(format_tools(request))
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _stream_parser(self, request: CompletionRequest) -> StreamParser:
        return _OpenAIStreamParser(self, request.model)

    def _parse_completion(self, data: Any, request: CompletionRequest) -> CompletionResult:
        provider = self.name.value
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise UpstreamProtocolError(f"Missing choices in {provider} response.", provider=provider)
        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise UpstreamProtocolError(f"Missing message in {provider} response.", provider=provider)

        tool_calls: list[ToolCall] = []
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            if call.get("type", "function") != "function" or not function.get("name"):
                continue
            tool_calls.append(
                ToolCall(
                    id=call.get("id") or "",
                    name=function["name"],
                    arguments=parse_tool_arguments(function.get("arguments") or "", provider=provider),
                )
            )

        usage = data.get("usage") or {}
        return CompletionResult(
            provider=provider,
            model=request.model,
            content=message.get("content") or "",
            tool_calls=tuple(tool_calls),
            usage=self.usage(
                request.model,
                int(usage.get("prompt_tokens") or 0),
                int(usage.get("completion_tokens") or 0),
            ),
            finish_reason=_finish_reason(choices[0].get("finish_reason"), bool(tool_calls)),
        )

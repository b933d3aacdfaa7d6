from __future__ import annotations

import uuid
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
from .base import ProviderAdapter, StreamParser

GEMINI_DEV_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


def _parts(msg: ChatMessage) -> list[dict[str, Any]]:
    if isinstance(msg.content, str):
        return [{"text": msg.content}]
    parts: list[dict[str, Any]] = []
    for part in msg.content:
        if isinstance(part, TextPart):
            parts.append({"text": part.text})
        elif isinstance(part, ImagePart):
            if part.url:
                parts.append({"fileData": {"mimeType": part.mime_type or "image/jpeg", "fileUri": part.url}})
            else:
                parts.append({"inlineData": {"mimeType": part.mime_type, "data": part.data}})
    return parts


def build_contents(messages: tuple[ChatMessage, ...]) -> tuple[str | None, list[dict[str, Any]]]:
    system_parts: list[str] = []
    contents: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "system":
            if msg.text():
                system_parts.append(msg.text())
        elif msg.role == "assistant":
            contents.append({"role": "model", "parts": _parts(msg)})
        elif msg.role == "tool":
            contents.append(
                {
                    "role": "user",
                    "parts": [
                        {"functionResponse": {"name": msg.name or "tool", "response": {"content": msg.text()}}}
                    ],
                }
            )
        else:
            contents.append({"role": "user", "parts": _parts(msg)})
    system = "\n\n".join(system_parts).strip() or None
    return system, contents


def _finish_reason(raw: str | None, has_tool_calls: bool) -> FinishReason:
    if has_tool_calls:
        return "tool_calls"
    if raw == "MAX_TOKENS":
        return "length"
    return "stop"


def _function_call(part: dict[str, Any], provider: str) -> ToolCall:
    call = part["functionCall"]
    args = call.get("args") or {}
    if not isinstance(args, dict):
        raise UpstreamProtocolError(f"{provider} function call args are not an object.", provider=provider)
    return ToolCall(id=f"call_{uuid.uuid4().hex}", name=call.get("name") or "", arguments=args)


class _GeminiStreamParser(StreamParser):
    def __init__(self, adapter: GoogleAdapter, model: str):
        self._adapter = adapter
        self._model = model
        self._emitted_tools = False
        self._finish: str | None = None
        self._prompt_tokens = 0
        self._completion_tokens = 0

    def feed(self, event: dict[str, Any]) -> list[NormalizedChunk]:
        provider = self._adapter.name.value
        if "error" in event:
            error = event["error"] if isinstance(event["error"], dict) else {"message": event["error"]}
            raise UpstreamProtocolError(
                f"{provider} stream error: {error.get('message', 'unknown')}", provider=provider, model=self._model
            )

        metadata = event.get("usageMetadata")
        if isinstance(metadata, dict):
            self._prompt_tokens = int(metadata.get("promptTokenCount") or 0)
            self._completion_tokens = int(metadata.get("candidatesTokenCount") or 0)

        candidates = event.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return []
        candidate = candidates[0]
        if candidate.get("finishReason"):
            self._finish = candidate["finishReason"]
        content = candidate.get("content")
        if not isinstance(content, dict):
            return []

        out: list[NormalizedChunk] = []
        for part in content.get("parts") or []:
            text = part.get("text")
            if isinstance(text, str) and text:
                out.append(ContentDelta(text))
            elif isinstance(part.get("functionCall"), dict):
                self._emitted_tools = True
                out.append(ToolCallChunk(_function_call(part, provider)))
        return out

    def finish(self) -> CompletionDone:
        usage = self._adapter.usage(self._model, self._prompt_tokens, self._completion_tokens)
        return CompletionDone(usage=usage, finish_reason=_finish_reason(self._finish, self._emitted_tools))


class GoogleAdapter(ProviderAdapter):
    """Gemini Developer API (api key auth)."""

    name = ProviderName.GOOGLE
    default_base_url = GEMINI_DEV_API_BASE
    health_model = "gemini-1.5-flash"

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.config.api_key.get_secret_value()}

    def _url(self, request: CompletionRequest, *, stream: bool) -> str:
        if stream:
            return f"{self.base_url}/models/{request.model}:streamGenerateContent?alt=sse"
        return f"{self.base_url}/models/{request.model}:generateContent"

    def _payload(self, request: CompletionRequest, *, stream: bool) -> dict[str, Any]:
        system, contents = build_contents(request.messages)
        payload: dict[str, Any] = {
            "contents": contents,
            "safetySettings": [{"category": c, "threshold": "BLOCK_NONE"} for c in SAFETY_CATEGORIES],
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        generation_config: dict[str, Any] = {}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.top_p is not None:
            generation_config["topP"] = request.top_p
        if request.max_tokens is not None:
            generation_config["maxOutputTokens"] = request.max_tokens
        if request.stop_sequences:
            generation_config["stopSequences"] = list(request.stop_sequences)
        if generation_config:
            payload["generationConfig"] = generation_config

        if request.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.parameters}
                        for t in request.tools
                    ]
                }
            ]
            choice = request.tool_choice
            if isinstance(choice, ToolChoiceByName):
                payload["toolConfig"] = {
                    "functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [choice.name]}
                }
            elif choice == "required":
                payload["toolConfig"] = {"functionCallingConfig": {"mode": "ANY"}}
            elif choice == "auto":
                payload["toolConfig"] = {"functionCallingConfig": {"mode": "AUTO"}}
        return payload

    def _stream_parser(self, request: CompletionRequest) -> StreamParser:
        return _GeminiStreamParser(self, request.model)

    def _parse_completion(self, data: Any, request: CompletionRequest) -> CompletionResult:
        provider = self.name.value
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            raise UpstreamProtocolError(f"Missing candidates in {provider} response.", provider=provider)

        content = candidates[0].get("content")
        if not isinstance(content, dict):
            raise UpstreamProtocolError(f"Missing content in {provider} response.", provider=provider)

        parts = content.get("parts")
        if not isinstance(parts, list):
            raise UpstreamProtocolError(f"Missing parts in {provider} response.", provider=provider)

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for part in parts:
            if isinstance(part.get("text"), str):
                text_parts.append(part["text"])
            elif isinstance(part.get("functionCall"), dict):
                tool_calls.append(_function_call(part, provider))

        metadata = data.get("usageMetadata") or {}
        return CompletionResult(
            provider=provider,
            model=request.model,
            content="".join(text_parts),
            tool_calls=tuple(tool_calls),
            usage=self.usage(
                request.model,
                int(metadata.get("promptTokenCount") or 0),
                int(metadata.get("candidatesTokenCount") or 0),
            ),
            finish_reason=_finish_reason(candidates[0].get("finishReason"), bool(tool_calls)),
        )

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .contracts import (
    ChatMessage,
    CompletionRequest,
    CompletionResult,
    ContentPart,
    ImagePart,
    ProviderStatus,
    TextPart,
    ToolChoice,
    ToolChoiceByName,
    ToolDefinition,
)

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)

TRANSCRIPT_CONTEXT_PROMPT = """
You are an AI assistant helping with legal dictation and transcription. You have access to the following transcript context:

---TRANSCRIPT CONTEXT---
{context}
---END TRANSCRIPT CONTEXT---

Use this context to provide helpful, accurate, and relevant responses. When referencing the transcript, be specific about what you're referring to.
"""


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImageUrl(_CamelModel):
    url: str


class MessagePart(_CamelModel):
    type: Literal["text", "image_url", "image"]
    text: str | None = None
    image_url: ImageUrl | None = Field(default=None, alias="image_url")
    data: str | None = None
    mime_type: str | None = None

    def to_part(self) -> ContentPart:
        if self.type == "text":
            return TextPart(self.text or "")
        if self.type == "image_url":
            if self.image_url is None:
                raise ValueError("image_url part requires image_url.url.")
            match = _DATA_URL_RE.match(self.image_url.url)
            if match:
                return ImagePart(data=match.group("data"), mime_type=match.group("mime"))
            return ImagePart(url=self.image_url.url)
        return ImagePart(data=self.data, mime_type=self.mime_type)


class Message(_CamelModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str | list[MessagePart]
    name: str | None = None
    tool_call_id: str | None = None

    def char_count(self) -> int:
        if isinstance(self.content, str):
            return len(self.content)
        return sum(len(p.text or "") for p in self.content)

    def to_message(self) -> ChatMessage:
        content: str | tuple[ContentPart, ...]
        if isinstance(self.content, str):
            content = self.content
        else:
            content = tuple(p.to_part() for p in self.content)
        return ChatMessage(role=self.role, content=content, name=self.name, tool_call_id=self.tool_call_id)


class Tool(_CamelModel):
    name: str = Field(min_length=1)
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class NamedToolChoice(_CamelModel):
    name: str = Field(min_length=1)


class CompletionRequestBody(_CamelModel):
    messages: list[Message] = Field(min_length=1)
    model: str = Field(min_length=1)
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop_sequences: list[str] | None = None
    tools: list[Tool] | None = None
    tool_choice: Literal["auto", "required"] | NamedToolChoice | None = None
    provider: str | None = None
    purpose: str | None = None
    metadata: dict[str, Any] | None = None
    transcript_context: str | None = None

    @field_validator("temperature")
    @classmethod
    def _validate_temperature(cls, v: float | None) -> float | None:
        if v is None:
            return None
        if not (0.0 <= v <= 2.0):
            raise ValueError("temperature must be between 0 and 2.")
        return v

    @field_validator("top_p")
    @classmethod
    def _validate_top_p(cls, v: float | None) -> float | None:
        if v is None:
            return None
        if not (0.0 < v <= 1.0):
            raise ValueError("topP must be > 0 and <= 1.")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _validate_max_tokens(cls, v: int | None) -> int | None:
        if v is None:
            return None
        if v <= 0:
            raise ValueError("maxTokens must be > 0.")
        return v

    @field_validator("stop_sequences")
    @classmethod
    def _validate_stop(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        if any(not s for s in v):
            raise ValueError("stop sequences must be non-empty strings.")
        return v

    def total_chars(self) -> int:
        return sum(m.char_count() for m in self.messages)

    def usage_metadata(self) -> dict[str, Any] | None:
        if not self.transcript_context:
            return self.metadata
        out = dict(self.metadata or {})
        out["hasTranscriptContext"] = True
        out["contextLength"] = len(self.transcript_context)
        return out

    def to_completion_request(self, *, caller_id: str | None = None) -> CompletionRequest:
        messages = inject_transcript_context(
            [m.to_message() for m in self.messages],
            self.transcript_context,
        )
        tool_choice: ToolChoice | None
        if isinstance(self.tool_choice, NamedToolChoice):
            tool_choice = ToolChoiceByName(self.tool_choice.name)
        else:
            tool_choice = self.tool_choice
        return CompletionRequest(
            messages=tuple(messages),
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
            stop_sequences=tuple(self.stop_sequences) if self.stop_sequences else None,
            tools=tuple(ToolDefinition(t.name, t.description, t.parameters) for t in self.tools or ()),
            tool_choice=tool_choice,
            caller_id=caller_id,
        )


def inject_transcript_context(messages: list[ChatMessage], context: str | None) -> list[ChatMessage]:
    """Append the transcript prompt to the first system message, or prepend one."""
    if not context or not context.strip():
        return messages
    prompt = TRANSCRIPT_CONTEXT_PROMPT.format(context=context)
    out = list(messages)
    for i, msg in enumerate(out):
        if msg.role == "system":
            existing = msg.content if isinstance(msg.content, str) else ""
            out[i] = ChatMessage(role="system", content=existing + "\n\n" + prompt, name=msg.name)
            return out
    out.insert(0, ChatMessage(role="system", content=prompt))
    return out


class UsageBody(_CamelModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float


class ToolCallBody(_CamelModel):
    id: str
    name: str
    arguments: dict[str, Any]


class CompletionResponse(_CamelModel):
    provider: str
    model: str
    content: str
    tool_calls: list[ToolCallBody] = Field(default_factory=list)
    usage: UsageBody
    finish_reason: Literal["stop", "length", "tool_calls"] = "stop"


def make_completion_response(result: CompletionResult) -> CompletionResponse:
    return CompletionResponse(
        provider=result.provider,
        model=result.model,
        content=result.content,
        tool_calls=[ToolCallBody(id=c.id, name=c.name, arguments=c.arguments) for c in result.tool_calls],
        usage=UsageBody(
            prompt_tokens=result.usage.prompt_tokens,
            completion_tokens=result.usage.completion_tokens,
            total_tokens=result.usage.total_tokens,
            cost=result.usage.cost,
        ),
        finish_reason=result.finish_reason,
    )


class ProviderStatusBody(_CamelModel):
    provider: str
    available: bool
    last_checked: str
    error: str | None = None
    latency_ms: float | None = None


def make_provider_status(status: ProviderStatus) -> ProviderStatusBody:
    return ProviderStatusBody(
        provider=status.provider,
        available=status.available,
        last_checked=status.last_checked.isoformat(),
        error=status.error,
        latency_ms=status.latency_ms,
    )


class ErrorDetail(BaseModel):
    message: str
    type: str = "api_error"
    code: str | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


def make_error_response(*, message: str, type: str = "api_error", code: str | None = None) -> ErrorResponse:
    return ErrorResponse(error=ErrorDetail(message=message, type=type, code=code))

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, TypeAlias


class ProviderName(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"
    OPENROUTER = "openrouter"


Role: TypeAlias = Literal["system", "user", "assistant", "tool"]
FinishReason: TypeAlias = Literal["stop", "length", "tool_calls"]


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    """Image given either by URL or by inline base64 data."""

    url: str | None = None
    data: str | None = None
    mime_type: str | None = None

    def __post_init__(self) -> None:
        if not self.url and not (self.data and self.mime_type):
            raise ValueError("ImagePart needs a url or data with mime_type.")

    def as_data_url(self) -> str:
        if self.url:
            return self.url
        return f"data:{self.mime_type};base64,{self.data}"


ContentPart: TypeAlias = TextPart | ImagePart


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str | tuple[ContentPart, ...]
    name: str | None = None
    tool_call_id: str | None = None

    @property
    def has_images(self) -> bool:
        return not isinstance(self.content, str) and any(isinstance(p, ImagePart) for p in self.content)

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, Any]


@dataclass(frozen=True)
class ToolChoiceByName:
    name: str


ToolChoice: TypeAlias = Literal["auto", "required"] | ToolChoiceByName


@dataclass(frozen=True)
class CompletionRequest:
    messages: tuple[ChatMessage, ...]
    model: str
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop_sequences: tuple[str, ...] | None = None
    tools: tuple[ToolDefinition, ...] = ()
    tool_choice: ToolChoice | None = None
    caller_id: str | None = None

    def __post_init__(self) -> None:
        if not self.messages:
            raise ValueError("CompletionRequest requires at least one message.")
        if not self.model:
            raise ValueError("CompletionRequest requires a model identifier.")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0.")

    @property
    def uses_vision(self) -> bool:
        return any(m.has_images for m in self.messages)

    def with_model(self, model: str) -> CompletionRequest:
        return replace(self, model=model)


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0

    def __post_init__(self) -> None:
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("Token counts must be non-negative.")
        if self.total_tokens != self.prompt_tokens + self.completion_tokens:
            raise ValueError("total_tokens must equal prompt_tokens + completion_tokens.")

    @classmethod
    def from_counts(cls, prompt_tokens: int, completion_tokens: int, cost: float = 0.0) -> Usage:
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            cost=cost,
        )


@dataclass(frozen=True)
class ContentDelta:
    text: str
    type: Literal["content"] = field(default="content", init=False)


@dataclass(frozen=True)
class ToolCallChunk:
    tool_call: ToolCall
    type: Literal["tool_call"] = field(default="tool_call", init=False)


@dataclass(frozen=True)
class CompletionDone:
    usage: Usage
    finish_reason: FinishReason = "stop"
    type: Literal["done"] = field(default="done", init=False)


@dataclass(frozen=True)
class ErrorChunk:
    message: str
    code: str | None = None
    type: Literal["error"] = field(default="error", init=False)


NormalizedChunk: TypeAlias = ContentDelta | ToolCallChunk | CompletionDone | ErrorChunk


@dataclass(frozen=True)
class CompletionResult:
    provider: str
    model: str
    content: str
    usage: Usage
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: FinishReason = "stop"


@dataclass(frozen=True)
class UsageRecord:
    provider: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float
    caller_id: str = "anonymous"
    purpose: str | None = None
    metadata: dict[str, Any] | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_usage(
        cls,
        usage: Usage,
        *,
        provider: str,
        model: str,
        caller_id: str | None = None,
        purpose: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> UsageRecord:
        return cls(
            provider=provider,
            model=model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            cost=usage.cost,
            caller_id=caller_id or "anonymous",
            purpose=purpose,
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.caller_id,
            "provider": self.provider,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "cost": self.cost,
            "purpose": self.purpose,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class AttemptRecord:
    index: int
    provider: str
    model: str
    error_kind: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ProviderStatus:
    provider: str
    available: bool
    last_checked: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: str | None = None
    latency_ms: float | None = None

from __future__ import annotations

import json
from typing import Any, AsyncIterator

from .channel import QueueChannel
from .contracts import CompletionDone, ContentDelta, ErrorChunk, NormalizedChunk, ToolCallChunk


def sse_encode(data: str) -> bytes:
    return f"data: {data}\n\n".encode("utf-8")


def chunk_to_event(chunk: NormalizedChunk) -> dict[str, Any]:
    if isinstance(chunk, ContentDelta):
        return {"type": "content", "delta": chunk.text}
    if isinstance(chunk, ToolCallChunk):
        call = chunk.tool_call
        return {"type": "tool_call", "toolCall": {"id": call.id, "name": call.name, "arguments": call.arguments}}
    if isinstance(chunk, CompletionDone):
        usage = chunk.usage
        return {
            "type": "done",
            "usage": {
                "promptTokens": usage.prompt_tokens,
                "completionTokens": usage.completion_tokens,
                "totalTokens": usage.total_tokens,
                "cost": usage.cost,
            },
        }
    if isinstance(chunk, ErrorChunk):
        event: dict[str, Any] = {"type": "error", "error": chunk.message}
        if chunk.code:
            event["code"] = chunk.code
        return event
    raise TypeError(f"Unknown chunk type: {type(chunk).__name__}")


async def sse_from_channel(channel: QueueChannel) -> AsyncIterator[bytes]:
    """
    Encode every chunk of `channel` as one SSE event.

    If the consumer stops early (client disconnect) the channel is abandoned so
    the producer stops pulling from the upstream provider.
    """
    finished = False
    try:
        async for chunk in channel:
            yield sse_encode(json.dumps(chunk_to_event(chunk)))
        finished = True
    finally:
        if not finished:
            channel.abandon()

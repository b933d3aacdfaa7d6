import json

import pytest

from ai_failover.channel import QueueChannel
from ai_failover.contracts import CompletionDone, ContentDelta, ErrorChunk, ToolCall, ToolCallChunk, Usage
from ai_failover.streaming import chunk_to_event, sse_encode, sse_from_channel


def test_sse_encode_frames_one_event():
    assert sse_encode('{"a":1}') == b'data: {"a":1}\n\n'


def test_chunk_events_use_camel_case_wire_keys():
    assert chunk_to_event(ContentDelta("hi")) == {"type": "content", "delta": "hi"}
    assert chunk_to_event(ToolCallChunk(ToolCall(id="c1", name="f", arguments={"x": 1}))) == {
        "type": "tool_call",
        "toolCall": {"id": "c1", "name": "f", "arguments": {"x": 1}},
    }
    assert chunk_to_event(CompletionDone(Usage.from_counts(1, 2, cost=0.5))) == {
        "type": "done",
        "usage": {"promptTokens": 1, "completionTokens": 2, "totalTokens": 3, "cost": 0.5},
    }
    assert chunk_to_event(ErrorChunk("boom", code="exhausted")) == {"type": "error", "error": "boom", "code": "exhausted"}
    assert chunk_to_event(ErrorChunk("boom")) == {"type": "error", "error": "boom"}


@pytest.mark.asyncio
async def test_sse_from_channel_emits_every_chunk_without_done_sentinel():
    channel = QueueChannel()
    await channel.send(ContentDelta("he"))
    await channel.send(ContentDelta("llo"))
    await channel.send(CompletionDone(Usage.from_counts(1, 1)))
    await channel.close()

    frames = [b.decode("utf-8") async for b in sse_from_channel(channel)]

    assert all(f.startswith("data: ") and f.endswith("\n\n") for f in frames)
    payloads = [json.loads(f[len("data: ") :]) for f in frames]
    assert [p["type"] for p in payloads] == ["content", "content", "done"]
    assert not any("[DONE]" in f for f in frames)
    assert not channel.abandoned


@pytest.mark.asyncio
async def test_sse_consumer_closing_early_abandons_channel():
    channel = QueueChannel()
    await channel.send(ContentDelta("a"))
    await channel.send(ContentDelta("b"))

    gen = sse_from_channel(channel)
    first = await gen.__anext__()
    await gen.aclose()

    assert first.startswith(b"data: ")
    assert channel.abandoned

import asyncio

import pytest

from ai_failover.channel import QueueChannel
from ai_failover.contracts import (
    CompletionDone,
    ContentDelta,
    ErrorChunk,
    ToolCall,
    ToolCallChunk,
    Usage,
)
from ai_failover.errors import ExhaustedError, RateLimitError
from ai_failover.session import StreamingSession
from ai_failover.usage import InMemoryUsageReporter

USAGE = Usage.from_counts(3, 4, cost=0.01)


async def _drain(channel):
    return [chunk async for chunk in channel]


@pytest.mark.asyncio
async def test_session_forwards_chunks_then_done_and_records_usage_after_close():
    channel = QueueChannel()
    reporter = InMemoryUsageReporter()
    session = StreamingSession(channel, reporter=reporter, caller_id="u1", purpose="chat", metadata={"a": 1})
    session.begin_attempt("openai", "gpt-4o")

    call = ToolCall(id="call_1", name="lookup", arguments={"q": "x"})
    await session.on_chunk(ContentDelta("hi"))
    await session.on_chunk(ToolCallChunk(call))
    record = await session.on_complete(USAGE, "tool_calls")

    assert channel.closed
    assert reporter.records() == []
    assert await session.finalize() is True
    assert await session.finalize() is False
    assert reporter.records() == [record]
    assert record.provider == "openai"
    assert record.caller_id == "u1"
    assert record.metadata == {"a": 1}

    events = await _drain(channel)
    assert events == [ContentDelta("hi"), ToolCallChunk(call), CompletionDone(USAGE, "tool_calls")]

    result = session.result()
    assert result.content == "hi"
    assert result.tool_calls == (call,)
    assert result.finish_reason == "tool_calls"


@pytest.mark.asyncio
async def test_session_emits_single_error_and_drops_later_events():
    channel = QueueChannel()
    reporter = InMemoryUsageReporter()
    session = StreamingSession(channel, reporter=reporter)
    session.begin_attempt("anthropic", "claude-3-5-haiku-20241022")

    await session.on_error(ExhaustedError(RateLimitError()))
    await session.on_error(RateLimitError())
    await session.on_chunk(ContentDelta("late"))
    assert await session.on_complete(USAGE) is None

    events = await _drain(channel)
    assert len(events) == 1
    assert isinstance(events[0], ErrorChunk)
    assert events[0].code == "exhausted"
    assert events[0].message.startswith("All providers failed.")
    assert await session.finalize() is False
    assert reporter.records() == []


@pytest.mark.asyncio
async def test_begin_attempt_resets_accumulators_and_is_refused_after_delivery():
    session = StreamingSession(QueueChannel())
    session.begin_attempt("openai", "gpt-4o")
    session.begin_attempt("anthropic", "claude-3-5-haiku-20241022")
    assert session.provider == "anthropic"

    await session.on_chunk(ContentDelta("x"))
    assert session.delivered
    with pytest.raises(RuntimeError):
        session.begin_attempt("google", "gemini-1.5-flash")


@pytest.mark.asyncio
async def test_on_chunk_rejects_terminal_chunk_types():
    session = StreamingSession(QueueChannel())
    session.begin_attempt("openai", "gpt-4o")
    with pytest.raises(ValueError):
        await session.on_chunk(CompletionDone(USAGE))


@pytest.mark.asyncio
async def test_close_is_idempotent_and_ends_iteration_without_terminal_event():
    channel = QueueChannel()
    session = StreamingSession(channel)
    await session.close()
    await session.close()
    assert await _drain(channel) == []


@pytest.mark.asyncio
async def test_abandoned_channel_discards_sends():
    channel = QueueChannel()
    await channel.send(ContentDelta("queued"))
    channel.abandon()
    await channel.send(ContentDelta("dropped"))
    await channel.close()
    assert channel.abandoned
    assert await _drain(channel) == []


@pytest.mark.asyncio
async def test_bounded_channel_blocks_sender_until_consumer_reads_or_abandons():
    channel = QueueChannel(maxsize=1)
    await channel.send(ContentDelta("a"))
    blocked = asyncio.create_task(channel.send(ContentDelta("b")))
    await asyncio.sleep(0)
    assert not blocked.done()

    channel.abandon()
    await asyncio.wait_for(blocked, timeout=1)
    await channel.close()
    assert await _drain(channel) == []


@pytest.mark.asyncio
async def test_usage_record_exists_while_done_event_is_still_queued():
    channel = QueueChannel(maxsize=1)
    reporter = InMemoryUsageReporter()
    session = StreamingSession(channel, reporter=reporter)
    session.begin_attempt("openai", "gpt-4o")
    await session.on_chunk(ContentDelta("hi"))

    completing = asyncio.create_task(session.on_complete(USAGE))
    await asyncio.sleep(0)
    assert not completing.done()
    assert session.record is not None

    channel.abandon()
    assert await asyncio.wait_for(completing, timeout=1) == session.record
    assert channel.closed
    assert await session.finalize() is True
    assert reporter.records() == [session.record]

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from .channel import OutputChannel
from .contracts import (
    CompletionDone,
    CompletionResult,
    ContentDelta,
    ErrorChunk,
    FinishReason,
    NormalizedChunk,
    ToolCall,
    ToolCallChunk,
    Usage,
    UsageRecord,
)
from .errors import error_kind
from .usage import UsageReporter, report_usage

log = structlog.get_logger()


class StreamingSession:
    """
    Single writer to one logical request's output channel.

    The session forwards content and tool-call chunks, accumulates them for the
    current attempt and guarantees the terminal contract: exactly one
    `CompletionDone` or one `ErrorChunk`, then the channel is closed. The usage
    record is built on success and handed to the reporter by `finalize()`, after
    the channel has been closed.
    """

    def __init__(
        self,
        channel: OutputChannel,
        *,
        reporter: UsageReporter | None = None,
        caller_id: str | None = None,
        purpose: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        self.channel = channel
        self.reporter = reporter
        self.caller_id = caller_id
        self.purpose = purpose
        self.metadata = metadata

        self.provider: str | None = None
        self.model: str | None = None
        self._content: list[str] = []
        self._tool_calls: list[ToolCall] = []
        self._usage: Usage | None = None
        self._finish_reason: FinishReason = "stop"

        self._delivered = False
        self._terminated = False
        self._closed = False
        self._record: UsageRecord | None = None
        self._reported = False
        self._report_task: asyncio.Future[bool] | None = None

    @property
    def delivered(self) -> bool:
        return self._delivered

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def record(self) -> UsageRecord | None:
        return self._record

    def begin_attempt(self, provider: str, model: str) -> None:
        if self._delivered:
            raise RuntimeError("Cannot start a new attempt after output was delivered.")
        if self._terminated:
            raise RuntimeError("Session already terminated.")
        self.provider = provider
        self.model = model
        self._content = []
        self._tool_calls = []
        self._usage = None
        self._finish_reason = "stop"

    async def on_chunk(self, chunk: NormalizedChunk) -> None:
        if self._terminated:
            log.warning("session_chunk_after_terminal", chunk_type=chunk.type, provider=self.provider)
            return
        if isinstance(chunk, ContentDelta):
            self._content.append(chunk.text)
        elif isinstance(chunk, ToolCallChunk):
            self._tool_calls.append(chunk.tool_call)
        else:
            raise ValueError(f"on_chunk only accepts content and tool_call chunks, got {chunk.type!r}.")
        self._delivered = True
        await self.channel.send(chunk)

    async def on_complete(self, usage: Usage, finish_reason: FinishReason = "stop") -> UsageRecord | None:
        if self._terminated:
            log.warning("session_completion_after_terminal", provider=self.provider)
            return None
        if self.provider is None or self.model is None:
            raise RuntimeError("on_complete called before begin_attempt.")
        self._terminated = True
        self._usage = usage
        self._finish_reason = finish_reason
        # The upstream call is billed from here on, whether or not the caller reads the done event.
        self._record = UsageRecord.from_usage(
            usage,
            provider=self.provider,
            model=self.model,
            caller_id=self.caller_id,
            purpose=self.purpose,
            metadata=self.metadata,
        )
        try:
            await self.channel.send(CompletionDone(usage=usage, finish_reason=finish_reason))
        finally:
            await self.close()
        return self._record

    async def on_error(self, error: BaseException) -> None:
        if self._terminated:
            log.warning("session_error_after_terminal", provider=self.provider, error_kind=error_kind(error))
            return
        self._terminated = True
        kind = error_kind(error)
        try:
            await self.channel.send(ErrorChunk(message=str(error) or kind, code=kind))
        finally:
            await self.close()

    async def finalize(self) -> bool:
        """
        Report the usage record once. Returns True when a record was persisted.

        Cancelling the caller does not cancel the report: the caller waits for
        it to finish and the cancellation is re-raised afterwards.
        """
        if self._record is None or self._reported or self.reporter is None:
            return False
        self._reported = True
        self._report_task = asyncio.ensure_future(report_usage(self.reporter, self._record))
        try:
            return await asyncio.shield(self._report_task)
        except asyncio.CancelledError:
            log.info("usage_report_completing_after_cancel", record_id=self._record.id, provider=self._record.provider)
            await asyncio.wait({self._report_task})
            raise

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.channel.close()

    def result(self) -> CompletionResult:
        if self._usage is None or self.provider is None or self.model is None:
            raise RuntimeError("Session has not completed.")
        return CompletionResult(
            provider=self.provider,
            model=self.model,
            content="".join(self._content),
            usage=self._usage,
            tool_calls=tuple(self._tool_calls),
            finish_reason=self._finish_reason,
        )

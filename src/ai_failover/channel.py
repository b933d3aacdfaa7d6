from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Protocol

from .contracts import NormalizedChunk


class OutputChannel(Protocol):
    """Ordered, single-writer sink for the chunks of one logical request."""

    @property
    def abandoned(self) -> bool: ...

    async def send(self, chunk: NormalizedChunk) -> None: ...

    async def close(self) -> None: ...


_CLOSED = object()

# Senders block once this many chunks are unread.
DEFAULT_MAXSIZE = 64


class QueueChannel:
    """
    asyncio.Queue backed channel.

    The producer (orchestrator) calls `send()` / `close()`; the consumer (SSE
    response) iterates. `abandon()` is called by the consumer when the far end
    disconnects: later sends are discarded and `abandoned` turns true so the
    producer can stop.
    """

    def __init__(self, maxsize: int = DEFAULT_MAXSIZE):
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._abandoned = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def abandoned(self) -> bool:
        return self._abandoned

    async def send(self, chunk: NormalizedChunk) -> None:
        if self._closed:
            raise RuntimeError("Channel is closed.")
        if self._abandoned:
            return
        await self._queue.put(chunk)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._abandoned:
            await self._queue.put(_CLOSED)

    def abandon(self) -> None:
        self._abandoned = True
        while not self._queue.empty():
            self._queue.get_nowait()

    async def __aiter__(self) -> AsyncIterator[NormalizedChunk]:
        while not self._abandoned:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]

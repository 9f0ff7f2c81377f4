"""Bounded per-connection event channel and SSE framing."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from twinstream.core.errors import TransportError
from twinstream.engine.events import StreamEvent
from twinstream.log import get_logger

logger = get_logger(__name__)

_END = object()


def format_sse(event: StreamEvent, seq: int) -> str:
    """Frame one event as a self-delimited SSE message."""
    return f"id: {seq}\ndata: {event.to_json()}\n\n"


class EventChannel:
    """Single-producer, single-consumer queue between a comparison and its connection.

    ``send`` waits while the buffer is full and never drops an event. Once the
    channel is closed every pending and future ``send`` raises TransportError.
    """

    def __init__(self, maxsize: int = 256):
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()
        self._close_reason: Optional[str] = None
        self._finished = False
        self.sent = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def close_reason(self) -> Optional[str]:
        return self._close_reason

    async def send(self, event: StreamEvent) -> None:
        if self._finished:
            raise TransportError("channel already finished")
        await self._put(event)
        self.sent += 1

    async def finish(self) -> None:
        """Mark the end of the stream; the consumer's iteration stops after draining."""
        if self._finished or self.closed:
            return
        self._finished = True
        try:
            await self._put(_END)
        except TransportError:
            pass

    def close(self, reason: str = "consumer disconnected") -> None:
        if self.closed:
            return
        self._close_reason = reason
        self._closed.set()
        logger.debug("channel_closed", reason=reason, sent=self.sent)

    async def _put(self, item: object) -> None:
        if self.closed:
            raise TransportError(self._close_reason or "channel closed")
        try:
            self._queue.put_nowait(item)
            return
        except asyncio.QueueFull:
            pass

        put = asyncio.ensure_future(self._queue.put(item))
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({put, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if not put.done():
                put.cancel()
        if not put.done() or put.cancelled():
            raise TransportError(self._close_reason or "channel closed")

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item  # type: ignore[misc]

    async def frames(self) -> AsyncIterator[str]:
        seq = 0
        async for event in self:
            seq += 1
            yield format_sse(event, seq)

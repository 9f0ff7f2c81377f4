"""Consumer side: SSE client with bounded reconnect and a per-slot view reducer."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional

import httpx

from twinstream.core.errors import TransportError, ValidationError
from twinstream.core.types import EventType, Slot
from twinstream.engine.events import StreamEvent, TokenCounts
from twinstream.log import get_logger

logger = get_logger(__name__)

MAX_RECONNECT_ATTEMPTS = 3
RECONNECT_DELAY = 1.0  # seconds, multiplied by the attempt number


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
    """Decode ``data:`` frames into events; blank lines delimit frames."""
    data: list[str] = []
    async for line in lines:
        if not line:
            if data:
                yield StreamEvent.model_validate_json("\n".join(data))
                data = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data.append(value)
    if data:
        yield StreamEvent.model_validate_json("\n".join(data))


class ComparisonStreamClient:
    """Opens ``/api/compare/stream`` and yields events, reconnecting on drops.

    A reconnect re-issues the request and therefore starts a fresh comparison;
    nothing is replayed. Each new ``start`` event resets that slot's view.
    After ``max_attempts`` consecutive failed reconnects a TransportError is raised.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        *,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        reconnect_delay: float = RECONNECT_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=httpx.Timeout(timeout, connect=10.0),
        )
        self.max_attempts = max_attempts
        self.reconnect_delay = reconnect_delay
        self._sleep = sleep
        self.reconnects = 0

    async def __aenter__(self) -> ComparisonStreamClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def stream(self, prompt: str, model1: str, model2: str) -> AsyncIterator[StreamEvent]:
        params = {"prompt": prompt, "model1": model1, "model2": model2}
        attempts = 0
        while True:
            finished: set[Slot] = set()
            try:
                async with self._client.stream(
                    "GET", "/api/compare/stream", params=params
                ) as response:
                    if 400 <= response.status_code < 500:
                        await response.aread()
                        raise ValidationError(_error_detail(response))
                    response.raise_for_status()
                    attempts = 0
                    async for event in parse_sse(response.aiter_lines()):
                        if event.is_terminal:
                            finished.add(event.slot)
                        yield event
                if finished == set(Slot):
                    return
                cause: Exception = TransportError("stream ended before both slots finished")
            except (httpx.TransportError, httpx.HTTPStatusError) as e:
                cause = e

            attempts += 1
            if attempts > self.max_attempts:
                logger.error("stream_connection_lost", attempts=self.max_attempts, error=str(cause))
                raise TransportError("Connection to the comparison stream was lost") from cause
            delay = self.reconnect_delay * attempts
            logger.warning(
                "stream_reconnecting",
                attempt=attempts,
                max_attempts=self.max_attempts,
                delay=delay,
                error=str(cause),
            )
            self.reconnects += 1
            await self._sleep(delay)


def _error_detail(response: httpx.Response) -> str:
    try:
        detail = response.json().get("detail")
    except ValueError:
        detail = None
    return str(detail) if detail else f"request rejected ({response.status_code})"


@dataclass
class SlotView:
    model: str = ""
    content: str = ""
    tokens: TokenCounts = field(default_factory=TokenCounts)
    cost: float = 0.0
    is_streaming: bool = False
    is_complete: bool = False
    error: Optional[str] = None


class StreamView:
    """Rebuilds both slots' text, tokens and cost from the event sequence."""

    def __init__(self) -> None:
        self.slots: dict[Slot, SlotView] = {slot: SlotView() for slot in Slot}

    def __getitem__(self, slot: Slot) -> SlotView:
        return self.slots[slot]

    def apply(self, event: StreamEvent) -> SlotView:
        view = self.slots[event.slot]
        data = event.data
        match event.type:
            case EventType.START:
                view = SlotView(model=data.model, is_streaming=True)
                self.slots[event.slot] = view
            case EventType.TOKEN:
                view.content += data.delta
                view.tokens = data.tokens
                view.cost = data.cost
            case EventType.COMPLETE:
                view.tokens = data.tokens
                view.cost = data.cost
                view.is_streaming = False
                view.is_complete = True
            case EventType.ERROR:
                view.tokens = data.tokens
                view.cost = data.cost
                view.error = data.error or "Unknown error"
                view.is_streaming = False
        return view

    def apply_all(self, events: Iterable[StreamEvent]) -> StreamView:
        for event in events:
            self.apply(event)
        return self

    @property
    def total_cost(self) -> float:
        return sum(v.cost for v in self.slots.values())

    @property
    def any_streaming(self) -> bool:
        return any(v.is_streaming for v in self.slots.values())

    @property
    def finished(self) -> bool:
        return all(v.is_complete or v.error is not None for v in self.slots.values())

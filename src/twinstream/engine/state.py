"""Per-slot stream state machine: Idle -> Streaming -> Completed | Failed."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from twinstream.core import accounting
from twinstream.core.catalog import ModelRegistry, TokenUsage
from twinstream.core.types import EventType, Slot, SlotPhase
from twinstream.engine.events import EventData, StreamEvent, TokenCounts


class InvalidTransition(RuntimeError):
    pass


@dataclass
class SlotState:
    """Accumulated text, tokens and cost of one slot.

    Owned by exactly one slot task while it is active. Every transition
    returns an immutable StreamEvent snapshot; after a terminal transition
    the state is never mutated again.
    """

    slot: Slot
    model_id: str
    registry: ModelRegistry
    text: str = ""
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    error: Optional[str] = None
    phase: SlotPhase = SlotPhase.IDLE
    prompt_tokens: int = 0
    reported_usage: Optional[TokenUsage] = None

    @property
    def is_active(self) -> bool:
        return self.phase in (SlotPhase.IDLE, SlotPhase.STREAMING)

    @property
    def is_terminal(self) -> bool:
        return not self.is_active

    @property
    def succeeded(self) -> bool:
        return self.phase == SlotPhase.COMPLETED

    def start(self, prompt: str) -> StreamEvent:
        self._require(SlotPhase.IDLE)
        self.phase = SlotPhase.STREAMING
        # fixed for the rest of the stream
        self.prompt_tokens = accounting.estimate_tokens(prompt, self.model_id, self.registry)
        return self._event(EventType.START)

    def append(self, delta: str) -> StreamEvent:
        self._require(SlotPhase.STREAMING)
        self.text += delta
        output = accounting.estimate_tokens(self.text, self.model_id, self.registry)
        self._set_tokens(TokenUsage(input=self.prompt_tokens, output=max(output, self.tokens.output)))
        return self._event(EventType.TOKEN, delta=delta)

    def record_usage(self, usage: TokenUsage) -> None:
        """Remember exact usage reported by the backend; applied on completion."""
        self._require(SlotPhase.STREAMING)
        self.reported_usage = usage

    def complete(self, prefer_reported: bool = True) -> StreamEvent:
        self._require(SlotPhase.STREAMING)
        if prefer_reported and self.reported_usage is not None:
            # exact input replaces the prompt estimate; output never drops below what was streamed
            reported = self.reported_usage
            self._set_tokens(
                TokenUsage(input=reported.input, output=max(reported.output, self.tokens.output))
            )
        else:
            self._set_tokens(TokenUsage(input=self.prompt_tokens, output=self.tokens.output))
        self.phase = SlotPhase.COMPLETED
        return self._event(EventType.COMPLETE)

    def fail(self, message: str) -> StreamEvent:
        """Terminal failure from Idle or Streaming, keeping the best-known tokens and cost."""
        if self.is_terminal:
            raise InvalidTransition(f"slot {self.slot} is already {self.phase}")
        self.error = message or "Unknown error"
        self.phase = SlotPhase.FAILED
        return self._event(EventType.ERROR)

    def snapshot(self) -> EventData:
        return EventData(
            model=self.model_id,
            tokens=TokenCounts.from_usage(self.tokens),
            cost=self.cost,
            is_complete=self.is_terminal,
            error=self.error,
        )

    def _set_tokens(self, usage: TokenUsage) -> None:
        self.tokens = usage
        self.cost = accounting.live_cost(usage.input, usage.output, self.model_id, self.registry)

    def _event(self, event_type: EventType, delta: str = "") -> StreamEvent:
        data = self.snapshot()
        if delta:
            data = data.model_copy(update={"delta": delta})
        return StreamEvent(type=event_type, slot=self.slot, data=data)

    def _require(self, phase: SlotPhase) -> None:
        if self.phase != phase:
            raise InvalidTransition(f"slot {self.slot} is {self.phase}, expected {phase}")

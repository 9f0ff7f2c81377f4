"""Outward event envelope shared by the orchestrator, the SSE channel and consumers."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from twinstream.core.catalog import TokenUsage
from twinstream.core.types import EventType, Slot


class TokenCounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    input: int = 0
    output: int = 0
    total: int = 0

    @classmethod
    def from_usage(cls, usage: TokenUsage) -> TokenCounts:
        return cls(input=usage.input, output=usage.output, total=usage.total)


class EventData(BaseModel):
    """Slot snapshot carried by every event, including errors."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    model: str
    delta: str = ""
    tokens: TokenCounts = Field(default_factory=TokenCounts)
    cost: float = 0.0
    is_complete: bool = Field(default=False, alias="isComplete")
    error: Optional[str] = None


class StreamEvent(BaseModel):
    """One tagged event: ``{type, slot, data}``.

    Events of one slot are strictly ordered (start, tokens, one terminal);
    events of different slots may interleave arbitrarily.
    """

    model_config = ConfigDict(frozen=True)

    type: EventType
    slot: Slot
    data: EventData

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.COMPLETE, EventType.ERROR)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

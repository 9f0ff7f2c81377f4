"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ComparisonOutcome:
    """Joint state of both slots once neither is active.

    A failed slot has ``final_text``/``cost`` set to None and its error text recorded.
    """

    request_id: str
    prompt: str
    model_id1: str
    model_id2: str
    final_text1: Optional[str]
    final_text2: Optional[str]
    cost1: Optional[float]
    cost2: Optional[float]
    error1: Optional[str] = None
    error2: Optional[str] = None
    tokens1: int = 0
    tokens2: int = 0

    @property
    def failed1(self) -> bool:
        return self.error1 is not None

    @property
    def failed2(self) -> bool:
        return self.error2 is not None

    @property
    def total_cost(self) -> float:
        return (self.cost1 or 0.0) + (self.cost2 or 0.0)


@dataclass
class HistoryRecord:
    prompt: str
    model_id1: str
    model_id2: str
    final_text1: Optional[str] = None
    final_text2: Optional[str] = None
    cost1: Optional[float] = None
    cost2: Optional[float] = None
    error1: Optional[str] = None
    error2: Optional[str] = None
    tokens1: int = 0
    tokens2: int = 0
    request_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[str] = None

    @property
    def has_error(self) -> bool:
        return self.final_text1 is None or self.final_text2 is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "modelId1": self.model_id1,
            "modelId2": self.model_id2,
            "finalText1": self.final_text1,
            "finalText2": self.final_text2,
            "cost1": self.cost1,
            "cost2": self.cost2,
            "error1": self.error1,
            "error2": self.error2,
            "tokens1": self.tokens1,
            "tokens2": self.tokens2,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class HistoryPage:
    items: list[HistoryRecord]
    total: int
    page: int
    page_size: int

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "total": self.total,
            "page": self.page,
            "pageSize": self.page_size,
            "hasMore": self.has_more,
        }


@dataclass
class ModelUsage:
    model_id: str
    count: int


@dataclass
class HistoryStats:
    total_comparisons: int = 0
    total_cost: float = 0.0
    average_cost: float = 0.0
    total_tokens: int = 0
    most_used_models: list[ModelUsage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalComparisons": self.total_comparisons,
            "totalCost": self.total_cost,
            "averageCost": self.average_cost,
            "totalTokens": self.total_tokens,
            "mostUsedModels": [
                {"modelId": m.model_id, "count": m.count} for m in self.most_used_models
            ],
        }

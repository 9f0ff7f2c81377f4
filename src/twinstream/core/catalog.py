"""Static model catalog: descriptors, pricing and the read-only registry."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from twinstream.core.errors import UnknownModel
from twinstream.core.types import Provider


@dataclass(frozen=True, slots=True)
class ModelDescriptor:
    id: str
    display_name: str
    provider: Provider
    input_price_per_1k: float  # USD
    output_price_per_1k: float  # USD
    max_context: int
    supports_streaming: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "provider": self.provider.value,
            "pricing": {"input": self.input_price_per_1k, "output": self.output_price_per_1k},
            "maxTokens": self.max_context,
            "supportsStreaming": self.supports_streaming,
        }


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Input/output token counts, exact or estimated."""

    input: int = 0
    output: int = 0

    def __post_init__(self) -> None:
        if self.input < 0 or self.output < 0:
            raise ValueError("token counts cannot be negative")

    @property
    def total(self) -> int:
        return self.input + self.output

    def to_dict(self) -> dict[str, int]:
        return {"input": self.input, "output": self.output, "total": self.total}


# USD per 1K tokens
BUILTIN_MODELS: tuple[ModelDescriptor, ...] = (
    ModelDescriptor("gpt-4o", "GPT-4o", Provider.OPENAI, 0.005, 0.015, 128_000),
    ModelDescriptor("gpt-4o-mini", "GPT-4o Mini", Provider.OPENAI, 0.00015, 0.0006, 128_000),
    ModelDescriptor("gpt-4-turbo", "GPT-4 Turbo", Provider.OPENAI, 0.01, 0.03, 128_000),
    ModelDescriptor("gpt-3.5-turbo", "GPT-3.5 Turbo", Provider.OPENAI, 0.0015, 0.002, 16_385),
    ModelDescriptor(
        "claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", Provider.ANTHROPIC, 0.003, 0.015, 200_000
    ),
    ModelDescriptor(
        "claude-3-5-haiku-20241022", "Claude 3.5 Haiku", Provider.ANTHROPIC, 0.0008, 0.004, 200_000
    ),
    ModelDescriptor(
        "claude-3-opus-20240229", "Claude 3 Opus", Provider.ANTHROPIC, 0.015, 0.075, 200_000
    ),
)

DEFAULT_MODEL_PAIR = ("gpt-4o-mini", "claude-3-5-haiku-20241022")


class ModelRegistry:
    """Read-only lookup of model descriptors by id.

    Built once at startup and shared by reference. Overrides produce a new
    registry instead of mutating this one, so concurrent readers never need
    synchronization.
    """

    def __init__(self, descriptors: Iterable[ModelDescriptor] = BUILTIN_MODELS):
        table: dict[str, ModelDescriptor] = {}
        for descriptor in descriptors:
            table[descriptor.id] = descriptor
        self._models: Mapping[str, ModelDescriptor] = MappingProxyType(table)

    def get(self, model_id: str) -> ModelDescriptor | None:
        return self._models.get(model_id)

    def require(self, model_id: str) -> ModelDescriptor:
        descriptor = self._models.get(model_id)
        if descriptor is None:
            raise UnknownModel(model_id)
        return descriptor

    def is_available(self, model_id: str) -> bool:
        return model_id in self._models

    def all(self) -> list[ModelDescriptor]:
        return list(self._models.values())

    def by_provider(self, provider: Provider | str) -> list[ModelDescriptor]:
        return [m for m in self._models.values() if m.provider == provider]

    def with_overrides(self, entries: Iterable[ModelDescriptor]) -> ModelRegistry:
        merged = dict(self._models)
        for entry in entries:
            merged[entry.id] = entry
        return ModelRegistry(merged.values())

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)


_default_registry = ModelRegistry()


def default_registry() -> ModelRegistry:
    return _default_registry


def parse_reported_usage(usage: Any, provider: Provider | str) -> TokenUsage | None:
    """Convert a provider usage payload (object or dict) to TokenUsage.

    Returns None when the payload carries no usable counts.
    """
    if usage is None:
        return None

    def _read(name: str) -> int | None:
        value = usage.get(name) if isinstance(usage, dict) else getattr(usage, name, None)
        return int(value) if isinstance(value, (int, float)) else None

    if provider == Provider.OPENAI:
        input_tokens, output_tokens = _read("prompt_tokens"), _read("completion_tokens")
    elif provider == Provider.ANTHROPIC:
        input_tokens, output_tokens = _read("input_tokens"), _read("output_tokens")
    else:
        return None

    if input_tokens is None and output_tokens is None:
        return None
    return TokenUsage(input=input_tokens or 0, output=output_tokens or 0)

"""Token estimation and cost calculation.

Token counts are estimated from character length with a per-provider
characters-per-token ratio. This is an approximation of the backends'
tokenizers; figures are exact only when a backend reports its own usage.

Every function here is pure: the price table is read-only after startup,
so callers may use them concurrently without locking.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from twinstream.core.catalog import ModelRegistry, TokenUsage, default_registry
from twinstream.core.types import Provider

CHARS_PER_TOKEN: dict[Provider, float] = {
    Provider.OPENAI: 4.0,
    Provider.ANTHROPIC: 3.8,
}
DEFAULT_CHARS_PER_TOKEN = 4.0

COST_PRECISION = Decimal("0.000001")
_THOUSAND = Decimal(1000)


@dataclass(frozen=True, slots=True)
class CostCalculation:
    input_tokens: int
    output_tokens: int
    input_cost: float
    output_cost: float
    total_cost: float

    def to_dict(self) -> dict[str, float | int]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "inputCost": self.input_cost,
            "outputCost": self.output_cost,
            "totalCost": self.total_cost,
        }


def _round(value: Decimal) -> float:
    return float(value.quantize(COST_PRECISION, rounding=ROUND_HALF_UP))


def _provider_for(model_id: str, registry: ModelRegistry) -> Provider | None:
    descriptor = registry.get(model_id)
    if descriptor is not None:
        return descriptor.provider
    if model_id.startswith("gpt-") or "openai" in model_id:
        return Provider.OPENAI
    if model_id.startswith("claude-") or "anthropic" in model_id:
        return Provider.ANTHROPIC
    return None


def chars_per_token(model_id: str, registry: ModelRegistry | None = None) -> float:
    provider = _provider_for(model_id, registry or default_registry())
    return CHARS_PER_TOKEN.get(provider, DEFAULT_CHARS_PER_TOKEN)


def estimate_tokens(text: str, model_id: str, registry: ModelRegistry | None = None) -> int:
    """Approximate token count of *text*; 0 for empty or whitespace-only text. Never raises."""
    if not text:
        return 0
    clean = text.strip()
    if not clean:
        return 0
    return math.ceil(len(clean) / chars_per_token(model_id, registry))


def cost(usage: TokenUsage, model_id: str, registry: ModelRegistry | None = None) -> CostCalculation:
    """Price *usage* for *model_id*, rounded to 6 decimal places.

    Raises:
        UnknownModel: If the model has no registered descriptor
    """
    descriptor = (registry or default_registry()).require(model_id)

    input_cost = Decimal(usage.input) / _THOUSAND * Decimal(str(descriptor.input_price_per_1k))
    output_cost = Decimal(usage.output) / _THOUSAND * Decimal(str(descriptor.output_price_per_1k))

    return CostCalculation(
        input_tokens=usage.input,
        output_tokens=usage.output,
        input_cost=_round(input_cost),
        output_cost=_round(output_cost),
        total_cost=_round(input_cost + output_cost),
    )


def live_cost(
    input_tokens: int, output_tokens: int, model_id: str, registry: ModelRegistry | None = None
) -> float:
    return cost(TokenUsage(input=input_tokens, output=output_tokens), model_id, registry).total_cost


def estimate_prompt_cost(
    prompt: str,
    model_id: str,
    expected_output_tokens: int = 500,
    registry: ModelRegistry | None = None,
) -> CostCalculation:
    """Up-front estimate for a prompt before any backend is called."""
    usage = TokenUsage(input=estimate_tokens(prompt, model_id, registry), output=expected_output_tokens)
    return cost(usage, model_id, registry)


def compare_costs(
    usage: TokenUsage, model1_id: str, model2_id: str, registry: ModelRegistry | None = None
) -> dict[str, Any]:
    """Price the same usage on two models."""
    cost1 = cost(usage, model1_id, registry)
    cost2 = cost(usage, model2_id, registry)
    difference = abs(Decimal(str(cost1.total_cost)) - Decimal(str(cost2.total_cost)))
    return {
        "model1": cost1,
        "model2": cost2,
        "difference": _round(difference),
        "cheaper": model1_id if cost1.total_cost < cost2.total_cost else model2_id,
    }


def cost_breakdown(
    usage1: TokenUsage,
    usage2: TokenUsage,
    model1_id: str,
    model2_id: str,
    registry: ModelRegistry | None = None,
) -> dict[str, Any]:
    cost1 = cost(usage1, model1_id, registry)
    cost2 = cost(usage2, model2_id, registry)
    return {
        "model1": cost1,
        "model2": cost2,
        "total": _round(Decimal(str(cost1.total_cost)) + Decimal(str(cost2.total_cost))),
        "breakdown": {
            "totalInputTokens": usage1.input + usage2.input,
            "totalOutputTokens": usage1.output + usage2.output,
            "totalInputCost": _round(Decimal(str(cost1.input_cost)) + Decimal(str(cost2.input_cost))),
            "totalOutputCost": _round(Decimal(str(cost1.output_cost)) + Decimal(str(cost2.output_cost))),
        },
    }


def has_valid_pricing(model_id: str, registry: ModelRegistry | None = None) -> bool:
    descriptor = (registry or default_registry()).get(model_id)
    return (
        descriptor is not None
        and descriptor.input_price_per_1k > 0
        and descriptor.output_price_per_1k > 0
    )


def pricing_info(model_id: str, registry: ModelRegistry | None = None) -> dict[str, Any] | None:
    descriptor = (registry or default_registry()).get(model_id)
    if descriptor is None:
        return None
    return {
        "modelId": model_id,
        "displayName": descriptor.display_name,
        "provider": descriptor.provider.value,
        "inputPrice": descriptor.input_price_per_1k,
        "outputPrice": descriptor.output_price_per_1k,
        "formattedInputPrice": f"${descriptor.input_price_per_1k}/1K tokens",
        "formattedOutputPrice": f"${descriptor.output_price_per_1k}/1K tokens",
    }


def estimate_token_range(
    text: str, model_id: str, registry: ModelRegistry | None = None
) -> dict[str, int]:
    """Estimate with a +/-20% band around it."""
    estimate = estimate_tokens(text, model_id, registry)
    return {
        "min": math.floor(estimate * 0.8),
        "max": math.ceil(estimate * 1.2),
        "estimate": estimate,
    }


def exceeds_token_limit(
    text: str, model_id: str, max_tokens: int, registry: ModelRegistry | None = None
) -> bool:
    return estimate_tokens(text, model_id, registry) > max_tokens


def truncate_to_token_limit(
    text: str, model_id: str, max_tokens: int, registry: ModelRegistry | None = None
) -> str:
    """Cut *text* so its estimate fits *max_tokens*, keeping a 10% margin."""
    current = estimate_tokens(text, model_id, registry)
    if current <= max_tokens:
        return text
    keep = math.floor(len(text) * (max_tokens * 0.9) / current)
    return text[:keep] + "..."


def format_cost(amount: float) -> str:
    if amount == 0:
        return "$0.00"
    if amount < 0.001:
        return "<$0.001"
    if amount < 0.01:
        return f"${amount:.3f}"
    return f"${amount:.2f}"


def format_tokens(tokens: int) -> str:
    if tokens < 1000:
        return str(tokens)
    if tokens < 1_000_000:
        return f"{tokens / 1000:.1f}K"
    return f"{tokens / 1_000_000:.1f}M"

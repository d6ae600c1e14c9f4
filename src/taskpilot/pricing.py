"""Per-model token pricing used by the cost budget."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelPricing:
    """USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


MODEL_PRICING: dict[str, ModelPricing] = {
    "claude-opus-4-5-20250101": ModelPricing(15.00, 75.00),
    "claude-sonnet-4-5-20250514": ModelPricing(3.00, 15.00),
    "claude-sonnet-4-20250514": ModelPricing(3.00, 15.00),
    "claude-3-5-sonnet-20241022": ModelPricing(3.00, 15.00),
    "claude-3-5-sonnet-latest": ModelPricing(3.00, 15.00),
    "claude-3-5-haiku-20241022": ModelPricing(0.80, 4.00),
    "claude-3-5-haiku-latest": ModelPricing(0.80, 4.00),
    "claude-3-opus-20240229": ModelPricing(15.00, 75.00),
    "claude-3-haiku-20240307": ModelPricing(0.25, 1.25),
    "gemini-2.0-flash": ModelPricing(0.10, 0.40),
    "gemini-2.5-pro": ModelPricing(1.25, 5.00),
    "gemini-2.5-flash": ModelPricing(0.15, 0.60),
    "gpt-4o": ModelPricing(2.50, 10.00),
    "gpt-4o-mini": ModelPricing(0.15, 0.60),
    "openai/gpt-4o": ModelPricing(2.50, 10.00),
    "openai/gpt-4o-mini": ModelPricing(0.15, 0.60),
    "anthropic/claude-3.5-sonnet": ModelPricing(3.00, 15.00),
    "meta-llama/llama-3.1-70b-instruct": ModelPricing(0.52, 0.75),
}


def get_model_pricing(model_id: str) -> ModelPricing | None:
    """Exact match first, then the first table key that contains or is contained by the id."""

    pricing = MODEL_PRICING.get(model_id)
    if pricing is not None:
        return pricing
    lowered = model_id.lower()
    if not lowered:
        return None
    for key, value in MODEL_PRICING.items():
        key_lower = key.lower()
        if key_lower in lowered or lowered in key_lower:
            return value
    return None


def calculate_cost(model_id: str, input_tokens: int, output_tokens: int) -> float:
    # Unknown and local models cost nothing.
    pricing = get_model_pricing(model_id)
    if pricing is None:
        return 0.0
    return (input_tokens / 1_000_000) * pricing.input_per_1m + (
        output_tokens / 1_000_000
    ) * pricing.output_per_1m


def format_cost(cost: float) -> str:
    if cost < 0.01:
        return f"${cost:.4f}"
    return f"${cost:.2f}"

# app/services/pricing.py - Per-step cost estimation from provider usage units

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class ModelPrice:
    unit: str
    input_price: float
    output_price: float = 0.0


# USD prices per unit
DEFAULT_PRICING: dict[str, ModelPrice] = {
    "claude-sonnet-4-5-20250929": ModelPrice("1M_tokens", 3.0, 15.0),
    "gemini-2.0-flash": ModelPrice("1M_tokens", 0.1, 0.4),
    "gemini-2.5-flash-image": ModelPrice("1M_tokens", 0.15, 30.0),
    "gpt-5-mini": ModelPrice("1M_tokens", 0.25, 2.0),
    "gpt-5.2": ModelPrice("1M_tokens", 1.75, 14.0),
    "gpt-4o": ModelPrice("1M_tokens", 2.5, 10.0),
    "soniox": ModelPrice("per_minute", 0.0017),
    "elevenlabs": ModelPrice("1k_chars", 0.30),
    "fal-ai/flux/schnell": ModelPrice("per_image", 0.025),
    "fal-ai/flux/dev": ModelPrice("per_image", 0.055),
    "grok-imagine-video-480p": ModelPrice("per_second", 0.05),
    "grok-imagine-video-720p": ModelPrice("per_second", 0.07),
}


def lookup_price(model: str | None, provider: str | None = None) -> ModelPrice | None:
    if model and model in DEFAULT_PRICING:
        return DEFAULT_PRICING[model]
    if provider and provider in DEFAULT_PRICING:
        return DEFAULT_PRICING[provider]
    return None


def estimate_cost_dollars(price: ModelPrice, usage: dict[str, float]) -> float:
    if price.unit == "1M_tokens":
        return (
            usage.get("input_tokens", 0) / 1_000_000 * price.input_price
            + usage.get("output_tokens", 0) / 1_000_000 * price.output_price
        )
    if price.unit == "1k_chars":
        return usage.get("chars", 0) / 1000 * price.input_price
    if price.unit == "per_minute":
        return usage.get("seconds", 0) / 60 * price.input_price
    if price.unit == "per_image":
        return usage.get("images", 0) * price.input_price
    if price.unit == "per_second":
        return usage.get("video_seconds", 0) * price.input_price
    raise ValueError(f"Unknown pricing unit: {price.unit}")


def estimate_cost_cents(model: str | None, usage: dict[str, float] | None, *, provider: str | None = None) -> int:
    """Whole cents, rounded half up. Unpriced models cost 0."""
    if not usage:
        return 0
    price = lookup_price(model, provider)
    if price is None:
        return 0
    return int(math.floor(estimate_cost_dollars(price, usage) * 100 + 0.5))

"""Token cost estimation for handlers that report usage but no cost."""

from __future__ import annotations

import os
from dataclasses import dataclass

from agent_jobs.jobs.models import TokenUsage

PRICING_ENV_VAR = "AGENT_JOBS_LLM_PRICING"


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


def estimate_cost_usd(
    *,
    api_type: str,
    model: str,
    tokens_sent: int | None,
    tokens_received: int | None,
    total_tokens: int | None,
) -> float | None:
    """Estimate cost in USD from token usage and configured pricing."""

    pricing = _lookup_pricing(api_type=api_type, model=model)
    if pricing is None:
        return None

    if tokens_sent is not None and tokens_received is not None:
        return (
            (tokens_sent / 1_000_000) * pricing.input_per_1m
            + (tokens_received / 1_000_000) * pricing.output_per_1m
        )

    if total_tokens is not None:
        average = (pricing.input_per_1m + pricing.output_per_1m) / 2
        return (total_tokens / 1_000_000) * average
    return None


def estimate_usage_cost(*, api_type: str, usage: TokenUsage | None) -> float | None:
    """`estimate_cost_usd` for a handler usage report."""

    if usage is None:
        return None
    return estimate_cost_usd(
        api_type=api_type,
        model=usage.model_used or "*",
        tokens_sent=usage.tokens_sent,
        tokens_received=usage.tokens_received,
        total_tokens=usage.total_tokens,
    )


def _lookup_pricing(*, api_type: str, model: str) -> ModelPricing | None:
    mapping = _parse_pricing_mapping(os.getenv(PRICING_ENV_VAR, ""))
    api = api_type.strip().lower()
    direct = mapping.get((api, model.strip()))
    if direct is not None:
        return direct

    wildcard_model = mapping.get((api, "*"))
    if wildcard_model is not None:
        return wildcard_model

    return mapping.get(("*", "*"))


def _parse_pricing_mapping(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse `AGENT_JOBS_LLM_PRICING` mapping.

    Format:
    - `api:model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - supports wildcards in api/model (`*`)
    - rows with negative prices are ignored
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 4:
            continue
        api, model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        if input_per_1m < 0 or output_per_1m < 0:
            continue
        parsed[(api.lower(), model)] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed

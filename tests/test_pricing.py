from __future__ import annotations

import allure

from agent_jobs.jobs.models import TokenUsage
from agent_jobs.jobs.pricing import estimate_cost_usd, estimate_usage_cost

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Cost Accounting"),
]


def test_estimate_cost_usd_uses_input_and_output_tokens(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_JOBS_LLM_PRICING", "gemini:gemini-pro:1.0:3.0")
    cost = estimate_cost_usd(
        api_type="gemini",
        model="gemini-pro",
        tokens_sent=1_000_000,
        tokens_received=500_000,
        total_tokens=None,
    )
    assert cost == 2.5


def test_estimate_cost_usd_uses_average_price_for_total_tokens(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_JOBS_LLM_PRICING", "gemini:gemini-pro:1.0:3.0")
    cost = estimate_cost_usd(
        api_type="gemini",
        model="gemini-pro",
        tokens_sent=None,
        tokens_received=None,
        total_tokens=1_000_000,
    )
    assert cost == 2.0


def test_estimate_cost_usd_applies_wildcards(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_JOBS_LLM_PRICING", "claude:*:2.0:2.0,*:*:9.0:9.0")
    claude_cost = estimate_cost_usd(
        api_type="CLAUDE",
        model="unknown-model",
        tokens_sent=1_000_000,
        tokens_received=0,
        total_tokens=None,
    )
    openai_cost = estimate_cost_usd(
        api_type="openai",
        model="unknown-model",
        tokens_sent=1_000_000,
        tokens_received=0,
        total_tokens=None,
    )
    assert claude_cost == 2.0
    assert openai_cost == 9.0


def test_estimate_cost_usd_ignores_negative_and_malformed_rows(monkeypatch) -> None:
    monkeypatch.setenv(
        "AGENT_JOBS_LLM_PRICING",
        "gemini:flash:-1.0:2.0,gemini:flash:cheap,*:*:4.0:4.0",
    )
    cost = estimate_cost_usd(
        api_type="gemini",
        model="flash",
        tokens_sent=1_000_000,
        tokens_received=0,
        total_tokens=None,
    )
    assert cost == 4.0


def test_estimate_cost_usd_without_pricing_returns_none() -> None:
    cost = estimate_cost_usd(
        api_type="gemini",
        model="flash",
        tokens_sent=10,
        tokens_received=10,
        total_tokens=None,
    )
    assert cost is None


def test_estimate_usage_cost_handles_missing_usage(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_JOBS_LLM_PRICING", "*:*:1.0:1.0")

    assert estimate_usage_cost(api_type="gemini", usage=None) is None
    assert estimate_usage_cost(
        api_type="gemini",
        usage=TokenUsage(total_tokens=2_000_000),
    ) == 2.0

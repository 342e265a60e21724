"""
Tests for cost and usage accounting.
"""

import pytest

from coach_agent.accounting import CostAccountant, InMemoryUsageRecorder, ModelPrice, PricingCatalog
from coach_agent.errors import ConfigurationError
from coach_agent.llm.base import ProviderUsage


def test_cost_from_catalog():
    """Cost is tokens times the per-token price."""
    accountant = CostAccountant()

    cost = accountant.cost("openai/gpt-4.1-mini", 1000, 500)

    assert cost.input_cost == pytest.approx(0.0004)
    assert cost.output_cost == pytest.approx(0.0008)
    assert cost.total_cost == pytest.approx(0.0012)
    assert cost.source == "catalog"


def test_unknown_model_costs_zero():
    """A model missing from the catalog is priced at zero, not an error."""
    cost = CostAccountant().cost("acme/mystery-model", 1000, 1000)

    assert cost.total_cost == 0.0
    assert cost.source == "unpriced"


def test_catalog_lookup_variants():
    """Routing suffixes, bare names and native aliases resolve to catalog entries."""
    catalog = PricingCatalog()

    assert catalog.get("openai/gpt-4o-mini:free") == catalog.get("openai/gpt-4o-mini")
    assert catalog.get("gpt-4o-mini") == catalog.get("openai/gpt-4o-mini")
    assert catalog.get("claude-sonnet-4-20250514") == catalog.get("anthropic/claude-sonnet-4")
    with pytest.raises(ConfigurationError):
        catalog.get("nobody/knows")


def test_context_budget_thresholds():
    """Near-limit from 80%, over-limit from 100%."""
    catalog = PricingCatalog({"m": ModelPrice(0.0, 0.0, context_window=1000)})
    accountant = CostAccountant(catalog)

    assert not accountant.context_budget("m", 799).is_near_limit
    near = accountant.context_budget("m", 800)
    assert near.is_near_limit and not near.is_over_limit
    assert accountant.context_budget("m", 1000).is_over_limit
    assert accountant.context_budget("m", 500).percent_used == pytest.approx(50.0)


def test_unknown_model_uses_default_window():
    """Context budget falls back to a 128k window."""
    budget = CostAccountant().context_budget("acme/mystery-model", 64_000)
    assert budget.context_length == 128_000
    assert budget.percent_used == pytest.approx(50.0)


def test_complete_provider_usage_wins():
    """A complete provider report replaces every local figure."""
    usage = CostAccountant().finalize_usage(
        model_id="openai/gpt-4.1-mini",
        input_tokens=1000,
        output_tokens=500,
        generation_time_ms=1200,
        provider_usage=ProviderUsage(input_tokens=1100, output_tokens=520, cost_usd=0.0042),
    )

    assert usage.input_tokens == 1100
    assert usage.output_tokens == 520
    assert usage.cost_usd == pytest.approx(0.0042)
    assert usage.cost_source == "provider"
    assert usage.total_tokens == 1620


def test_partial_provider_usage_is_ignored():
    """Partial provider data never mixes with local numbers."""
    usage = CostAccountant().finalize_usage(
        model_id="openai/gpt-4.1-mini",
        input_tokens=1000,
        output_tokens=500,
        generation_time_ms=1200,
        provider_usage=ProviderUsage(input_tokens=1100, output_tokens=None, cost_usd=0.0042),
    )

    assert usage.input_tokens == 1000
    assert usage.output_tokens == 500
    assert usage.cost_usd == pytest.approx(0.0012)
    assert usage.cost_source == "catalog"


def test_usage_carries_retrieval_flags():
    """Retrieval flags and reasoning text are copied onto the record."""
    usage = CostAccountant().finalize_usage(
        model_id="acme/mystery-model",
        input_tokens=10,
        output_tokens=5,
        generation_time_ms=10,
        rag_used=True,
        rag_chunks_count=3,
        reasoning_content="thinking",
    )

    assert usage.rag_used and usage.rag_chunks_count == 3
    assert usage.reasoning_content == "thinking"
    assert usage.cost_usd == 0.0
    assert usage.cost_source == "unpriced"


@pytest.mark.asyncio
async def test_in_memory_usage_recorder_totals():
    """The recorder sums cost per user."""
    accountant = CostAccountant()
    recorder = InMemoryUsageRecorder()
    first = accountant.finalize_usage("openai/gpt-4.1-mini", 1000, 500, 10)
    second = accountant.finalize_usage("openai/gpt-4.1-mini", 2000, 1000, 10)

    await recorder.record("u1", "c1", first)
    await recorder.record("u2", "c2", second)

    assert recorder.total_cost("u1") == pytest.approx(0.0012)
    assert recorder.total_cost() == pytest.approx(0.0036)

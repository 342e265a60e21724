"""
Cost and usage accounting.

Prices come from a catalog keyed by model identifier. Provider-reported
figures (OpenRouter returns its own cost) win over the local estimate only
when they are complete; partial provider data never mixes with local
numbers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import structlog

from .errors import ConfigurationError
from .llm.base import ProviderUsage

logger = structlog.get_logger()

DEFAULT_CONTEXT_WINDOW = 128_000
NEAR_LIMIT_PERCENT = 80
OVER_LIMIT_PERCENT = 100


@dataclass(frozen=True)
class ModelPrice:
    """USD price per token and context window of a model."""

    input_per_token: float
    output_per_token: float
    context_window: int = DEFAULT_CONTEXT_WINDOW


# Prices in USD per million tokens, converted on load
_DEFAULT_PRICES_PER_MILLION: dict[str, tuple[float, float, int]] = {
    "openai/gpt-4.1-mini": (0.40, 1.60, 1_047_576),
    "openai/gpt-4.1": (2.00, 8.00, 1_047_576),
    "openai/gpt-4o-mini": (0.15, 0.60, 128_000),
    "openai/gpt-4o": (2.50, 10.00, 128_000),
    "google/gemini-2.0-flash-001": (0.10, 0.40, 1_048_576),
    "google/gemini-2.5-flash": (0.30, 2.50, 1_048_576),
    "anthropic/claude-sonnet-4": (3.00, 15.00, 200_000),
    "anthropic/claude-3.5-haiku": (0.80, 4.00, 200_000),
    "x-ai/grok-4.1-fast": (0.20, 0.50, 2_000_000),
    "openai/text-embedding-3-small": (0.02, 0.0, 8_192),
}

_ALIASES = {
    "claude-sonnet-4-20250514": "anthropic/claude-sonnet-4",
    "claude-3-5-haiku-20241022": "anthropic/claude-3.5-haiku",
}


class PricingCatalog:
    """Model identifier -> price lookup."""

    def __init__(self, prices: dict[str, ModelPrice] | None = None):
        if prices is None:
            prices = {
                model: ModelPrice(inp / 1_000_000, out / 1_000_000, window)
                for model, (inp, out, window) in _DEFAULT_PRICES_PER_MILLION.items()
            }
        self._prices = dict(prices)

    def _resolve(self, model_id: str) -> str | None:
        if model_id in self._prices:
            return model_id
        if model_id in _ALIASES and _ALIASES[model_id] in self._prices:
            return _ALIASES[model_id]
        # ":free" and other routing variants share the base model's window
        base = model_id.split(":", 1)[0]
        if base in self._prices:
            return base
        for known in self._prices:
            if known.split("/", 1)[-1] == base:
                return known
        return None

    def get(self, model_id: str) -> ModelPrice:
        key = self._resolve(model_id)
        if key is None:
            raise ConfigurationError(f"No pricing entry for model '{model_id}'")
        return self._prices[key]

    def context_window(self, model_id: str) -> int:
        key = self._resolve(model_id)
        return self._prices[key].context_window if key else DEFAULT_CONTEXT_WINDOW

    def set(self, model_id: str, price: ModelPrice) -> None:
        self._prices[model_id] = price


@dataclass(frozen=True)
class CostBreakdown:
    """Cost of one generation in USD.

    ``source`` is ``catalog`` for local prices, ``provider`` when the
    provider's own figure was used and ``unpriced`` when the model is
    missing from the catalog (all amounts zero).
    """

    input_cost: float
    output_cost: float
    total_cost: float
    model: str
    source: str = "catalog"


@dataclass(frozen=True)
class ContextBudget:
    """How much of a model's context window a token count uses."""

    percent_used: float
    tokens_used: int
    context_length: int

    @property
    def is_near_limit(self) -> bool:
        return self.percent_used >= NEAR_LIMIT_PERCENT

    @property
    def is_over_limit(self) -> bool:
        return self.percent_used >= OVER_LIMIT_PERCENT


@dataclass(frozen=True)
class ModelUsage:
    """Usage record of one finished generation. Never mutated."""

    model: str
    input_tokens: int
    output_tokens: int
    reasoning_tokens: int
    cost_usd: float
    generation_time_ms: int
    cost_source: str = "catalog"
    rag_used: bool = False
    rag_chunks_count: int = 0
    tool_invocations: tuple[Any, ...] = field(default_factory=tuple)
    reasoning_content: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class CostAccountant:
    """Computes cost, context budget and the final usage record."""

    def __init__(self, catalog: PricingCatalog | None = None):
        self.catalog = catalog or PricingCatalog()

    def cost(self, model_id: str, input_tokens: int, output_tokens: int) -> CostBreakdown:
        """Local cost estimate. Unknown models cost zero and are logged."""
        try:
            price = self.catalog.get(model_id)
        except ConfigurationError as e:
            logger.error("Cost lookup failed", model=model_id, error=str(e))
            return CostBreakdown(0.0, 0.0, 0.0, model=model_id, source="unpriced")

        input_cost = input_tokens * price.input_per_token
        output_cost = output_tokens * price.output_per_token
        return CostBreakdown(
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=input_cost + output_cost,
            model=model_id,
        )

    def context_budget(self, model_id: str, token_count: int) -> ContextBudget:
        context_length = self.catalog.context_window(model_id)
        percent_used = (token_count / context_length) * 100 if context_length else 100.0
        return ContextBudget(
            percent_used=percent_used,
            tokens_used=token_count,
            context_length=context_length,
        )

    def finalize_usage(
        self,
        model_id: str,
        input_tokens: int,
        output_tokens: int,
        generation_time_ms: int,
        reasoning_tokens: int = 0,
        provider_usage: ProviderUsage | None = None,
        rag_used: bool = False,
        rag_chunks_count: int = 0,
        tool_invocations: tuple[Any, ...] = (),
        reasoning_content: str | None = None,
    ) -> ModelUsage:
        """Build the usage record for a finished generation.

        A complete provider report replaces the local figures entirely.
        Anything less and every figure is computed locally.
        """
        if provider_usage is not None and provider_usage.is_complete:
            in_tokens = provider_usage.input_tokens or 0
            out_tokens = provider_usage.output_tokens or 0
            cost_usd = float(provider_usage.cost_usd or 0.0)
            source = "provider"
        else:
            if provider_usage is not None:
                logger.debug(
                    "Partial provider usage ignored",
                    model=model_id,
                    provider_usage=provider_usage,
                )
            breakdown = self.cost(model_id, input_tokens, output_tokens)
            in_tokens, out_tokens = input_tokens, output_tokens
            cost_usd = breakdown.total_cost
            source = breakdown.source

        return ModelUsage(
            model=model_id,
            input_tokens=in_tokens,
            output_tokens=out_tokens,
            reasoning_tokens=reasoning_tokens,
            cost_usd=cost_usd,
            generation_time_ms=generation_time_ms,
            cost_source=source,
            rag_used=rag_used,
            rag_chunks_count=rag_chunks_count,
            tool_invocations=tuple(tool_invocations),
            reasoning_content=reasoning_content,
        )


class UsageRecorder(ABC):
    """Persists one usage record per finished generation."""

    @abstractmethod
    async def record(self, user_id: str, conversation_id: str | None, usage: ModelUsage) -> None:
        pass


class InMemoryUsageRecorder(UsageRecorder):
    """Usage recorder kept in process memory."""

    def __init__(self):
        self.records: list[tuple[str, str | None, ModelUsage]] = []

    async def record(self, user_id: str, conversation_id: str | None, usage: ModelUsage) -> None:
        self.records.append((user_id, conversation_id, usage))

    def total_cost(self, user_id: str | None = None) -> float:
        return sum(u.cost_usd for uid, _, u in self.records if user_id is None or uid == user_id)

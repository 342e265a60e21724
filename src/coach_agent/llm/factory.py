"""
LLM factory for creating provider instances.

Supports: Anthropic Claude, OpenAI GPT, OpenRouter.
"""

from ..config import OPENROUTER_BASE_URL, LLMConfig, Settings
from ..errors import ConfigurationError
from .base import BaseLLM
from .anthropic import AnthropicLLM
from .openai import OpenAILLM

# provider -> (adapter class, default endpoint)
PROVIDERS: dict[str, tuple[type[BaseLLM], str | None]] = {
    "anthropic": (AnthropicLLM, None),
    "openai": (OpenAILLM, None),
    # OpenAI-compatible endpoint that also reports per-call cost
    "openrouter": (OpenAILLM, OPENROUTER_BASE_URL),
}


def create_llm(config: LLMConfig | None = None, settings: Settings | None = None) -> BaseLLM:
    """Create the adapter for ``config`` (or the default provider in ``settings``).

    Raises ConfigurationError for an unknown provider or a missing key.
    """
    if config is None:
        if settings is None:
            from ..config import get_settings
            settings = get_settings()
        config = settings.get_llm_config()

    if config.provider not in PROVIDERS:
        raise ConfigurationError(f"Unknown LLM provider: {config.provider}")
    if not config.api_key:
        raise ConfigurationError(f"No API key configured for provider '{config.provider}'")

    adapter, default_base_url = PROVIDERS[config.provider]
    return adapter(
        api_key=config.api_key,
        model=config.model,
        base_url=config.base_url or default_base_url,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
    )

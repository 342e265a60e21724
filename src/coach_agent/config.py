"""
Configuration management for Coach-Agent

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ProviderName = Literal["openrouter", "openai", "anthropic"]

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class LLMConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: ProviderName = "openrouter"
    model: str = "openai/gpt-4.1-mini"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "Coach-Agent"
    persona_name: str = "Coach"
    debug: bool = False
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Provider API keys
    openrouter_api_key: str = Field(default="", description="OpenRouter API key (chat + embeddings)")
    openai_api_key: str = Field(default="", description="OpenAI API key")
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    tavily_api_key: str = Field(default="", description="Tavily API key for web search")

    # Models
    default_provider: ProviderName = "openrouter"
    orchestrator_model: str = "openai/gpt-4.1-mini"
    classifier_model: str = "google/gemini-2.0-flash-001"
    summarization_model: str = "google/gemini-2.0-flash-001"
    embedding_model: str = "openai/text-embedding-3-small"
    max_tokens: int = 4096
    temperature: float = 0.7

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/coach.db",
        description="Database connection URL"
    )

    # History window per subscription tier
    max_context_messages_basic: int = 20
    max_context_messages_pro: int = 50
    max_context_messages_unlimited: int = 100

    # Compaction
    compaction_threshold_percent: float = 70
    target_percent_after_compaction: float = 50
    preserve_recent_messages: int = 10
    min_messages_for_compaction: int = 15

    # Knowledge retrieval
    rag_similarity_threshold: float = 0.3
    rag_top_k: int = 5
    rag_cache_ttl_seconds: float = 60
    rag_chunk_size: int = 800
    rag_chunk_overlap: int = 100
    rag_embedding_batch_size: int = 10
    embedding_max_attempts: int = Field(default=2, description="Total embedding attempts, first try included")
    embedding_retry_base_ms: int = Field(default=500, description="Backoff base, doubled per retry")

    # Generation
    tool_step_cap: int = 5

    # Memory
    memory_min_confidence: float = 0.7

    # Features
    enable_web_search: bool = True
    enable_memory_extraction: bool = True

    @field_validator("tool_step_cap", "embedding_max_attempts", "rag_top_k")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    def max_context_messages_for(self, tier: str | None) -> int:
        """History window for a subscription tier (unknown tiers get basic)."""
        tiers = {
            "basic": self.max_context_messages_basic,
            "pro": self.max_context_messages_pro,
            "unlimited": self.max_context_messages_unlimited,
        }
        return tiers.get((tier or "basic").lower(), self.max_context_messages_basic)

    def get_llm_config(self, provider: str | None = None, model: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.default_provider

        api_key_map = {
            "openrouter": self.openrouter_api_key,
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
        }

        model_map = {
            "openrouter": self.orchestrator_model,
            "openai": "gpt-4.1-mini",
            "anthropic": "claude-sonnet-4-20250514",
        }

        base_url_map = {
            "openrouter": OPENROUTER_BASE_URL,
            "openai": None,
            "anthropic": None,
        }

        return LLMConfig(
            provider=provider,  # type: ignore
            model=model or model_map.get(provider, self.orchestrator_model),
            api_key=api_key_map.get(provider, ""),
            base_url=base_url_map.get(provider),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

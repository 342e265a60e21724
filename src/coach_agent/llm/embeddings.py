"""
Text embeddings for knowledge retrieval.

Embedding calls go through the OpenAI SDK (OpenRouter or OpenAI
directly). Transient failures are retried with exponential backoff;
client errors surface immediately.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable

import openai
import structlog

from ..config import OPENROUTER_BASE_URL, Settings
from ..errors import (
    ClientProviderError,
    ConfigurationError,
    TransientProviderError,
    classify_provider_error,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class EmbeddingRetryConfig:
    """Retry policy for embedding calls."""

    max_attempts: int = 2
    base_delay_ms: int = 500

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingRetryConfig":
        return cls(
            max_attempts=settings.embedding_max_attempts,
            base_delay_ms=settings.embedding_retry_base_ms,
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given zero-based failed attempt."""
        return self.base_delay_ms * (2 ** attempt) / 1000


class BaseEmbedder(ABC):
    """Turns text into vectors."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        pass

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        pass


class OpenAIEmbedder(BaseEmbedder):
    """Embedding provider backed by an OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = "openai/text-embedding-3-small",
        base_url: str | None = OPENROUTER_BASE_URL,
        retry: EmbeddingRetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not api_key:
            raise ConfigurationError("Embedding provider API key is not configured")
        self.model = model
        self.retry = retry or EmbeddingRetryConfig()
        self._sleep = sleep
        # Retries are handled here so the policy stays observable
        self.client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIEmbedder":
        if settings.openrouter_api_key:
            return cls(
                api_key=settings.openrouter_api_key,
                model=settings.embedding_model,
                base_url=OPENROUTER_BASE_URL,
                retry=EmbeddingRetryConfig.from_settings(settings),
            )
        return cls(
            api_key=settings.openai_api_key,
            model=settings.embedding_model.removeprefix("openai/"),
            base_url=None,
            retry=EmbeddingRetryConfig.from_settings(settings),
        )

    async def _request(self, texts: list[str]) -> list[list[float]]:
        try:
            response = await self.client.embeddings.create(model=self.model, input=texts)
        except openai.APIError as e:
            raise classify_provider_error(e) from e
        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]

    async def _with_retry(self, texts: list[str]) -> list[list[float]]:
        attempt = 0
        while True:
            try:
                return await self._request(texts)
            except ClientProviderError as e:
                logger.error(
                    "Embedding request rejected",
                    status_code=e.status_code,
                    error=str(e),
                )
                raise
            except TransientProviderError as e:
                if attempt + 1 >= self.retry.max_attempts:
                    logger.error(
                        "Embedding request failed",
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise
                delay = self.retry.delay_for(attempt)
                logger.warning(
                    "Embedding request failed, retrying",
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error=str(e),
                )
                await self._sleep(delay)
                attempt += 1

    async def embed(self, text: str) -> list[float]:
        vectors = await self._with_retry([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await self._with_retry(texts)

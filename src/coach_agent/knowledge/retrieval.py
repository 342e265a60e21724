"""
Knowledge retrieval: embed the query, search the index, format results.
"""

from collections import OrderedDict
from dataclasses import dataclass

import structlog

from ..config import Settings
from ..errors import Outcome
from ..llm.embeddings import BaseEmbedder
from .index import KnowledgeChunk, VectorIndex

logger = structlog.get_logger()

NO_RELEVANT_DOCUMENTS = "No relevant documents found."


@dataclass(frozen=True)
class RetrievalConfig:
    """Knobs for knowledge retrieval."""

    similarity_threshold: float = 0.3
    top_k: int = 5
    cache_ttl_seconds: float = 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetrievalConfig":
        return cls(
            similarity_threshold=settings.rag_similarity_threshold,
            top_k=settings.rag_top_k,
            cache_ttl_seconds=settings.rag_cache_ttl_seconds,
        )


class KnowledgeRetriever:
    """Semantic search over the knowledge base."""

    def __init__(
        self,
        embedder: BaseEmbedder | None,
        index: VectorIndex,
        config: RetrievalConfig | None = None,
    ):
        self.embedder = embedder
        self.index = index
        self.config = config or RetrievalConfig()

    async def search(self, query: str, limit: int | None = None) -> Outcome[list[KnowledgeChunk]]:
        """Top-K chunks whose similarity exceeds the threshold.

        Never raises: embedding or index failures return an empty,
        degraded outcome.
        """
        limit = limit or self.config.top_k

        if self.embedder is None:
            logger.warning("Knowledge search skipped, no embedding provider configured")
            return Outcome.degraded([], "ConfigurationError", "No embedding provider configured")

        try:
            vector = await self.embedder.embed(query)
        except Exception as e:
            logger.warning("Could not generate query embedding", error=str(e))
            return Outcome.degraded([], e)

        try:
            results = await self.index.search(vector, limit)
        except Exception as e:
            logger.error("Knowledge search error", error=str(e))
            return Outcome.degraded([], e)

        relevant = [r for r in results if r.similarity > self.config.similarity_threshold]

        logger.debug(
            "Knowledge search complete",
            candidates=len(results),
            relevant=len(relevant),
            threshold=self.config.similarity_threshold,
        )
        return Outcome.ok(relevant)

    async def search_documents(self, query: str, limit: int | None = None) -> list[KnowledgeChunk]:
        """Like ``search`` but returns only the chunk list."""
        outcome = await self.search(query, limit)
        return outcome.value


def format_context(chunks: list[KnowledgeChunk]) -> str:
    """Format search results grouped by source title."""
    if not chunks:
        return NO_RELEVANT_DOCUMENTS

    grouped: "OrderedDict[str, list[KnowledgeChunk]]" = OrderedDict()
    for chunk in chunks:
        grouped.setdefault(chunk.title, []).append(chunk)

    lines = ["### Relevant documents:"]
    for title, group in grouped.items():
        best = max(c.similarity for c in group)
        lines.append(f"\n**{title}** (relevance: {round(best * 100)}%)")
        for chunk in group:
            if len(group) > 1:
                lines.append(f"[{round(chunk.similarity * 100)}%] {chunk.content}")
            else:
                lines.append(chunk.content)

    return "\n".join(lines)

"""
Knowledge base ingestion: chunk, embed and store documents.
"""

from dataclasses import dataclass

import structlog

from ..config import Settings
from ..errors import CoachAgentError
from ..llm.embeddings import BaseEmbedder
from .cache import TTLCache
from .chunking import split_into_chunks
from .index import DocumentInfo, KnowledgeChunk, VectorIndex

logger = structlog.get_logger()


@dataclass
class IngestionReport:
    """Outcome of adding one document."""

    document_id: str
    title: str
    chunk_count: int
    embedded_count: int

    @property
    def skipped_count(self) -> int:
        return self.chunk_count - self.embedded_count


class KnowledgeBase:
    """Adds, updates and removes knowledge documents."""

    def __init__(
        self,
        embedder: BaseEmbedder,
        index: VectorIndex,
        cache: TTLCache | None = None,
        chunk_size: int = 800,
        chunk_overlap: int = 100,
        batch_size: int = 10,
    ):
        self.embedder = embedder
        self.index = index
        self.cache = cache
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.batch_size = max(1, batch_size)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        embedder: BaseEmbedder,
        index: VectorIndex,
        cache: TTLCache | None = None,
    ) -> "KnowledgeBase":
        return cls(
            embedder,
            index,
            cache,
            chunk_size=settings.rag_chunk_size,
            chunk_overlap=settings.rag_chunk_overlap,
            batch_size=settings.rag_embedding_batch_size,
        )

    async def _embed_in_batches(self, texts: list[str]) -> list[list[float] | None]:
        """Embed texts batch by batch; a failed batch yields ``None`` entries."""
        vectors: list[list[float] | None] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            try:
                vectors.extend(await self.embedder.embed_batch(batch))
            except CoachAgentError as e:
                logger.warning(
                    "Embedding batch failed",
                    batch_start=start,
                    batch_size=len(batch),
                    error=str(e),
                )
                vectors.extend([None] * len(batch))
        return vectors

    def _invalidate(self) -> None:
        if self.cache is not None:
            self.cache.clear()

    async def add_document(self, title: str, content: str, source: str | None = None) -> IngestionReport:
        """Split a document into chunks, embed them and store the result.

        Chunks whose embedding failed are skipped.
        """
        texts = split_into_chunks(content, self.chunk_size, self.chunk_overlap)
        vectors = await self._embed_in_batches(texts)

        chunks = [
            KnowledgeChunk(content=text, title=title, embedding=vector, index=i)
            for i, (text, vector) in enumerate(zip(texts, vectors))
            if vector
        ]
        for i, vector in enumerate(vectors):
            if not vector:
                logger.warning("Skipping chunk, embedding generation failed", title=title, chunk=i)

        document_id = await self.index.add_document(title, chunks, source=source)
        self._invalidate()

        logger.info(
            "Knowledge document added",
            document_id=document_id,
            title=title,
            chunks=len(texts),
            embedded=len(chunks),
        )
        return IngestionReport(
            document_id=document_id,
            title=title,
            chunk_count=len(texts),
            embedded_count=len(chunks),
        )

    async def update_missing_embeddings(self) -> int:
        """Embed stored chunks that have no vector. Returns how many were updated."""
        missing = await self.index.chunks_missing_embeddings()
        if not missing:
            return 0

        vectors = await self._embed_in_batches([content for _, content in missing])
        updated = 0
        for (chunk_id, _), vector in zip(missing, vectors):
            if vector:
                await self.index.set_embedding(chunk_id, vector)
                updated += 1

        logger.info("Missing embeddings updated", missing=len(missing), updated=updated)
        return updated

    async def delete_document(self, document_id: str) -> bool:
        deleted = await self.index.delete_document(document_id)
        if deleted:
            self._invalidate()
            logger.info("Knowledge document deleted", document_id=document_id)
        return deleted

    async def list_documents(self) -> list[DocumentInfo]:
        return await self.index.list_documents()

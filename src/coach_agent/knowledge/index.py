"""
Vector similarity index over stored knowledge chunks.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

import numpy as np


@dataclass
class KnowledgeChunk:
    """A chunk of a knowledge document.

    ``similarity`` is only populated on search results.
    """

    content: str
    title: str
    similarity: float = 0.0
    embedding: list[float] | None = None
    document_id: str | None = None
    index: int = 0


@dataclass
class DocumentInfo:
    """Summary of a stored knowledge document."""

    id: str
    title: str
    source: str | None
    chunk_count: int
    created_at: datetime


def cosine_similarities(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    """Cosine similarity of each row of ``matrix`` against ``vector``.

    Zero-length vectors score 0.
    """
    if matrix.size == 0:
        return np.zeros(0)
    row_norms = np.linalg.norm(matrix, axis=1)
    vector_norm = np.linalg.norm(vector)
    denom = row_norms * vector_norm
    dots = matrix @ vector
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denom > 0, dots / denom, 0.0)
    return sims


def rank_by_distance(
    candidates: list[KnowledgeChunk],
    query_vector: list[float],
    limit: int,
) -> list[KnowledgeChunk]:
    """Nearest neighbours by ascending cosine distance (1 - similarity)."""
    embedded = [c for c in candidates if c.embedding]
    if not embedded or limit <= 0:
        return []

    matrix = np.asarray([c.embedding for c in embedded], dtype=float)
    sims = cosine_similarities(matrix, np.asarray(query_vector, dtype=float))
    distances = 1.0 - sims
    order = np.argsort(distances, kind="stable")[:limit]

    return [
        KnowledgeChunk(
            content=embedded[i].content,
            title=embedded[i].title,
            similarity=float(sims[i]),
            document_id=embedded[i].document_id,
            index=embedded[i].index,
        )
        for i in order
    ]


class VectorIndex(ABC):
    """Stores chunk vectors and answers nearest-neighbour queries."""

    @abstractmethod
    async def has_documents(self) -> bool:
        pass

    @abstractmethod
    async def search(self, vector: list[float], limit: int) -> list[KnowledgeChunk]:
        """Closest chunks first (ascending cosine distance)."""

    @abstractmethod
    async def add_document(
        self,
        title: str,
        chunks: list[KnowledgeChunk],
        source: str | None = None,
    ) -> str:
        """Store a document with its chunks; returns the document id."""

    @abstractmethod
    async def delete_document(self, document_id: str) -> bool:
        pass

    @abstractmethod
    async def list_documents(self) -> list[DocumentInfo]:
        pass

    @abstractmethod
    async def chunks_missing_embeddings(self) -> list[tuple[str, str]]:
        """(chunk id, content) of every chunk stored without a vector."""

    @abstractmethod
    async def set_embedding(self, chunk_id: str, vector: list[float]) -> None:
        pass


class InMemoryVectorIndex(VectorIndex):
    """Vector index kept in process memory (brute-force numpy search)."""

    def __init__(self):
        self._documents: dict[str, DocumentInfo] = {}
        self._chunks: dict[str, KnowledgeChunk] = {}

    async def has_documents(self) -> bool:
        return bool(self._documents)

    async def search(self, vector: list[float], limit: int) -> list[KnowledgeChunk]:
        return rank_by_distance(list(self._chunks.values()), vector, limit)

    async def add_document(
        self,
        title: str,
        chunks: list[KnowledgeChunk],
        source: str | None = None,
    ) -> str:
        document_id = str(uuid.uuid4())
        for chunk in chunks:
            chunk_id = f"chunk_{document_id}_{chunk.index}"
            self._chunks[chunk_id] = KnowledgeChunk(
                content=chunk.content,
                title=title,
                embedding=list(chunk.embedding) if chunk.embedding else None,
                document_id=document_id,
                index=chunk.index,
            )
        self._documents[document_id] = DocumentInfo(
            id=document_id,
            title=title,
            source=source,
            chunk_count=len(chunks),
            created_at=datetime.now(timezone.utc),
        )
        return document_id

    async def delete_document(self, document_id: str) -> bool:
        if document_id not in self._documents:
            return False
        del self._documents[document_id]
        self._chunks = {
            cid: chunk for cid, chunk in self._chunks.items()
            if chunk.document_id != document_id
        }
        return True

    async def list_documents(self) -> list[DocumentInfo]:
        return sorted(self._documents.values(), key=lambda d: d.created_at, reverse=True)

    async def chunks_missing_embeddings(self) -> list[tuple[str, str]]:
        return [(cid, c.content) for cid, c in self._chunks.items() if not c.embedding]

    async def set_embedding(self, chunk_id: str, vector: list[float]) -> None:
        self._chunks[chunk_id].embedding = list(vector)

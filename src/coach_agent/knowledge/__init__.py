"""
Knowledge retrieval: gate, vector search, ingestion.
"""

from .base import IngestionReport, KnowledgeBase
from .cache import TTLCache
from .chunking import split_into_chunks
from .gate import GateDecision, GateStage, RetrievalGate
from .index import DocumentInfo, InMemoryVectorIndex, KnowledgeChunk, VectorIndex
from .retrieval import NO_RELEVANT_DOCUMENTS, KnowledgeRetriever, RetrievalConfig, format_context

__all__ = [
    "IngestionReport",
    "KnowledgeBase",
    "TTLCache",
    "split_into_chunks",
    "GateDecision",
    "GateStage",
    "RetrievalGate",
    "DocumentInfo",
    "InMemoryVectorIndex",
    "KnowledgeChunk",
    "VectorIndex",
    "NO_RELEVANT_DOCUMENTS",
    "KnowledgeRetriever",
    "RetrievalConfig",
    "format_context",
]

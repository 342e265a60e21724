"""
Wiring of the production components from settings.
"""

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from .accounting import CostAccountant
from .agent.compaction import CompactionConfig, ContextCompactor, Summarizer
from .agent.core import GenerationOrchestrator, OrchestratorConfig
from .agent.session import SessionContextBuilder
from .config import Settings
from .errors import ConfigurationError
from .knowledge.base import KnowledgeBase
from .knowledge.cache import TTLCache
from .knowledge.gate import RetrievalGate
from .knowledge.retrieval import KnowledgeRetriever, RetrievalConfig
from .llm.base import BaseLLM
from .llm.embeddings import OpenAIEmbedder
from .llm.factory import create_llm
from .memory.extractor import MemoryExtractor
from .models import init_database
from .service import ChatService
from .storage import SqlMemoryStore, SqlMessageStore, SqlProfileStore, SqlUsageRecorder, SqlVectorIndex
from .tools.registry import build_user_tools
from .tools.web_search import TavilySearch

logger = structlog.get_logger()


@dataclass
class CoachRuntime:
    """The assembled application."""

    settings: Settings
    session_factory: async_sessionmaker
    chat: ChatService
    knowledge_base: KnowledgeBase | None


def _auxiliary_llm(settings: Settings, model: str, fallback: BaseLLM) -> BaseLLM:
    """Small model for classification and summarization.

    The auxiliary model ids are OpenRouter ids; other providers reuse the
    main model.
    """
    if settings.default_provider != "openrouter":
        return fallback
    try:
        return create_llm(settings.get_llm_config("openrouter", model=model))
    except ConfigurationError as e:
        logger.warning("Auxiliary model unavailable, using main model", model=model, error=str(e))
        return fallback


def build_runtime(settings: Settings, session_factory: async_sessionmaker) -> CoachRuntime:
    """Build every component from settings.

    Raises:
        ConfigurationError: no credentials for the main model.
    """
    llm = create_llm(settings.get_llm_config())
    classifier = _auxiliary_llm(settings, settings.classifier_model, llm)
    summarizer_llm = _auxiliary_llm(settings, settings.summarization_model, llm)

    try:
        embedder = OpenAIEmbedder.from_settings(settings)
    except ConfigurationError as e:
        logger.warning("Knowledge retrieval disabled", error=str(e))
        embedder = None

    cache = TTLCache(settings.rag_cache_ttl_seconds)
    index = SqlVectorIndex(session_factory)
    message_store = SqlMessageStore(session_factory)
    memory_store = SqlMemoryStore(session_factory)
    profile_store = SqlProfileStore(session_factory)

    web_search = None
    if settings.enable_web_search and settings.tavily_api_key:
        web_search = TavilySearch(settings.tavily_api_key)

    accountant = CostAccountant()
    orchestrator = GenerationOrchestrator(
        llm=llm,
        accountant=accountant,
        context_builder=SessionContextBuilder(message_store),
        compactor=ContextCompactor(
            accountant,
            Summarizer(summarizer_llm),
            CompactionConfig.from_settings(settings),
        ),
        gate=RetrievalGate(index, classifier, cache),
        retriever=KnowledgeRetriever(embedder, index, RetrievalConfig.from_settings(settings)),
        memory_store=memory_store,
        profile_store=profile_store,
        tool_factory=lambda user_id: build_user_tools(user_id, memory_store, profile_store, web_search),
        config=OrchestratorConfig.from_settings(settings),
    )

    extractor = None
    if settings.enable_memory_extraction:
        extractor = MemoryExtractor(classifier, memory_store, settings.memory_min_confidence)

    chat = ChatService(
        orchestrator=orchestrator,
        message_store=message_store,
        usage_recorder=SqlUsageRecorder(session_factory),
        extractor=extractor,
        title_llm=summarizer_llm,
    )

    knowledge_base = KnowledgeBase.from_settings(settings, embedder, index, cache) if embedder else None

    logger.info(
        "Runtime ready",
        provider=settings.default_provider,
        model=llm.model,
        knowledge=knowledge_base is not None,
        web_search=web_search is not None,
        memory_extraction=extractor is not None,
    )
    return CoachRuntime(settings, session_factory, chat, knowledge_base)


async def create_runtime(settings: Settings) -> CoachRuntime:
    """Initialize the database and build the runtime."""
    session_factory = await init_database(settings.database_url)
    return build_runtime(settings, session_factory)

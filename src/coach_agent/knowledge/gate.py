"""
Knowledge retrieval gate.

Decides per query whether retrieval is worth its cost. Checks run from
cheapest to most expensive and stop at the first one that decides:

1. knowledge base empty (cached existence check)
2. positive domain keyword -> retrieve
3. short conversational message -> skip
4. heuristic patterns -> skip
5. small classification model -> its verdict (skip on failure)
"""

import re
from dataclasses import dataclass
from enum import Enum

import structlog

from ..errors import ClassificationError, Outcome
from ..llm.base import BaseLLM
from .cache import TTLCache
from .index import VectorIndex

logger = structlog.get_logger()

HAS_DOCUMENTS_KEY = "has_documents"

# Coaching-domain terms (Italian and English). Matched at word starts.
POSITIVE_KEYWORDS = (
    # methodology
    "tecnica", "esercizi", "allenament", "migliorar", "metodo", "metodologi",
    "technique", "exercise", "training", "workout", "improve", "method",
    # training
    "programma", "preparazione", "recupero", "stretching", "riscaldamento",
    "program", "recovery", "warm-up", "warmup", "periodi",
    # mental
    "ansia", "concentrazione", "motivazione", "mentalità", "pressione", "visualizzazione",
    "anxiety", "concentration", "mindset", "pressure", "visualization",
    # performance
    "performance", "prestazion", "velocità", "forza", "resistenza", "potenza",
    "speed", "strength", "endurance", "power",
    # question openers
    "come", "perché", "quando", "quanto", "quale",
    "how do i", "how can i", "how to",
)

# Conversational fillers; only decisive on short messages
NEGATIVE_KEYWORDS = (
    "ciao", "salve", "buongiorno", "buonasera", "buonanotte", "grazie",
    "ok", "okay", "va bene", "perfetto", "d'accordo", "sì", "si", "no",
    "hi", "hello", "hey", "thanks", "thank you", "bye", "good morning",
    "good night", "great", "cool", "yes", "arrivederci", "a presto",
)

SHORT_QUERY_CHARS = 30
MIN_QUERY_CHARS = 10

_SELF_REFERENTIAL = re.compile(
    r"\b(il mio profilo|i miei (obiettivi|dati)|cosa sai di me|chi sono|ti ricordi|"
    r"my profile|my goals?|what do you know about me|who am i|do you remember)\b",
    re.IGNORECASE,
)
_MOTIVATIONAL = re.compile(
    r"\b(motivami|dammi la carica|incoraggiami|ho bisogno di motivazione|"
    r"motivate me|pump me up|encourage me|i need motivation|cheer me up)\b",
    re.IGNORECASE,
)
_CLARIFICATION = re.compile(
    r"^\s*(so\b|you mean\b|meaning\b|in other words\b|quindi\b|cioè\b|intendi\b|vuoi dire\b)",
    re.IGNORECASE,
)

CLASSIFIER_SYSTEM_PROMPT = """You classify user queries for a sports coaching assistant.
Decide whether answering needs passages from the coaching methodology documents.

needs_retrieval = true when the query is about:
- specific training techniques or exercises
- coaching methodology or mental coaching principles
- training programmes, recovery, preparation
- sport theory, "how to" or "how to improve" questions

needs_retrieval = false when the query is:
- personal conversation, greetings or small talk
- a question about the user's own profile or memories
- a generic request for motivation

Users mostly write in Italian. Reply with JSON: {"needs_retrieval": bool, "reason": str}"""


def _keyword_pattern(keywords: tuple[str, ...], whole_word: bool) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(k) for k in sorted(keywords, key=len, reverse=True))
    suffix = r"(?!\w)" if whole_word else ""
    return re.compile(rf"(?<!\w)(?:{alternatives}){suffix}", re.IGNORECASE)


_POSITIVE = _keyword_pattern(POSITIVE_KEYWORDS, whole_word=False)
_NEGATIVE = _keyword_pattern(NEGATIVE_KEYWORDS, whole_word=True)


class GateStage(str, Enum):
    """Which check decided."""

    EMPTY_KNOWLEDGE_BASE = "empty_knowledge_base"
    POSITIVE_KEYWORD = "positive_keyword"
    NEGATIVE_KEYWORD = "negative_keyword"
    HEURISTIC = "heuristic"
    CLASSIFIER = "classifier"
    CLASSIFIER_CACHED = "classifier_cached"
    CLASSIFIER_FAILED = "classifier_failed"


@dataclass(frozen=True)
class GateDecision:
    """Whether to retrieve, and why."""

    use_retrieval: bool
    stage: GateStage
    reason: str = ""
    outcome: Outcome[bool] | None = None


def matches_positive_keyword(query: str) -> bool:
    return _POSITIVE.search(query) is not None


def matches_negative_keyword(query: str) -> bool:
    return _NEGATIVE.search(query) is not None


def heuristic_skip_reason(query: str) -> str | None:
    """Reason to skip retrieval based on the shape of the query, if any."""
    text = query.strip()
    if len(text) < MIN_QUERY_CHARS:
        return "too short"
    if len(text.split()) == 1:
        return "single token"
    if _SELF_REFERENTIAL.search(text):
        return "self-referential"
    if _MOTIVATIONAL.search(text):
        return "generic motivation"
    if _CLARIFICATION.search(text):
        return "clarification"
    return None


class RetrievalGate:
    """Cascade classifier deciding whether a query needs knowledge retrieval."""

    def __init__(
        self,
        index: VectorIndex,
        classifier: BaseLLM | None,
        cache: TTLCache,
    ):
        self.index = index
        self.classifier = classifier
        self.cache = cache

    async def _has_documents(self) -> bool:
        cached = self.cache.get(HAS_DOCUMENTS_KEY)
        if cached is not None:
            return cached
        try:
            present = await self.index.has_documents()
        except Exception as e:
            logger.warning("Knowledge base existence check failed", error=str(e))
            return False
        self.cache.set(HAS_DOCUMENTS_KEY, present)
        return present

    async def _classify(self, query: str) -> GateDecision:
        cache_key = f"classifier:{query.strip().lower()}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            use, reason = cached
            return GateDecision(use, GateStage.CLASSIFIER_CACHED, reason, Outcome.ok(use))

        if self.classifier is None:
            error = ClassificationError("No classifier model configured")
            return GateDecision(False, GateStage.CLASSIFIER_FAILED, str(error), Outcome.degraded(False, error))

        try:
            data = await self.classifier.generate_json(
                prompt=f'User query: "{query}"',
                system_prompt=CLASSIFIER_SYSTEM_PROMPT,
                max_tokens=150,
            )
            verdict = data.get("needs_retrieval")
            if not isinstance(verdict, bool):
                raise ClassificationError(f"Classifier returned no boolean verdict: {data!r}")
        except Exception as e:
            error = e if isinstance(e, ClassificationError) else ClassificationError(str(e))
            logger.error("Error classifying query", error=str(e))
            return GateDecision(False, GateStage.CLASSIFIER_FAILED, str(error), Outcome.degraded(False, error))

        reason = str(data.get("reason", ""))
        self.cache.set(cache_key, (verdict, reason))
        return GateDecision(verdict, GateStage.CLASSIFIER, reason, Outcome.ok(verdict))

    async def decide(self, query: str) -> GateDecision:
        """Decide whether ``query`` needs knowledge retrieval. Never raises."""
        if not await self._has_documents():
            decision = GateDecision(False, GateStage.EMPTY_KNOWLEDGE_BASE, "knowledge base is empty")
        elif matches_positive_keyword(query):
            decision = GateDecision(True, GateStage.POSITIVE_KEYWORD, "domain keyword")
        elif len(query.strip()) < SHORT_QUERY_CHARS and matches_negative_keyword(query):
            decision = GateDecision(False, GateStage.NEGATIVE_KEYWORD, "conversational message")
        elif (reason := heuristic_skip_reason(query)) is not None:
            decision = GateDecision(False, GateStage.HEURISTIC, reason)
        else:
            decision = await self._classify(query)

        logger.debug(
            "Retrieval gate decision",
            use_retrieval=decision.use_retrieval,
            stage=decision.stage.value,
            reason=decision.reason,
        )
        return decision

"""
Tests for the knowledge retrieval gate.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from coach_agent.knowledge.cache import TTLCache
from coach_agent.knowledge.gate import (
    GateStage,
    RetrievalGate,
    heuristic_skip_reason,
    matches_negative_keyword,
    matches_positive_keyword,
)
from coach_agent.knowledge.index import InMemoryVectorIndex, KnowledgeChunk
from coach_agent.errors import OutcomeStatus

from conftest import FakeClock


def make_classifier(verdict=None, error=None):
    classifier = MagicMock()
    if error is not None:
        classifier.generate_json = AsyncMock(side_effect=error)
    else:
        classifier.generate_json = AsyncMock(return_value={"needs_retrieval": verdict, "reason": "test"})
    return classifier


async def stocked_index() -> InMemoryVectorIndex:
    index = InMemoryVectorIndex()
    await index.add_document("Metodo", [KnowledgeChunk(content="x", title="Metodo", embedding=[1.0, 0.0])])
    return index


def test_keyword_matching():
    """Positive keywords match at word starts; negative ones only as whole words."""
    assert matches_positive_keyword("Quali esercizi per la schiena?")
    assert matches_positive_keyword("Voglio MIGLIORARE il dritto")
    assert not matches_positive_keyword("Che tempo fa domani?")

    assert matches_negative_keyword("ciao!")
    assert not matches_negative_keyword("okapi")


@pytest.mark.parametrize("query", [
    "Quando devo fare scarico?",
    "Perché perdo lucidità nel terzo set?",
    "Quale racchetta per un principiante?",
    "Quanto devo dormire prima della gara?",
    "Come gestisco il vento?",
    "Mi manca la motivazione ultimamente",
])
@pytest.mark.asyncio
async def test_question_openers_take_fast_path(query):
    """Coaching questions retrieve without asking the classifier."""
    classifier = make_classifier(False)
    gate = RetrievalGate(await stocked_index(), classifier, TTLCache(60, clock=FakeClock()))

    decision = await gate.decide(query)

    assert decision.use_retrieval
    assert decision.stage == GateStage.POSITIVE_KEYWORD
    classifier.generate_json.assert_not_called()


def test_heuristic_skip_reasons():
    """Shape heuristics catch short, self-referential, motivational and clarifying queries."""
    assert heuristic_skip_reason("eh") == "too short"
    assert heuristic_skip_reason("supercalifragilistic") == "single token"
    assert heuristic_skip_reason("what do you know about me exactly") == "self-referential"
    assert heuristic_skip_reason("dai, motivami un po' oggi") == "generic motivation"
    assert heuristic_skip_reason("so you think I should rest tomorrow") == "clarification"
    assert heuristic_skip_reason("Tell me about the history of the club tournament") is None


@pytest.mark.asyncio
async def test_greeting_skips_without_classifier():
    """'ciao' is decided by the negative keyword check; no model call."""
    classifier = make_classifier(True)
    gate = RetrievalGate(await stocked_index(), classifier, TTLCache(60, clock=FakeClock()))

    decision = await gate.decide("ciao")

    assert not decision.use_retrieval
    assert decision.stage == GateStage.NEGATIVE_KEYWORD
    classifier.generate_json.assert_not_called()


@pytest.mark.asyncio
async def test_positive_keyword_wins_over_greeting():
    """A domain keyword triggers retrieval even in a greeting."""
    classifier = make_classifier(False)
    gate = RetrievalGate(await stocked_index(), classifier, TTLCache(60, clock=FakeClock()))

    decision = await gate.decide("ciao, come posso migliorare la tecnica?")

    assert decision.use_retrieval
    assert decision.stage == GateStage.POSITIVE_KEYWORD
    classifier.generate_json.assert_not_called()


@pytest.mark.asyncio
async def test_empty_knowledge_base_skips():
    """Nothing to retrieve from means no retrieval."""
    classifier = make_classifier(True)
    gate = RetrievalGate(InMemoryVectorIndex(), classifier, TTLCache(60, clock=FakeClock()))

    decision = await gate.decide("Quali esercizi per migliorare la tecnica?")

    assert not decision.use_retrieval
    assert decision.stage == GateStage.EMPTY_KNOWLEDGE_BASE


@pytest.mark.asyncio
async def test_document_existence_is_cached():
    """The existence check hits the index once per TTL window."""
    index = await stocked_index()
    index.has_documents = AsyncMock(return_value=True)
    clock = FakeClock()
    gate = RetrievalGate(index, make_classifier(True), TTLCache(60, clock=clock))

    await gate.decide("ciao")
    await gate.decide("grazie")
    assert index.has_documents.await_count == 1

    clock.advance(61)
    await gate.decide("ciao")
    assert index.has_documents.await_count == 2


@pytest.mark.asyncio
async def test_classifier_verdict_and_cache():
    """Undecided queries go to the classifier; the verdict is cached."""
    classifier = make_classifier(True)
    gate = RetrievalGate(await stocked_index(), classifier, TTLCache(60, clock=FakeClock()))
    query = "Tell me about the history of the club tournament"

    first = await gate.decide(query)
    second = await gate.decide(query)

    assert first.use_retrieval and first.stage == GateStage.CLASSIFIER
    assert second.use_retrieval and second.stage == GateStage.CLASSIFIER_CACHED
    assert classifier.generate_json.await_count == 1


@pytest.mark.asyncio
async def test_classifier_failure_skips_retrieval():
    """A failing classifier means no retrieval, reported as degraded."""
    classifier = make_classifier(error=TimeoutError("slow"))
    gate = RetrievalGate(await stocked_index(), classifier, TTLCache(60, clock=FakeClock()))

    decision = await gate.decide("Tell me about the history of the club tournament")

    assert not decision.use_retrieval
    assert decision.stage == GateStage.CLASSIFIER_FAILED
    assert decision.outcome.status == OutcomeStatus.DEGRADED


@pytest.mark.asyncio
async def test_classifier_garbage_skips_retrieval():
    """A verdict that is not a boolean counts as a classifier failure."""
    classifier = MagicMock()
    classifier.generate_json = AsyncMock(return_value={"needs_retrieval": "maybe"})
    gate = RetrievalGate(await stocked_index(), classifier, TTLCache(60, clock=FakeClock()))

    decision = await gate.decide("Tell me about the history of the club tournament")

    assert not decision.use_retrieval
    assert decision.outcome.error_kind == "ClassificationError"

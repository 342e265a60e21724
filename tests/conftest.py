"""
Shared fixtures: a scripted LLM, a fake embedder and in-memory wiring.
"""

from datetime import datetime, timezone

import pytest

from coach_agent.accounting import CostAccountant, ModelPrice, PricingCatalog
from coach_agent.agent.compaction import CompactionConfig, ContextCompactor, Summarizer
from coach_agent.agent.core import GenerationOrchestrator, OrchestratorConfig
from coach_agent.agent.session import InMemoryMessageStore, SessionContextBuilder
from coach_agent.knowledge.cache import TTLCache
from coach_agent.knowledge.gate import RetrievalGate
from coach_agent.knowledge.index import InMemoryVectorIndex
from coach_agent.knowledge.retrieval import KnowledgeRetriever
from coach_agent.llm.base import BaseLLM, LLMResponse, StreamChunk
from coach_agent.llm.embeddings import BaseEmbedder
from coach_agent.memory.profile import InMemoryProfileStore
from coach_agent.memory.store import InMemoryMemoryStore

TEST_MODEL = "test/model"
FIXED_NOW = datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)


class ScriptedLLM(BaseLLM):
    """Replays scripted responses. Each generate/stream call uses the next one.

    An exception in the script is raised by the call that reaches it.
    """

    def __init__(self, script: list, model: str = TEST_MODEL, piece_size: int = 5):
        super().__init__(api_key="test-key", model=model)
        self.script = list(script)
        self.piece_size = piece_size
        self.calls: list[dict] = []
        self.closed = 0

    @property
    def provider_name(self) -> str:
        return "scripted"

    def _next(self, **call):
        self.calls.append(call)
        if not self.script:
            raise AssertionError("ScriptedLLM ran out of responses")
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, str):
            step = LLMResponse(content=step, input_tokens=10, output_tokens=5, model=self.model)
        return step

    async def generate(self, messages, tools=None, system_prompt=None, max_tokens=None, temperature=None):
        return self._next(messages=list(messages), tools=tools, system_prompt=system_prompt)

    async def stream(self, messages, tools=None, system_prompt=None):
        response = self._next(messages=list(messages), tools=tools, system_prompt=system_prompt)
        try:
            text = response.content
            for start in range(0, len(text), self.piece_size):
                yield StreamChunk(text=text[start:start + self.piece_size])
            yield StreamChunk(response=response)
        finally:
            self.closed += 1


class FakeEmbedder(BaseEmbedder):
    """Maps text to a 3-d vector by keyword: 'tecnica' -> x, 'recupero' -> y, else z."""

    def __init__(self, fail: Exception | None = None):
        self.fail = fail
        self.calls = 0

    def _vector(self, text: str) -> list[float]:
        lowered = text.lower()
        if "tecnica" in lowered or "technique" in lowered:
            return [1.0, 0.0, 0.0]
        if "recupero" in lowered or "recovery" in lowered:
            return [0.0, 1.0, 0.0]
        return [0.0, 0.0, 1.0]

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.fail:
            raise self.fail
        return self._vector(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        if self.fail:
            raise self.fail
        return [self._vector(t) for t in texts]


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def small_window_catalog(window: int = 128_000) -> PricingCatalog:
    return PricingCatalog({
        TEST_MODEL: ModelPrice(input_per_token=1e-6, output_per_token=2e-6, context_window=window),
    })


@pytest.fixture
def message_store():
    return InMemoryMessageStore()


@pytest.fixture
def memory_store():
    return InMemoryMemoryStore()


@pytest.fixture
def profile_store():
    return InMemoryProfileStore()


@pytest.fixture
def vector_index():
    return InMemoryVectorIndex()


@pytest.fixture
def make_orchestrator(message_store, memory_store, profile_store, vector_index):
    """Factory for an orchestrator wired to in-memory collaborators."""

    def factory(
        llm: BaseLLM,
        classifier: BaseLLM | None = None,
        embedder: BaseEmbedder | None = None,
        summarizer_llm: BaseLLM | None = None,
        window: int = 128_000,
        step_cap: int = 5,
        tool_factory=None,
    ) -> GenerationOrchestrator:
        accountant = CostAccountant(small_window_catalog(window))
        return GenerationOrchestrator(
            llm=llm,
            accountant=accountant,
            context_builder=SessionContextBuilder(message_store),
            compactor=ContextCompactor(accountant, Summarizer(summarizer_llm), CompactionConfig()),
            gate=RetrievalGate(vector_index, classifier, TTLCache(60, clock=FakeClock())),
            retriever=KnowledgeRetriever(embedder, vector_index),
            memory_store=memory_store,
            profile_store=profile_store,
            tool_factory=tool_factory,
            config=OrchestratorConfig(tool_step_cap=step_cap, persona_name="Coach Test"),
            clock=lambda: FIXED_NOW,
        )

    return factory

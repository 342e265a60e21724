"""
Tests for the SQLAlchemy-backed stores.
"""

from datetime import date

import pytest
import pytest_asyncio

from coach_agent.accounting import CostAccountant
from coach_agent.knowledge.index import KnowledgeChunk
from coach_agent.memory.store import UserMemory
from coach_agent.models import UsageLog, init_database
from coach_agent.storage import (
    SqlMemoryStore,
    SqlMessageStore,
    SqlProfileStore,
    SqlUsageRecorder,
    SqlVectorIndex,
)
from sqlalchemy import select


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    factory = await init_database(f"sqlite+aiosqlite:///{tmp_path / 'coach.db'}")
    yield factory
    await factory.kw["bind"].dispose()


@pytest.mark.asyncio
async def test_messages_in_append_order(session_factory):
    """Messages come back oldest first, limited to the newest ones."""
    store = SqlMessageStore(session_factory)
    conversation_id = await store.create_conversation("u1", title="Tennis")
    for i in range(5):
        await store.append("u1", conversation_id, "user" if i % 2 == 0 else "assistant", f"m{i}")

    recent = await store.recent("u1", conversation_id, 3)
    page = await store.history("u1", conversation_id, offset=1, limit=2)

    assert [m.content for m in recent] == ["m2", "m3", "m4"]
    assert [m.content for m in page] == ["m1", "m2"]
    assert await store.recent("intruder", conversation_id, 3) == []
    assert await store.last_message_time("u1", conversation_id) is not None


@pytest.mark.asyncio
async def test_append_creates_conversation_and_keeps_metrics(session_factory):
    """Appending to an unknown conversation creates it; metrics are stored."""
    store = SqlMessageStore(session_factory)

    await store.append("u1", "c-new", "assistant", "ok", metadata={"model": "test/model", "cost_usd": 0.01, "trace": "x"})
    await store.save_summary("c-new", "summary text")

    assert [m.content for m in await store.recent("u1", "c-new", 10)] == ["ok"]
    assert await store.get_summary("c-new") == "summary text"
    assert await store.get_summary("missing") is None


@pytest.mark.asyncio
async def test_memory_upsert_and_delete(session_factory):
    store = SqlMemoryStore(session_factory)

    await store.upsert("u1", UserMemory(key="user_sport", value="tennis", category="sport"))
    updated = await store.upsert("u1", UserMemory(key="user_sport", value="padel", category="sport"))

    assert updated.value == "padel"
    assert updated.updated_at is not None
    assert [m.value for m in await store.list_memories("u1", "sport")] == ["padel"]
    assert await store.list_memories("u1", "goal") == []
    assert await store.delete("u1", "user_sport")
    assert not await store.delete("u1", "user_sport")


@pytest.mark.asyncio
async def test_profile_store(session_factory):
    store = SqlProfileStore(session_factory)
    assert await store.snapshot("u1") is None

    await store.update_profile("u1", name="Giulia", birthday=date(2008, 6, 1))
    await store.update_profile("u1", sport="volley", name="")
    await store.update_preferences("u1", language="it")
    await store.add_note("u1", "Prima nota")

    snapshot = await store.snapshot("u1")

    assert snapshot.profile.name == "Giulia"
    assert snapshot.profile.sport == "volley"
    assert snapshot.profile.birthday == date(2008, 6, 1)
    assert snapshot.profile.notes.endswith("] Prima nota")
    assert snapshot.preferences.language == "it"
    assert snapshot.preferences.push is True


@pytest.mark.asyncio
async def test_vector_index(session_factory):
    """Documents are searchable by cosine similarity and removable."""
    index = SqlVectorIndex(session_factory)
    assert not await index.has_documents()

    document_id = await index.add_document("Metodo", [
        KnowledgeChunk(content="tecnica", title="Metodo", embedding=[1.0, 0.0], index=0),
        KnowledgeChunk(content="recupero", title="Metodo", embedding=[0.0, 1.0], index=1),
        KnowledgeChunk(content="da calcolare", title="Metodo", embedding=None, index=2),
    ])

    results = await index.search([1.0, 0.1], limit=5)
    assert [r.content for r in results] == ["tecnica", "recupero"]
    assert results[0].title == "Metodo"
    assert results[0].similarity > results[1].similarity

    missing = await index.chunks_missing_embeddings()
    assert missing == [(f"chunk_{document_id}_2", "da calcolare")]
    await index.set_embedding(missing[0][0], [0.5, 0.5])
    assert await index.chunks_missing_embeddings() == []

    documents = await index.list_documents()
    assert [(d.title, d.chunk_count) for d in documents] == [("Metodo", 3)]

    assert await index.delete_document(document_id)
    assert not await index.has_documents()
    assert not await index.delete_document(document_id)


@pytest.mark.asyncio
async def test_usage_recorder(session_factory):
    usage = CostAccountant().finalize_usage("openai/gpt-4.1-mini", 1000, 500, 800, rag_used=True, rag_chunks_count=2)

    await SqlUsageRecorder(session_factory).record("u1", "c1", usage)

    async with session_factory() as session:
        row = await session.scalar(select(UsageLog))
    assert row.user_id == "u1"
    assert row.cost_usd == pytest.approx(0.0012)
    assert row.cost_source == "catalog"
    assert row.rag_chunks_count == 2
    assert row.tool_calls is None

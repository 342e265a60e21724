"""
SQLAlchemy-backed implementations of the collaborator stores.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .accounting import ModelUsage, UsageRecorder
from .agent.context import ConversationMessage, MessageRole
from .agent.session import MessageStore
from .knowledge.index import DocumentInfo, KnowledgeChunk, VectorIndex, rank_by_distance
from .memory.profile import (
    PREFERENCE_FIELDS,
    PROFILE_FIELDS,
    ProfileStore,
    UserPreferences,
    UserProfile,
    UserProfileSnapshot,
    clean_changes,
)
from .memory.store import MemoryStore, UserMemory
from .models import (
    Conversation,
    Memory,
    Message,
    RagChunk,
    RagDocument,
    UsageLog,
    User,
)
from .models import UserPreferences as UserPreferencesRow
from .models import UserProfile as UserProfileRow

logger = structlog.get_logger()

# Message columns that may be set through append() metadata
_MESSAGE_METRIC_FIELDS = (
    "model",
    "input_tokens",
    "output_tokens",
    "cost_usd",
    "generation_time_ms",
    "rag_used",
    "rag_chunks_count",
    "tool_calls",
)


async def _ensure_user(session: AsyncSession, user_id: str) -> User:
    user = await session.get(User, user_id)
    if user is None:
        user = User(id=user_id)
        session.add(user)
        await session.flush()
    return user


class SqlMessageStore(MessageStore):
    """Conversation messages stored in the database."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create_conversation(self, user_id: str, title: str | None = None) -> str:
        async with self.session_factory() as session:
            await _ensure_user(session, user_id)
            conversation = Conversation(id=str(uuid4()), user_id=user_id, title=title)
            session.add(conversation)
            await session.commit()
            return conversation.id

    async def append(
        self,
        user_id: str,
        conversation_id: str,
        role: MessageRole,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ConversationMessage:
        metadata = dict(metadata or {})
        metrics = {k: metadata.pop(k) for k in _MESSAGE_METRIC_FIELDS if k in metadata}

        async with self.session_factory() as session:
            if await session.get(Conversation, conversation_id) is None:
                await _ensure_user(session, user_id)
                session.add(Conversation(id=conversation_id, user_id=user_id))

            message = Message(
                conversation_id=conversation_id,
                user_id=user_id,
                role=role,
                content=content,
                extra_data=metadata,
                created_at=datetime.now(timezone.utc),
                **metrics,
            )
            session.add(message)
            await session.commit()

        return ConversationMessage(role=role, content=content, timestamp=message.created_at)

    @staticmethod
    def _to_message(row: Message) -> ConversationMessage:
        return ConversationMessage(role=row.role, content=row.content, timestamp=row.created_at)  # type: ignore[arg-type]

    async def recent(self, user_id: str, conversation_id: str, limit: int) -> list[ConversationMessage]:
        if limit <= 0:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id, Message.user_id == user_id)
                .order_by(Message.id.desc())
                .limit(limit)
            )
            rows = list(result.scalars().all())
        return [self._to_message(row) for row in reversed(rows)]

    async def history(
        self,
        user_id: str,
        conversation_id: str,
        offset: int = 0,
        limit: int = 50,
    ) -> list[ConversationMessage]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id, Message.user_id == user_id)
                .order_by(Message.id)
                .offset(offset)
                .limit(limit)
            )
            return [self._to_message(row) for row in result.scalars().all()]

    async def last_message_time(self, user_id: str, conversation_id: str | None = None) -> datetime | None:
        query = select(func.max(Message.created_at)).where(Message.user_id == user_id)
        if conversation_id is not None:
            query = query.where(Message.conversation_id == conversation_id)
        async with self.session_factory() as session:
            return await session.scalar(query)

    async def get_summary(self, conversation_id: str) -> str | None:
        async with self.session_factory() as session:
            conversation = await session.get(Conversation, conversation_id)
            return conversation.summary if conversation else None

    async def save_summary(self, conversation_id: str, summary: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Conversation).where(Conversation.id == conversation_id).values(summary=summary)
            )
            await session.commit()

    async def set_title(self, conversation_id: str, title: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Conversation).where(Conversation.id == conversation_id).values(title=title)
            )
            await session.commit()


class SqlMemoryStore(MemoryStore):
    """User memories stored in the database."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _to_memory(row: Memory) -> UserMemory:
        return UserMemory(
            key=row.key,
            value=row.value,
            category=row.category,
            confidence=row.confidence,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    async def list_memories(self, user_id: str, category: str | None = None) -> list[UserMemory]:
        query = select(Memory).where(Memory.user_id == user_id)
        if category and category != "all":
            query = query.where(Memory.category == category)
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(Memory.created_at.desc()))
            return [self._to_memory(row) for row in result.scalars().all()]

    async def get(self, user_id: str, key: str) -> UserMemory | None:
        async with self.session_factory() as session:
            row = await session.scalar(select(Memory).where(Memory.user_id == user_id, Memory.key == key))
            return self._to_memory(row) if row else None

    async def upsert(self, user_id: str, memory: UserMemory) -> UserMemory:
        async with self.session_factory() as session:
            row = await session.scalar(
                select(Memory).where(Memory.user_id == user_id, Memory.key == memory.key)
            )
            if row is None:
                await _ensure_user(session, user_id)
                row = Memory(
                    user_id=user_id,
                    key=memory.key,
                    value=memory.value,
                    category=memory.category,
                    confidence=memory.confidence,
                    created_at=memory.created_at,
                    updated_at=None,
                )
                session.add(row)
            else:
                row.value = memory.value
                row.category = memory.category
                row.confidence = memory.confidence
                row.updated_at = datetime.now(timezone.utc)
            await session.commit()
            return self._to_memory(row)

    async def delete(self, user_id: str, key: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(Memory).where(Memory.user_id == user_id, Memory.key == key)
            )
            await session.commit()
            return result.rowcount > 0


class SqlProfileStore(ProfileStore):
    """User profiles and preferences stored in the database."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _to_profile(row: UserProfileRow) -> UserProfile:
        return UserProfile(**{f: getattr(row, f) for f in PROFILE_FIELDS + ("birthday",)})

    @staticmethod
    def _to_preferences(row: UserPreferencesRow) -> UserPreferences:
        return UserPreferences(**{f: getattr(row, f) for f in PREFERENCE_FIELDS})

    async def snapshot(self, user_id: str) -> UserProfileSnapshot | None:
        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                return None
            profile = await session.get(UserProfileRow, user_id)
            preferences = await session.get(UserPreferencesRow, user_id)
            return UserProfileSnapshot(
                user_id=user_id,
                profile=self._to_profile(profile) if profile else None,
                preferences=self._to_preferences(preferences) if preferences else None,
                member_since=user.created_at,
            )

    async def update_profile(self, user_id: str, **changes: Any) -> UserProfile:
        async with self.session_factory() as session:
            await _ensure_user(session, user_id)
            row = await session.get(UserProfileRow, user_id)
            if row is None:
                row = UserProfileRow(user_id=user_id, **dict.fromkeys(PROFILE_FIELDS + ("birthday",)))
                session.add(row)
            for name, value in clean_changes(changes, PROFILE_FIELDS + ("birthday",)).items():
                setattr(row, name, value)
            await session.commit()
            return self._to_profile(row)

    async def update_preferences(self, user_id: str, **changes: Any) -> UserPreferences:
        async with self.session_factory() as session:
            await _ensure_user(session, user_id)
            row = await session.get(UserPreferencesRow, user_id)
            if row is None:
                row = UserPreferencesRow(user_id=user_id, tone=None, mode=None, language=None, push=True)
                session.add(row)
            for name, value in clean_changes(changes, PREFERENCE_FIELDS).items():
                setattr(row, name, value)
            await session.commit()
            return self._to_preferences(row)


class SqlVectorIndex(VectorIndex):
    """Knowledge chunks stored in the database, searched with numpy."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def has_documents(self) -> bool:
        async with self.session_factory() as session:
            return (await session.scalar(select(RagDocument.id).limit(1))) is not None

    async def search(self, vector: list[float], limit: int) -> list[KnowledgeChunk]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RagChunk, RagDocument.title)
                .join(RagDocument, RagChunk.document_id == RagDocument.id)
                .where(RagChunk.embedding.is_not(None))
            )
            candidates = [
                KnowledgeChunk(
                    content=chunk.content,
                    title=title,
                    embedding=chunk.embedding,
                    document_id=chunk.document_id,
                    index=chunk.chunk_index,
                )
                for chunk, title in result.all()
            ]
        return rank_by_distance(candidates, vector, limit)

    async def add_document(
        self,
        title: str,
        chunks: list[KnowledgeChunk],
        source: str | None = None,
    ) -> str:
        document_id = str(uuid4())
        async with self.session_factory() as session:
            session.add(RagDocument(id=document_id, title=title, source=source))
            session.add_all([
                RagChunk(
                    id=f"chunk_{document_id}_{chunk.index}",
                    document_id=document_id,
                    chunk_index=chunk.index,
                    content=chunk.content,
                    embedding=list(chunk.embedding) if chunk.embedding else None,
                )
                for chunk in chunks
            ])
            await session.commit()
        return document_id

    async def delete_document(self, document_id: str) -> bool:
        async with self.session_factory() as session:
            await session.execute(delete(RagChunk).where(RagChunk.document_id == document_id))
            result = await session.execute(delete(RagDocument).where(RagDocument.id == document_id))
            await session.commit()
            return result.rowcount > 0

    async def list_documents(self) -> list[DocumentInfo]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RagDocument, func.count(RagChunk.id))
                .outerjoin(RagChunk, RagChunk.document_id == RagDocument.id)
                .group_by(RagDocument.id)
                .order_by(RagDocument.created_at.desc())
            )
            return [
                DocumentInfo(
                    id=doc.id,
                    title=doc.title,
                    source=doc.source,
                    chunk_count=count,
                    created_at=doc.created_at,
                )
                for doc, count in result.all()
            ]

    async def chunks_missing_embeddings(self) -> list[tuple[str, str]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RagChunk.id, RagChunk.content).where(RagChunk.embedding.is_(None))
            )
            return [(chunk_id, content) for chunk_id, content in result.all()]

    async def set_embedding(self, chunk_id: str, vector: list[float]) -> None:
        async with self.session_factory() as session:
            await session.execute(update(RagChunk).where(RagChunk.id == chunk_id).values(embedding=list(vector)))
            await session.commit()


class SqlUsageRecorder(UsageRecorder):
    """Writes one usage log row per finished generation."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def record(self, user_id: str, conversation_id: str | None, usage: ModelUsage) -> None:
        async with self.session_factory() as session:
            session.add(UsageLog(
                user_id=user_id,
                conversation_id=conversation_id,
                model=usage.model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                reasoning_tokens=usage.reasoning_tokens,
                cost_usd=usage.cost_usd,
                cost_source=usage.cost_source,
                generation_time_ms=usage.generation_time_ms,
                rag_used=usage.rag_used,
                rag_chunks_count=usage.rag_chunks_count,
                tool_calls=[inv.as_dict() for inv in usage.tool_invocations] or None,
            ))
            await session.commit()

        logger.debug("Usage recorded", user_id=user_id, model=usage.model, cost_usd=usage.cost_usd)

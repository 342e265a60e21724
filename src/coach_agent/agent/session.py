"""
Session context: bounded, deduplicated conversation history.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from ..errors import ContextBuildError
from .context import ConversationMessage, MessageRole

logger = structlog.get_logger()

# A new session starts after this much silence
SESSION_GAP = timedelta(minutes=15)


class MessageStore(ABC):
    """Append-only conversation message store."""

    @abstractmethod
    async def create_conversation(self, user_id: str, title: str | None = None) -> str:
        """Create a conversation and return its id."""

    @abstractmethod
    async def append(
        self,
        user_id: str,
        conversation_id: str,
        role: MessageRole,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ConversationMessage:
        """Persist one message at the tail of a conversation."""

    @abstractmethod
    async def recent(self, user_id: str, conversation_id: str, limit: int) -> list[ConversationMessage]:
        """Most recent ``limit`` messages, oldest first."""

    @abstractmethod
    async def history(
        self,
        user_id: str,
        conversation_id: str,
        offset: int = 0,
        limit: int = 50,
    ) -> list[ConversationMessage]:
        """One page of the full history, oldest first."""

    @abstractmethod
    async def last_message_time(self, user_id: str, conversation_id: str | None = None) -> datetime | None:
        """Timestamp of the user's latest message (optionally per conversation)."""

    @abstractmethod
    async def get_summary(self, conversation_id: str) -> str | None:
        """Rolling compaction summary of a conversation, if any."""

    @abstractmethod
    async def save_summary(self, conversation_id: str, summary: str) -> None:
        """Store the rolling compaction summary."""

    @abstractmethod
    async def set_title(self, conversation_id: str, title: str) -> None:
        """Set the conversation title."""


class InMemoryMessageStore(MessageStore):
    """Message store kept in process memory."""

    def __init__(self):
        self._messages: dict[str, list[ConversationMessage]] = defaultdict(list)
        self._owners: dict[str, str] = {}
        self._summaries: dict[str, str] = {}
        self._titles: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create_conversation(self, user_id: str, title: str | None = None) -> str:
        conversation_id = str(uuid.uuid4())
        self._owners[conversation_id] = user_id
        if title:
            self._titles[conversation_id] = title
        return conversation_id

    async def append(
        self,
        user_id: str,
        conversation_id: str,
        role: MessageRole,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ConversationMessage:
        message = ConversationMessage(role=role, content=content)
        async with self._lock:
            self._owners.setdefault(conversation_id, user_id)
            self._messages[conversation_id].append(message)
        return message

    def _owned(self, user_id: str, conversation_id: str) -> list[ConversationMessage]:
        if self._owners.get(conversation_id) != user_id:
            return []
        return self._messages.get(conversation_id, [])

    async def recent(self, user_id: str, conversation_id: str, limit: int) -> list[ConversationMessage]:
        if limit <= 0:
            return []
        return list(self._owned(user_id, conversation_id)[-limit:])

    async def history(
        self,
        user_id: str,
        conversation_id: str,
        offset: int = 0,
        limit: int = 50,
    ) -> list[ConversationMessage]:
        return list(self._owned(user_id, conversation_id)[offset:offset + limit])

    async def last_message_time(self, user_id: str, conversation_id: str | None = None) -> datetime | None:
        if conversation_id is not None:
            messages = self._owned(user_id, conversation_id)
        else:
            messages = [
                m
                for cid, owner in self._owners.items()
                if owner == user_id
                for m in self._messages.get(cid, [])
            ]
        if not messages:
            return None
        return max(m.timestamp for m in messages)

    async def get_summary(self, conversation_id: str) -> str | None:
        return self._summaries.get(conversation_id)

    async def save_summary(self, conversation_id: str, summary: str) -> None:
        self._summaries[conversation_id] = summary

    async def set_title(self, conversation_id: str, title: str) -> None:
        self._titles[conversation_id] = title

    def title(self, conversation_id: str) -> str | None:
        return self._titles.get(conversation_id)


class SessionContextBuilder:
    """Builds the bounded history the model sees for a turn."""

    def __init__(self, store: MessageStore, session_gap: timedelta = SESSION_GAP):
        self.store = store
        self.session_gap = session_gap

    async def build(
        self,
        user_id: str,
        max_messages: int,
        conversation_id: str,
        pending_user_message: str | None = None,
    ) -> list[ConversationMessage]:
        """Return the last ``max_messages`` messages, oldest first.

        When the caller already persisted the message it is about to
        submit, that copy is dropped so the model does not see it twice.

        Raises:
            ContextBuildError: the store could not be read.
        """
        if max_messages <= 0:
            return []

        fetch = max_messages + 1 if pending_user_message is not None else max_messages
        try:
            messages = await self.store.recent(user_id, conversation_id, fetch)
        except Exception as e:
            logger.error(
                "Failed to load conversation history",
                user_id=user_id,
                conversation_id=conversation_id,
                error=str(e),
            )
            raise ContextBuildError(f"History store unavailable: {e}") from e

        if (
            pending_user_message is not None
            and messages
            and messages[-1].role == "user"
            and messages[-1].content == pending_user_message
        ):
            messages = messages[:-1]

        return list(messages[-max_messages:])

    async def last_message_time(self, user_id: str, conversation_id: str | None = None) -> datetime | None:
        return await self.store.last_message_time(user_id, conversation_id)

    async def is_in_active_session(
        self,
        user_id: str,
        conversation_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """True if the user's last message is within the session gap."""
        last = await self.last_message_time(user_id, conversation_id)
        if last is None:
            return False
        now = now or datetime.now(timezone.utc)
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return now - last < self.session_gap

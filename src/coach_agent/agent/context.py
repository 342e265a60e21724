"""
Conversation message and per-turn context types.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from ..llm.base import LLMMessage

MessageRole = Literal["user", "assistant", "system"]


@dataclass(frozen=True)
class ConversationMessage:
    """A persisted conversation message (role and content only)."""

    role: MessageRole
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_llm_message(self) -> LLMMessage:
        return LLMMessage(role=self.role, content=self.content)


@dataclass
class ConversationContext:
    """History handed to the model for one turn, oldest first.

    Rebuilt on every turn and owned by a single orchestrator invocation.
    """

    messages: list[ConversationMessage]
    summary: str | None = None
    token_estimate: int = 0

    def to_llm_messages(self) -> list[LLMMessage]:
        return [m.to_llm_message() for m in self.messages]

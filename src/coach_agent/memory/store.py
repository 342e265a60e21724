"""
User-scoped key/value memory.

Facts about the user (name, sport, goals, ...) are stored under a
snake_case key with a category and a confidence score.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

MEMORY_CATEGORIES = ("identity", "sport", "goal", "preference", "health", "schedule", "other")

CATEGORY_LABELS = {
    "identity": "Identity",
    "sport": "Sport",
    "goal": "Goals",
    "preference": "Preferences",
    "health": "Health",
    "schedule": "Availability",
    "other": "Other",
}


def normalize_category(category: str | None) -> str:
    category = (category or "other").lower()
    return category if category in MEMORY_CATEGORIES else "other"


@dataclass(frozen=True)
class UserMemory:
    """One remembered fact about a user."""

    key: str
    value: str
    category: str = "other"
    confidence: float = 1.0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime | None = None


class MemoryStore(ABC):
    """Key/value memory store, scoped per user."""

    @abstractmethod
    async def list_memories(self, user_id: str, category: str | None = None) -> list[UserMemory]:
        """Memories of a user, newest first, optionally for one category."""

    @abstractmethod
    async def get(self, user_id: str, key: str) -> UserMemory | None:
        pass

    @abstractmethod
    async def upsert(self, user_id: str, memory: UserMemory) -> UserMemory:
        """Create or replace the memory stored under ``memory.key``."""

    @abstractmethod
    async def delete(self, user_id: str, key: str) -> bool:
        """Delete by key; returns False when nothing was stored."""


class InMemoryMemoryStore(MemoryStore):
    """Memory store kept in process memory."""

    def __init__(self):
        self._memories: dict[str, dict[str, UserMemory]] = {}

    async def list_memories(self, user_id: str, category: str | None = None) -> list[UserMemory]:
        memories = list(self._memories.get(user_id, {}).values())
        if category and category != "all":
            memories = [m for m in memories if m.category == category]
        return sorted(memories, key=lambda m: m.created_at, reverse=True)

    async def get(self, user_id: str, key: str) -> UserMemory | None:
        return self._memories.get(user_id, {}).get(key)

    async def upsert(self, user_id: str, memory: UserMemory) -> UserMemory:
        user_memories = self._memories.setdefault(user_id, {})
        existing = user_memories.get(memory.key)
        if existing is not None:
            memory = replace(
                memory,
                created_at=existing.created_at,
                updated_at=datetime.now(timezone.utc),
            )
        user_memories[memory.key] = memory
        return memory

    async def delete(self, user_id: str, key: str) -> bool:
        return self._memories.get(user_id, {}).pop(key, None) is not None


def format_memories_for_prompt(memories: list[UserMemory]) -> str:
    """Render memories grouped by category; empty list gives ""."""
    if not memories:
        return ""

    by_category: dict[str, list[UserMemory]] = {}
    for memory in memories:
        by_category.setdefault(memory.category or "other", []).append(memory)

    lines = ["Saved information about the user:"]
    for category, items in by_category.items():
        lines.append(f"\n### {CATEGORY_LABELS.get(category, category)}")
        for item in items:
            lines.append(f"- **{item.key.replace('_', ' ')}**: {item.value}")

    return "\n".join(lines)

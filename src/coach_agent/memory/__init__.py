"""Long-term user memory: key/value facts, coaching profile, extraction."""

from .extractor import MemoryExtractor
from .profile import (
    InMemoryProfileStore,
    ProfileStore,
    UserPreferences,
    UserProfile,
    UserProfileSnapshot,
    format_profile_for_prompt,
)
from .store import (
    MEMORY_CATEGORIES,
    InMemoryMemoryStore,
    MemoryStore,
    UserMemory,
    format_memories_for_prompt,
)

__all__ = [
    "MemoryExtractor",
    "InMemoryProfileStore",
    "ProfileStore",
    "UserPreferences",
    "UserProfile",
    "UserProfileSnapshot",
    "format_profile_for_prompt",
    "MEMORY_CATEGORIES",
    "InMemoryMemoryStore",
    "MemoryStore",
    "UserMemory",
    "format_memories_for_prompt",
]

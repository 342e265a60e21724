"""
Memory tools: read, save and delete remembered facts about the user.
"""

from functools import partial

import structlog

from ..memory.store import MEMORY_CATEGORIES, MemoryStore, UserMemory, normalize_category
from .base import Tool, ToolParameter, ToolResult

logger = structlog.get_logger()


async def get_memories(store: MemoryStore, user_id: str, category: str | None = None) -> ToolResult:
    """Return saved memories, optionally for one category."""
    memories = await store.list_memories(user_id, None if category in (None, "all") else category)
    if not memories:
        return ToolResult(success=True, output="No memories saved for this user.", data=[])

    return ToolResult(
        success=True,
        output=f"Found {len(memories)} memories.",
        data=[
            {"key": m.key, "value": m.value, "category": m.category, "confidence": m.confidence}
            for m in memories
        ],
    )


async def save_memory(store: MemoryStore, user_id: str, key: str, value: str, category: str = "other") -> ToolResult:
    """Create or update a memory. Explicit saves carry full confidence."""
    existing = await store.get(user_id, key)
    await store.upsert(user_id, UserMemory(
        key=key,
        value=value,
        category=normalize_category(category),
        confidence=1.0,
    ))
    verb = "updated" if existing else "saved"
    logger.info("Memory saved by tool", user_id=user_id, key=key, action=verb)
    return ToolResult(success=True, output=f'Memory "{key}" {verb}.')


async def delete_memory(store: MemoryStore, user_id: str, key: str) -> ToolResult:
    """Delete a memory by key."""
    if not await store.delete(user_id, key):
        return ToolResult(success=False, error=f'Memory "{key}" not found.')
    logger.info("Memory deleted by tool", user_id=user_id, key=key)
    return ToolResult(success=True, output=f'Memory "{key}" deleted.')


def create_memory_tools(user_id: str, store: MemoryStore) -> list[Tool]:
    """Memory tools bound to one user."""
    return [
        Tool(
            name="get_memories",
            description=(
                "Retrieve the information saved about the user in persistent memory "
                "(name, sport, goals, preferences and other personal details)."
            ),
            parameters=(
                ToolParameter(
                    name="category",
                    param_type="string",
                    description="Filter by category, or 'all' for every memory",
                    required=False,
                    enum=["all", *MEMORY_CATEGORIES],
                ),
            ),
            handler=partial(get_memories, store),
            user_id=user_id,
        ),
        Tool(
            name="save_memory",
            description=(
                "Save an important piece of information about the user to persistent memory. "
                "Use it when the user shares preferences, goals or personal details worth "
                "remembering in future conversations."
            ),
            parameters=(
                ToolParameter(
                    name="key",
                    param_type="string",
                    description="Unique snake_case key for this information (e.g. user_name, primary_goal)",
                ),
                ToolParameter(
                    name="value",
                    param_type="string",
                    description="The information to save",
                ),
                ToolParameter(
                    name="category",
                    param_type="string",
                    description="Category of the information",
                    enum=list(MEMORY_CATEGORIES),
                ),
            ),
            handler=partial(save_memory, store),
            user_id=user_id,
        ),
        Tool(
            name="delete_memory",
            description=(
                "Delete a piece of information from the user's persistent memory, when the "
                "user asks to forget it or it is no longer valid."
            ),
            parameters=(
                ToolParameter(
                    name="key",
                    param_type="string",
                    description="Key of the memory to delete",
                ),
            ),
            handler=partial(delete_memory, store),
            user_id=user_id,
        ),
    ]

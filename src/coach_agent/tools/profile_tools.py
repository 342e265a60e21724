"""
Profile tools: read the user context, update profile and preferences, take notes.
"""

from dataclasses import asdict
from functools import partial

import structlog

from ..memory.profile import ProfileStore
from .base import Tool, ToolParameter, ToolResult

logger = structlog.get_logger()


async def get_user_context(store: ProfileStore, user_id: str) -> ToolResult:
    snapshot = await store.snapshot(user_id)
    if snapshot is None:
        return ToolResult(success=False, error="User not found.")
    return ToolResult(success=True, output="User context retrieved.", data=snapshot.as_dict())


async def update_profile(
    store: ProfileStore,
    user_id: str,
    name: str | None = None,
    sport: str | None = None,
    goal: str | None = None,
    experience: str | None = None,
    notes: str | None = None,
) -> ToolResult:
    changes = {"name": name, "sport": sport, "goal": goal, "experience": experience, "notes": notes}
    profile = await store.update_profile(user_id, **changes)
    logger.info("Profile updated by tool", user_id=user_id, fields=[k for k, v in changes.items() if v])
    return ToolResult(success=True, output="Profile updated.", data=asdict(profile))


async def update_preferences(
    store: ProfileStore,
    user_id: str,
    tone: str | None = None,
    mode: str | None = None,
    language: str | None = None,
    push: bool | None = None,
) -> ToolResult:
    preferences = await store.update_preferences(user_id, tone=tone, mode=mode, language=language, push=push)
    return ToolResult(success=True, output="Preferences updated.", data=asdict(preferences))


async def add_notes(store: ProfileStore, user_id: str, note: str) -> ToolResult:
    await store.add_note(user_id, note)
    return ToolResult(success=True, output="Note added.")


def create_profile_tools(user_id: str, store: ProfileStore) -> list[Tool]:
    """Profile tools bound to one user."""
    return [
        Tool(
            name="get_user_context",
            description=(
                "Retrieve the user's full coaching profile (sport, goals, experience) and "
                "communication preferences (tone, language)."
            ),
            parameters=(),
            handler=partial(get_user_context, store),
            user_id=user_id,
        ),
        Tool(
            name="update_profile",
            description=(
                "Update the user's coaching profile when they share new information about "
                "their sport, goals, experience level or other profile details."
            ),
            parameters=(
                ToolParameter("name", "string", "User's name", required=False),
                ToolParameter("sport", "string", "Sport practised by the user", required=False),
                ToolParameter("goal", "string", "User's main goal", required=False),
                ToolParameter(
                    "experience",
                    "string",
                    "Experience level (beginner, intermediate, advanced, professional)",
                    required=False,
                ),
                ToolParameter("notes", "string", "Additional profile notes", required=False),
            ),
            handler=partial(update_profile, store),
            user_id=user_id,
        ),
        Tool(
            name="update_preferences",
            description=(
                "Update the user's communication preferences: tone, mode or language, "
                "when detected or explicitly requested."
            ),
            parameters=(
                ToolParameter("tone", "string", "Preferred tone: direct, empathetic, technical, motivational", required=False),
                ToolParameter("mode", "string", "Reply mode: concise, detailed, challenging, supportive", required=False),
                ToolParameter("language", "string", "Preferred language as an ISO 639-1 code", required=False),
                ToolParameter("push", "boolean", "Whether the user wants push notifications", required=False),
            ),
            handler=partial(update_preferences, store),
            user_id=user_id,
        ),
        Tool(
            name="add_notes",
            description=(
                "Add a personal note about the user: observations, behavioural patterns or "
                "insights useful for future coaching. Appended to existing notes with the date."
            ),
            parameters=(
                ToolParameter("note", "string", "The note to add"),
            ),
            handler=partial(add_notes, store),
            user_id=user_id,
        ),
    ]

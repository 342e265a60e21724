"""
User coaching profile and communication preferences.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timezone
from typing import Any

PROFILE_FIELDS = ("name", "sport", "goal", "experience", "notes")
PREFERENCE_FIELDS = ("tone", "mode", "language", "push")


@dataclass(frozen=True)
class UserProfile:
    name: str | None = None
    sport: str | None = None
    goal: str | None = None
    experience: str | None = None
    birthday: date | None = None
    notes: str | None = None


@dataclass(frozen=True)
class UserPreferences:
    tone: str | None = None
    mode: str | None = None
    language: str | None = None
    push: bool = True


@dataclass(frozen=True)
class UserProfileSnapshot:
    """Profile and preferences of a user at one point in time."""

    user_id: str
    profile: UserProfile | None = None
    preferences: UserPreferences | None = None
    member_since: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        def dump(obj: Any) -> dict[str, Any] | None:
            if obj is None:
                return None
            data = {}
            for f in fields(obj):
                value = getattr(obj, f.name)
                data[f.name] = value.isoformat() if isinstance(value, (date, datetime)) else value
            return data

        return {
            "profile": dump(self.profile),
            "preferences": dump(self.preferences),
            "member_since": self.member_since.date().isoformat() if self.member_since else None,
        }


class ProfileStore(ABC):
    """Reads and updates user profiles and preferences."""

    @abstractmethod
    async def snapshot(self, user_id: str) -> UserProfileSnapshot | None:
        """Current profile and preferences, None for unknown users."""

    @abstractmethod
    async def update_profile(self, user_id: str, **changes: Any) -> UserProfile:
        """Set the given non-empty profile fields (creating the profile)."""

    @abstractmethod
    async def update_preferences(self, user_id: str, **changes: Any) -> UserPreferences:
        """Set the given preference fields (creating the preferences)."""

    async def add_note(self, user_id: str, note: str, now: datetime | None = None) -> UserProfile:
        """Append a dated note to the profile notes."""
        now = now or datetime.now(timezone.utc)
        snapshot = await self.snapshot(user_id)
        existing = snapshot.profile.notes if snapshot and snapshot.profile else None
        entry = f"[{now.strftime('%d/%m/%y')}] {note}"
        notes = f"{existing}\n{entry}" if existing else entry
        return await self.update_profile(user_id, notes=notes)


def clean_changes(changes: dict[str, Any], allowed: tuple[str, ...]) -> dict[str, Any]:
    return {
        k: v for k, v in changes.items()
        if k in allowed and v is not None and v != ""
    }


class InMemoryProfileStore(ProfileStore):
    """Profile store kept in process memory."""

    def __init__(self):
        self._snapshots: dict[str, UserProfileSnapshot] = {}

    def ensure_user(self, user_id: str) -> None:
        self._snapshots.setdefault(
            user_id,
            UserProfileSnapshot(user_id=user_id, member_since=datetime.now(timezone.utc)),
        )

    async def snapshot(self, user_id: str) -> UserProfileSnapshot | None:
        return self._snapshots.get(user_id)

    async def update_profile(self, user_id: str, **changes: Any) -> UserProfile:
        self.ensure_user(user_id)
        current = self._snapshots[user_id]
        profile = replace(current.profile or UserProfile(), **clean_changes(changes, PROFILE_FIELDS + ("birthday",)))
        self._snapshots[user_id] = replace(current, profile=profile)
        return profile

    async def update_preferences(self, user_id: str, **changes: Any) -> UserPreferences:
        self.ensure_user(user_id)
        current = self._snapshots[user_id]
        preferences = replace(current.preferences or UserPreferences(), **clean_changes(changes, PREFERENCE_FIELDS))
        self._snapshots[user_id] = replace(current, preferences=preferences)
        return preferences


def _age(birthday: date, today: date) -> int:
    years = today.year - birthday.year
    if (today.month, today.day) < (birthday.month, birthday.day):
        years -= 1
    return years


def format_profile_for_prompt(snapshot: UserProfileSnapshot | None, today: date | None = None) -> str:
    """Render profile and preferences for the system prompt; "" if unknown."""
    if snapshot is None:
        return ""

    today = today or date.today()
    lines: list[str] = []

    profile = snapshot.profile
    if profile:
        lines.append("User profile:")
        if profile.name:
            lines.append(f"- **Name**: {profile.name}")
        if profile.sport:
            lines.append(f"- **Sport**: {profile.sport}")
        if profile.goal:
            lines.append(f"- **Goal**: {profile.goal}")
        if profile.experience:
            lines.append(f"- **Experience**: {profile.experience}")
        if profile.birthday:
            lines.append(f"- **Age**: {_age(profile.birthday, today)}")
        if profile.notes:
            lines.append(f"- **Notes**: {profile.notes}")

    preferences = snapshot.preferences
    if preferences:
        lines.append("\nCommunication preferences:")
        if preferences.tone:
            lines.append(f"- **Tone**: {preferences.tone}")
        if preferences.mode:
            lines.append(f"- **Mode**: {preferences.mode}")
        if preferences.language:
            lines.append(f"- **Language**: {preferences.language}")

    return "\n".join(lines).strip()

"""
Post-turn memory extraction.

After each exchange a small model pulls persistent facts about the user
out of the conversation. Only confident facts are saved; nothing is ever
deleted here.
"""

from typing import Any

import structlog

from ..llm.base import BaseLLM
from .store import MemoryStore, UserMemory, normalize_category

logger = structlog.get_logger()

EXTRACTION_SYSTEM_PROMPT = """You extract important facts about the user from a coaching conversation.
Analyse the exchange between user and assistant and extract persistent facts about the user.

Rules:
- Extract only explicit information, make no assumptions
- Priority: name, sport, goals, preferences, physical conditions, availability
- Ignore transient or momentary information
- Use English snake_case keys (user_name, user_sport, user_goal, ...)
- Give high confidence (>0.8) only when the information is clear and unambiguous
- category is one of: identity, sport, goal, preference, health, schedule, other

Reply with JSON: {"facts": [{"key": str, "value": str, "category": str, "confidence": number}]}
Return an empty list when there is nothing to extract."""


class MemoryExtractor:
    """Extracts user facts from an exchange and saves the confident ones."""

    def __init__(self, llm: BaseLLM, store: MemoryStore, min_confidence: float = 0.7):
        self.llm = llm
        self.store = store
        self.min_confidence = min_confidence

    @staticmethod
    def _parse_facts(data: dict[str, Any]) -> list[UserMemory]:
        facts = []
        for raw in data.get("facts") or []:
            if not isinstance(raw, dict):
                continue
            key = str(raw.get("key", "")).strip()
            value = str(raw.get("value", "")).strip()
            try:
                confidence = float(raw.get("confidence", 0))
            except (TypeError, ValueError):
                continue
            if not key or not value:
                continue
            facts.append(UserMemory(
                key=key,
                value=value,
                category=normalize_category(raw.get("category")),
                confidence=max(0.0, min(1.0, confidence)),
            ))
        return facts

    async def extract_and_save(self, user_id: str, user_message: str, assistant_response: str) -> list[UserMemory]:
        """Extract facts and upsert those at or above the confidence threshold.

        Never raises; returns the saved memories.
        """
        prompt = f"""Extract the important facts from this exchange:

USER: {user_message}

ASSISTANT: {assistant_response}"""

        try:
            data = await self.llm.generate_json(prompt, system_prompt=EXTRACTION_SYSTEM_PROMPT, max_tokens=500)
            facts = self._parse_facts(data)
            confident = [f for f in facts if f.confidence >= self.min_confidence]
            saved = [await self.store.upsert(user_id, fact) for fact in confident]
        except Exception as e:
            logger.error("Error extracting memories", user_id=user_id, error=str(e))
            return []

        if saved:
            logger.info(
                "Memories extracted",
                user_id=user_id,
                saved=[m.key for m in saved],
                discarded=len(facts) - len(saved),
            )
        return saved

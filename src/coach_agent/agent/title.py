"""
Conversation title generation.
"""

import structlog

from ..llm.base import BaseLLM, LLMMessage

logger = structlog.get_logger()

TITLE_MAX_TOKENS = 20
FALLBACK_TITLE_CHARS = 40

TITLE_PROMPT = """Generate a short title (3-6 words) for a conversation that starts with this message.
Reply with the title only, no quotes and no trailing punctuation.

Message: {message}"""


def fallback_title(first_message: str) -> str:
    text = " ".join(first_message.split())
    if len(text) <= FALLBACK_TITLE_CHARS:
        return text or "New conversation"
    return text[:FALLBACK_TITLE_CHARS] + "..."


async def generate_chat_title(llm: BaseLLM | None, first_message: str) -> str:
    """3-6 word title for a new conversation; never raises."""
    if llm is None:
        return fallback_title(first_message)

    try:
        response = await llm.generate(
            messages=[LLMMessage(role="user", content=TITLE_PROMPT.format(message=first_message[:500]))],
            max_tokens=TITLE_MAX_TOKENS,
            temperature=0.3,
        )
        title = response.content.strip().strip("\"'").rstrip(".")
    except Exception as e:
        logger.warning("Title generation failed", error=str(e))
        return fallback_title(first_message)

    return title or fallback_title(first_message)

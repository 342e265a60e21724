"""
Conversation style heuristic.

Looks at how the user writes (no model call) and produces a short hint
appended to the system prompt.
"""

import re

STYLE_WINDOW = 5
SHORT_AVERAGE_CHARS = 60
LONG_AVERAGE_CHARS = 300

_EMOJI = re.compile(
    "["
    "\U0001F300-\U0001FAFF"
    "\U00002600-\U000027BF"
    "\U0001F1E6-\U0001F1FF"
    "]"
)

_INFORMAL = re.compile(
    r"(\b(ahah\w*|haha\w*|lol|xd|raga|bro|boh|cmq|nn|xk[eé]|tipo|dai|figo|yo|gonna|wanna|u)\b|!!|\?\?)",
    re.IGNORECASE,
)


def build_style_hint(user_messages: list[str]) -> str:
    """Style hint from the last few user messages. Empty input gives ""."""
    recent = [m for m in user_messages if m and m.strip()][-STYLE_WINDOW:]
    if not recent:
        return ""

    average = sum(len(m) for m in recent) / len(recent)
    uses_emoji = any(_EMOJI.search(m) for m in recent)
    informal_hits = sum(1 for m in recent if _INFORMAL.search(m))

    hints = []
    if average < SHORT_AVERAGE_CHARS:
        hints.append("The user writes short messages: be concise.")
    elif average > LONG_AVERAGE_CHARS:
        hints.append("The user writes at length: detailed answers are welcome.")

    if informal_hits * 2 >= len(recent):
        hints.append("Mirror the user's informal tone.")

    if uses_emoji:
        hints.append("An occasional emoji fits this conversation.")

    return " ".join(hints)

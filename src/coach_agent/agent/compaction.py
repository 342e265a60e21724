"""
Conversation Compaction - Token-budget enforcement via summarization.

When the history approaches the model's context window, older messages
are folded into a rolling summary while the most recent messages are
kept verbatim.

Key features:
- Percent-of-window trigger computed against the model catalog
- Incremental summaries (new messages folded into the previous summary)
- Deterministic extractive fallback if the summarization model fails
- Output estimate always strictly below the input estimate
"""

import math
from dataclasses import dataclass
from enum import Enum

import structlog

from ..accounting import CostAccountant
from ..config import Settings
from ..errors import ConfigurationError, Outcome, SummarizationError
from ..llm.base import BaseLLM, LLMMessage
from .context import ConversationContext, ConversationMessage

logger = structlog.get_logger()

# Approximate characters per token
CHARS_PER_TOKEN = 4

# Fixed overhead per message for role markers and formatting
MESSAGE_OVERHEAD_TOKENS = 10

SUMMARY_PREFIX = "[Previous conversation summary]\n"
SUMMARY_SUFFIX = "\n[End of summary - recent messages follow]"

SUMMARY_MAX_TOKENS = 500
SUMMARY_TEMPERATURE = 0.3

# Floor for the summary budget when the target percentage is already used up
MIN_SUMMARY_TOKENS = 50


class CompactionState(str, Enum):
    """Per-turn compaction state; recomputed every turn, never persisted."""

    NORMAL = "normal"
    COMPACTING = "compacting"
    COMPACTED = "compacted"


@dataclass(frozen=True)
class CompactionConfig:
    """Configuration for conversation compaction."""

    compaction_threshold_percent: float = 70
    target_percent_after_compaction: float = 50
    preserve_recent_messages: int = 10
    min_messages_for_compaction: int = 15

    @classmethod
    def from_settings(cls, settings: Settings) -> "CompactionConfig":
        return cls(
            compaction_threshold_percent=settings.compaction_threshold_percent,
            target_percent_after_compaction=settings.target_percent_after_compaction,
            preserve_recent_messages=settings.preserve_recent_messages,
            min_messages_for_compaction=settings.min_messages_for_compaction,
        )


@dataclass
class CompactionResult:
    """Result of a compaction pass."""

    state: CompactionState
    original_message_count: int
    preserved_message_count: int
    summarized_message_count: int
    original_token_estimate: int
    token_estimate: int
    summary_outcome: Outcome[str] | None = None

    @property
    def compacted(self) -> bool:
        return self.state == CompactionState.COMPACTED

    @property
    def tokens_saved_estimate(self) -> int:
        return max(0, self.original_token_estimate - self.token_estimate)


def estimate_string_tokens(text: str) -> int:
    """Estimate tokens for a string."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_tokens(messages: list[ConversationMessage]) -> int:
    """Estimate token count for a list of messages."""
    return sum(
        estimate_string_tokens(m.content) + MESSAGE_OVERHEAD_TOKENS
        for m in messages
    )


def build_summary_message(summary: str) -> ConversationMessage:
    """Wrap a summary as the synthetic system message placed before the tail."""
    return ConversationMessage(role="system", content=f"{SUMMARY_PREFIX}{summary}{SUMMARY_SUFFIX}")


def fallback_summary(messages: list[ConversationMessage], existing_summary: str | None = None) -> str:
    """Create a basic summary without a model call."""
    user_snippets = [m.content[:50] for m in messages if m.role == "user" and m.content][:5]
    user_count = sum(1 for m in messages if m.role == "user")
    assistant_count = sum(1 for m in messages if m.role == "assistant")

    topics = ", ".join(user_snippets) or "various topics"
    quick = (
        f"Previous discussion covered: {topics}... "
        f"({len(messages)} messages: {user_count} from the user, {assistant_count} replies)"
    )
    if existing_summary:
        return f"{existing_summary}\n{quick}"
    return quick


def _truncate_to_tokens(text: str, budget: int) -> str:
    if budget <= 0:
        return ""
    max_chars = budget * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3].rstrip() + "..."


class Summarizer:
    """Model-backed summarization with an extractive fallback."""

    def __init__(self, llm: BaseLLM | None):
        self.llm = llm

    def _build_prompt(self, messages: list[ConversationMessage], existing_summary: str | None) -> str:
        transcript = "\n\n".join(
            f"{'User' if m.role == 'user' else 'Assistant'}: {m.content}"
            for m in messages
        )

        guidelines = """Create {kind} summary that:
1. Preserves all key information, decisions, and context
2. Maintains important details mentioned by the user
3. Notes any tools used or actions taken
4. Is concise but complete{length}
5. Is written in third person"""

        if existing_summary:
            return f"""You are summarizing a conversation to preserve context while reducing tokens.

Previous summary:
{existing_summary}

New messages to incorporate:
{transcript}

{guidelines.format(kind="an updated, comprehensive", length="")}

Updated summary:"""

        return f"""You are summarizing a conversation to preserve context while reducing tokens.

Conversation:
{transcript}

{guidelines.format(kind="a comprehensive", length=" (aim for ~200-300 words)")}

Summary:"""

    async def summarize(
        self,
        messages: list[ConversationMessage],
        existing_summary: str | None = None,
    ) -> Outcome[str]:
        """Summarize messages, folding them into an existing summary if any.

        Never raises: failures return the extractive fallback as a
        degraded outcome.
        """
        if self.llm is None:
            error = ConfigurationError("No summarization model configured")
            logger.warning("Summarization unavailable, using fallback", error=str(error))
            return Outcome.degraded(fallback_summary(messages, existing_summary), error)

        try:
            response = await self.llm.generate(
                messages=[LLMMessage(role="user", content=self._build_prompt(messages, existing_summary))],
                max_tokens=SUMMARY_MAX_TOKENS,
                temperature=SUMMARY_TEMPERATURE,
            )
            summary = response.content.strip()
            if not summary:
                raise SummarizationError("Summarization model returned an empty reply")
        except Exception as e:
            error = e if isinstance(e, SummarizationError) else SummarizationError(str(e))
            logger.error("Compaction summarization failed, using fallback", error=str(e))
            return Outcome.degraded(fallback_summary(messages, existing_summary), error)

        return Outcome.ok(summary)


class ContextCompactor:
    """Keeps conversation history inside the model's context budget."""

    def __init__(
        self,
        accountant: CostAccountant,
        summarizer: Summarizer,
        config: CompactionConfig | None = None,
    ):
        self.accountant = accountant
        self.summarizer = summarizer
        self.config = config or CompactionConfig()

    def _unchanged(
        self,
        messages: list[ConversationMessage],
        existing_summary: str | None,
        tokens: int,
    ) -> tuple[ConversationContext, CompactionResult]:
        context = ConversationContext(
            messages=list(messages),
            summary=existing_summary,
            token_estimate=tokens,
        )
        result = CompactionResult(
            state=CompactionState.NORMAL,
            original_message_count=len(messages),
            preserved_message_count=len(messages),
            summarized_message_count=0,
            original_token_estimate=tokens,
            token_estimate=tokens,
        )
        return context, result

    def should_compact(self, model_id: str, message_count: int, token_estimate: int) -> bool:
        """Check whether compaction would trigger for the given history size."""
        if message_count < self.config.min_messages_for_compaction:
            return False
        budget = self.accountant.context_budget(model_id, token_estimate)
        return budget.percent_used >= self.config.compaction_threshold_percent

    def _summary_budget(self, model_id: str, summarized_tokens: int, preserved_tokens: int) -> int:
        wrapper_tokens = estimate_string_tokens(SUMMARY_PREFIX + SUMMARY_SUFFIX) + MESSAGE_OVERHEAD_TOKENS
        # Strictly below what the summarized slice cost
        shrink_budget = summarized_tokens - wrapper_tokens - 1

        window = self.accountant.context_budget(model_id, 0).context_length
        target_tokens = int(window * self.config.target_percent_after_compaction / 100)
        target_budget = max(target_tokens - preserved_tokens - wrapper_tokens, MIN_SUMMARY_TOKENS)

        return min(shrink_budget, target_budget)

    async def compact(
        self,
        model_id: str,
        messages: list[ConversationMessage],
        existing_summary: str | None = None,
    ) -> tuple[ConversationContext, CompactionResult]:
        """Compact conversation history if it approaches the context limit.

        Returns the context to send to the model and a report of what
        happened.
        """
        current_tokens = estimate_tokens(messages)

        if len(messages) < self.config.min_messages_for_compaction:
            return self._unchanged(messages, existing_summary, current_tokens)

        budget = self.accountant.context_budget(model_id, current_tokens)
        if budget.percent_used < self.config.compaction_threshold_percent:
            return self._unchanged(messages, existing_summary, current_tokens)

        preserve = self.config.preserve_recent_messages
        to_preserve = messages[-preserve:] if preserve > 0 else []
        to_summarize = messages[: len(messages) - len(to_preserve)]

        if not to_summarize:
            return self._unchanged(messages, existing_summary, current_tokens)

        preserved_tokens = estimate_tokens(to_preserve)
        summary_budget = self._summary_budget(model_id, estimate_tokens(to_summarize), preserved_tokens)
        if summary_budget <= 0:
            # The summary wrapper alone would cost more than the slice it replaces
            logger.info("Compaction skipped, nothing to gain", model=model_id, summarizable=len(to_summarize))
            return self._unchanged(messages, existing_summary, current_tokens)

        logger.info(
            "Starting conversation compaction",
            model=model_id,
            state=CompactionState.COMPACTING.value,
            percent_used=round(budget.percent_used, 1),
            message_count=len(messages),
            estimated_tokens=current_tokens,
        )

        outcome = await self.summarizer.summarize(to_summarize, existing_summary)

        summary = _truncate_to_tokens(outcome.value, summary_budget)

        compacted = [build_summary_message(summary), *to_preserve]
        new_estimate = estimate_tokens(compacted)

        context = ConversationContext(
            messages=compacted,
            summary=summary,
            token_estimate=new_estimate,
        )
        result = CompactionResult(
            state=CompactionState.COMPACTED,
            original_message_count=len(messages),
            preserved_message_count=len(to_preserve),
            summarized_message_count=len(to_summarize),
            original_token_estimate=current_tokens,
            token_estimate=new_estimate,
            summary_outcome=outcome,
        )

        logger.info(
            "Compaction complete",
            original=result.original_message_count,
            summarized=result.summarized_message_count,
            kept=result.preserved_message_count,
            tokens_saved=result.tokens_saved_estimate,
            summary_status=outcome.status.value,
        )

        return context, result

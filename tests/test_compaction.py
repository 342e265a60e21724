"""
Tests for conversation compaction module.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from coach_agent.accounting import CostAccountant
from coach_agent.agent.compaction import (
    SUMMARY_PREFIX,
    SUMMARY_SUFFIX,
    CompactionConfig,
    CompactionState,
    ContextCompactor,
    Summarizer,
    estimate_tokens,
    fallback_summary,
)
from coach_agent.agent.context import ConversationMessage
from coach_agent.errors import OutcomeStatus
from coach_agent.llm.base import LLMResponse

from conftest import TEST_MODEL, small_window_catalog


def make_history(count: int, size: int = 400) -> list[ConversationMessage]:
    messages = []
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        body = f"message {i} "
        messages.append(ConversationMessage(role=role, content=(body * size)[:size]))
    return messages


def make_compactor(window: int, llm=None, config: CompactionConfig | None = None) -> ContextCompactor:
    accountant = CostAccountant(small_window_catalog(window))
    return ContextCompactor(accountant, Summarizer(llm), config or CompactionConfig())


def summarizer_llm(text: str = "The athlete discussed serve technique and recovery."):
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content=text))
    return llm


def test_estimate_tokens_empty():
    """Test token estimation for empty messages."""
    assert estimate_tokens([]) == 0


def test_estimate_tokens_counts_overhead():
    """Each message costs ceil(chars / 4) plus a fixed overhead."""
    messages = [ConversationMessage(role="user", content="x" * 400)]
    assert estimate_tokens(messages) == 110


@pytest.mark.asyncio
async def test_few_messages_never_compacted():
    """Fewer than 15 messages are returned unchanged, whatever their size."""
    compactor = make_compactor(window=100, llm=summarizer_llm())
    messages = make_history(14)

    context, result = await compactor.compact(TEST_MODEL, messages)

    assert context.messages == messages
    assert result.state == CompactionState.NORMAL
    assert not result.compacted
    compactor.summarizer.llm.generate.assert_not_called()


@pytest.mark.asyncio
async def test_below_threshold_unchanged():
    """A long history well inside the window is left alone."""
    compactor = make_compactor(window=128_000, llm=summarizer_llm())
    messages = make_history(40)

    context, result = await compactor.compact(TEST_MODEL, messages, existing_summary="old summary")

    assert context.messages == messages
    assert context.summary == "old summary"
    assert result.token_estimate == result.original_token_estimate


@pytest.mark.asyncio
async def test_compaction_keeps_tail_and_shrinks():
    """20 messages at 85% of the window become one summary plus the last 10."""
    messages = make_history(20)
    original = estimate_tokens(messages)
    window = round(original / 0.85)
    compactor = make_compactor(window=window, llm=summarizer_llm())

    context, result = await compactor.compact(TEST_MODEL, messages)

    assert result.compacted
    assert len(context.messages) == 11
    summary_message = context.messages[0]
    assert summary_message.role == "system"
    assert summary_message.content.startswith(SUMMARY_PREFIX)
    assert summary_message.content.endswith(SUMMARY_SUFFIX)
    assert context.messages[1:] == messages[-10:]
    assert result.summarized_message_count == 10
    assert result.preserved_message_count == 10
    assert result.token_estimate < original
    assert estimate_tokens(context.messages) == result.token_estimate
    assert result.summary_outcome.status == OutcomeStatus.OK


@pytest.mark.asyncio
async def test_incremental_summary_includes_previous():
    """The previous summary is handed to the summarization model."""
    messages = make_history(20)
    window = round(estimate_tokens(messages) / 0.9)
    llm = summarizer_llm()
    compactor = make_compactor(window=window, llm=llm)

    await compactor.compact(TEST_MODEL, messages, existing_summary="Earlier: user plays tennis.")

    prompt = llm.generate.call_args.kwargs["messages"][0].content
    assert "Previous summary:" in prompt
    assert "Earlier: user plays tennis." in prompt


@pytest.mark.asyncio
async def test_summarizer_failure_uses_fallback():
    """A failing summarization model degrades to the extractive summary."""
    messages = make_history(20)
    window = round(estimate_tokens(messages) / 0.85)
    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=RuntimeError("upstream down"))
    compactor = make_compactor(window=window, llm=llm)

    context, result = await compactor.compact(TEST_MODEL, messages)

    assert result.compacted
    assert result.summary_outcome.status == OutcomeStatus.DEGRADED
    assert result.summary_outcome.error_kind == "SummarizationError"
    assert "Previous discussion covered" in context.messages[0].content
    assert result.token_estimate < result.original_token_estimate


@pytest.mark.asyncio
async def test_long_summary_is_truncated_below_input():
    """An oversized summary is cut so the output is still smaller than the input."""
    messages = make_history(16, size=40)
    window = round(estimate_tokens(messages) / 0.95)
    compactor = make_compactor(window=window, llm=summarizer_llm("word " * 2000))

    context, result = await compactor.compact(TEST_MODEL, messages)

    assert result.compacted
    assert result.token_estimate < result.original_token_estimate


@pytest.mark.asyncio
async def test_tiny_summarizable_slice_left_unchanged():
    """A slice cheaper than the summary wrapper is not worth compacting."""
    messages = [ConversationMessage(role="user", content="ok"), *make_history(10)]
    llm = summarizer_llm()
    config = CompactionConfig(preserve_recent_messages=10, min_messages_for_compaction=11)
    compactor = make_compactor(window=1000, llm=llm, config=config)

    context, result = await compactor.compact(TEST_MODEL, messages)

    assert result.state == CompactionState.NORMAL
    assert context.messages == messages
    assert result.token_estimate == estimate_tokens(messages)
    llm.generate.assert_not_called()


@pytest.mark.asyncio
async def test_no_summarizer_configured_degrades():
    """Without a summarization model the fallback summary is used."""
    summarizer = Summarizer(None)
    outcome = await summarizer.summarize(make_history(4))

    assert outcome.status == OutcomeStatus.DEGRADED
    assert outcome.error_kind == "ConfigurationError"
    assert outcome.value.startswith("Previous discussion covered")


def test_fallback_summary_counts_roles():
    """Fallback summary names the user's topics and counts both sides."""
    messages = [
        ConversationMessage(role="user", content="How do I fix my backhand?"),
        ConversationMessage(role="assistant", content="Start with the grip."),
        ConversationMessage(role="user", content="And the footwork?"),
    ]

    summary = fallback_summary(messages, existing_summary="Plays tennis.")

    assert summary.startswith("Plays tennis.\n")
    assert "How do I fix my backhand?" in summary
    assert "3 messages: 2 from the user, 1 replies" in summary

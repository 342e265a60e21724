"""
Chat service: the caller of the orchestrator.

Persists the user message, serializes turns per conversation, streams the
reply, then stores the assistant message, the usage record, the rolling
summary and extracted memories.
"""

import asyncio
from collections import Counter
from contextlib import aclosing, asynccontextmanager
from typing import AsyncIterator

import structlog

from .accounting import UsageRecorder
from .agent.core import GenerationOrchestrator, StepCallback, TurnRequest, TurnResult
from .agent.multimodal import IncomingPart
from .agent.session import MessageStore
from .agent.title import generate_chat_title
from .llm.base import BaseLLM
from .memory.extractor import MemoryExtractor

logger = structlog.get_logger()


class ChatService:
    """Runs conversation turns end to end."""

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        message_store: MessageStore,
        usage_recorder: UsageRecorder | None = None,
        extractor: MemoryExtractor | None = None,
        title_llm: BaseLLM | None = None,
    ):
        self.orchestrator = orchestrator
        self.message_store = message_store
        self.usage_recorder = usage_recorder
        self.extractor = extractor
        self.title_llm = title_llm
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: Counter[str] = Counter()
        self._background: set[asyncio.Task] = set()

    @asynccontextmanager
    async def conversation_lock(self, conversation_id: str) -> AsyncIterator[None]:
        """Hold the turn lock of a conversation.

        The lock is dropped once no turn holds or waits for it.
        """
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._lock_holders[conversation_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[conversation_id] -= 1
            if self._lock_holders[conversation_id] <= 0:
                del self._lock_holders[conversation_id]
                self._locks.pop(conversation_id, None)

    async def start_conversation(self, user_id: str, first_message: str | None = None) -> str:
        """Create a conversation, titled after its first message when given."""
        title = await generate_chat_title(self.title_llm, first_message) if first_message else None
        conversation_id = await self.message_store.create_conversation(user_id, title)
        logger.info("Conversation started", user_id=user_id, conversation_id=conversation_id, title=title)
        return conversation_id

    async def _on_finish(self, request: TurnRequest, user_content: str, result: TurnResult) -> None:
        usage = result.usage
        await self.message_store.append(
            request.user_id,
            request.conversation_id,
            "assistant",
            result.text,
            metadata={
                "model": usage.model,
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "cost_usd": usage.cost_usd,
                "generation_time_ms": usage.generation_time_ms,
                "rag_used": usage.rag_used,
                "rag_chunks_count": usage.rag_chunks_count,
                "tool_calls": [inv.as_dict() for inv in usage.tool_invocations] or None,
            },
        )

        if self.usage_recorder is not None:
            try:
                await self.usage_recorder.record(request.user_id, request.conversation_id, usage)
            except Exception as e:
                logger.error("Failed to record usage", user_id=request.user_id, error=str(e))

        compaction = result.prepared.compaction
        if compaction.compacted and result.prepared.context.summary:
            await self.message_store.save_summary(request.conversation_id, result.prepared.context.summary)

        if self.extractor is not None and result.text:
            task = asyncio.create_task(
                self.extractor.extract_and_save(request.user_id, user_content, result.text)
            )
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def stream_reply(
        self,
        user_id: str,
        conversation_id: str,
        text: str | None = None,
        parts: list[IncomingPart] | None = None,
        tier: str | None = None,
        on_step: StepCallback | None = None,
    ) -> AsyncIterator[str]:
        """Stream the reply to a user message.

        Turns of the same conversation run one at a time.
        """
        request = TurnRequest(
            user_id=user_id,
            conversation_id=conversation_id,
            text=text,
            parts=parts,
            tier=tier,
            persisted=True,
        )
        user_content = request.stored_content

        async with self.conversation_lock(conversation_id):
            await self.message_store.append(user_id, conversation_id, "user", user_content)

            async def on_finish(result: TurnResult) -> None:
                await self._on_finish(request, user_content, result)

            turn = self.orchestrator.stream_turn(request, on_finish=on_finish, on_step=on_step)
            async with aclosing(turn) as deltas:
                async for delta in deltas:
                    yield delta

    async def reply(
        self,
        user_id: str,
        conversation_id: str,
        text: str | None = None,
        parts: list[IncomingPart] | None = None,
        tier: str | None = None,
    ) -> str:
        """Non-streaming variant of ``stream_reply``."""
        chunks = []
        async for delta in self.stream_reply(user_id, conversation_id, text, parts, tier):
            chunks.append(delta)
        return "".join(chunks)

    async def drain(self) -> None:
        """Wait for background memory extraction to finish."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

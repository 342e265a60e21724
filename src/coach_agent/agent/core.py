"""
Generation orchestrator.

This is the brain of the system. For every turn it:
1. Loads history, the retrieval decision, profile and memories concurrently
2. Keeps the history inside the model's context budget (compaction)
3. Assembles the system prompt from the persona template
4. Streams a bounded multi-step tool loop against the model
5. Produces the final usage record for the finished turn
"""

import asyncio
import inspect
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

import structlog

from ..accounting import CostAccountant, ModelUsage
from ..config import Settings
from ..errors import ModelInvocationError, Outcome
from ..knowledge.gate import GateDecision, RetrievalGate
from ..knowledge.index import KnowledgeChunk
from ..knowledge.retrieval import KnowledgeRetriever, format_context
from ..llm.base import BaseLLM, LLMMessage, LLMResponse, ProviderUsage, ToolCall
from ..memory.profile import ProfileStore, format_profile_for_prompt
from ..memory.store import MemoryStore, format_memories_for_prompt
from ..tools.base import ToolInvocation
from ..tools.registry import ToolRegistry, build_user_tools
from .compaction import CompactionResult, ContextCompactor
from .context import ConversationContext, ConversationMessage
from .multimodal import IncomingPart, describe_parts, message_text, normalize_user_content
from .prompt import build_system_prompt
from .session import SessionContextBuilder
from .style import build_style_hint

logger = structlog.get_logger()

# Placed between the texts of consecutive steps
STEP_SEPARATOR = "\n\n"


class TurnState(str, Enum):
    """Lifecycle of one generation turn."""

    INIT = "init"
    PREPARING = "preparing"
    PROMPT_ASSEMBLED = "prompt_assembled"
    STREAMING = "streaming"
    FINISHED = "finished"
    FAILED = "failed"


@dataclass
class TurnRequest:
    """One user message to answer.

    ``persisted`` tells the orchestrator the caller already stored the
    message, so its copy must not show up again in the history.
    """

    user_id: str
    conversation_id: str
    text: str | None = None
    parts: list[IncomingPart] | None = None
    tier: str | None = None
    persisted: bool = True

    @property
    def stored_content(self) -> str:
        """The message as it appears in the history store."""
        return describe_parts(self.text, self.parts)

    @property
    def query_text(self) -> str:
        """Text used for retrieval and style, attachments excluded."""
        return message_text(self.text, self.parts)


@dataclass
class PreparedTurn:
    """Everything the model call needs, assembled before streaming."""

    system_prompt: str
    messages: list[LLMMessage]
    context: ConversationContext
    compaction: CompactionResult
    tools: ToolRegistry
    gate: GateDecision | None = None
    knowledge: Outcome[list[KnowledgeChunk]] | None = None
    style_hint: str = ""

    @property
    def rag_chunks(self) -> list[KnowledgeChunk]:
        return self.knowledge.value if self.knowledge else []

    @property
    def rag_used(self) -> bool:
        return bool(self.rag_chunks)


@dataclass
class StepReport:
    """Payload of one tool-loop step, sent to the progress callback."""

    step: int
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_invocations: list[ToolInvocation] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    finished: bool = False
    stop_reason: str | None = None


@dataclass
class TurnResult:
    """Final text and metrics of a finished turn."""

    text: str
    usage: ModelUsage
    steps: list[StepReport]
    prepared: PreparedTurn
    state: TurnState = TurnState.FINISHED

    @property
    def tool_invocations(self) -> list[ToolInvocation]:
        return [inv for step in self.steps for inv in step.tool_invocations]


StepCallback = Callable[[StepReport], Any]
FinishCallback = Callable[[TurnResult], Awaitable[None] | None]


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


def _merge_provider_usage(steps: list[LLMResponse]) -> ProviderUsage | None:
    """Sum provider usage over steps; complete only if every step's is."""
    reports = [s.provider_usage for s in steps]
    if not reports or any(r is None or not r.is_complete for r in reports):
        return None
    return ProviderUsage(
        input_tokens=sum(r.input_tokens or 0 for r in reports),
        output_tokens=sum(r.output_tokens or 0 for r in reports),
        cost_usd=sum(r.cost_usd or 0.0 for r in reports),
    )


class ToolLoop:
    """Bounded multi-step tool-calling loop.

    Each step streams one model call. Tool calls requested by the model
    are executed and their results fed back for the next step. The loop
    ends when a step requests no tools or the step cap is reached; tools
    requested on the capped step still run but are not fed back.

    Iterate ``stream()`` for text deltas; afterwards ``steps``,
    ``responses`` and ``text`` hold the outcome.
    """

    def __init__(
        self,
        llm: BaseLLM,
        tools: ToolRegistry,
        step_cap: int = 5,
        on_step: StepCallback | None = None,
    ):
        self.llm = llm
        self.tools = tools
        self.step_cap = max(1, step_cap)
        self.on_step = on_step
        self.steps: list[StepReport] = []
        self.responses: list[LLMResponse] = []
        self.text = ""

    def _should_stop(self, step: int, response: LLMResponse) -> bool:
        return not response.tool_calls or step >= self.step_cap

    async def _report(self, report: StepReport) -> None:
        if self.on_step is None:
            return
        try:
            await _maybe_await(self.on_step(report))
        except Exception as e:
            logger.error("Step callback failed", step=report.step, error=str(e))

    async def _run_tools(self, step: int, tool_calls: list[ToolCall]) -> list[ToolInvocation]:
        invocations = []
        for call in tool_calls:
            result = await self.tools.execute(call.name, call.arguments)
            invocations.append(ToolInvocation(
                step=step,
                tool_call_id=call.id,
                name=call.name,
                arguments=call.arguments,
                result=result,
            ))
        return invocations

    async def stream(self, messages: list[LLMMessage], system_prompt: str) -> AsyncIterator[str]:
        """Run the loop, yielding text deltas as they arrive.

        Raises:
            ModelInvocationError: a model call failed.
        """
        messages = list(messages)
        definitions = self.tools.get_definitions() or None
        step = 0

        while True:
            step += 1
            step_text = ""
            response: LLMResponse | None = None

            try:
                async with aclosing(self.llm.stream(messages, tools=definitions, system_prompt=system_prompt)) as chunks:
                    async for chunk in chunks:
                        if chunk.text:
                            if not step_text and self.text:
                                self.text += STEP_SEPARATOR
                                yield STEP_SEPARATOR
                            step_text += chunk.text
                            self.text += chunk.text
                            yield chunk.text
                        if chunk.response is not None:
                            response = chunk.response
            except ModelInvocationError:
                raise
            except Exception as e:
                logger.error("Model call failed", step=step, error=str(e))
                raise ModelInvocationError(f"Model call failed at step {step}: {e}") from e

            if response is None:
                raise ModelInvocationError(f"Model stream ended without a final response at step {step}")

            self.responses.append(response)
            invocations = await self._run_tools(step, response.tool_calls) if response.tool_calls else []
            finished = self._should_stop(step, response)

            report = StepReport(
                step=step,
                text=step_text,
                tool_calls=list(response.tool_calls),
                tool_invocations=invocations,
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
                finished=finished,
                stop_reason=response.stop_reason,
            )
            self.steps.append(report)
            await self._report(report)

            if finished:
                if response.tool_calls:
                    logger.warning("Tool step cap reached", step_cap=self.step_cap)
                return

            messages.append(LLMMessage(role="assistant", content=step_text, tool_calls=response.tool_calls))
            for invocation in invocations:
                messages.append(LLMMessage(
                    role="tool",
                    content=invocation.result.to_payload() if invocation.result else "",
                    tool_call_id=invocation.tool_call_id,
                    name=invocation.name,
                ))


@dataclass(frozen=True)
class OrchestratorConfig:
    """Per-deployment knobs of the orchestrator."""

    tool_step_cap: int = 5
    persona_name: str = "Coach"
    tier_windows: dict[str, int] = field(
        default_factory=lambda: {"basic": 20, "pro": 50, "unlimited": 100}
    )

    def max_messages_for(self, tier: str | None) -> int:
        return self.tier_windows.get((tier or "basic").lower(), self.tier_windows["basic"])

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrchestratorConfig":
        return cls(
            tool_step_cap=settings.tool_step_cap,
            persona_name=settings.persona_name,
            tier_windows={
                "basic": settings.max_context_messages_basic,
                "pro": settings.max_context_messages_pro,
                "unlimited": settings.max_context_messages_unlimited,
            },
        )


class GenerationOrchestrator:
    """Drives one turn from context assembly to the finished usage record.

    Stateless between invocations; serializing turns of the same
    conversation is the caller's job.
    """

    def __init__(
        self,
        llm: BaseLLM,
        accountant: CostAccountant,
        context_builder: SessionContextBuilder,
        compactor: ContextCompactor,
        gate: RetrievalGate,
        retriever: KnowledgeRetriever,
        memory_store: MemoryStore,
        profile_store: ProfileStore,
        tool_factory: Callable[[str], ToolRegistry] | None = None,
        config: OrchestratorConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.llm = llm
        self.accountant = accountant
        self.context_builder = context_builder
        self.compactor = compactor
        self.gate = gate
        self.retriever = retriever
        self.memory_store = memory_store
        self.profile_store = profile_store
        self.tool_factory = tool_factory or (
            lambda user_id: build_user_tools(user_id, memory_store, profile_store)
        )
        self.config = config or OrchestratorConfig()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def model_id(self) -> str:
        return self.llm.model

    async def _load_history(self, request: TurnRequest) -> list[ConversationMessage]:
        return await self.context_builder.build(
            request.user_id,
            self.config.max_messages_for(request.tier),
            request.conversation_id,
            pending_user_message=request.stored_content if request.persisted else None,
        )

    async def _load_summary(self, conversation_id: str) -> str | None:
        try:
            return await self.context_builder.store.get_summary(conversation_id)
        except Exception as e:
            logger.warning("Could not load conversation summary", conversation_id=conversation_id, error=str(e))
            return None

    async def _retrieve(self, query: str) -> tuple[GateDecision | None, Outcome[list[KnowledgeChunk]]]:
        try:
            decision = await self.gate.decide(query)
            if not decision.use_retrieval:
                return decision, Outcome.ok([])
            return decision, await self.retriever.search(query)
        except Exception as e:
            logger.error("Knowledge retrieval failed", error=str(e))
            return None, Outcome.degraded([], e)

    async def _profile_digest(self, user_id: str) -> str:
        try:
            snapshot = await self.profile_store.snapshot(user_id)
        except Exception as e:
            logger.warning("Could not load user profile", user_id=user_id, error=str(e))
            return ""
        return format_profile_for_prompt(snapshot, self.clock().date())

    async def _memory_digest(self, user_id: str) -> str:
        try:
            memories = await self.memory_store.list_memories(user_id)
        except Exception as e:
            logger.warning("Could not load user memories", user_id=user_id, error=str(e))
            return ""
        return format_memories_for_prompt(memories)

    def _style_hint(self, history: list[ConversationMessage], current: str | None) -> str:
        user_messages = [m.content for m in history if m.role == "user"]
        if current:
            user_messages.append(current)
        try:
            return build_style_hint(user_messages)
        except Exception as e:
            logger.warning("Style hint failed", error=str(e))
            return ""

    async def prepare(self, request: TurnRequest) -> PreparedTurn:
        """Assemble context, knowledge and prompt for a turn.

        Raises:
            ContextBuildError: the history store could not be read.
            ValueError: an attachment could not be decoded.
        """
        log = logger.bind(user_id=request.user_id, conversation_id=request.conversation_id)
        parts = normalize_user_content(request.text, request.parts) if request.parts else None

        log.debug("Turn state", state=TurnState.PREPARING.value)
        history, summary, (decision, knowledge), profile, memories = await asyncio.gather(
            self._load_history(request),
            self._load_summary(request.conversation_id),
            self._retrieve(request.query_text),
            self._profile_digest(request.user_id),
            self._memory_digest(request.user_id),
        )

        style_hint = self._style_hint(history, request.query_text)
        context, compaction = await self.compactor.compact(self.model_id, history, summary)

        system_prompt = build_system_prompt(
            now=self.clock(),
            knowledge=format_context(knowledge.value) if knowledge.value else None,
            profile=profile,
            memories=memories,
            style_hint=style_hint,
            persona_name=self.config.persona_name,
        )

        messages = context.to_llm_messages()
        messages.append(LLMMessage(role="user", content=request.stored_content, parts=parts))

        log.info(
            "Turn prepared",
            state=TurnState.PROMPT_ASSEMBLED.value,
            history_messages=len(history),
            compaction=compaction.state.value,
            retrieval_stage=decision.stage.value if decision else None,
            rag_chunks=len(knowledge.value),
            knowledge_status=knowledge.status.value,
        )

        return PreparedTurn(
            system_prompt=system_prompt,
            messages=messages,
            context=context,
            compaction=compaction,
            tools=self.tool_factory(request.user_id),
            gate=decision,
            knowledge=knowledge,
            style_hint=style_hint,
        )

    def _finalize(self, prepared: PreparedTurn, loop: ToolLoop, elapsed_ms: int) -> TurnResult:
        responses = loop.responses
        reasoning = "\n".join(r.reasoning for r in responses if r.reasoning) or None
        invocations = [inv for step in loop.steps for inv in step.tool_invocations]

        usage = self.accountant.finalize_usage(
            model_id=self.model_id,
            input_tokens=sum(r.input_tokens for r in responses),
            output_tokens=sum(r.output_tokens for r in responses),
            reasoning_tokens=sum(r.reasoning_tokens for r in responses),
            generation_time_ms=elapsed_ms,
            provider_usage=_merge_provider_usage(responses),
            rag_used=prepared.rag_used,
            rag_chunks_count=len(prepared.rag_chunks),
            tool_invocations=tuple(invocations),
            reasoning_content=reasoning,
        )
        return TurnResult(text=loop.text, usage=usage, steps=list(loop.steps), prepared=prepared)

    async def stream_turn(
        self,
        request: TurnRequest,
        on_finish: FinishCallback | None = None,
        on_step: StepCallback | None = None,
    ) -> AsyncIterator[str]:
        """Answer a turn, yielding text deltas.

        ``on_finish`` receives the ``TurnResult`` once the stream
        completes normally. A consumer that stops early gets no result
        and no usage record.

        Raises:
            ContextBuildError: the history store could not be read.
            ModelInvocationError: the model call failed.
        """
        prepared = await self.prepare(request)
        loop = ToolLoop(self.llm, prepared.tools, self.config.tool_step_cap, on_step)

        logger.debug("Turn state", state=TurnState.STREAMING.value, conversation_id=request.conversation_id)
        started = time.perf_counter()
        try:
            async with aclosing(loop.stream(prepared.messages, prepared.system_prompt)) as deltas:
                async for delta in deltas:
                    yield delta
        except ModelInvocationError as e:
            logger.error(
                "Turn failed",
                state=TurnState.FAILED.value,
                user_id=request.user_id,
                conversation_id=request.conversation_id,
                error=str(e),
            )
            raise

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        result = self._finalize(prepared, loop, elapsed_ms)

        logger.info(
            "Turn finished",
            state=TurnState.FINISHED.value,
            user_id=request.user_id,
            conversation_id=request.conversation_id,
            steps=len(result.steps),
            tools=[inv.name for inv in result.tool_invocations],
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            cost_usd=result.usage.cost_usd,
            cost_source=result.usage.cost_source,
            rag_used=result.usage.rag_used,
        )

        if on_finish is not None:
            await _maybe_await(on_finish(result))

    async def run_turn(self, request: TurnRequest, on_step: StepCallback | None = None) -> TurnResult:
        """Answer a turn without streaming."""
        results: list[TurnResult] = []
        async for _ in self.stream_turn(request, on_finish=results.append, on_step=on_step):
            pass
        return results[0]

"""
Tests for the generation orchestrator and its tool loop.
"""

import base64
import json

import pytest
from unittest.mock import AsyncMock

from coach_agent.agent.compaction import SUMMARY_PREFIX
from coach_agent.agent.core import STEP_SEPARATOR, StepReport, TurnRequest
from coach_agent.agent.multimodal import DEFAULT_AUDIO_INSTRUCTION, IncomingPart
from coach_agent.errors import ContextBuildError, ModelInvocationError, OutcomeStatus, TransientProviderError
from coach_agent.knowledge.gate import GateStage
from coach_agent.knowledge.index import KnowledgeChunk
from coach_agent.llm.base import FilePart, LLMResponse, ProviderUsage, TextPart, ToolCall
from coach_agent.memory.store import UserMemory

from conftest import FakeEmbedder, ScriptedLLM


def request(text: str | None = "ciao", **kwargs) -> TurnRequest:
    kwargs.setdefault("persisted", False)
    return TurnRequest(user_id="u1", conversation_id="c1", text=text, **kwargs)


def tool_step(content: str, *calls: ToolCall, provider_usage: ProviderUsage | None = None) -> LLMResponse:
    return LLMResponse(
        content=content,
        tool_calls=list(calls),
        input_tokens=10,
        output_tokens=5,
        stop_reason="tool_calls",
        provider_usage=provider_usage,
    )


async def collect(stream) -> list[str]:
    return [delta async for delta in stream]


@pytest.mark.asyncio
async def test_simple_turn(make_orchestrator):
    """A turn without tools streams the reply and prices it from the catalog."""
    llm = ScriptedLLM(["Ciao! Come stai oggi?"])
    orchestrator = make_orchestrator(llm)

    result = await orchestrator.run_turn(request("ciao"))

    assert result.text == "Ciao! Come stai oggi?"
    assert len(result.steps) == 1 and result.steps[0].finished
    assert result.usage.input_tokens == 10
    assert result.usage.output_tokens == 5
    assert result.usage.cost_usd == pytest.approx(10 * 1e-6 + 5 * 2e-6)
    assert result.usage.cost_source == "catalog"
    assert not result.usage.rag_used

    call = llm.calls[0]
    assert "**Coach Test**" in call["system_prompt"]
    assert "Friday 14 March 2025" in call["system_prompt"]
    assert call["messages"][-1].role == "user"
    assert call["messages"][-1].content == "ciao"
    assert {t.name for t in call["tools"]} >= {"save_memory", "update_profile"}


@pytest.mark.asyncio
async def test_stream_deltas_rebuild_text(make_orchestrator):
    """The streamed deltas concatenate to the final text."""
    llm = ScriptedLLM(["Allenati tre volte a settimana."])
    results = []

    deltas = await collect(make_orchestrator(llm).stream_turn(request(), on_finish=results.append))

    assert len(deltas) > 1
    assert "".join(deltas) == results[0].text == "Allenati tre volte a settimana."


@pytest.mark.asyncio
async def test_tool_results_are_fed_back(make_orchestrator, memory_store):
    """Tool calls run against the user's stores and their results reach the next step."""
    call = ToolCall(id="call_1", name="save_memory", arguments={
        "key": "user_sport", "value": "tennis", "category": "sport",
    })
    llm = ScriptedLLM([
        tool_step("Me lo segno.", call),
        "Perfetto, giochi a tennis.",
    ])

    result = await make_orchestrator(llm).run_turn(request("gioco a tennis"))

    assert (await memory_store.get("u1", "user_sport")).value == "tennis"
    assert result.text == "Me lo segno." + STEP_SEPARATOR + "Perfetto, giochi a tennis."
    assert len(result.steps) == 2
    assert [inv.name for inv in result.usage.tool_invocations] == ["save_memory"]
    assert result.usage.input_tokens == 20

    second_messages = llm.calls[1]["messages"]
    assistant, tool = second_messages[-2], second_messages[-1]
    assert assistant.role == "assistant" and assistant.tool_calls == [call]
    assert tool.role == "tool" and tool.tool_call_id == "call_1"
    assert json.loads(tool.content)["success"] is True


@pytest.mark.asyncio
async def test_failing_tool_is_reported_to_model(make_orchestrator):
    """A tool error becomes an error payload, not a failed turn."""
    call = ToolCall(id="call_1", name="delete_memory", arguments={"key": "nothing_here"})
    llm = ScriptedLLM([tool_step("", call), "Non avevo salvato nulla."])

    result = await make_orchestrator(llm).run_turn(request("dimentica tutto"))

    payload = json.loads(llm.calls[1]["messages"][-1].content)
    assert payload["success"] is False
    assert result.text == "Non avevo salvato nulla."


@pytest.mark.asyncio
async def test_step_cap_ends_the_loop(make_orchestrator, memory_store):
    """At the cap the loop stops; the last requested tools run but are not fed back."""
    first = ToolCall(id="a", name="save_memory", arguments={"key": "k1", "value": "v1", "category": "other"})
    second = ToolCall(id="b", name="save_memory", arguments={"key": "k2", "value": "v2", "category": "other"})
    llm = ScriptedLLM([tool_step("uno", first), tool_step("due", second)])

    result = await make_orchestrator(llm, step_cap=2).run_turn(request())

    assert len(llm.calls) == 2
    assert len(result.steps) == 2
    assert result.steps[-1].finished
    assert await memory_store.get("u1", "k2") is not None
    assert result.text == "uno" + STEP_SEPARATOR + "due"


@pytest.mark.asyncio
async def test_step_callbacks(make_orchestrator):
    """on_step gets one report per step; a failing callback does not break the turn."""
    call = ToolCall(id="a", name="get_memories", arguments={})
    reports: list[StepReport] = []

    async def record(report: StepReport) -> None:
        reports.append(report)

    result = await make_orchestrator(ScriptedLLM([tool_step("", call), "ok"])).run_turn(request(), on_step=record)

    assert [r.step for r in reports] == [1, 2]
    assert reports[0].tool_invocations[0].name == "get_memories"
    assert not reports[0].finished and reports[1].finished

    def boom(report: StepReport) -> None:
        raise RuntimeError("ui gone")

    result = await make_orchestrator(ScriptedLLM(["fine"])).run_turn(request(), on_step=boom)
    assert result.text == "fine"


@pytest.mark.asyncio
async def test_model_failure_is_terminal(make_orchestrator):
    """A failed model call raises and produces no result."""
    finished = []
    orchestrator = make_orchestrator(ScriptedLLM([RuntimeError("502 bad gateway")]))

    with pytest.raises(ModelInvocationError):
        await collect(orchestrator.stream_turn(request(), on_finish=finished.append))

    assert finished == []


@pytest.mark.asyncio
async def test_failure_after_tool_step_is_terminal(make_orchestrator):
    """A failure on a later step still fails the whole turn."""
    call = ToolCall(id="a", name="get_memories", arguments={})
    orchestrator = make_orchestrator(ScriptedLLM([tool_step("", call), TimeoutError("slow")]))

    with pytest.raises(ModelInvocationError):
        await orchestrator.run_turn(request())


@pytest.mark.asyncio
async def test_cancelled_stream_records_nothing(make_orchestrator):
    """A consumer that stops early closes the model stream and gets no result."""
    llm = ScriptedLLM(["Una risposta lunga che arriva in tanti pezzi."])
    finished = []
    stream = make_orchestrator(llm).stream_turn(request(), on_finish=finished.append)

    first = await anext(stream)
    await stream.aclose()

    assert first == "Una r"
    assert finished == []
    assert llm.closed == 1


@pytest.mark.asyncio
async def test_complete_provider_usage_is_summed(make_orchestrator):
    """Provider figures from every step are summed and win over the catalog."""
    call = ToolCall(id="a", name="get_memories", arguments={})
    llm = ScriptedLLM([
        tool_step("", call, provider_usage=ProviderUsage(100, 40, 0.002)),
        LLMResponse(content="ok", input_tokens=10, output_tokens=5, provider_usage=ProviderUsage(120, 10, 0.001)),
    ])

    result = await make_orchestrator(llm).run_turn(request())

    assert result.usage.cost_source == "provider"
    assert result.usage.input_tokens == 220
    assert result.usage.output_tokens == 50
    assert result.usage.cost_usd == pytest.approx(0.003)


@pytest.mark.asyncio
async def test_partial_provider_usage_falls_back(make_orchestrator):
    """One step without provider figures makes the whole turn locally priced."""
    call = ToolCall(id="a", name="get_memories", arguments={})
    llm = ScriptedLLM([
        tool_step("", call, provider_usage=ProviderUsage(100, 40, 0.002)),
        "ok",
    ])

    result = await make_orchestrator(llm).run_turn(request())

    assert result.usage.cost_source == "catalog"
    assert result.usage.input_tokens == 20


@pytest.mark.asyncio
async def test_reasoning_is_collected(make_orchestrator):
    llm = ScriptedLLM([LLMResponse(content="ok", reasoning="thinking it over", reasoning_tokens=7)])

    result = await make_orchestrator(llm).run_turn(request())

    assert result.usage.reasoning_content == "thinking it over"
    assert result.usage.reasoning_tokens == 7


@pytest.mark.asyncio
async def test_knowledge_reaches_the_prompt(make_orchestrator, vector_index):
    """Domain questions retrieve chunks into the prompt and flag the usage."""
    await vector_index.add_document("Tecnica del servizio", [
        KnowledgeChunk(content="Lancia la palla davanti alla spalla.", title="", embedding=[1.0, 0.0, 0.0]),
    ])
    classifier = ScriptedLLM([])
    llm = ScriptedLLM(["Prova a lanciare più avanti."])

    result = await make_orchestrator(llm, classifier=classifier, embedder=FakeEmbedder()).run_turn(
        request("Come posso migliorare la tecnica del servizio?")
    )

    prompt = llm.calls[0]["system_prompt"]
    assert "**Tecnica del servizio**" in prompt
    assert "Lancia la palla davanti alla spalla." in prompt
    assert result.prepared.gate.stage == GateStage.POSITIVE_KEYWORD
    assert result.usage.rag_used
    assert result.usage.rag_chunks_count == 1
    assert classifier.calls == []


@pytest.mark.asyncio
async def test_text_parts_drive_retrieval(make_orchestrator, vector_index):
    """A message whose words arrive only as text parts still reaches the gate."""
    await vector_index.add_document("Tecnica del servizio", [
        KnowledgeChunk(content="Lancia la palla davanti alla spalla.", title="", embedding=[1.0, 0.0, 0.0]),
    ])
    classifier = ScriptedLLM([])
    llm = ScriptedLLM(["Prova a lanciare più avanti."])
    parts = [IncomingPart(type="text", text="Come posso migliorare la tecnica del servizio?")]

    result = await make_orchestrator(llm, classifier=classifier, embedder=FakeEmbedder()).run_turn(
        request(None, parts=parts)
    )

    assert result.prepared.gate.stage == GateStage.POSITIVE_KEYWORD
    assert result.usage.rag_used
    assert "Lancia la palla davanti alla spalla." in llm.calls[0]["system_prompt"]
    assert classifier.calls == []


@pytest.mark.asyncio
async def test_retrieval_failure_degrades(make_orchestrator, vector_index):
    """A failing embedding provider leaves the turn intact without knowledge."""
    await vector_index.add_document("Recupero", [
        KnowledgeChunk(content="Dormi otto ore.", title="", embedding=[0.0, 1.0, 0.0]),
    ])
    embedder = FakeEmbedder(fail=TransientProviderError("503", status_code=503))
    llm = ScriptedLLM(["Riposa bene."])

    result = await make_orchestrator(llm, embedder=embedder).run_turn(request("Come migliorare il recupero?"))

    assert result.text == "Riposa bene."
    assert not result.usage.rag_used
    assert result.prepared.knowledge.status == OutcomeStatus.DEGRADED
    assert "No RAG documents available" in llm.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_profile_and_memories_in_prompt(make_orchestrator, profile_store, memory_store):
    await profile_store.update_profile("u1", name="Giulia", sport="volley")
    await memory_store.upsert("u1", UserMemory(key="user_goal", value="Serie B", category="goal"))
    llm = ScriptedLLM(["Forza Giulia!"])

    await make_orchestrator(llm).run_turn(request())

    prompt = llm.calls[0]["system_prompt"]
    assert "- **Name**: Giulia" in prompt
    assert "- **user goal**: Serie B" in prompt


@pytest.mark.asyncio
async def test_persisted_message_not_duplicated(make_orchestrator, message_store):
    """The caller's stored copy of the message is not sent twice."""
    await message_store.append("u1", "c1", "user", "Ciao coach")
    await message_store.append("u1", "c1", "assistant", "Ciao! Come va?")
    await message_store.append("u1", "c1", "user", "Come sto andando?")
    llm = ScriptedLLM(["Molto bene."])

    await make_orchestrator(llm).run_turn(request("Come sto andando?", persisted=True))

    contents = [m.content for m in llm.calls[0]["messages"]]
    assert contents == ["Ciao coach", "Ciao! Come va?", "Come sto andando?"]


@pytest.mark.asyncio
async def test_tier_sets_history_window(make_orchestrator, message_store):
    """Higher tiers see more history."""
    for i in range(60):
        await message_store.append("u1", "c1", "user" if i % 2 == 0 else "assistant", f"m{i}")

    basic = ScriptedLLM(["ok"])
    await make_orchestrator(basic).run_turn(request("ciao"))
    pro = ScriptedLLM(["ok"])
    await make_orchestrator(pro).run_turn(request("ciao", tier="pro"))

    assert len(basic.calls[0]["messages"]) == 21
    assert len(pro.calls[0]["messages"]) == 51


@pytest.mark.asyncio
async def test_long_history_is_compacted(make_orchestrator, message_store):
    """Near the context limit older turns are replaced by a summary."""
    for i in range(20):
        await message_store.append("u1", "c1", "user" if i % 2 == 0 else "assistant", "x" * 400)
    summarizer = ScriptedLLM(["The athlete asked about serve drills."])
    llm = ScriptedLLM(["ok"])

    result = await make_orchestrator(llm, summarizer_llm=summarizer, window=2588).run_turn(request("ciao"))

    messages = llm.calls[0]["messages"]
    assert result.prepared.compaction.compacted
    assert messages[0].role == "system"
    assert messages[0].content.startswith(SUMMARY_PREFIX)
    assert len(messages) == 12
    assert result.prepared.context.summary == "The athlete asked about serve drills."


@pytest.mark.asyncio
async def test_history_failure_is_fatal(make_orchestrator, message_store):
    """An unreadable history store fails the turn before any model call."""
    message_store.recent = AsyncMock(side_effect=OSError("disk gone"))
    llm = ScriptedLLM(["never"])

    with pytest.raises(ContextBuildError):
        await make_orchestrator(llm).run_turn(request())

    assert llm.calls == []


@pytest.mark.asyncio
async def test_voice_message_without_text(make_orchestrator):
    """Audio-only input reaches the model with the default instruction first."""
    audio = base64.b64encode(b"opus").decode()
    llm = ScriptedLLM(["Ho ascoltato."])

    await make_orchestrator(llm).run_turn(
        request(None, parts=[IncomingPart(type="audio", data=audio, media_type="audio/ogg;codecs=opus")])
    )

    last = llm.calls[0]["messages"][-1]
    assert last.content == "[voice message]"
    assert isinstance(last.parts[0], TextPart) and last.parts[0].text == DEFAULT_AUDIO_INSTRUCTION
    assert isinstance(last.parts[1], FilePart) and last.parts[1].media_type == "audio/ogg"


@pytest.mark.asyncio
async def test_bad_attachment_rejected_before_model(make_orchestrator):
    llm = ScriptedLLM(["never"])

    with pytest.raises(ValueError):
        await make_orchestrator(llm).run_turn(
            request(None, parts=[IncomingPart(type="file", data="%%%", media_type="application/pdf")])
        )

    assert llm.calls == []

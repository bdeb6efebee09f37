from __future__ import annotations

import asyncio
import gc

import pytest
from fakes import FakeLLM, StaticMemoryStore, WordCounter

from parley.core.chat.schemas import TurnType
from parley.core.errors import ChatSessionNotFoundError, ExtractionError, MemoryRetrievalError, StalePlanError
from parley.core.models.llm_provider import LLMUnavailable
from parley.core.models.prompts import PLAN_REJECTED_RESPONSE
from parley.core.orchestration.orchestrator import (
    STATUS_AUDIENCE,
    STATUS_MEMORIES,
    STATUS_MODEL,
    STATUS_PLAN,
    STATUS_SAVING,
    USAGE_KEYS,
    ChatOrchestrator,
)
from parley.core.orchestration.relay import drain
from parley.core.planning.schemas import PlanState, ProposedPlan
from parley.core.skills.builtin.math import register_math_skill
from parley.core.skills.registry import FunctionRegistry

SQRT_PLAN = {"plan": {"function": "math.Sqrt", "parameters": {"INPUT": "16"}}}


def _orchestrator(tmp_path, settings, llm: FakeLLM | None = None, memory_store: StaticMemoryStore | None = None) -> ChatOrchestrator:
    registry = FunctionRegistry()
    register_math_skill(registry)
    return ChatOrchestrator(
        settings=settings,
        llm=llm or FakeLLM(),
        counter=WordCounter(),
        registry=registry,
        memory_store=memory_store or StaticMemoryStore(),
        state_dir=tmp_path,
    )


async def _ask(orchestrator: ChatOrchestrator, chat_id: str, message: str = "what is the square root of 16?", **kwargs):
    return await orchestrator.get_chat_response(message, "alice-id", "Alice", chat_id, **kwargs)


@pytest.mark.asyncio
async def test_reply_is_streamed_and_persisted_after_completion(tmp_path, settings) -> None:
    orchestrator = _orchestrator(tmp_path, settings)
    session = await orchestrator.create_chat("Math help")
    subscriber = orchestrator.relay.subscribe(session.id)

    response = await _ask(orchestrator, session.id)

    assert response.turn.content == "Hello Alice!"
    assert response.turn.turn_type == TurnType.MESSAGE
    events = drain(subscriber)
    assert [event.payload["delta"] for event in events if event.kind == "delta"] == ["Hello", " Alice", "!"]
    statuses = [event.payload["status"] for event in events if event.kind == "status"]
    assert statuses[0] == STATUS_AUDIENCE
    assert statuses[-1] == STATUS_SAVING
    assert {STATUS_PLAN, STATUS_MEMORIES, STATUS_MODEL} <= set(statuses)

    stored = await orchestrator.list_messages(session.id)
    assert [turn.content for turn in stored][1:] == ["what is the square root of 16?", "Hello Alice!"]
    assert stored[-1].prompt is not None
    assert stored[-1].prompt["meta_prompt_messages"][-1]["role"] == "user"


@pytest.mark.asyncio
async def test_token_usage_reports_every_stage(tmp_path, settings) -> None:
    orchestrator = _orchestrator(tmp_path, settings)
    session = await orchestrator.create_chat("Usage")

    response = await _ask(orchestrator, session.id)

    assert set(USAGE_KEYS) <= set(response.turn.token_usage)
    assert response.turn.token_usage["audienceExtraction"] > 0
    assert response.turn.token_usage["responseCompletion"] == 2
    assert response.prompt is not None
    assert response.turn.token_usage["metaPromptTemplate"] == response.prompt.token_count


@pytest.mark.asyncio
async def test_prompt_carries_intent_audience_and_memories(tmp_path, settings) -> None:
    store = StaticMemoryStore()
    orchestrator = _orchestrator(tmp_path, settings, memory_store=store)
    session = await orchestrator.create_chat("Memories")
    store.collections[f"{session.id}-LongTermMemory"] = [("Name: Alice likes maths", 0.95, "LongTermMemory")]

    response = await _ask(orchestrator, session.id)

    assert response.prompt.user_intent == "User intent: wants to know the square root of 16"
    assert response.prompt.audience == "List of participants: Alice"
    assert "[LongTermMemory] Name: Alice likes maths" in response.prompt.chat_memories
    contents = [message["content"] for message in orchestrator.llm.streamed[0]]
    assert response.prompt.user_intent in contents


@pytest.mark.asyncio
async def test_memories_are_extracted_after_the_reply(tmp_path, settings) -> None:
    store = StaticMemoryStore()
    llm = FakeLLM(memories='{"items": [{"label": "Name", "details": "Alice"}]}')
    orchestrator = _orchestrator(tmp_path, settings, llm=llm, memory_store=store)
    session = await orchestrator.create_chat("Extraction")

    await _ask(orchestrator, session.id)

    assert {(scope, text) for scope, text, _ in store.upserts} == {
        (f"{session.id}-LongTermMemory", "Name: Alice"),
        (f"{session.id}-WorkingMemory", "Name: Alice"),
    }


@pytest.mark.asyncio
async def test_default_user_skips_audience_extraction(tmp_path, settings) -> None:
    llm = FakeLLM(audience=LLMUnavailable("should not be asked"))
    orchestrator = _orchestrator(tmp_path, settings, llm=llm)
    session = await orchestrator.create_chat("Solo")

    response = await orchestrator.get_chat_response(
        "hello", settings.prompts.default_user_id, "Default", session.id
    )

    assert response.turn.token_usage["audienceExtraction"] == 0
    assert response.prompt.audience == ""


@pytest.mark.asyncio
async def test_plan_is_proposed_and_persisted_as_plan_turn(tmp_path, settings) -> None:
    orchestrator = _orchestrator(tmp_path, settings, llm=FakeLLM(plan=SQRT_PLAN))
    session = await orchestrator.create_chat("Plans")

    response = await _ask(orchestrator, session.id)

    assert response.turn.turn_type == TurnType.PLAN
    assert response.proposed_plan is not None
    assert response.proposed_plan.state == PlanState.PLAN_APPROVAL_REQUIRED
    assert response.proposed_plan.generated_plan_message_id == response.turn.id
    stored = ProposedPlan.model_validate_json(orchestrator.messages.get(response.turn.id).content)
    assert stored.plan.function_ids() == ["math.Sqrt"]
    assert stored.original_user_input == "what is the square root of 16?"
    assert orchestrator.llm.streamed == []


@pytest.mark.asyncio
async def test_approved_plan_runs_and_feeds_the_reply(tmp_path, settings) -> None:
    llm = FakeLLM(plan=SQRT_PLAN)
    orchestrator = _orchestrator(tmp_path, settings, llm=llm)
    session = await orchestrator.create_chat("Plans")
    proposal = await _ask(orchestrator, session.id)
    intent_calls = sum("REWRITTEN INTENT" in prompt for prompt, _ in llm.calls)

    approved = proposal.proposed_plan.model_copy(update={"state": PlanState.APPROVED})
    response = await _ask(
        orchestrator,
        session.id,
        message="go ahead",
        approved_plan_json=approved.to_json(),
        approved_plan_message_id=proposal.turn.id,
    )

    assert response.turn.turn_type == TurnType.MESSAGE
    assert "FUNCTIONS USED: math.Sqrt\nRESULT: 4" in response.prompt.external_information
    assert response.prompt.user_intent == proposal.proposed_plan.user_intent
    assert sum("REWRITTEN INTENT" in prompt for prompt, _ in llm.calls) == intent_calls
    stored = ProposedPlan.model_validate_json(orchestrator.messages.get(proposal.turn.id).content)
    assert stored.state == PlanState.APPROVED
    assert "PlanStepExecuted" in [event["event"] for event in response.trace_events]


@pytest.mark.asyncio
async def test_repeated_approval_does_not_run_the_plan_twice(tmp_path, settings) -> None:
    llm = FakeLLM(plan=SQRT_PLAN)
    orchestrator = _orchestrator(tmp_path, settings, llm=llm)
    session = await orchestrator.create_chat("Plans")
    proposal = await _ask(orchestrator, session.id)
    approved = proposal.proposed_plan.model_copy(update={"state": PlanState.APPROVED}).to_json()
    await _ask(orchestrator, session.id, message="yes", approved_plan_json=approved, approved_plan_message_id=proposal.turn.id)
    llm.plan = {"plan": {"function": "", "parameters": {}}}

    again = await _ask(orchestrator, session.id, message="yes", approved_plan_json=approved, approved_plan_message_id=proposal.turn.id)

    assert again.turn.turn_type == TurnType.MESSAGE
    assert again.prompt.external_information == ""
    assert "PlanStepExecuted" not in [event["event"] for event in again.trace_events]


@pytest.mark.asyncio
async def test_rejected_plan_gets_the_canned_reply(tmp_path, settings) -> None:
    llm = FakeLLM(plan=SQRT_PLAN)
    orchestrator = _orchestrator(tmp_path, settings, llm=llm)
    session = await orchestrator.create_chat("Plans")
    proposal = await _ask(orchestrator, session.id)
    calls_before = len(llm.calls)

    rejected = proposal.proposed_plan.model_copy(update={"state": PlanState.REJECTED})
    response = await _ask(
        orchestrator, session.id, message="no", approved_plan_json=rejected.to_json(), approved_plan_message_id=proposal.turn.id
    )

    assert response.turn.content == PLAN_REJECTED_RESPONSE
    assert len(llm.calls) == calls_before
    stored = ProposedPlan.model_validate_json(orchestrator.messages.get(proposal.turn.id).content)
    assert stored.state == PlanState.REJECTED


@pytest.mark.asyncio
async def test_noop_plan_is_stale(tmp_path, settings) -> None:
    orchestrator = _orchestrator(tmp_path, settings, llm=FakeLLM(plan=SQRT_PLAN))
    session = await orchestrator.create_chat("Plans")
    proposal = await _ask(orchestrator, session.id)

    stale = proposal.proposed_plan.model_copy(update={"state": PlanState.NO_OP})
    with pytest.raises(StalePlanError):
        await _ask(orchestrator, session.id, message="ok", approved_plan_json=stale.to_json(), approved_plan_message_id=proposal.turn.id)


@pytest.mark.asyncio
async def test_extraction_failure_keeps_user_turn_without_reply(tmp_path, settings) -> None:
    orchestrator = _orchestrator(tmp_path, settings, llm=FakeLLM(intent=LLMUnavailable("model down")))
    session = await orchestrator.create_chat("Failures")

    with pytest.raises(ExtractionError, match="intent"):
        await _ask(orchestrator, session.id)

    stored = await orchestrator.list_messages(session.id)
    assert [turn.content for turn in stored][1:] == ["what is the square root of 16?"]


@pytest.mark.asyncio
async def test_memory_store_failure_fails_the_turn(tmp_path, settings) -> None:
    orchestrator = _orchestrator(tmp_path, settings, memory_store=StaticMemoryStore(fail=True))
    session = await orchestrator.create_chat("Failures")

    with pytest.raises(MemoryRetrievalError):
        await _ask(orchestrator, session.id)

    assert len(await orchestrator.list_messages(session.id)) == 2


@pytest.mark.asyncio
async def test_unknown_chat_is_rejected(tmp_path, settings) -> None:
    orchestrator = _orchestrator(tmp_path, settings)

    with pytest.raises(ChatSessionNotFoundError):
        await _ask(orchestrator, "missing-chat")


@pytest.mark.asyncio
async def test_failed_extraction_leaves_approval_retryable(tmp_path, settings) -> None:
    llm = FakeLLM(plan=SQRT_PLAN)
    orchestrator = _orchestrator(tmp_path, settings, llm=llm)
    session = await orchestrator.create_chat("Plans")
    proposal = await _ask(orchestrator, session.id)
    approved = proposal.proposed_plan.model_copy(update={"state": PlanState.APPROVED}).to_json()

    llm.audience = LLMUnavailable("model down")
    with pytest.raises(ExtractionError, match="audience"):
        await _ask(orchestrator, session.id, message="yes", approved_plan_json=approved, approved_plan_message_id=proposal.turn.id)
    stored = ProposedPlan.model_validate_json(orchestrator.messages.get(proposal.turn.id).content)
    assert stored.state == PlanState.PLAN_APPROVAL_REQUIRED

    llm.audience = "Alice"
    response = await _ask(orchestrator, session.id, message="yes", approved_plan_json=approved, approved_plan_message_id=proposal.turn.id)

    assert "RESULT: 4" in response.prompt.external_information
    stored = ProposedPlan.model_validate_json(orchestrator.messages.get(proposal.turn.id).content)
    assert stored.state == PlanState.APPROVED


@pytest.mark.asyncio
async def test_malformed_planner_output_still_gets_a_reply(tmp_path, settings) -> None:
    llm = FakeLLM(plan={"plan": {"function": "math.Sqrt", "parameters": ["16"]}})
    orchestrator = _orchestrator(tmp_path, settings, llm=llm)
    session = await orchestrator.create_chat("Plans")

    response = await _ask(orchestrator, session.id)

    assert response.turn.turn_type == TurnType.MESSAGE
    assert response.turn.content == "Hello Alice!"
    assert response.prompt.external_information == ""


class _StallingLLM(FakeLLM):
    """Sends one chunk and then waits forever."""

    async def stream(self, messages, settings):
        self.streamed.append(messages)
        yield self.chunks[0]
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_cancelled_stream_saves_no_bot_message(tmp_path, settings) -> None:
    orchestrator = _orchestrator(tmp_path, settings, llm=_StallingLLM())
    session = await orchestrator.create_chat("Cancel")
    subscriber = orchestrator.relay.subscribe(session.id)

    pending = asyncio.create_task(_ask(orchestrator, session.id))
    while True:
        event = await asyncio.wait_for(subscriber.get(), timeout=5)
        if event.kind == "delta":
            break
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    stored = await orchestrator.list_messages(session.id)
    assert [turn.content for turn in stored] == [settings.prompts.initial_bot_message, "what is the square root of 16?"]


@pytest.mark.asyncio
async def test_memory_failure_during_plan_acquisition_fails_the_turn(tmp_path, settings) -> None:
    orchestrator = _orchestrator(tmp_path, settings, llm=FakeLLM(plan=SQRT_PLAN), memory_store=StaticMemoryStore(fail=True))
    session = await orchestrator.create_chat("Failures")

    with pytest.raises(MemoryRetrievalError):
        await _ask(orchestrator, session.id)

    stored = await orchestrator.list_messages(session.id)
    assert [turn.turn_type for turn in stored] == [TurnType.MESSAGE, TurnType.MESSAGE]
    assert orchestrator.llm.streamed == []


@pytest.mark.asyncio
async def test_turns_in_one_chat_run_one_after_another(tmp_path, settings) -> None:
    orchestrator = _orchestrator(tmp_path, settings)
    session = await orchestrator.create_chat("Ordering")

    await asyncio.gather(
        _ask(orchestrator, session.id, message="first"),
        _ask(orchestrator, session.id, message="second"),
    )

    stored = await orchestrator.list_messages(session.id)
    assert [turn.content for turn in stored][1:] == ["first", "Hello Alice!", "second", "Hello Alice!"]
    gc.collect()
    assert len(orchestrator._chat_locks) == 0

from __future__ import annotations

import asyncio
import logging
import os
import weakref
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from parley.core.approvals.service import ApprovalOutcome, PlanApprovalService
from parley.core.chat.schemas import ChatSession, ChatTurn, TurnType
from parley.core.chat.store import ChatMessageStore, ChatSessionStore, default_state_dir
from parley.core.config.loader import ParleySettings, load_settings
from parley.core.errors import ChatSessionNotFoundError, ExtractionError
from parley.core.logging.context import get_log_context, log_context
from parley.core.memory.extractor import SemanticMemoryExtractor
from parley.core.memory.retrievers import DocumentMemoryRetriever, SemanticMemoryRetriever
from parley.core.memory.store import MemorySearch, MemoryStore
from parley.core.models.llm_provider import CompletionClient, ParleyLLM
from parley.core.models.prompts import PLAN_REJECTED_RESPONSE
from parley.core.observability.trace import Trace
from parley.core.planning.acquirer import PlanAcquirer
from parley.core.planning.executor import PlanExecutor
from parley.core.planning.planner import ChatPlanner
from parley.core.planning.schemas import PlanOutcome, PlanState, ProposedPlan
from parley.core.skills.builtin.math import register_math_skill
from parley.core.skills.registry import FunctionRegistry
from parley.core.tokens.counter import TokenCounter, default_counter

from .budget import BudgetAllocation, BudgetAllocator
from .extractors import AudienceExtractor, ExtractionRequest, IntentExtractor
from .prompt import BotResponsePrompt, PromptAssembler
from .relay import MessageRelay
from .responder import StreamingResponder

STATUS_AUDIENCE = "Extracting audience"
STATUS_INTENT = "Extracting user intent"
STATUS_PLAN = "Acquiring external information"
STATUS_MEMORIES = "Extracting memories"
STATUS_MODEL = "Invoking the AI model"
STATUS_SAVING = "Saving message"

USAGE_KEYS = (
    "audienceExtraction",
    "userIntentExtraction",
    "metaPromptTemplate",
    "responseCompletion",
    "workingMemoryExtraction",
    "longTermMemoryExtraction",
)


@dataclass
class ChatResponse:
    turn: ChatTurn
    prompt: BotResponsePrompt | None = None
    proposed_plan: ProposedPlan | None = None
    trace_events: list[dict[str, Any]] = field(default_factory=list)


class ChatOrchestrator:
    def __init__(
        self,
        settings: ParleySettings | None = None,
        llm: CompletionClient | None = None,
        counter: TokenCounter | None = None,
        registry: FunctionRegistry | None = None,
        sessions: ChatSessionStore | None = None,
        messages: ChatMessageStore | None = None,
        memory_store: MemorySearch | None = None,
        relay: MessageRelay | None = None,
        state_dir: Path | None = None,
    ) -> None:
        self.state_dir = state_dir or default_state_dir()
        self.settings = settings or load_settings()
        self.llm = llm or ParleyLLM()
        self.counter = counter or default_counter()
        self.registry = registry or self._default_registry()
        self.sessions = sessions or ChatSessionStore(state_dir=self.state_dir)
        self.messages = messages or ChatMessageStore(state_dir=self.state_dir)
        self.memory_store = memory_store or MemoryStore(state_dir=self.state_dir)
        self.relay = relay or MessageRelay()
        self.logger = logging.getLogger("parley.orchestrator")

        prompts = self.settings.prompts
        self.allocator = BudgetAllocator(prompts, self.counter)
        self.assembler = PromptAssembler(prompts, self.counter)
        self.audience_extractor = AudienceExtractor(self.llm, self.counter, prompts)
        self.intent_extractor = IntentExtractor(self.llm, self.counter, prompts)
        self.semantic_retriever = SemanticMemoryRetriever(self.memory_store, self.counter, prompts)
        self.document_retriever = DocumentMemoryRetriever(self.memory_store, self.counter, prompts)
        self.memory_extractor = SemanticMemoryExtractor(self.llm, self.memory_store, self.counter, prompts)
        self.acquirer = PlanAcquirer(
            planner=ChatPlanner(self.llm, self.registry, self.settings.planner),
            executor=PlanExecutor(self.registry),
            counter=self.counter,
            prompt_options=prompts,
            planner_options=self.settings.planner,
        )
        self.approvals = PlanApprovalService(self.messages)
        self.responder = StreamingResponder(self.llm, self.relay)
        self._chat_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _default_registry(self) -> FunctionRegistry:
        registry = FunctionRegistry()
        if os.getenv("PARLEY_BUILTIN_SKILLS", "on").casefold() == "on":
            register_math_skill(registry)
        return registry

    def _chat_lock(self, chat_id: str) -> asyncio.Lock:
        lock = self._chat_locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._chat_locks[chat_id] = lock
        return lock

    async def create_chat(self, title: str, system_description: str = "", memory_balance: float = 0.5) -> ChatSession:
        session = ChatSession(title=title, system_description=system_description, memory_balance=memory_balance)
        await asyncio.to_thread(self.sessions.upsert, session)
        greeting = ChatTurn.bot_turn(session.id, content=self.settings.prompts.initial_bot_message)
        await asyncio.to_thread(self.messages.upsert, greeting)
        self.logger.info("chat_created", extra={"extra_fields": {"chat_id": session.id}})
        return session

    async def get_chat(self, chat_id: str) -> ChatSession:
        return await self._require_session(chat_id)

    async def list_messages(self, chat_id: str) -> list[ChatTurn]:
        await self._require_session(chat_id)
        return await asyncio.to_thread(self.messages.find_by_chat_id, chat_id)

    async def _require_session(self, chat_id: str) -> ChatSession:
        session = await asyncio.to_thread(self.sessions.get, chat_id)
        if session is None:
            raise ChatSessionNotFoundError(chat_id)
        return session

    async def _status(self, trace: Trace, status: str) -> None:
        trace.add_status(status)
        await self.relay.status(trace.chat_id, status)

    async def get_chat_response(
        self,
        message: str,
        user_id: str,
        user_name: str,
        chat_id: str,
        message_type: str | None = None,
        approved_plan_json: str | None = None,
        approved_plan_message_id: str | None = None,
    ) -> ChatResponse:
        async with self._chat_lock(chat_id):
            with log_context(chat_id=chat_id):
                session = await self._require_session(chat_id)
                user_turn = ChatTurn.user_turn(chat_id, user_id, user_name, message, TurnType.parse(message_type))
                await asyncio.to_thread(self.messages.upsert, user_turn)
                with log_context(turn_id=user_turn.id):
                    trace = Trace(chat_id=chat_id, turn_id=user_turn.id, correlation_id=get_log_context().get("correlation_id"))
                    trace.emit("UserMessageSaved", {"message_type": user_turn.turn_type.value})
                    return await self._respond(session, user_turn, trace, approved_plan_json, approved_plan_message_id)

    async def _review_plan_action(
        self, chat_id: str, approved_plan_json: str, approved_plan_message_id: str | None
    ) -> ApprovalOutcome:
        try:
            client_plan = ProposedPlan.model_validate_json(approved_plan_json)
        except ValidationError as exc:
            raise ValueError(f"invalid plan payload: {exc.error_count()} errors") from exc

        message_id = approved_plan_message_id or client_plan.generated_plan_message_id
        if client_plan.state != PlanState.DERIVED and not message_id:
            raise ValueError("a plan action needs the id of the message that proposed it")
        return await self.approvals.review(chat_id, message_id or "", client_plan)

    async def _commit_plan_action(self, chat_id: str, reviewed: ApprovalOutcome, trace: Trace) -> ApprovalOutcome:
        outcome = await self.approvals.commit(chat_id, reviewed)
        trace.emit(
            "PlanActionApplied",
            {"state": outcome.plan.state.value, "changed": outcome.changed, "message_id": outcome.message_id},
        )
        return outcome

    async def _respond(
        self,
        session: ChatSession,
        user_turn: ChatTurn,
        trace: Trace,
        approved_plan_json: str | None,
        approved_plan_message_id: str | None,
    ) -> ChatResponse:
        chat_id = session.id
        usage = {key: 0 for key in USAGE_KEYS}

        # Approvals are validated up front and saved only after both extractions succeed.
        approval: ApprovalOutcome | None = None
        if approved_plan_json:
            approval = await self._review_plan_action(chat_id, approved_plan_json, approved_plan_message_id)
            if approval.rejected:
                approval = await self._commit_plan_action(chat_id, approval, trace)
                if approval.rejected:
                    bot_turn = ChatTurn.bot_turn(chat_id, content=PLAN_REJECTED_RESPONSE)
                    return await self._save_reply(bot_turn, usage, trace)
        executing = approval.plan if approval is not None and approval.should_execute else None

        history = await asyncio.to_thread(self.messages.find_by_chat_id, chat_id)
        request = ExtractionRequest(chat_id=chat_id, user_id=user_turn.user_id, user_name=user_turn.user_name, history_turns=history)

        await self._status(trace, STATUS_AUDIENCE)
        audience = await self.audience_extractor.extract(request)
        usage["audienceExtraction"] = audience.token_usage
        if not audience.ok:
            trace.emit("ExtractionFailed", {"stage": "audience", "error": audience.error})
            raise ExtractionError("audience", audience.error or "unknown error")

        if executing is not None and executing.user_intent:
            user_intent = executing.user_intent
        else:
            await self._status(trace, STATUS_INTENT)
            intent = await self.intent_extractor.extract(request)
            usage["userIntentExtraction"] = intent.token_usage
            if not intent.ok:
                trace.emit("ExtractionFailed", {"stage": "intent", "error": intent.error})
                raise ExtractionError("intent", intent.error or "unknown error")
            user_intent = intent.value
        trace.emit("SignalsExtracted", {"audience_len": len(audience.value), "intent_len": len(user_intent)})

        if approval is not None and executing is not None:
            approval = await self._commit_plan_action(chat_id, approval, trace)
            if not approval.should_execute:
                executing = None

        allocation = self.allocator.allocate(audience.value, user_intent, self.assembler.fixed_cost_parts(user_turn))
        trace.emit(
            "BudgetAllocated",
            {"remaining": allocation.remaining, "plan_tokens": allocation.plan_tokens, "memory_tokens": allocation.memory_tokens},
        )

        plan_outcome, (chat_memories, document_memories) = await asyncio.gather(
            self._acquire_plan(user_turn, user_intent, audience.value, allocation, executing, trace),
            self._retrieve_memories(session, user_intent, allocation, trace),
        )

        if plan_outcome.proposed_plan is not None:
            return await self._save_proposed_plan(chat_id, plan_outcome.proposed_plan, usage, trace)

        if plan_outcome.bot_response:
            bot_turn = ChatTurn.bot_turn(chat_id, content=plan_outcome.bot_response)
            if plan_outcome.metadata is not None:
                bot_turn.prompt = {"planExecutionMetadata": plan_outcome.metadata.model_dump(by_alias=True)}
            return await self._save_reply(bot_turn, usage, trace)

        memory_text = "\n".join(part for part in [chat_memories, document_memories] if part)
        allocation = allocation.with_history(plan_outcome.text, memory_text, self.counter)
        prompt = self.assembler.assemble(
            user_turn=user_turn,
            turns=history,
            audience=audience.value,
            user_intent=user_intent,
            plan_text=plan_outcome.text,
            chat_memories=chat_memories,
            document_memories=document_memories,
            history_tokens=allocation.history_tokens or 0,
        )
        usage["metaPromptTemplate"] = prompt.token_count

        await self._status(trace, STATUS_MODEL)
        bot_turn = ChatTurn.bot_turn(chat_id)
        await self.relay.message(chat_id, bot_turn.model_dump(mode="json"))
        await self.responder.stream(bot_turn, prompt.meta_prompt_messages, self.settings.prompts.response_settings())
        usage["responseCompletion"] = self.counter.count(bot_turn.content)
        trace.emit("ResponseGenerated", {"chars": len(bot_turn.content)})

        if self.settings.prompts.memory_extraction_enabled:
            usage.update(await self.memory_extractor.extract(chat_id, [*history, bot_turn]))

        bot_turn.prompt = prompt.model_dump()
        response = await self._save_reply(bot_turn, usage, trace)
        response.prompt = prompt
        return response

    async def _acquire_plan(
        self,
        user_turn: ChatTurn,
        user_intent: str,
        audience: str,
        allocation: BudgetAllocation,
        executing: ProposedPlan | None,
        trace: Trace,
    ) -> PlanOutcome:
        await self._status(trace, STATUS_PLAN)
        if executing is not None:
            return await self.acquirer.execute(executing, allocation.plan_tokens, trace=trace)
        return await self.acquirer.acquire(
            user_intent,
            allocation.plan_tokens,
            context={"audience": audience},
            original_user_input=user_turn.content,
            trace=trace,
        )

    async def _retrieve_memories(
        self, session: ChatSession, user_intent: str, allocation: BudgetAllocation, trace: Trace
    ) -> tuple[str, str]:
        await self._status(trace, STATUS_MEMORIES)
        chat_memories, document_memories = await asyncio.gather(
            self.semantic_retriever.query(user_intent, session.id, allocation.semantic_memory_tokens, session.memory_balance),
            self.document_retriever.query(user_intent, session.id, allocation.document_memory_tokens),
        )
        trace.emit("MemoriesRetrieved", {"chat_memories": bool(chat_memories), "document_memories": bool(document_memories)})
        return chat_memories, document_memories

    async def _save_proposed_plan(
        self, chat_id: str, proposed: ProposedPlan, usage: dict[str, int], trace: Trace
    ) -> ChatResponse:
        bot_turn = ChatTurn.bot_turn(chat_id, turn_type=TurnType.PLAN)
        proposed = proposed.model_copy(update={"generated_plan_message_id": bot_turn.id})
        bot_turn.content = proposed.to_json()
        response = await self._save_reply(bot_turn, usage, trace)
        response.proposed_plan = proposed
        return response

    async def _save_reply(self, bot_turn: ChatTurn, usage: dict[str, int], trace: Trace) -> ChatResponse:
        await self._status(trace, STATUS_SAVING)
        bot_turn.token_usage = dict(usage)
        await asyncio.to_thread(self.messages.upsert, bot_turn)
        await self.relay.message(bot_turn.chat_id, bot_turn.model_dump(mode="json"))
        trace.emit("BotMessageSaved", {"turn_type": bot_turn.turn_type.value, "bot_turn_id": bot_turn.id})
        self.logger.info(
            "chat_turn_completed",
            extra={"extra_fields": {"bot_turn_id": bot_turn.id, "turn_type": bot_turn.turn_type.value, "token_usage": usage}},
        )
        return ChatResponse(turn=bot_turn, trace_events=trace.events)

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass

from pydantic import ValidationError

from parley.core.chat.schemas import ChatTurn, TurnType
from parley.core.chat.store import ChatMessageStore
from parley.core.errors import ChatMessageNotFoundError, StalePlanError
from parley.core.planning.schemas import PlanState, ProposedPlan


@dataclass
class ApprovalOutcome:
    plan: ProposedPlan
    changed: bool
    turn: ChatTurn | None = None
    message_id: str | None = None

    @property
    def should_execute(self) -> bool:
        return self.changed and self.plan.state in {PlanState.APPROVED, PlanState.DERIVED}

    @property
    def rejected(self) -> bool:
        return self.changed and self.plan.state == PlanState.REJECTED


class PlanApprovalService:
    def __init__(self, messages: ChatMessageStore) -> None:
        self.messages = messages
        self.logger = logging.getLogger("parley.approvals")
        # Entries disappear once no turn holds the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, message_id: str) -> asyncio.Lock:
        lock = self._locks.get(message_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[message_id] = lock
        return lock

    def derive(self, plan: ProposedPlan) -> ProposedPlan:
        """A re-run of an earlier plan; it runs without going back through approval."""
        return plan.model_copy(update={"state": PlanState.DERIVED})

    async def _load(self, chat_id: str, message_id: str) -> tuple[ChatTurn, ProposedPlan]:
        turn = await asyncio.to_thread(self.messages.get, message_id)
        if turn is None or turn.chat_id != chat_id or turn.turn_type != TurnType.PLAN:
            raise ChatMessageNotFoundError(message_id, chat_id)
        try:
            stored = ProposedPlan.model_validate_json(turn.content)
        except ValidationError as exc:
            raise ChatMessageNotFoundError(message_id, chat_id) from exc
        return turn, stored

    def _ignored(self, message_id: str, stored: ProposedPlan, turn: ChatTurn, requested: PlanState) -> ApprovalOutcome:
        self.logger.info(
            "plan_action_ignored",
            extra={"extra_fields": {"message_id": message_id, "state": stored.state.value, "requested": requested.value}},
        )
        return ApprovalOutcome(plan=stored, changed=False, turn=turn, message_id=message_id)

    async def review(self, chat_id: str, message_id: str, client_plan: ProposedPlan) -> ApprovalOutcome:
        """Validate a plan action against the stored plan without saving anything."""
        if client_plan.state == PlanState.NO_OP:
            raise StalePlanError(message_id)
        if client_plan.state == PlanState.DERIVED:
            return ApprovalOutcome(plan=self.derive(client_plan), changed=True)
        if client_plan.state not in {PlanState.APPROVED, PlanState.REJECTED}:
            raise ValueError(f"plan action must approve or reject, got {client_plan.state.value}")

        turn, stored = await self._load(chat_id, message_id)
        if stored.state.is_terminal:
            return self._ignored(message_id, stored, turn, client_plan.state)
        if stored.state != PlanState.PLAN_APPROVAL_REQUIRED:
            raise StalePlanError(message_id)

        # The client's copy carries any parameters the user edited before approving.
        updated = client_plan.model_copy(
            update={
                "generated_plan_message_id": message_id,
                "user_intent": client_plan.user_intent or stored.user_intent,
                "original_user_input": client_plan.original_user_input or stored.original_user_input,
            }
        )
        return ApprovalOutcome(plan=updated, changed=True, turn=turn, message_id=message_id)

    async def commit(self, chat_id: str, outcome: ApprovalOutcome) -> ApprovalOutcome:
        """Persist a reviewed transition unless another turn already settled the plan."""
        if not outcome.changed or outcome.message_id is None:
            return outcome

        message_id = outcome.message_id
        async with self._lock_for(message_id):
            turn, stored = await self._load(chat_id, message_id)
            if stored.state.is_terminal:
                return self._ignored(message_id, stored, turn, outcome.plan.state)
            if stored.state != PlanState.PLAN_APPROVAL_REQUIRED:
                raise StalePlanError(message_id)
            turn = turn.model_copy(update={"content": outcome.plan.to_json()})
            await asyncio.to_thread(self.messages.upsert, turn)

        self.logger.info(
            "plan_state_changed",
            extra={"extra_fields": {"message_id": message_id, "from": stored.state.value, "to": outcome.plan.state.value}},
        )
        return ApprovalOutcome(plan=outcome.plan, changed=True, turn=turn, message_id=message_id)

    async def apply(self, chat_id: str, message_id: str, client_plan: ProposedPlan) -> ApprovalOutcome:
        return await self.commit(chat_id, await self.review(chat_id, message_id, client_plan))

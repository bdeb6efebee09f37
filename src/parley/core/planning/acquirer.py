from __future__ import annotations

import json
import logging
from typing import Any

from parley.core.config.loader import PlannerOptions, PlanType, PromptOptions
from parley.core.errors import PlanExecutionError, PlanningError
from parley.core.models.llm_provider import LLMOutputError, LLMUnavailable
from parley.core.models.prompts import planner_goal, render_template
from parley.core.observability.trace import Trace
from parley.core.planning.executor import PlanExecutor
from parley.core.planning.planner import STEPWISE_NOT_FOUND, ChatPlanner
from parley.core.planning.schemas import PlanOutcome, PlanState, ProposedPlan
from parley.core.tokens.counter import TokenCounter

RESULT_HEADER = "RESULT: "
_PLANNER_FAILURES = (PlanningError, LLMUnavailable, LLMOutputError)


class PlanAcquirer:
    def __init__(
        self,
        planner: ChatPlanner,
        executor: PlanExecutor,
        counter: TokenCounter,
        prompt_options: PromptOptions,
        planner_options: PlannerOptions,
    ) -> None:
        self.planner = planner
        self.executor = executor
        self.counter = counter
        self.prompt_options = prompt_options
        self.planner_options = planner_options
        self.logger = logging.getLogger("parley.planning")

    async def acquire(
        self,
        user_intent: str,
        token_limit: int,
        context: dict[str, str],
        original_user_input: str,
        trace: Trace | None = None,
    ) -> PlanOutcome:
        if len(self.planner.registry) == 0:
            return PlanOutcome()

        goal = planner_goal(user_intent, context)
        if self.planner_options.type == PlanType.STEPWISE:
            return await self._stepwise(goal, token_limit, trace)

        try:
            plan = await self.planner.create_plan(goal)
        except _PLANNER_FAILURES as exc:
            self._degraded("plan_creation_failed", exc, trace)
            return PlanOutcome()

        if not plan.has_steps:
            return PlanOutcome()

        proposed = ProposedPlan(
            plan=plan,
            type=self.planner_options.type,
            state=PlanState.PLAN_APPROVAL_REQUIRED,
            user_intent=user_intent,
            original_user_input=original_user_input,
        )
        if trace is not None:
            trace.emit("PlanProposed", {"functions": plan.function_ids(), "type": proposed.type.value})
        return PlanOutcome(proposed_plan=proposed)

    async def execute(self, proposed: ProposedPlan, token_limit: int, trace: Trace | None = None) -> PlanOutcome:
        """Run an approved or derived plan and render its result within the token limit."""
        try:
            run = await self.executor.execute(proposed.plan, trace=trace)
        except PlanExecutionError as exc:
            self._degraded("plan_execution_failed", exc, trace)
            return PlanOutcome()

        functions_used = f"FUNCTIONS USED: {'; '.join(run.functions_used)}"
        limit = token_limit - self.counter.count(functions_used) - self.counter.count(RESULT_HEADER)
        last_function = run.functions_used[-1] if run.functions_used else "plan"
        result = self._fit_result(run.result, limit, last_function, proposed.type)
        text = f"{self.prompt_options.plan_results_description}\n{functions_used}\n{RESULT_HEADER}{result.strip()}"
        return PlanOutcome(text=text)

    async def _stepwise(self, goal: str, token_limit: int, trace: Trace | None) -> PlanOutcome:
        try:
            metadata = await self.planner.run_stepwise(goal)
        except _PLANNER_FAILURES as exc:
            self._degraded("stepwise_failed", exc, trace)
            return PlanOutcome()

        if trace is not None:
            trace.emit("StepwiseCompleted", {"functions_used": metadata.functions_used, "time_taken": metadata.time_taken})
        if STEPWISE_NOT_FOUND.casefold() in metadata.raw_result.casefold():
            return PlanOutcome(metadata=metadata)

        supplement = render_template(
            self.prompt_options.stepwise_planner_supplement,
            plan_functions=metadata.functions_used or "N/A",
        )
        result = self._fit_result(metadata.raw_result, token_limit - self.counter.count(supplement), "plan", PlanType.STEPWISE)
        bot_response = metadata.raw_result if self.planner_options.use_stepwise_result_as_bot_response else None
        return PlanOutcome(
            text=f'{supplement}\n\nResult:\n"{result}"',
            metadata=metadata,
            bot_response=bot_response or None,
        )

    def _degraded(self, event: str, exc: Exception, trace: Trace | None) -> None:
        self.logger.warning(event, extra={"extra_fields": {"error": str(exc), "error_type": type(exc).__name__}})
        if trace is not None:
            trace.emit("PlanningDegraded", {"reason": event, "error": str(exc)})

    def _fit_result(self, result: str, token_limit: int, last_function: str, plan_type: PlanType) -> str:
        document = _extract_json(result)
        if document is None:
            return result

        compact = json.dumps(document, ensure_ascii=False)
        if self.counter.count(compact) < token_limit:
            return compact

        descriptor = ""
        if isinstance(document, dict) and len(document) == 1:
            key, value = next(iter(document.items()))
            token_limit -= self.counter.count(key)
            descriptor = f"{key}: "
            document = value

        kept: list[Any] = []
        if isinstance(document, dict):
            candidates = [{key: value} for key, value in document.items()]
        elif isinstance(document, list):
            candidates = list(document)
        else:
            candidates = []
        for item in candidates:
            cost = self.counter.count(json.dumps(item, ensure_ascii=False))
            if token_limit - cost > 0:
                kept.append(item)
                token_limit -= cost
            else:
                break

        if kept:
            return f"{descriptor}{json.dumps(kept, ensure_ascii=False)}"
        source = "plan" if plan_type == PlanType.SEQUENTIAL else last_function
        return f"JSON response from {source} is too large to be consumed at this time."


def _extract_json(result: str) -> Any | None:
    try:
        document = json.loads(result)
    except (json.JSONDecodeError, TypeError):
        return None
    if isinstance(document, dict) and str(document.get("contentType", "")).startswith("application/json"):
        content = document.get("content")
        if isinstance(content, str):
            try:
                return json.loads(content)
            except json.JSONDecodeError:
                return None
        return content
    if isinstance(document, (dict, list)):
        return document
    return None

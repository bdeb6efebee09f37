from __future__ import annotations

import json
import logging
import re
import time
from datetime import timedelta
from typing import Any

from pydantic import BaseModel, ValidationError

from parley.core.config.loader import CompletionSettings, PlannerOptions, PlanType
from parley.core.errors import PlanningError
from parley.core.models.llm_provider import CompletionClient, LLMOutputError, complete_json
from parley.core.models.prompts import (
    action_planner_prompt,
    planner_system_prompt,
    sequential_planner_prompt,
    stepwise_planner_prompt,
)
from parley.core.planning.sanitizer import sanitize_plan
from parley.core.planning.schemas import Plan, PlanExecutionMetadata, PlanStep
from parley.core.skills.base import SkillFunction
from parley.core.skills.registry import FunctionRegistry

STEPWISE_NOT_FOUND = "Result not found, review 'stepsTaken' to see what happened."


class _ActionBody(BaseModel):
    function: Any = ""
    parameters: dict[str, Any] | None = None


class _SequentialStep(BaseModel):
    function: Any = ""
    parameters: dict[str, Any] | None = None
    outputs: list[Any] | None = None


class _SequentialPayload(BaseModel):
    description: Any = ""
    steps: list[_SequentialStep] | None = None


class _StepwiseTurn(BaseModel):
    thought: Any = ""
    action: Any = None
    action_variables: dict[str, Any] | None = None
    final_answer: Any = None


def _strings(values: dict[str, Any] | None) -> dict[str, str]:
    return {str(key): str(value) for key, value in (values or {}).items()}


def _terms(text: str) -> set[str]:
    return {token for token in re.split(r"\W+", text.casefold()) if len(token) > 2}


def function_relevance(goal: str, function: SkillFunction) -> float:
    """Share of a function's description terms that also appear in the goal."""
    function_terms = _terms(" ".join([function.skill_name, function.name, function.description]))
    if not function_terms:
        return 0.0
    return len(function_terms & _terms(goal)) / len(function_terms)


class ChatPlanner:
    def __init__(self, llm: CompletionClient, registry: FunctionRegistry, options: PlannerOptions) -> None:
        self.llm = llm
        self.registry = registry
        self.options = options
        self.logger = logging.getLogger("parley.planning")

    @property
    def plan_type(self) -> PlanType:
        return self.options.type

    def _settings(self, max_tokens: int = 1024) -> CompletionSettings:
        return CompletionSettings(max_tokens=max_tokens, temperature=0.0, top_p=1.0, presence_penalty=0.0, frequency_penalty=0.0)

    def _messages(self, user_prompt: str) -> list[dict[str, str]]:
        return [{"role": "system", "content": planner_system_prompt()}, {"role": "user", "content": user_prompt}]

    def _functions_for(self, goal: str) -> list[SkillFunction]:
        functions = self.registry.list()
        if self.plan_type != PlanType.SEQUENTIAL or self.options.relevancy_threshold <= 0:
            return functions
        return [item for item in functions if function_relevance(goal, item) >= self.options.relevancy_threshold]

    async def create_plan(self, goal: str) -> Plan:
        functions = self._functions_for(goal)
        if not functions:
            return Plan(description=goal)

        described = [function.describe() for function in functions]
        try:
            if self.plan_type == PlanType.ACTION:
                payload = await complete_json(self.llm, self._messages(action_planner_prompt(goal, described)), self._settings())
                plan = self._parse_action(goal, payload)
            else:
                payload = await complete_json(self.llm, self._messages(sequential_planner_prompt(goal, described)), self._settings())
                plan = self._parse_sequential(goal, payload)
        except (ValidationError, ValueError, TypeError) as exc:
            raise PlanningError(f"planner returned an invalid plan: {exc}") from exc

        if self.options.allow_missing_functions:
            return sanitize_plan(plan, self.registry)

        missing = [step.function_id for step in plan.steps if self.registry.try_get(step.skill_name, step.name) is None]
        if missing:
            raise PlanningError(f"plan uses unknown functions: {', '.join(missing)}")
        return plan

    def _parse_action(self, goal: str, payload: dict[str, Any]) -> Plan:
        raw = payload.get("plan") if isinstance(payload.get("plan"), dict) else payload
        body = _ActionBody.model_validate(raw)
        function_id = str(body.function or "").strip()
        if not function_id or "." not in function_id:
            return Plan(description=goal)
        parameters = _strings(body.parameters)
        # An action plan carries its arguments at the top level.
        step = PlanStep.from_function_id(function_id, parameters=dict(parameters))
        return Plan(description=goal, parameters=parameters, steps=[step])

    def _parse_sequential(self, goal: str, payload: dict[str, Any]) -> Plan:
        body = _SequentialPayload.model_validate(payload)
        steps: list[PlanStep] = []
        for raw in body.steps or []:
            function_id = str(raw.function or "").strip()
            if "." not in function_id:
                raise ValueError(f"step function must be SkillName.FunctionName, got {function_id!r}")
            steps.append(
                PlanStep.from_function_id(
                    function_id,
                    parameters=_strings(raw.parameters),
                    outputs=[str(item) for item in raw.outputs or []],
                )
            )
        return Plan(description=str(body.description or goal), steps=steps)

    async def run_stepwise(self, goal: str) -> PlanExecutionMetadata:
        """Think/act loop that calls functions as it goes and returns its final answer with the steps taken."""
        started = time.perf_counter()
        described = self.registry.snapshot()
        steps_taken: list[dict[str, Any]] = []
        functions_used: list[str] = []
        answer = STEPWISE_NOT_FOUND

        for _ in range(self.options.stepwise_max_iterations):
            prompt = stepwise_planner_prompt(goal, described, steps_taken)
            try:
                payload = await complete_json(self.llm, self._messages(prompt), self._settings(self.options.stepwise_max_tokens))
                turn = _StepwiseTurn.model_validate(payload)
            except (LLMOutputError, ValidationError) as exc:
                steps_taken.append({"thought": "", "action": None, "observation": f"invalid planner output: {exc}"})
                continue

            final_answer = turn.final_answer
            action = str(turn.action or "").strip()
            step: dict[str, Any] = {"thought": str(turn.thought or ""), "action": action or None}
            if final_answer:
                step["final_answer"] = str(final_answer)
                steps_taken.append(step)
                answer = str(final_answer)
                break
            if not action:
                step["observation"] = "No action was chosen."
                steps_taken.append(step)
                continue

            function = self.registry.try_get(action)
            variables = _strings(turn.action_variables)
            step["action_variables"] = variables
            if function is None:
                step["observation"] = f"Function {action} is not available."
            else:
                try:
                    step["observation"] = await function.invoke(variables)
                except Exception as exc:
                    step["observation"] = f"Error invoking {function.function_id}: {exc}"
                if function.function_id not in functions_used:
                    functions_used.append(function.function_id)
            steps_taken.append(step)

        elapsed = timedelta(seconds=round(time.perf_counter() - started))
        self.logger.info(
            "stepwise_completed",
            extra={"extra_fields": {"iterations": len(steps_taken), "functions_used": functions_used, "found": answer != STEPWISE_NOT_FOUND}},
        )
        return PlanExecutionMetadata(
            steps_taken=json.dumps(steps_taken, ensure_ascii=False),
            time_taken=str(elapsed),
            functions_used=", ".join(functions_used),
            planner_type=PlanType.STEPWISE,
            raw_result=answer.strip(),
        )

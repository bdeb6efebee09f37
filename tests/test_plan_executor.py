from __future__ import annotations

import pytest

from parley.core.errors import PlanExecutionError
from parley.core.observability.trace import Trace
from parley.core.planning.executor import PlanExecutor
from parley.core.planning.schemas import Plan, PlanStep
from parley.core.skills.builtin.math import register_math_skill
from parley.core.skills.registry import FunctionRegistry


def _executor() -> PlanExecutor:
    registry = FunctionRegistry()
    register_math_skill(registry)
    return PlanExecutor(registry)


@pytest.mark.asyncio
async def test_results_flow_through_plan_result_and_named_outputs() -> None:
    plan = Plan(
        description="goal",
        parameters={"start": "9"},
        steps=[
            PlanStep(skill_name="math", name="Sqrt", parameters={"INPUT": "$start"}, outputs=["ROOT"]),
            PlanStep(skill_name="math", name="Add", parameters={"INPUT": "$PLAN.RESULT", "amount": "10"}),
            PlanStep(skill_name="math", name="Multiply", parameters={"INPUT": "$root", "amount": "$PLAN.RESULT"}),
        ],
    )
    trace = Trace(chat_id="chat-1")

    run = await _executor().execute(plan, trace=trace)

    assert run.result == "39"
    assert run.functions_used == ["math.Sqrt", "math.Add", "math.Multiply"]
    assert trace.names().count("PlanStepExecuted") == 3


@pytest.mark.asyncio
async def test_previous_result_is_the_default_input() -> None:
    plan = Plan(
        description="goal",
        steps=[
            PlanStep(skill_name="math", name="Add", parameters={"INPUT": "1", "amount": "1"}),
            PlanStep(skill_name="math", name="Multiply", parameters={"amount": "3"}),
        ],
    )

    run = await _executor().execute(plan)

    assert run.result == "6"


@pytest.mark.asyncio
async def test_placeholder_blocks_execution() -> None:
    plan = Plan(description="goal", steps=[PlanStep(skill_name="math", name="Sqrt", parameters={"INPUT": "$???"})])

    with pytest.raises(PlanExecutionError, match="needs a value"):
        await _executor().execute(plan)


@pytest.mark.asyncio
async def test_skill_failure_is_wrapped() -> None:
    plan = Plan(
        description="goal",
        steps=[PlanStep(skill_name="math", name="Divide", parameters={"INPUT": "1", "amount": "0"})],
    )

    with pytest.raises(PlanExecutionError, match="divide by zero"):
        await _executor().execute(plan)


@pytest.mark.asyncio
async def test_unregistered_function_is_rejected() -> None:
    plan = Plan(description="goal", steps=[PlanStep(skill_name="web", name="Search")])

    with pytest.raises(PlanExecutionError):
        await _executor().execute(plan)

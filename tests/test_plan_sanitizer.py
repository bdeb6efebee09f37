from __future__ import annotations

from parley.core.planning.sanitizer import sanitize_plan
from parley.core.planning.schemas import Plan, PlanStep
from parley.core.planning.variables import find_references
from parley.core.skills.base import FunctionParameter, SkillFunction
from parley.core.skills.registry import FunctionRegistry


def _registry(*function_ids: str) -> FunctionRegistry:
    registry = FunctionRegistry()
    for function_id in function_ids:
        skill_name, name = function_id.split(".")
        registry.register(
            SkillFunction(skill_name, name, f"{name} things", lambda input="": input, [FunctionParameter("input")])
        )
    return registry


def _step(function_id: str, parameters: dict[str, str] | None = None, outputs: list[str] | None = None) -> PlanStep:
    return PlanStep.from_function_id(function_id, parameters=parameters or {}, outputs=outputs or [])


def test_unregistered_trailing_step_is_dropped() -> None:
    plan = Plan(
        description="find and summarize",
        steps=[
            _step("web.Search", {"INPUT": "weather"}, ["R1"]),
            _step("text.Summarize", {"INPUT": "$R1"}, ["R2"]),
        ],
    )

    sanitized = sanitize_plan(plan, _registry("web.Search"))

    assert [step.function_id for step in sanitized.steps] == ["web.Search"]
    assert sanitized.steps[0] == plan.steps[0]


def test_single_input_reference_to_missing_output_chains_to_previous_result() -> None:
    plan = Plan(
        description="goal",
        steps=[
            _step("web.Search", {"INPUT": "weather"}),
            _step("text.Summarize", {"INPUT": "$NOTES"}),
        ],
    )

    sanitized = sanitize_plan(plan, _registry("web.Search", "text.Summarize"))

    assert sanitized.steps[1].parameters["INPUT"] == "$PLAN.RESULT"


def test_reference_to_dropped_step_output_needs_user_input() -> None:
    plan = Plan(
        description="goal",
        steps=[
            _step("web.Fetch", {"INPUT": "page"}, ["PAGE"]),
            _step("text.Summarize", {"INPUT": "$PAGE"}),
        ],
    )

    sanitized = sanitize_plan(plan, _registry("text.Summarize"))

    assert len(sanitized.steps) == 1
    assert sanitized.steps[0].parameters["INPUT"] == "$???"


def test_non_input_and_multiple_references_need_user_input() -> None:
    plan = Plan(
        description="goal",
        steps=[
            _step("text.Summarize", {"INPUT": "$A and $B", "style": "$STYLE"}),
        ],
    )

    sanitized = sanitize_plan(plan, _registry("text.Summarize"))

    assert sanitized.steps[0].parameters == {"INPUT": "$??? and $???", "style": "$???"}


def test_available_outputs_are_case_insensitive_and_untouched() -> None:
    plan = Plan(
        description="goal",
        steps=[
            _step("web.Search", {"INPUT": "weather"}, ["Results"]),
            _step("text.Summarize", {"INPUT": "Summary of $RESULTS please", "extra": "$PLAN.RESULT"}),
        ],
    )

    sanitized = sanitize_plan(plan, _registry("web.Search", "text.Summarize"))

    assert sanitized.steps[1].parameters == {"INPUT": "Summary of $RESULTS please", "extra": "$PLAN.RESULT"}


def test_forward_reference_is_not_resolved() -> None:
    plan = Plan(
        description="goal",
        steps=[
            _step("text.Summarize", {"INPUT": "$LATER", "tone": "$LATER"}),
            _step("web.Search", {"INPUT": "weather"}, ["LATER"]),
        ],
    )

    sanitized = sanitize_plan(plan, _registry("web.Search", "text.Summarize"))

    assert sanitized.steps[0].parameters == {"INPUT": "$PLAN.RESULT", "tone": "$???"}


def test_top_level_parameters_are_kept() -> None:
    plan = Plan(description="goal", parameters={"city": "Paris"}, steps=[_step("web.Missing")])

    sanitized = sanitize_plan(plan, _registry("web.Search"))

    assert sanitized.steps == []
    assert sanitized.parameters == {"city": "Paris"}
    assert sanitized.description == "goal"


def test_surviving_steps_never_reference_dropped_outputs() -> None:
    registry = _registry("a.One", "a.Three")
    plan = Plan(
        description="goal",
        steps=[
            _step("a.One", {"INPUT": "x"}, ["ONE"]),
            _step("a.Two", {"INPUT": "$ONE"}, ["TWO"]),
            _step("a.Three", {"INPUT": "$TWO", "other": "$ONE $TWO"}, ["THREE"]),
        ],
    )

    sanitized = sanitize_plan(plan, registry)

    assert all(registry.try_get(step.skill_name, step.name) is not None for step in sanitized.steps)
    for step in sanitized.steps:
        for value in step.parameters.values():
            assert "TWO" not in {reference.name for reference in find_references(value)}
    assert sanitized.steps[1].parameters == {"INPUT": "$???", "other": "$ONE $???"}

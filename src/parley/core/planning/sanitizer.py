from __future__ import annotations

import logging

from parley.core.planning.schemas import Plan, PlanStep
from parley.core.planning.variables import (
    INPUT_PARAMETER,
    PLAN_RESULT_REFERENCE,
    UNRESOLVED_REFERENCE,
    VariableReference,
    find_references,
    is_plan_result,
    replace_spans,
)
from parley.core.skills.registry import FunctionRegistry

logger = logging.getLogger("parley.planning")


def sanitize_plan(plan: Plan, registry: FunctionRegistry) -> Plan:
    """Drop steps whose function is not registered and repair the references they leave behind.

    One forward pass: a reference to an output produced by a later step is
    treated the same as a reference to a dropped step's output.
    """
    available: set[str] = set()
    unavailable: set[str] = set()
    kept: list[PlanStep] = []
    dropped: list[str] = []

    for step in plan.steps:
        outputs = {output.casefold() for output in step.outputs}
        if registry.try_get(step.skill_name, step.name) is None:
            unavailable.update(outputs)
            dropped.append(step.function_id)
            continue

        available.update(outputs)
        parameters: dict[str, str] = {}
        for key, value in step.parameters.items():
            references = find_references(value)
            replacements: list[tuple[VariableReference, str]] = []
            for reference in references:
                name = reference.name.casefold()
                if is_plan_result(reference.name) or name in available:
                    continue
                if key.casefold() == INPUT_PARAMETER.casefold() and len(references) == 1 and name not in unavailable:
                    replacements.append((reference, PLAN_RESULT_REFERENCE))
                else:
                    replacements.append((reference, UNRESOLVED_REFERENCE))
            parameters[key] = replace_spans(value, replacements) if replacements else value
        kept.append(step.model_copy(update={"parameters": parameters, "outputs": list(step.outputs)}))

    if dropped:
        logger.info("plan_sanitized", extra={"extra_fields": {"dropped_steps": dropped, "kept_steps": len(kept)}})
    return Plan(description=plan.description, parameters=dict(plan.parameters), steps=kept)

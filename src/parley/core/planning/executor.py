from __future__ import annotations

import logging

from parley.core.errors import PlanExecutionError
from parley.core.observability.trace import Trace
from parley.core.planning.schemas import Plan, PlanRun, PlanStep, StepResult
from parley.core.planning.variables import (
    INPUT_PARAMETER,
    PLAN_RESULT,
    find_references,
    has_unresolved,
    replace_spans,
)
from parley.core.skills.registry import FunctionRegistry


class PlanExecutor:
    def __init__(self, registry: FunctionRegistry) -> None:
        self.registry = registry
        self.logger = logging.getLogger("parley.planning")

    def _resolve(self, value: str, variables: dict[str, str]) -> str:
        references = find_references(value)
        if not references:
            return value
        return replace_spans(value, [(reference, variables.get(reference.name.casefold(), "")) for reference in references])

    def _arguments(self, step: PlanStep, variables: dict[str, str]) -> dict[str, str]:
        arguments: dict[str, str] = {}
        for key, value in step.parameters.items():
            if has_unresolved(value):
                raise PlanExecutionError(f"{step.function_id} needs a value for '{key}' before it can run")
            arguments[key] = self._resolve(value, variables)
        if not any(key.casefold() == INPUT_PARAMETER.casefold() for key in arguments):
            arguments[INPUT_PARAMETER] = variables.get(INPUT_PARAMETER.casefold(), "")
        return arguments

    async def execute(self, plan: Plan, trace: Trace | None = None) -> PlanRun:
        """Run the steps in order, threading each result into the next step's variables."""
        variables = {key.casefold(): value for key, value in plan.parameters.items()}
        variables.setdefault(INPUT_PARAMETER.casefold(), "")
        run = PlanRun()

        for step in plan.steps:
            function = self.registry.try_get(step.skill_name, step.name)
            if function is None:
                raise PlanExecutionError(f"function {step.function_id} is not registered")
            arguments = self._arguments(step, variables)
            try:
                output = await function.invoke(arguments)
            except Exception as exc:
                run.step_results.append(StepResult(function_id=function.function_id, ok=False, error=str(exc)))
                raise PlanExecutionError(f"{function.function_id} failed: {exc}") from exc

            run.step_results.append(StepResult(function_id=function.function_id, ok=True, output=output))
            if trace is not None:
                trace.emit("PlanStepExecuted", {"function": function.function_id, "output_len": len(output)})
            variables[PLAN_RESULT.casefold()] = output
            variables[INPUT_PARAMETER.casefold()] = output
            for name in step.outputs:
                variables[name.casefold()] = output

        run.result = variables.get(PLAN_RESULT.casefold(), "")
        self.logger.info("plan_executed", extra={"extra_fields": {"functions_used": run.functions_used}})
        return run

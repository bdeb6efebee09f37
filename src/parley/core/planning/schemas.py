from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from parley.core.config.loader import PlanType


class PlanState(str, Enum):
    NO_OP = "NoOp"
    PLAN_APPROVAL_REQUIRED = "PlanApprovalRequired"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    DERIVED = "Derived"

    @property
    def is_terminal(self) -> bool:
        return self in {PlanState.APPROVED, PlanState.REJECTED}


class PlanStep(BaseModel):
    skill_name: str
    name: str
    parameters: dict[str, str] = Field(default_factory=dict)
    outputs: list[str] = Field(default_factory=list)

    @property
    def function_id(self) -> str:
        return f"{self.skill_name}.{self.name}"

    @classmethod
    def from_function_id(cls, function_id: str, **kwargs) -> "PlanStep":
        skill_name, _, name = function_id.strip().rpartition(".")
        return cls(skill_name=skill_name, name=name, **kwargs)


class Plan(BaseModel):
    description: str
    parameters: dict[str, str] = Field(default_factory=dict)
    steps: list[PlanStep] = Field(default_factory=list)

    @property
    def has_steps(self) -> bool:
        return bool(self.steps)

    def function_ids(self) -> list[str]:
        return [step.function_id for step in self.steps]


class ProposedPlan(BaseModel):
    """Wire form of a plan stored in a Plan turn and echoed back by clients."""

    model_config = ConfigDict(populate_by_name=True)

    plan: Plan = Field(alias="proposedPlan")
    type: PlanType = PlanType.ACTION
    state: PlanState = PlanState.PLAN_APPROVAL_REQUIRED
    user_intent: str = Field("", alias="userIntent")
    original_user_input: str = Field("", alias="originalUserInput")
    generated_plan_message_id: str | None = Field(None, alias="generatedPlanMessageId")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class PlanExecutionMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    steps_taken: str = Field("", alias="stepsTaken")
    time_taken: str = Field("", alias="timeTaken")
    functions_used: str = Field("", alias="functionsUsed")
    planner_type: PlanType = Field(PlanType.STEPWISE, alias="plannerType")
    raw_result: str = Field("", exclude=True)


class PlanOutcome(BaseModel):
    """What the acquirer hands back to the orchestrator for one turn."""

    text: str = ""
    proposed_plan: ProposedPlan | None = None
    metadata: PlanExecutionMetadata | None = None
    bot_response: str | None = None


class StepResult(BaseModel):
    function_id: str
    ok: bool
    output: str | None = None
    error: str | None = None


class PlanRun(BaseModel):
    result: str = ""
    step_results: list[StepResult] = Field(default_factory=list)

    @property
    def functions_used(self) -> list[str]:
        return [item.function_id for item in self.step_results]

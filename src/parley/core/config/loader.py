"""Configuration loader for Parley."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from parley.core.models import prompts


class PlanType(str, Enum):
    ACTION = "Action"
    SEQUENTIAL = "Sequential"
    STEPWISE = "Stepwise"


class CompletionSettings(BaseModel):
    max_tokens: int = 1024
    temperature: float = 0.7
    top_p: float = 1.0
    presence_penalty: float = 0.5
    frequency_penalty: float = 0.5
    stop: list[str] = Field(default_factory=list)


class PromptOptions(BaseModel):
    completion_token_limit: int = Field(4096, ge=0)
    response_token_limit: int = Field(1024, ge=0)

    external_information_weight: float = Field(0.3, ge=0.0, le=1.0)
    memories_weight: float = Field(0.6, ge=0.0, le=1.0)
    semantic_memory_share: float = Field(0.5, ge=0.0, le=1.0)

    semantic_memory_relevance_upper: float = Field(0.9, ge=0.0, le=1.0)
    semantic_memory_relevance_lower: float = Field(0.6, ge=0.0, le=1.0)
    document_memory_min_relevance: float = Field(0.8, ge=0.0, le=1.0)

    response_temperature: float = 0.7
    response_top_p: float = 1.0
    response_presence_penalty: float = 0.5
    response_frequency_penalty: float = 0.5

    # Extraction rewrites the conversation into one line, so it samples conservatively.
    intent_temperature: float = 0.2
    intent_top_p: float = 1.0
    intent_presence_penalty: float = 0.5
    intent_frequency_penalty: float = 0.5
    intent_stop_sequence: str = "] bot:"

    knowledge_cutoff_date: str = "Saturday, January 1, 2022"
    initial_bot_message: str = prompts.INITIAL_BOT_MESSAGE
    system_description: str = prompts.SYSTEM_DESCRIPTION
    system_response: str = prompts.SYSTEM_RESPONSE
    system_intent: str = prompts.SYSTEM_INTENT
    system_intent_continuation: str = prompts.SYSTEM_INTENT_CONTINUATION
    system_audience: str = prompts.SYSTEM_AUDIENCE
    system_audience_continuation: str = prompts.SYSTEM_AUDIENCE_CONTINUATION
    plan_results_description: str = prompts.PLAN_RESULTS_DESCRIPTION
    stepwise_planner_supplement: str = prompts.STEPWISE_PLANNER_SUPPLEMENT

    system_cognitive: str = prompts.SYSTEM_COGNITIVE
    memory_format: str = prompts.MEMORY_FORMAT
    memory_anti_hallucination: str = prompts.MEMORY_ANTI_HALLUCINATION
    memory_continuation: str = prompts.MEMORY_CONTINUATION
    long_term_memory_name: str = prompts.LONG_TERM_MEMORY_NAME
    long_term_memory_extraction: str = prompts.LONG_TERM_MEMORY_EXTRACTION
    working_memory_name: str = prompts.WORKING_MEMORY_NAME
    working_memory_extraction: str = prompts.WORKING_MEMORY_EXTRACTION
    memory_extraction_enabled: bool = True

    document_collection_prefix: str = "chat-documents-"
    global_document_collection: str = "global-documents"

    default_user_id: str = "c05c61eb-65e4-4223-915a-fe72b0c9ece1"

    @model_validator(mode="after")
    def _check_limits(self) -> "PromptOptions":
        if self.response_token_limit >= self.completion_token_limit:
            raise ValueError("response_token_limit must be smaller than completion_token_limit")
        if self.semantic_memory_relevance_lower > self.semantic_memory_relevance_upper:
            raise ValueError("semantic memory relevance bounds are inverted")
        return self

    @property
    def system_persona(self) -> str:
        return "\n\n".join([self.system_description, self.system_response])

    @property
    def intent_instruction_parts(self) -> list[str]:
        return [self.system_description, self.system_intent, self.system_intent_continuation]

    @property
    def audience_instruction_parts(self) -> list[str]:
        return [self.system_audience, self.system_audience_continuation]

    @property
    def memory_map(self) -> dict[str, str]:
        return {
            self.long_term_memory_name: self._memory_prompt(self.long_term_memory_name, self.long_term_memory_extraction),
            self.working_memory_name: self._memory_prompt(self.working_memory_name, self.working_memory_extraction),
        }

    def _memory_prompt(self, name: str, extraction: str) -> str:
        return "\n".join(
            [
                self.system_cognitive,
                f"{name} Description:\n{extraction}",
                self.memory_anti_hallucination,
                f"Chat Description:\n{self.system_description}",
            ]
        )

    def response_settings(self) -> CompletionSettings:
        return CompletionSettings(
            max_tokens=self.response_token_limit,
            temperature=self.response_temperature,
            top_p=self.response_top_p,
            presence_penalty=self.response_presence_penalty,
            frequency_penalty=self.response_frequency_penalty,
        )

    def intent_settings(self) -> CompletionSettings:
        return CompletionSettings(
            max_tokens=self.response_token_limit,
            temperature=self.intent_temperature,
            top_p=self.intent_top_p,
            presence_penalty=self.intent_presence_penalty,
            frequency_penalty=self.intent_frequency_penalty,
            stop=[self.intent_stop_sequence],
        )


class PlannerOptions(BaseModel):
    type: PlanType = PlanType.ACTION
    relevancy_threshold: float = Field(0.0, ge=0.0, le=1.0)
    allow_missing_functions: bool = True
    use_stepwise_result_as_bot_response: bool = False
    stepwise_max_iterations: int = Field(15, ge=1)
    stepwise_max_tokens: int = Field(2048, ge=1)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            for member in PlanType:
                if member.value.casefold() == value.strip().casefold():
                    return member
        return value


class ParleySettings(BaseModel):
    prompts: PromptOptions = Field(default_factory=PromptOptions)
    planner: PlannerOptions = Field(default_factory=PlannerOptions)


def _env_overrides(model: type[BaseModel], prefix: str) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for name in model.model_fields:
        raw = os.getenv(f"{prefix}{name.upper()}")
        if raw is not None:
            overrides[name] = raw
    return overrides


def load_settings(path: Optional[str] = None) -> ParleySettings:
    """Load settings from an optional YAML file, then apply PARLEY_* environment overrides."""
    cfg_path = path or os.getenv("PARLEY_CONFIG_PATH")
    data: dict[str, Any] = {}
    if cfg_path:
        with Path(cfg_path).expanduser().open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}

    prompts_data = {**(data.get("prompts") or {}), **_env_overrides(PromptOptions, "PARLEY_PROMPTS_")}
    planner_data = {**(data.get("planner") or {}), **_env_overrides(PlannerOptions, "PARLEY_PLANNER_")}
    return ParleySettings(
        prompts=PromptOptions.model_validate(prompts_data),
        planner=PlannerOptions.model_validate(planner_data),
    )

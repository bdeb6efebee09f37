from __future__ import annotations

import pytest

from parley.core.config.loader import ParleySettings, PlannerOptions, PromptOptions


@pytest.fixture(autouse=True)
def isolated_state(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("PARLEY_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("PARLEY_LLM_PROVIDER", "off")
    monkeypatch.delenv("PARLEY_CONFIG_PATH", raising=False)


@pytest.fixture
def prompt_options() -> PromptOptions:
    return PromptOptions()


@pytest.fixture
def settings() -> ParleySettings:
    return ParleySettings(prompts=PromptOptions(), planner=PlannerOptions())

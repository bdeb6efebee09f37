from __future__ import annotations

from parley.core.skills.base import SkillFunction


class FunctionRegistry:
    def __init__(self) -> None:
        self._functions: dict[str, SkillFunction] = {}

    def register(self, function: SkillFunction) -> None:
        self._functions[function.function_id.casefold()] = function

    def try_get(self, skill_name: str, name: str | None = None) -> SkillFunction | None:
        """Look up by ``skill.name`` or by separate skill and function names, ignoring case."""
        key = skill_name if name is None else f"{skill_name}.{name}"
        return self._functions.get(key.casefold())

    def list(self) -> list[SkillFunction]:
        return sorted(self._functions.values(), key=lambda item: item.function_id.casefold())

    def names(self) -> list[str]:
        return [function.function_id for function in self.list()]

    def snapshot(self) -> list[dict]:
        return [function.describe() for function in self.list()]

    def __len__(self) -> int:
        return len(self._functions)

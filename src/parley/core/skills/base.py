from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable


@dataclass
class FunctionParameter:
    name: str
    description: str = ""
    default: str | None = None


@dataclass
class SkillFunction:
    skill_name: str
    name: str
    description: str
    handler: Callable[..., Any]
    parameters: list[FunctionParameter] = field(default_factory=list)

    @property
    def function_id(self) -> str:
        return f"{self.skill_name}.{self.name}"

    def describe(self) -> dict[str, Any]:
        return {
            "function": self.function_id,
            "description": self.description,
            "parameters": [
                {"name": param.name, "description": param.description, "default": param.default}
                for param in self.parameters
            ],
        }

    async def invoke(self, args: dict[str, str]) -> str:
        """Call the handler with keyword arguments; sync handlers run in a worker thread."""
        accepted = {param.name.casefold(): param for param in self.parameters}
        kwargs: dict[str, str] = {}
        for param in self.parameters:
            if param.default is not None:
                kwargs[param.name] = param.default
        for key, value in args.items():
            param = accepted.get(key.casefold())
            if param is not None:
                kwargs[param.name] = value

        if inspect.iscoroutinefunction(self.handler):
            result = await self.handler(**kwargs)
        else:
            result = await asyncio.to_thread(self.handler, **kwargs)
        return "" if result is None else str(result)

from __future__ import annotations

import re
from dataclasses import dataclass

PLAN_RESULT = "PLAN.RESULT"
PLAN_RESULT_REFERENCE = f"${PLAN_RESULT}"
UNRESOLVED_REFERENCE = "$???"
INPUT_PARAMETER = "INPUT"

_REFERENCE = re.compile(r"\$([A-Za-z][\w-]*(?:\.[A-Za-z][\w-]*)?)")


@dataclass(frozen=True)
class VariableReference:
    name: str
    start: int
    end: int


def find_references(value: str) -> list[VariableReference]:
    return [VariableReference(match.group(1), match.start(), match.end()) for match in _REFERENCE.finditer(value)]


def is_plan_result(name: str) -> bool:
    return name.casefold() == PLAN_RESULT.casefold()


def replace_spans(value: str, replacements: list[tuple[VariableReference, str]]) -> str:
    """Replace reference spans right to left so earlier offsets stay valid."""
    rewritten = value
    for reference, text in sorted(replacements, key=lambda item: item[0].start, reverse=True):
        rewritten = rewritten[: reference.start] + text + rewritten[reference.end :]
    return rewritten


def has_unresolved(value: str) -> bool:
    return UNRESOLVED_REFERENCE in value

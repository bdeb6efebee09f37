from __future__ import annotations

import math

from parley.core.skills.base import FunctionParameter, SkillFunction
from parley.core.skills.registry import FunctionRegistry

SKILL_NAME = "math"


def _number(value: str) -> float:
    try:
        return float(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"not a number: {value!r}") from exc


def _format(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return repr(value)


def sqrt(input: str) -> str:
    number = _number(input)
    if number < 0:
        raise ValueError("cannot take the square root of a negative number")
    return _format(math.sqrt(number))


def add(input: str, amount: str) -> str:
    return _format(_number(input) + _number(amount))


def subtract(input: str, amount: str) -> str:
    return _format(_number(input) - _number(amount))


def multiply(input: str, amount: str) -> str:
    return _format(_number(input) * _number(amount))


def divide(input: str, amount: str) -> str:
    divisor = _number(amount)
    if divisor == 0:
        raise ValueError("cannot divide by zero")
    return _format(_number(input) / divisor)


def register_math_skill(registry: FunctionRegistry) -> None:
    value = FunctionParameter(name="input", description="The value to operate on")
    amount = FunctionParameter(name="amount", description="The amount to apply")
    registry.register(
        SkillFunction(SKILL_NAME, "Sqrt", "Take the square root of a number", sqrt, [value])
    )
    registry.register(
        SkillFunction(SKILL_NAME, "Add", "Add an amount to a value", add, [value, amount])
    )
    registry.register(
        SkillFunction(SKILL_NAME, "Subtract", "Subtract an amount from a value", subtract, [value, amount])
    )
    registry.register(
        SkillFunction(SKILL_NAME, "Multiply", "Multiply a value by an amount", multiply, [value, amount])
    )
    registry.register(
        SkillFunction(SKILL_NAME, "Divide", "Divide a value by an amount", divide, [value, amount])
    )

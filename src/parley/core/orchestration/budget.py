from __future__ import annotations

import math

from pydantic import BaseModel

from parley.core.config.loader import PromptOptions
from parley.core.errors import TokenBudgetError
from parley.core.tokens.counter import TokenCounter


class BudgetAllocation(BaseModel):
    total_ceiling: int
    response_reserve: int
    audience_tokens: int
    intent_tokens: int
    fixed_tokens: int
    remaining: int
    plan_tokens: int
    memory_tokens: int
    semantic_memory_tokens: int
    document_memory_tokens: int
    history_tokens: int | None = None

    def with_history(self, plan_text: str, memory_text: str, counter: TokenCounter) -> "BudgetAllocation":
        history = max(0, self.remaining - counter.count(plan_text) - counter.count(memory_text))
        return self.model_copy(update={"history_tokens": history})


class BudgetAllocator:
    def __init__(self, options: PromptOptions, counter: TokenCounter) -> None:
        self.options = options
        self.counter = counter

    def allocate(self, audience: str, user_intent: str, fixed_text: str | list[str] = "") -> BudgetAllocation:
        """Split what is left of the context window between plan results and memories.

        History is costed last from whatever plan and memory text leave behind.
        """
        fixed_parts = [fixed_text] if isinstance(fixed_text, str) else fixed_text
        total = self.options.completion_token_limit
        reserve = self.options.response_token_limit
        audience_tokens = self.counter.count(audience)
        intent_tokens = self.counter.count(user_intent)
        fixed_tokens = sum(self.counter.count(part) for part in fixed_parts)

        remaining = total - reserve - audience_tokens - intent_tokens - fixed_tokens
        if remaining < 0:
            raise TokenBudgetError(
                f"token limit {total} cannot fit the response reserve ({reserve}), "
                f"extracted signals ({audience_tokens + intent_tokens}) and fixed prompt ({fixed_tokens})"
            )

        memory_tokens = math.floor(remaining * self.options.memories_weight)
        semantic_tokens = math.floor(memory_tokens * self.options.semantic_memory_share)
        return BudgetAllocation(
            total_ceiling=total,
            response_reserve=reserve,
            audience_tokens=audience_tokens,
            intent_tokens=intent_tokens,
            fixed_tokens=fixed_tokens,
            remaining=remaining,
            plan_tokens=math.floor(remaining * self.options.external_information_weight),
            memory_tokens=memory_tokens,
            semantic_memory_tokens=semantic_tokens,
            document_memory_tokens=memory_tokens - semantic_tokens,
        )

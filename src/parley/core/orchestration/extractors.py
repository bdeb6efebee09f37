from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from parley.core.chat.history import render_history, window_history
from parley.core.chat.schemas import ChatTurn
from parley.core.config.loader import PromptOptions
from parley.core.models.llm_provider import CompletionClient
from parley.core.models.prompts import render_template
from parley.core.tokens.counter import TokenCounter

INTENT_PREFIX = "User intent: "
AUDIENCE_PREFIX = "List of participants: "


@dataclass
class ExtractionRequest:
    chat_id: str
    user_id: str
    user_name: str
    history_turns: list[ChatTurn] = field(default_factory=list)


@dataclass
class ExtractionResult:
    ok: bool
    value: str = ""
    error: str | None = None
    token_usage: int = 0


class _SignalExtractor:
    stage = "signal"
    prefix = ""

    def __init__(self, llm: CompletionClient, counter: TokenCounter, options: PromptOptions) -> None:
        self.llm = llm
        self.counter = counter
        self.options = options
        self.logger = logging.getLogger("parley.extraction")

    def _fragments(self, request: ExtractionRequest) -> list[str]:
        raise NotImplementedError

    def _render(self, template: str, request: ExtractionRequest) -> str:
        now = datetime.now(timezone.utc)
        return render_template(
            template,
            knowledge_cutoff=self.options.knowledge_cutoff_date,
            current_date=now.strftime("%A, %B %d, %Y"),
            current_time=now.strftime("%Y-%m-%d %H:%M:%S"),
            audience=request.user_name,
        )

    def build_prompt(self, request: ExtractionRequest) -> str:
        fragments = [self._render(fragment, request) for fragment in self._fragments(request)]
        budget = (
            self.options.completion_token_limit
            - self.options.response_token_limit
            - sum(self.counter.count(fragment) for fragment in fragments)
        )
        history = render_history(
            window_history(request.history_turns, budget, self.counter, default_user_id=self.options.default_user_id)
        )
        # History sits just before the continuation fragment.
        parts = [*fragments[:-1], history, fragments[-1]]
        return "\n".join(part for part in parts if part)

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        prompt = self.build_prompt(request)
        try:
            text = await self.llm.complete([{"role": "system", "content": prompt}], self.options.intent_settings())
        except Exception as exc:
            self.logger.warning(
                f"{self.stage}_extraction_failed",
                extra={"extra_fields": {"error": str(exc), "error_type": type(exc).__name__}},
            )
            return ExtractionResult(ok=False, error=str(exc), token_usage=self.counter.count(prompt))

        usage = self.counter.count(prompt) + self.counter.count(text)
        value = text.strip()
        if not value:
            self.logger.warning(f"{self.stage}_extraction_failed", extra={"extra_fields": {"error": "empty result"}})
            return ExtractionResult(ok=False, error="empty result", token_usage=usage)
        return ExtractionResult(ok=True, value=f"{self.prefix}{value}", token_usage=usage)


class IntentExtractor(_SignalExtractor):
    stage = "intent"
    prefix = INTENT_PREFIX

    def _fragments(self, request: ExtractionRequest) -> list[str]:
        return self.options.intent_instruction_parts


class AudienceExtractor(_SignalExtractor):
    stage = "audience"
    prefix = AUDIENCE_PREFIX

    def _fragments(self, request: ExtractionRequest) -> list[str]:
        return self.options.audience_instruction_parts

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        if request.user_id == self.options.default_user_id:
            return ExtractionResult(ok=True)
        return await super().extract(request)

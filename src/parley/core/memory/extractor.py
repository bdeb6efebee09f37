from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from pydantic import ValidationError

from parley.core.chat.history import render_history, window_history
from parley.core.chat.schemas import ChatTurn
from parley.core.config.loader import PromptOptions
from parley.core.memory.retrievers import memory_collection_name
from parley.core.memory.schemas import ExtractedMemory
from parley.core.memory.store import MemorySearch
from parley.core.models.llm_provider import CompletionClient, LLMOutputError, LLMUnavailable, parse_json_object
from parley.core.models.prompts import render_template
from parley.core.tokens.counter import TokenCounter

DUPLICATE_RELEVANCE = 0.9


def usage_key(memory_name: str) -> str:
    return f"{memory_name[:1].lower()}{memory_name[1:]}Extraction"


class SemanticMemoryExtractor:
    def __init__(self, llm: CompletionClient, store: MemorySearch, counter: TokenCounter, options: PromptOptions) -> None:
        self.llm = llm
        self.store = store
        self.counter = counter
        self.options = options
        self.logger = logging.getLogger("parley.memory")

    def _prompt(self, memory_name: str, turns: list[ChatTurn]) -> str:
        instructions = render_template(
            self.options.memory_map[memory_name],
            knowledge_cutoff=self.options.knowledge_cutoff_date,
            current_date=datetime.now(timezone.utc).strftime("%A, %B %d, %Y"),
        )
        continuation = render_template(self.options.memory_continuation, format=self.options.memory_format)
        budget = (
            self.options.completion_token_limit
            - self.options.response_token_limit
            - self.counter.count(instructions)
            - self.counter.count(continuation)
        )
        history = render_history(
            window_history(turns, budget, self.counter, default_user_id=self.options.default_user_id)
        )
        return "\n\n".join(part for part in [instructions, history, continuation] if part)

    async def extract(self, chat_id: str, turns: list[ChatTurn]) -> dict[str, int]:
        """Store new memories of each type for the chat and return token usage per memory type."""
        usage: dict[str, int] = {}
        for memory_name in self.options.memory_map:
            prompt = self._prompt(memory_name, turns)
            try:
                raw = await self.llm.complete([{"role": "system", "content": prompt}], self.options.response_settings())
                usage[usage_key(memory_name)] = self.counter.count(prompt) + self.counter.count(raw)
                parsed = parse_json_object(raw)
                if parsed is None:
                    raise LLMOutputError("memory extraction did not return JSON")
                memory = ExtractedMemory.model_validate(parsed)
            except (LLMUnavailable, LLMOutputError, ValidationError) as exc:
                self.logger.info(
                    "memory_extraction_skipped",
                    extra={"extra_fields": {"memory_name": memory_name, "error": str(exc)}},
                )
                continue

            stored = 0
            collection = memory_collection_name(chat_id, memory_name)
            try:
                for item in memory.items:
                    text = item.to_formatted_string()
                    existing = await asyncio.to_thread(self.store.search, collection, text, DUPLICATE_RELEVANCE, 1)
                    if existing:
                        continue
                    await asyncio.to_thread(self.store.upsert, collection, text, memory_name)
                    stored += 1
            except OSError as exc:
                self.logger.error(
                    "memory_store_failed",
                    extra={"extra_fields": {"memory_name": memory_name, "collection": collection, "error": str(exc)}},
                )
            self.logger.info(
                "memory_extracted",
                extra={"extra_fields": {"memory_name": memory_name, "items": len(memory.items), "stored": stored}},
            )
        return usage

from __future__ import annotations

import asyncio
import logging

from parley.core.config.loader import PromptOptions
from parley.core.errors import MemoryRetrievalError
from parley.core.memory.schemas import MemoryMatch
from parley.core.memory.store import MemorySearch
from parley.core.tokens.counter import TokenCounter

SEARCH_LIMIT = 100
SEMANTIC_HEADER = "Past memories (format: [memory type] <label>: <details>):"
DOCUMENT_HEADER = "User has also shared some document snippets:"


def memory_collection_name(chat_id: str, memory_name: str) -> str:
    return f"{chat_id}-{memory_name}"


def select_within_budget(
    candidates: list[tuple[MemoryMatch, str]], token_budget: int, counter: TokenCounter
) -> list[tuple[MemoryMatch, str]]:
    """Highest relevance first; stops at the first candidate that does not fit."""
    ranked = sorted(candidates, key=lambda item: item[0].relevance, reverse=True)
    remaining = token_budget
    selected: list[tuple[MemoryMatch, str]] = []
    for match, label in ranked:
        cost = counter.count(match.snippet.text)
        if remaining - cost > 0:
            selected.append((match, label))
            remaining -= cost
        else:
            break
    return selected


class _Retriever:
    name = "memory"

    def __init__(self, store: MemorySearch, counter: TokenCounter, options: PromptOptions) -> None:
        self.store = store
        self.counter = counter
        self.options = options
        self.logger = logging.getLogger("parley.memory")

    async def _search(self, collection: str, query_text: str, min_relevance: float) -> list[MemoryMatch]:
        try:
            return await asyncio.to_thread(self.store.search, collection, query_text, min_relevance, SEARCH_LIMIT)
        except Exception as exc:
            self.logger.error(
                "memory_search_failed",
                extra={"extra_fields": {"collection": collection, "retriever": self.name, "error": str(exc)}},
            )
            raise MemoryRetrievalError(self.name, str(exc)) from exc


class SemanticMemoryRetriever(_Retriever):
    name = "semantic"

    def relevance_threshold(self, memory_name: str, memory_balance: float) -> float:
        upper = self.options.semantic_memory_relevance_upper
        lower = self.options.semantic_memory_relevance_lower
        if memory_balance < 0.0 or memory_balance > 1.0:
            raise ValueError(f"Invalid memory balance: {memory_balance}")
        if memory_name == self.options.long_term_memory_name:
            return (lower - upper) * memory_balance + upper
        if memory_name == self.options.working_memory_name:
            return (upper - lower) * memory_balance + lower
        raise ValueError(f"Invalid memory name: {memory_name}")

    async def query(self, query_text: str, scope_id: str, token_budget: int, memory_balance: float = 0.5) -> str:
        if token_budget <= 0:
            return ""
        names = list(self.options.memory_map)
        thresholds = [self.relevance_threshold(name, memory_balance) for name in names]
        results = await asyncio.gather(
            *[
                self._search(memory_collection_name(scope_id, name), query_text, threshold)
                for name, threshold in zip(names, thresholds)
            ]
        )
        candidates = [(match, name) for name, matches in zip(names, results) for match in matches]
        selected = select_within_budget(candidates, token_budget, self.counter)
        if not selected:
            return ""
        lines = [f"[{label}] {match.snippet.text}" for match, label in selected]
        return SEMANTIC_HEADER + "\n" + "\n".join(lines)


class DocumentMemoryRetriever(_Retriever):
    name = "document"

    def collections(self, chat_id: str) -> list[str]:
        return [f"{self.options.document_collection_prefix}{chat_id}", self.options.global_document_collection]

    async def query(self, query_text: str, scope_id: str, token_budget: int) -> str:
        if token_budget <= 0:
            return ""
        collections = self.collections(scope_id)
        results = await asyncio.gather(
            *[self._search(collection, query_text, self.options.document_memory_min_relevance) for collection in collections]
        )
        candidates = [(match, match.snippet.description) for matches in results for match in matches]
        selected = select_within_budget(candidates, token_budget, self.counter)
        if not selected:
            return ""
        snippets = "\n\n".join(f"Snippet from {label}: {match.snippet.text}" for match, label in selected)
        return f"{DOCUMENT_HEADER}\n{snippets}"

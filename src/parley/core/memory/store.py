from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Protocol

from parley.core.chat.store import default_state_dir
from parley.core.memory.schemas import MemoryMatch, MemorySnippet


class MemorySearch(Protocol):
    def search(self, scope_id: str, query_text: str, min_relevance: float, limit: int) -> list[MemoryMatch]: ...

    def upsert(self, scope_id: str, text: str, description: str = "") -> MemorySnippet: ...


def _terms(text: str) -> set[str]:
    return {token for token in re.split(r"\W+", text.casefold()) if token}


def keyword_relevance(query_text: str, text: str) -> float:
    """Fraction of query terms found in the text, in [0, 1]."""
    query_terms = _terms(query_text)
    if not query_terms:
        return 0.0
    return len(query_terms & _terms(text)) / len(query_terms)


class MemoryStore:
    def __init__(self, state_dir: Path | None = None) -> None:
        self.state_dir = state_dir or default_state_dir()
        self.file_path = self.state_dir / "memory" / "snippets.jsonl"
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _load_all(self) -> list[MemorySnippet]:
        if not self.file_path.exists():
            return []

        items: list[MemorySnippet] = []
        with self.file_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    items.append(MemorySnippet.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValueError):
                    continue
        return items

    def _write_all(self, snippets: list[MemorySnippet]) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        with self.file_path.open("w", encoding="utf-8") as handle:
            for snippet in snippets:
                handle.write(json.dumps(snippet.model_dump(), ensure_ascii=False) + "\n")

    def upsert(self, scope_id: str, text: str, description: str = "") -> MemorySnippet:
        with self._lock:
            snippets = self._load_all()
            for index, snippet in enumerate(snippets):
                if snippet.scope_id == scope_id and snippet.text == text:
                    updated = snippet.model_copy(update={"description": description})
                    snippets[index] = updated
                    self._write_all(snippets)
                    return updated

            new_snippet = MemorySnippet(scope_id=scope_id, text=text, description=description)
            snippets.append(new_snippet)
            self._write_all(snippets)
            return new_snippet

    def list_all(self, scope_id: str | None = None) -> list[MemorySnippet]:
        with self._lock:
            snippets = self._load_all()
        if scope_id is None:
            return snippets
        return [snippet for snippet in snippets if snippet.scope_id == scope_id]

    def search(self, scope_id: str, query_text: str, min_relevance: float, limit: int) -> list[MemoryMatch]:
        if limit <= 0:
            return []
        matches: list[MemoryMatch] = []
        for snippet in self.list_all(scope_id):
            relevance = keyword_relevance(query_text, snippet.text)
            if relevance >= min_relevance:
                matches.append(MemoryMatch(snippet=snippet, relevance=relevance))
        matches.sort(key=lambda item: item.relevance, reverse=True)
        return matches[:limit]

from __future__ import annotations

from functools import lru_cache
from typing import Protocol

import tiktoken

DEFAULT_ENCODING = "cl100k_base"


class TokenCounter(Protocol):
    def count(self, text: str) -> int: ...


class TiktokenCounter:
    """Counts tokens with a fixed tiktoken encoding."""

    def __init__(self, encoding_name: str = DEFAULT_ENCODING) -> None:
        self.encoding_name = encoding_name
        self._encoding = tiktoken.get_encoding(encoding_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))


@lru_cache(maxsize=1)
def default_counter() -> TiktokenCounter:
    return TiktokenCounter()


def token_count(text: str) -> int:
    return default_counter().count(text)


def message_token_count(counter: TokenCounter, role: str, content: str) -> int:
    # Rough costing of a chat message object: {"role": ..., "content": ...}
    newline = counter.count("\n") if role == "system" else 0
    return newline + counter.count(f"role:{role}") + counter.count(f"content:{content}")

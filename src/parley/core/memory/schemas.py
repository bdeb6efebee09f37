from __future__ import annotations

from uuid import uuid4

from pydantic import BaseModel, Field

from parley.core.chat.schemas import now_iso


class MemorySnippet(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    scope_id: str
    text: str
    description: str = ""
    created_at_iso: str = Field(default_factory=now_iso)


class MemoryMatch(BaseModel):
    snippet: MemorySnippet
    relevance: float


class MemoryItem(BaseModel):
    label: str
    details: str

    def to_formatted_string(self) -> str:
        return f"{self.label}: {self.details}"


class ExtractedMemory(BaseModel):
    items: list[MemoryItem] = Field(default_factory=list)

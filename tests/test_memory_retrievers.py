from __future__ import annotations

import pytest

from fakes import StaticMemoryStore, WordCounter
from parley.core.config.loader import PromptOptions
from parley.core.errors import MemoryRetrievalError
from parley.core.memory.retrievers import (
    DOCUMENT_HEADER,
    SEMANTIC_HEADER,
    DocumentMemoryRetriever,
    SemanticMemoryRetriever,
)
from parley.core.memory.store import MemoryStore, keyword_relevance


def _options() -> PromptOptions:
    return PromptOptions(semantic_memory_relevance_upper=0.9, semantic_memory_relevance_lower=0.6)


def test_relevance_threshold_follows_memory_balance() -> None:
    retriever = SemanticMemoryRetriever(StaticMemoryStore(), WordCounter(), _options())

    assert retriever.relevance_threshold("LongTermMemory", 0.0) == pytest.approx(0.9)
    assert retriever.relevance_threshold("LongTermMemory", 1.0) == pytest.approx(0.6)
    assert retriever.relevance_threshold("WorkingMemory", 0.0) == pytest.approx(0.6)
    assert retriever.relevance_threshold("WorkingMemory", 0.5) == pytest.approx(0.75)
    with pytest.raises(ValueError):
        retriever.relevance_threshold("WorkingMemory", 1.5)
    with pytest.raises(ValueError):
        retriever.relevance_threshold("EpisodicMemory", 0.5)


@pytest.mark.asyncio
async def test_semantic_retriever_ranks_and_stops_at_first_misfit() -> None:
    store = StaticMemoryStore(
        {
            "chat-1-LongTermMemory": [("name: Alice likes tea", 0.95, "LongTermMemory")],
            "chat-1-WorkingMemory": [
                ("task: planning a very long trip across many countries", 0.99, "WorkingMemory"),
                ("mood: happy", 0.8, "WorkingMemory"),
            ],
        }
    )
    retriever = SemanticMemoryRetriever(store, WordCounter(), _options())

    text = await retriever.query("trip", "chat-1", token_budget=12, memory_balance=0.5)

    # The 9-word memory fits; the 4-word one does not, so the 2-word one is never reached.
    assert text == f"{SEMANTIC_HEADER}\n[WorkingMemory] task: planning a very long trip across many countries"
    assert {search[0] for search in store.searches} == {"chat-1-LongTermMemory", "chat-1-WorkingMemory"}


@pytest.mark.asyncio
async def test_ties_keep_store_order() -> None:
    store = StaticMemoryStore(
        {
            "chat-1-LongTermMemory": [("first: one", 0.9, ""), ("second: two", 0.9, "")],
        }
    )
    retriever = SemanticMemoryRetriever(store, WordCounter(), _options())

    text = await retriever.query("q", "chat-1", token_budget=100, memory_balance=1.0)

    assert text.splitlines()[1:] == ["[LongTermMemory] first: one", "[LongTermMemory] second: two"]


@pytest.mark.asyncio
async def test_document_retriever_searches_chat_and_global_collections() -> None:
    store = StaticMemoryStore(
        {
            "chat-documents-chat-1": [("the router resets nightly", 0.85, "manual.pdf")],
            "global-documents": [("holidays are listed online", 0.95, "handbook.docx"), ("irrelevant", 0.2, "x")],
        }
    )
    retriever = DocumentMemoryRetriever(store, WordCounter(), _options())

    text = await retriever.query("router", "chat-1", token_budget=100)

    assert text.startswith(DOCUMENT_HEADER)
    assert "Snippet from handbook.docx: holidays are listed online" in text
    assert "Snippet from manual.pdf: the router resets nightly" in text
    assert text.index("handbook.docx") < text.index("manual.pdf")
    assert "irrelevant" not in text
    assert all(search[2] == 0.8 for search in store.searches)


@pytest.mark.asyncio
async def test_empty_results_and_zero_budget_give_no_block() -> None:
    retriever = DocumentMemoryRetriever(StaticMemoryStore(), WordCounter(), _options())

    assert await retriever.query("anything", "chat-1", token_budget=100) == ""
    assert await retriever.query("anything", "chat-1", token_budget=0) == ""


@pytest.mark.asyncio
async def test_store_failure_fails_retrieval() -> None:
    retriever = SemanticMemoryRetriever(StaticMemoryStore(fail=True), WordCounter(), _options())

    with pytest.raises(MemoryRetrievalError):
        await retriever.query("anything", "chat-1", token_budget=100)


def test_memory_store_search_and_upsert(tmp_path) -> None:
    store = MemoryStore(state_dir=tmp_path)
    store.upsert("chat-1-WorkingMemory", "trip: Alice is planning a trip to Lisbon", "WorkingMemory")
    store.upsert("chat-1-WorkingMemory", "trip: Alice is planning a trip to Lisbon", "WorkingMemory")
    store.upsert("chat-2-WorkingMemory", "trip: Bob is planning a trip to Oslo", "WorkingMemory")

    matches = store.search("chat-1-WorkingMemory", "Lisbon trip", min_relevance=0.5, limit=10)

    assert len(store.list_all("chat-1-WorkingMemory")) == 1
    assert len(matches) == 1
    assert matches[0].relevance == pytest.approx(1.0)
    assert store.search("chat-1-WorkingMemory", "Oslo", min_relevance=0.5, limit=10) == []


def test_keyword_relevance_is_bounded() -> None:
    assert keyword_relevance("", "anything") == 0.0
    assert keyword_relevance("tea coffee", "Alice likes tea") == pytest.approx(0.5)
    assert 0.0 <= keyword_relevance("a b c", "a b c d") <= 1.0

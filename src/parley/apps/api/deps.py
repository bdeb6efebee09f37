from __future__ import annotations

from functools import lru_cache

from parley.core.chat.store import default_state_dir
from parley.core.orchestration.orchestrator import ChatOrchestrator


@lru_cache(maxsize=1)
def get_orchestrator() -> ChatOrchestrator:
    return ChatOrchestrator(state_dir=default_state_dir())

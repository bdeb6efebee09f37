from __future__ import annotations

import logging

from parley.core.chat.schemas import ChatTurn
from parley.core.config.loader import CompletionSettings
from parley.core.models.llm_provider import CompletionClient
from parley.core.orchestration.relay import MessageRelay


class StreamingResponder:
    def __init__(self, llm: CompletionClient, relay: MessageRelay) -> None:
        self.llm = llm
        self.relay = relay
        self.logger = logging.getLogger("parley.responder")

    async def stream(self, turn: ChatTurn, messages: list[dict[str, str]], settings: CompletionSettings) -> ChatTurn:
        """Append deltas to the bot turn in arrival order. Persisting the turn is left to the caller."""
        chunks = 0
        async for delta in self.llm.stream(messages, settings):
            if not delta:
                continue
            turn.content += delta
            chunks += 1
            await self.relay.delta(turn.chat_id, turn.id, delta)
        self.logger.info("response_streamed", extra={"extra_fields": {"chunks": chunks, "chars": len(turn.content)}})
        return turn

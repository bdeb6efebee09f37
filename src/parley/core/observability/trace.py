from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Trace:
    chat_id: str
    turn_id: str | None = None
    correlation_id: str | None = None
    statuses: list[str] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)

    def add_status(self, status: str) -> None:
        self.statuses.append(status)

    def emit(self, name: str, payload: dict[str, Any]) -> None:
        enriched_payload = dict(payload)
        enriched_payload.setdefault("chat_id", self.chat_id)
        if self.turn_id:
            enriched_payload.setdefault("turn_id", self.turn_id)
        if self.correlation_id:
            enriched_payload.setdefault("correlation_id", self.correlation_id)
        self.events.append({"event": name, "payload": enriched_payload})

    def names(self) -> list[str]:
        return [event["event"] for event in self.events]

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel

from parley.core.chat.schemas import ChatSession, ChatTurn

RecordT = TypeVar("RecordT", bound=BaseModel)


def default_state_dir() -> Path:
    configured = os.getenv("PARLEY_STATE_DIR")
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".parley"


class _JsonlStore(Generic[RecordT]):
    file_name: str
    record_type: type[RecordT]

    def __init__(self, state_dir: Path | None = None) -> None:
        self.state_dir = state_dir or default_state_dir()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.file_path = self.state_dir / self.file_name
        self._lock = threading.Lock()

    def _load_all(self) -> list[RecordT]:
        if not self.file_path.exists() or self.file_path.stat().st_size == 0:
            return []

        records: list[RecordT] = []
        with self.file_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(self.record_type.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValueError):
                    continue
        return records

    def _rewrite(self, records: list[RecordT]) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        with self.file_path.open("w", encoding="utf-8") as handle:
            for record in records:
                handle.write(json.dumps(record.model_dump(mode="json"), ensure_ascii=False) + "\n")

    def get(self, id: str) -> RecordT | None:
        with self._lock:
            for record in self._load_all():
                if record.id == id:
                    return record
        return None

    def upsert(self, record: RecordT) -> None:
        with self._lock:
            records = self._load_all()
            for idx, current in enumerate(records):
                if current.id == record.id:
                    records[idx] = record
                    break
            else:
                records.append(record)
            self._rewrite(records)

    def delete(self, id: str) -> None:
        with self._lock:
            self._rewrite([record for record in self._load_all() if record.id != id])


class ChatSessionStore(_JsonlStore[ChatSession]):
    file_name = "chat_sessions.jsonl"
    record_type = ChatSession

    def list_all(self) -> list[ChatSession]:
        with self._lock:
            records = self._load_all()
        return sorted(records, key=lambda item: item.created_at_iso, reverse=True)


class ChatMessageStore(_JsonlStore[ChatTurn]):
    file_name = "chat_messages.jsonl"
    record_type = ChatTurn

    def find_by_chat_id(self, chat_id: str) -> list[ChatTurn]:
        with self._lock:
            records = [record for record in self._load_all() if record.chat_id == chat_id]
        return sorted(records, key=lambda item: item.timestamp_iso)

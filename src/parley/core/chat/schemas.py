from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

BOT_USER_ID = "bot"
BOT_USER_NAME = "bot"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuthorRole(str, Enum):
    USER = "User"
    BOT = "Bot"
    PARTICIPANT = "Participant"


class TurnType(str, Enum):
    MESSAGE = "Message"
    PLAN = "Plan"
    DOCUMENT = "Document"

    @classmethod
    def parse(cls, value: str | None) -> "TurnType":
        if value:
            for member in cls:
                if member.value.casefold() == value.strip().casefold():
                    return member
        return cls.MESSAGE


class ChatSession(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str
    system_description: str = ""
    memory_balance: float = 0.5
    created_at_iso: str = Field(default_factory=now_iso)


class ChatTurn(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    chat_id: str
    user_id: str
    user_name: str
    content: str
    author_role: AuthorRole = AuthorRole.USER
    turn_type: TurnType = TurnType.MESSAGE
    timestamp_iso: str = Field(default_factory=now_iso)
    token_usage: dict[str, int] = Field(default_factory=dict)
    prompt: dict[str, Any] | None = None

    @field_validator("turn_type", mode="before")
    @classmethod
    def _lenient_type(cls, value: Any) -> Any:
        if isinstance(value, TurnType):
            return value
        return TurnType.parse(str(value) if value is not None else None)

    @classmethod
    def user_turn(cls, chat_id: str, user_id: str, user_name: str, content: str, turn_type: TurnType = TurnType.MESSAGE) -> "ChatTurn":
        return cls(
            chat_id=chat_id,
            user_id=user_id,
            user_name=user_name,
            content=content,
            author_role=AuthorRole.USER,
            turn_type=turn_type,
        )

    @classmethod
    def bot_turn(cls, chat_id: str, content: str = "", turn_type: TurnType = TurnType.MESSAGE) -> "ChatTurn":
        return cls(
            chat_id=chat_id,
            user_id=BOT_USER_ID,
            user_name=BOT_USER_NAME,
            content=content,
            author_role=AuthorRole.BOT,
            turn_type=turn_type,
        )

    def to_formatted_string(self) -> str:
        return f"[{self.display_time()}] {self.user_name}: {self.content}"

    def display_time(self) -> str:
        try:
            stamp = datetime.fromisoformat(self.timestamp_iso)
        except ValueError:
            return self.timestamp_iso
        return stamp.strftime("%Y-%m-%d %H:%M:%S")

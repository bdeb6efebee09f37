from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Iterable

from parley.core.chat.schemas import AuthorRole, ChatTurn, TurnType
from parley.core.tokens.counter import TokenCounter, message_token_count

_INTENT_PATTERN = re.compile(r"User intent: (.*?)(?=\"|$)")


@dataclass(frozen=True)
class HistoryLine:
    turn_id: str
    role: str
    text: str
    tokens: int

    def as_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.text}


def _plan_intent(content: str) -> str | None:
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        data = None
    if isinstance(data, dict):
        intent = str(data.get("userIntent") or "").strip()
        if intent.startswith("User intent:"):
            intent = intent[len("User intent:") :].strip()
        return intent or None
    match = _INTENT_PATTERN.search(content)
    return match.group(1).strip() if match else None


def format_history_turn(turn: ChatTurn, default_user_id: str | None = None) -> str:
    if turn.turn_type == TurnType.PLAN:
        intent = _plan_intent(turn.content)
        summary = f"Bot proposed plan for intent: {intent}" if intent else "Bot proposed plan"
        return f"[{turn.display_time()}] {summary}"
    if turn.author_role == AuthorRole.BOT:
        return turn.content.strip()
    if default_user_id and turn.user_id == default_user_id:
        return f"[{turn.display_time()}] {turn.content}".strip()
    return turn.to_formatted_string().strip()


def window_history(
    turns: Iterable[ChatTurn],
    token_budget: int,
    counter: TokenCounter,
    exclude_ids: Iterable[str] = (),
    default_user_id: str | None = None,
    as_messages: bool = False,
) -> list[HistoryLine]:
    """Newest-first selection of turns that fit the budget, returned oldest-first.

    Document turns never enter the window. Selection stops at the first turn
    that does not fit, so older turns are never used to fill a gap.
    """
    excluded = set(exclude_ids)
    ordered = sorted((turn for turn in turns if turn.id not in excluded), key=lambda item: item.timestamp_iso)
    remaining = max(0, token_budget)
    selected: list[HistoryLine] = []
    for turn in reversed(ordered):
        if turn.turn_type == TurnType.DOCUMENT:
            continue
        text = format_history_turn(turn, default_user_id)
        role = "assistant" if turn.author_role == AuthorRole.BOT else "user"
        if as_messages:
            cost = message_token_count(counter, "system" if role == "assistant" else "user", text)
        else:
            cost = counter.count(text)
        if remaining - cost < 0:
            break
        selected.append(HistoryLine(turn_id=turn.id, role=role, text=text, tokens=cost))
        remaining -= cost
    selected.reverse()
    return selected


def render_history(lines: list[HistoryLine]) -> str:
    if not lines:
        return ""
    return "Chat history:\n" + "\n".join(line.text for line in lines)

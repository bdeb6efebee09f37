from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field

from parley.core.chat.history import HistoryLine, window_history
from parley.core.chat.schemas import ChatTurn
from parley.core.config.loader import PromptOptions
from parley.core.models.prompts import render_template
from parley.core.tokens.counter import TokenCounter, message_token_count


class BotResponsePrompt(BaseModel):
    system_persona: str
    audience: str = ""
    user_intent: str = ""
    external_information: str = ""
    chat_memories: str = ""
    document_memories: str = ""
    chat_history: str = ""
    user_message: str = ""
    meta_prompt_messages: list[dict[str, str]] = Field(default_factory=list)
    token_count: int = 0


class PromptAssembler:
    def __init__(self, options: PromptOptions, counter: TokenCounter) -> None:
        self.options = options
        self.counter = counter

    def system_persona(self) -> str:
        return render_template(
            self.options.system_persona,
            knowledge_cutoff=self.options.knowledge_cutoff_date,
            current_date=datetime.now(timezone.utc).strftime("%A, %B %d, %Y"),
        )

    def user_message(self, turn: ChatTurn) -> str:
        if turn.user_id == self.options.default_user_id:
            return f"[{turn.display_time()}] {turn.content}"
        return turn.to_formatted_string()

    def fixed_cost_parts(self, turn: ChatTurn) -> list[str]:
        return [self.system_persona(), self.user_message(turn)]

    def window(self, turns: list[ChatTurn], history_tokens: int, exclude_id: str) -> list[HistoryLine]:
        if history_tokens <= 0:
            return []
        return window_history(
            turns,
            history_tokens,
            self.counter,
            exclude_ids=[exclude_id],
            default_user_id=self.options.default_user_id,
            as_messages=True,
        )

    def assemble(
        self,
        user_turn: ChatTurn,
        turns: list[ChatTurn],
        audience: str,
        user_intent: str,
        plan_text: str,
        chat_memories: str,
        document_memories: str,
        history_tokens: int,
    ) -> BotResponsePrompt:
        """Persona, signals, plan result, memories, history, then the new user turn. Empty parts are left out."""
        persona = self.system_persona()
        history = self.window(turns, history_tokens, exclude_id=user_turn.id)
        user_message = self.user_message(user_turn)

        messages: list[dict[str, str]] = [{"role": "system", "content": persona}]
        for block in [audience, user_intent, plan_text, chat_memories, document_memories]:
            if block.strip():
                messages.append({"role": "system", "content": block})
        messages.extend(line.as_message() for line in history)
        messages.append({"role": "user", "content": user_message})

        token_count = sum(
            message_token_count(self.counter, message["role"], message["content"]) for message in messages
        )
        return BotResponsePrompt(
            system_persona=persona,
            audience=audience,
            user_intent=user_intent,
            external_information=plan_text,
            chat_memories=chat_memories,
            document_memories=document_memories,
            chat_history="\n".join(line.text for line in history),
            user_message=user_message,
            meta_prompt_messages=messages,
            token_count=token_count,
        )

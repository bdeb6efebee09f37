from __future__ import annotations


class ParleyError(RuntimeError):
    """Base error for chat orchestration failures."""


class ChatSessionNotFoundError(ParleyError):
    def __init__(self, chat_id: str) -> None:
        super().__init__(f"Chat session {chat_id} does not exist.")
        self.chat_id = chat_id


class ChatMessageNotFoundError(ParleyError):
    def __init__(self, message_id: str, chat_id: str) -> None:
        super().__init__(f"Chat message {message_id} does not exist in chat {chat_id}.")
        self.message_id = message_id
        self.chat_id = chat_id


class ExtractionError(ParleyError):
    """Raised when intent or audience extraction fails; the turn is aborted."""

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"{stage} extraction failed: {reason}")
        self.stage = stage
        self.reason = reason


class TokenBudgetError(ParleyError):
    """Raised when the configured token limits cannot fit the fixed prompt parts."""


class PlanningError(ParleyError):
    pass


class PlanExecutionError(ParleyError):
    pass


class MemoryRetrievalError(ParleyError):
    def __init__(self, retriever: str, reason: str) -> None:
        super().__init__(f"{retriever} memory retrieval failed: {reason}")
        self.retriever = retriever


class StalePlanError(ParleyError):
    """Raised when a client acts on a plan view the server no longer recognises."""

    def __init__(self, message_id: str) -> None:
        super().__init__("This plan is out of date. Please request a fresh plan.")
        self.message_id = message_id

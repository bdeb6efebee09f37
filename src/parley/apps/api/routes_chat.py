from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from parley.core.errors import (
    ChatMessageNotFoundError,
    ChatSessionNotFoundError,
    ExtractionError,
    MemoryRetrievalError,
    StalePlanError,
    TokenBudgetError,
)
from parley.core.models.llm_provider import LLMOutputError, LLMUnavailable
from parley.core.orchestration.orchestrator import ChatOrchestrator
from parley.core.orchestration.relay import RelayEvent

from .deps import get_orchestrator

router = APIRouter()
logger = logging.getLogger("parley.api")

UNKNOWN_CHAT_CLOSE_CODE = 4404


class CreateChatRequest(BaseModel):
    title: str
    system_description: str = ""
    memory_balance: float = Field(0.5, ge=0.0, le=1.0)


class ChatMessageRequest(BaseModel):
    message: str
    user_id: str
    user_name: str
    message_type: str | None = None
    approved_plan: str | None = None
    approved_plan_message_id: str | None = None


@router.post("", status_code=201)
async def create_chat(request: CreateChatRequest, orchestrator: ChatOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    session = await orchestrator.create_chat(
        title=request.title,
        system_description=request.system_description,
        memory_balance=request.memory_balance,
    )
    return session.model_dump(mode="json")


@router.get("/{chat_id}/messages")
async def list_messages(chat_id: str, orchestrator: ChatOrchestrator = Depends(get_orchestrator)) -> list[dict[str, Any]]:
    try:
        turns = await orchestrator.list_messages(chat_id)
    except ChatSessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [turn.model_dump(mode="json") for turn in turns]


@router.post("/{chat_id}/messages")
async def post_message(
    chat_id: str,
    request: ChatMessageRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    try:
        response = await orchestrator.get_chat_response(
            message=request.message,
            user_id=request.user_id,
            user_name=request.user_name,
            chat_id=chat_id,
            message_type=request.message_type,
            approved_plan_json=request.approved_plan,
            approved_plan_message_id=request.approved_plan_message_id,
        )
    except (ChatSessionNotFoundError, ChatMessageNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StalePlanError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (ExtractionError, LLMUnavailable, LLMOutputError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except (MemoryRetrievalError, TokenBudgetError) as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    return {
        "message": response.turn.model_dump(mode="json"),
        "proposed_plan": response.proposed_plan.model_dump(mode="json", by_alias=True) if response.proposed_plan else None,
        "trace_events": response.trace_events,
    }


async def _forward_events(websocket: WebSocket, queue: asyncio.Queue[RelayEvent]) -> None:
    while True:
        event = await queue.get()
        await websocket.send_json({"event": event.kind, "data": event.payload})


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Client frames are ignored; the socket only carries server events.
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/{chat_id}/events")
async def chat_events(websocket: WebSocket, chat_id: str, orchestrator: ChatOrchestrator = Depends(get_orchestrator)) -> None:
    """Push status, message and delta events for one chat while the socket stays open."""
    await websocket.accept()
    try:
        await orchestrator.get_chat(chat_id)
    except ChatSessionNotFoundError:
        await websocket.close(code=UNKNOWN_CHAT_CLOSE_CODE)
        return

    queue = orchestrator.relay.subscribe(chat_id)
    logger.info("relay_subscriber_joined", extra={"extra_fields": {"chat_id": chat_id}})
    forwarder = asyncio.create_task(_forward_events(websocket, queue))
    watcher = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        done, _ = await asyncio.wait({forwarder, watcher}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            task.result()
    except WebSocketDisconnect:
        return
    finally:
        forwarder.cancel()
        watcher.cancel()
        orchestrator.relay.unsubscribe(chat_id, queue)
        logger.info("relay_subscriber_left", extra={"extra_fields": {"chat_id": chat_id}})

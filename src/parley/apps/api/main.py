from __future__ import annotations

from uuid import uuid4

import uvicorn
from fastapi import FastAPI

from parley.core.chat.store import default_state_dir
from parley.core.logging import configure_logging, log_context

from .routes_chat import router as chat_router

configure_logging(default_state_dir())

app = FastAPI(title="Parley")
app.include_router(chat_router, prefix="/chats")


@app.middleware("http")
async def request_context_middleware(request, call_next):
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid4())
    with log_context(correlation_id=correlation_id):
        response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id
    return response


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


def run() -> None:
    uvicorn.run("parley.apps.api.main:app", host="127.0.0.1", port=8000)

from __future__ import annotations

import json
from typing import AsyncIterator

import httpx

from parley.core.config.loader import CompletionSettings


class OpenAICompatClient:
    def __init__(self, url: str, model: str, timeout_s: float = 45.0, api_key: str | None = None) -> None:
        self.url = url
        self.model = model
        self.timeout_s = timeout_s
        self.api_key = api_key

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    def _payload(
        self,
        messages: list[dict[str, str]],
        settings: CompletionSettings,
        stream: bool,
        response_format: dict | None = None,
    ) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": self.model,
            "messages": messages,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
            "presence_penalty": settings.presence_penalty,
            "frequency_penalty": settings.frequency_penalty,
            "max_tokens": settings.max_tokens,
            "stream": stream,
        }
        if settings.stop:
            payload["stop"] = list(settings.stop)
        if response_format is not None:
            payload["response_format"] = response_format
        return payload

    async def chat_completion(
        self,
        messages: list[dict[str, str]],
        settings: CompletionSettings,
        response_format: dict | None = None,
    ) -> str:
        payload = self._payload(messages, settings, stream=False, response_format=response_format)
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            response = await client.post(self.url, json=payload, headers=self._headers())
            response.raise_for_status()
            data = response.json()
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        return str(message.get("content") or "")

    async def stream_chat_completion(
        self,
        messages: list[dict[str, str]],
        settings: CompletionSettings,
    ) -> AsyncIterator[str]:
        payload = self._payload(messages, settings, stream=True)
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            async with client.stream("POST", self.url, json=payload, headers=self._headers()) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    delta = parse_sse_line(line)
                    if delta:
                        yield delta


def parse_sse_line(line: str) -> str | None:
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:") :].strip()
    if not data or data == "[DONE]":
        return None
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        return None
    choices = chunk.get("choices") or []
    if not choices:
        return None
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return str(content) if content else None

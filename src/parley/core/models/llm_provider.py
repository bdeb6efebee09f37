from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import AsyncIterator, Protocol

import httpx

from parley.core.config.loader import CompletionSettings

from .llm_openai_compat import OpenAICompatClient


class LLMUnavailable(RuntimeError):
    pass


class LLMOutputError(RuntimeError):
    pass


class CompletionClient(Protocol):
    async def complete(self, messages: list[dict[str, str]], settings: CompletionSettings) -> str: ...

    def stream(self, messages: list[dict[str, str]], settings: CompletionSettings) -> AsyncIterator[str]: ...


@dataclass
class LLMConfig:
    provider: str
    model: str
    url: str
    timeout_s: float
    strict_json: bool


class ParleyLLM:
    def __init__(self) -> None:
        provider = os.getenv("PARLEY_LLM_PROVIDER", "off").casefold()
        self.config = LLMConfig(
            provider=provider,
            model=os.getenv("PARLEY_LLM_MODEL", "gpt-4o-mini"),
            url=os.getenv("PARLEY_LLM_URL", "http://127.0.0.1:8001/v1/chat/completions"),
            timeout_s=float(os.getenv("PARLEY_LLM_TIMEOUT_S", "45")),
            strict_json=os.getenv("PARLEY_LLM_STRICT_JSON", "on").casefold() == "on",
        )
        self._compat = OpenAICompatClient(
            url=self.config.url,
            model=self.config.model,
            timeout_s=self.config.timeout_s,
            api_key=os.getenv("PARLEY_LLM_API_KEY"),
        )
        self.logger = logging.getLogger("parley.llm")

    def _ensure_enabled(self) -> None:
        if self.config.provider == "off":
            raise LLMUnavailable("LLM provider is off")

    def _log_call(self, mode: str, started: float, ok: bool, prompt_len: int) -> None:
        self.logger.info(
            "llm_call",
            extra={
                "extra_fields": {
                    "provider": self.config.provider,
                    "model": self.config.model,
                    "mode": mode,
                    "duration_ms": int((time.perf_counter() - started) * 1000),
                    "ok": ok,
                    "prompt_len": prompt_len,
                }
            },
        )

    async def complete(self, messages: list[dict[str, str]], settings: CompletionSettings) -> str:
        return await self._call(messages, settings, mode="text")

    async def complete_json(self, messages: list[dict[str, str]], settings: CompletionSettings) -> dict:
        strict_instruction = (
            "Return strict JSON only with no markdown fences and no prose."
            if self.config.strict_json
            else "Return JSON."
        )
        framed = [{"role": "system", "content": strict_instruction}, *messages]
        raw = await self._call(framed, settings, mode="json", response_format={"type": "json_object"})
        parsed = parse_json_object(raw)
        if parsed is None:
            if self.config.strict_json:
                raise LLMOutputError("Could not parse JSON response")
            return {}
        return parsed

    async def stream(self, messages: list[dict[str, str]], settings: CompletionSettings) -> AsyncIterator[str]:
        self._ensure_enabled()
        started = time.perf_counter()
        prompt_len = sum(len(message.get("content", "")) for message in messages)
        try:
            async for delta in self._compat.stream_chat_completion(messages, settings):
                yield delta
        except httpx.HTTPError as exc:
            self._log_call("stream", started, ok=False, prompt_len=prompt_len)
            raise LLMUnavailable(f"LLM stream failed: {exc}") from exc
        self._log_call("stream", started, ok=True, prompt_len=prompt_len)

    async def _call(
        self,
        messages: list[dict[str, str]],
        settings: CompletionSettings,
        mode: str,
        response_format: dict | None = None,
    ) -> str:
        self._ensure_enabled()
        started = time.perf_counter()
        prompt_len = sum(len(message.get("content", "")) for message in messages)
        try:
            output = await self._compat.chat_completion(messages, settings, response_format=response_format)
        except (httpx.HTTPError, ValueError) as exc:
            self._log_call(mode, started, ok=False, prompt_len=prompt_len)
            raise LLMUnavailable(f"LLM request failed: {exc}") from exc
        self._log_call(mode, started, ok=True, prompt_len=prompt_len)
        return output


def parse_json_object(raw: str) -> dict | None:
    cleaned = raw.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.startswith("json"):
            cleaned = cleaned[4:].strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end == -1 or end < start:
        return None
    snippet = cleaned[start : end + 1]
    try:
        parsed = json.loads(snippet)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


async def complete_json(client: CompletionClient, messages: list[dict[str, str]], settings: CompletionSettings) -> dict:
    """JSON completion against any client; uses the client's own JSON mode when it has one."""
    native = getattr(client, "complete_json", None)
    if native is not None:
        return await native(messages, settings)
    parsed = parse_json_object(await client.complete(messages, settings))
    if parsed is None:
        raise LLMOutputError("Could not parse JSON response")
    return parsed

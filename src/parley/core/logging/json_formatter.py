from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from .context import get_log_context

DEFAULT_MAX_FIELD_CHARS = 2000


class JSONFormatter(logging.Formatter):
    """One JSON object per record. Long string fields (prompts, completions) are clipped."""

    def __init__(self, max_field_chars: int = DEFAULT_MAX_FIELD_CHARS) -> None:
        super().__init__()
        self.max_field_chars = max_field_chars

    def _field(self, value: Any) -> Any:
        if isinstance(value, BaseModel):
            return value.model_dump(mode="json", by_alias=True)
        if isinstance(value, str) and self.max_field_chars and len(value) > self.max_field_chars:
            return f"{value[: self.max_field_chars]}...(+{len(value) - self.max_field_chars} chars)"
        return value

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "ts_iso_utc": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(get_log_context())

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            payload.update({key: self._field(value) for key, value in extra_fields.items()})

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            payload["exc_type"] = exc_type.__name__
            payload["exc_msg"] = str(exc_value) if exc_value else ""
            payload["stack"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)

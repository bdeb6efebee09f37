from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .json_formatter import DEFAULT_MAX_FIELD_CHARS, JSONFormatter

_LOGGER_NAME = "parley"
_HANDLER_TAG = "_parley_handler"
# httpx reports every completion request at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().casefold() in {"on", "1", "true"}


def _env_level(name: str) -> int:
    level = logging.getLevelName(os.getenv(name, "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _tagged(logger: logging.Logger, tag: str) -> logging.Handler | None:
    for handler in logger.handlers:
        if getattr(handler, _HANDLER_TAG, None) == tag:
            return handler
    return None


def _attach(logger: logging.Logger, handler: logging.Handler, tag: str, formatter: logging.Formatter) -> None:
    handler.setFormatter(formatter)
    setattr(handler, _HANDLER_TAG, tag)
    logger.addHandler(handler)


def _file_handler(state_dir: Path) -> RotatingFileHandler:
    log_dir = Path(os.getenv("PARLEY_LOG_DIR") or (state_dir / "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        filename=log_dir / "parley.log",
        maxBytes=int(os.getenv("PARLEY_LOG_MAX_BYTES", "5000000")),
        backupCount=int(os.getenv("PARLEY_LOG_BACKUP_COUNT", "5")),
        encoding="utf-8",
    )


def configure_logging(state_dir: Path) -> logging.Logger:
    """Attach JSON handlers to the ``parley`` logger. Calling it again adds nothing."""
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(_env_level("PARLEY_LOG_LEVEL"))
    logger.propagate = False

    formatter = JSONFormatter(int(os.getenv("PARLEY_LOG_MAX_FIELD_CHARS", str(DEFAULT_MAX_FIELD_CHARS))))
    if _tagged(logger, "stdout") is None:
        _attach(logger, logging.StreamHandler(stream=sys.stdout), "stdout", formatter)
    if _env_flag("PARLEY_LOG_TO_FILE", "off") and _tagged(logger, "file") is None:
        _attach(logger, _file_handler(state_dir), "file", formatter)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return logger

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any

from settlebot.logging_context import CONTEXT_FIELDS, get_logging_context
from settlebot.security.redaction import redact_data

# (logger, override env var, level at INFO, level at DEBUG)
_LIBRARY_LOGGERS: tuple[tuple[str, str, int, int], ...] = (
    ("httpx", "HTTPX_LOG_LEVEL", logging.INFO, logging.DEBUG),
    ("httpcore", "HTTPCORE_LOG_LEVEL", logging.WARNING, logging.DEBUG),
    # web3 logs every provider request at DEBUG
    ("web3", "WEB3_LOG_LEVEL", logging.WARNING, logging.DEBUG),
    ("uvicorn.access", "UVICORN_ACCESS_LOG_LEVEL", logging.WARNING, logging.DEBUG),
)


class JsonFormatter(logging.Formatter):
    """One redacted JSON object per record.

    Structured fields come from ``extra={"extra": {...}}``; explicit fields win
    over the ambient logging context.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        structured = getattr(record, "extra", None)
        if isinstance(structured, dict):
            payload.update(structured)

        bound = get_logging_context()
        for field in CONTEXT_FIELDS:
            if field not in payload:
                payload[field] = bound.get(field)

        payload.update(self._exception_fields(record))
        return json.dumps(redact_data(payload), default=str)

    def _exception_fields(self, record: logging.LogRecord) -> dict[str, str]:
        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            return {
                "error_type": exc_type.__name__ if exc_type else "Exception",
                "error_message": "" if exc_value is None else str(exc_value),
                "traceback": self.formatException(record.exc_info),
            }
        if record.exc_text:
            return {"traceback": record.exc_text}
        return {}


def _parse_level(raw: str | int | None, fallback: int) -> int:
    if isinstance(raw, int):
        return raw
    if raw is None or not str(raw).strip():
        return fallback
    resolved = logging.getLevelName(str(raw).strip().upper())
    return resolved if isinstance(resolved, int) else fallback


def setup_logging(level: str | int | None = None) -> None:
    root_level = _parse_level(level if level is not None else os.getenv("LOG_LEVEL"), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(root_level)

    verbose = root_level <= logging.DEBUG
    for name, env_name, quiet_level, debug_level in _LIBRARY_LOGGERS:
        default = debug_level if verbose else quiet_level
        logging.getLogger(name).setLevel(_parse_level(os.getenv(env_name), default))

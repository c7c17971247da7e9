"""
Structured logging for the sandbox gateway.

Every log line is a single JSON object written to stdout so the Modal log
collector can index it. Call sites use dotted event names and keyword
context:

    log = get_logger("gateway", sandbox_name="clawdbot")
    log.info("gateway.ready", process_id=proc.id, duration_ms=1200)
    log.error("gateway.start_error", exc=e)
"""

import json
import logging
import os
import sys
import traceback
from typing import Any

_configured = False


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": round(record.created, 3),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            payload.update(fields)
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    """Install the JSON handler on the root logger. Safe to call repeatedly."""
    global _configured
    if _configured:
        return

    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger("sandbox_gateway")
    root.handlers = [handler]
    root.setLevel(level)
    root.propagate = False
    _configured = True


class StructuredLogger:
    """Thin wrapper binding static context to every event."""

    def __init__(self, logger: logging.Logger, context: dict[str, Any]):
        self._logger = logger
        self._context = context

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(self._logger, {**self._context, **context})

    def _log(self, level: int, event: str, exc: BaseException | None, fields: dict[str, Any]):
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self._context, **{k: v for k, v in fields.items() if v is not None}}
        if exc is not None:
            merged["error_type"] = type(exc).__name__
            merged["error_message"] = str(exc)
            if level >= logging.ERROR and exc.__traceback__ is not None:
                merged["traceback"] = "".join(
                    traceback.format_exception(type(exc), exc, exc.__traceback__)
                )
        self._logger.log(level, event, extra={"fields": merged})

    def debug(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.DEBUG, event, exc, fields)

    def info(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.INFO, event, exc, fields)

    def warn(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.WARNING, event, exc, fields)

    warning = warn

    def error(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.ERROR, event, exc, fields)


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Return a logger under the ``sandbox_gateway`` namespace with bound context."""
    return StructuredLogger(logging.getLogger(f"sandbox_gateway.{name}"), context)

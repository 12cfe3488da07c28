"""Structured logging for scope memory.

Call sites attach scope, provider and sync counters with ``log_context``; both
formatters render that context after the message.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Mapping

import orjson

LOG_LEVEL_ENV = "SCOPEMEM_LOG_LEVEL"
CONTEXT_ATTR = "scopemem"
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def log_context(**fields: Any) -> dict[str, Any]:
    """``extra`` mapping for a log call; ``None`` values are dropped."""
    return {CONTEXT_ATTR: {key: value for key, value in fields.items() if value is not None}}


def record_context(record: logging.LogRecord) -> Mapping[str, Any]:
    context = getattr(record, CONTEXT_ATTR, None)
    return context if isinstance(context, Mapping) else {}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, context nested under ``"context"``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        context = record_context(record)
        if context:
            payload["context"] = dict(context)
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return orjson.dumps(payload, default=str).decode("utf-8")


class ContextFormatter(logging.Formatter):
    """Plain text lines ending in ``key=value`` context pairs."""

    def __init__(self) -> None:
        super().__init__(TEXT_FORMAT)

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        context = record_context(record)
        if not context:
            return line
        return line + " " + " ".join(f"{key}={value}" for key, value in context.items())


def configure_logging(level: str | int | None = None, use_json: bool = True) -> None:
    """Install a single stderr handler on the root logger."""
    logging.captureWarnings(True)
    root = logging.getLogger()
    root.setLevel(level if level is not None else os.environ.get(LOG_LEVEL_ENV, "INFO"))
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if use_json else ContextFormatter())
    root.handlers = [handler]


def get_logger(name: str = "scope_memory") -> logging.Logger:
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


__all__ = ["ContextFormatter", "JsonFormatter", "configure_logging", "get_logger", "log_context"]

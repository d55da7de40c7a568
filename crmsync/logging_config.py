"""
JSON logging for crmsync.

One JSON object per line on stdout. Identifiers of the sync pipeline found in a
record's context are lifted to the top level so a thread or a Telegram user can
be followed across loggers:

    {"timestamp": ..., "level": "INFO", "logger": "crmsync.ingest_service",
     "message": "Duplicate update ignored", "thread_key": 1768..., "context": {"kind": "voice"}}
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

TRACE_KEYS = ("thread_key", "order_id", "external_user_id", "channel_message_id")

# third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "redis", "websockets")


class JSONFormatter(logging.Formatter):
    def __init__(self, service: str = "crmsync"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.levelno >= logging.WARNING:
            log_data["location"] = f"{record.module}:{record.lineno}"

        context = dict(getattr(record, "context", None) or {})
        for key in TRACE_KEYS:
            if key in context:
                log_data[key] = context.pop(key)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", debug: bool = False) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    if not debug:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"crmsync.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Carries bound identifiers; per-call ``context=`` entries win over bound ones."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = {**self.extra, **(kwargs.pop("context", None) or {})}
        if context:
            extra = dict(kwargs.get("extra") or {})
            extra["context"] = {**context, **extra.get("context", {})}
            kwargs["extra"] = extra
        return msg, kwargs


def bind_logger(name: str, **context: Any) -> LoggerAdapter:
    """Logger whose records carry ``context`` (None values dropped)."""
    return LoggerAdapter(get_logger(name), {k: v for k, v in context.items() if v is not None})

"""Logging for the memo chat service.

Every record carries the request id and the caller identity of the request it
was emitted under (both held in context variables, so they survive the hop
into the streaming task). Retrieval and streaming code tag their records with
a few well-known fields, passed through ``extra=``:

    logger.info("...", extra={"strategy": "keyword", "contexts": 3})

The JSON formatter promotes those fields to top-level keys; the development
formatter appends them as ``key=value`` pairs.
"""

import json
import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional, Tuple

from memo_chat.config import get_settings

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

# Fields recognised in ``extra=``; anything else passed there is not rendered
EVENT_FIELDS: Tuple[str, ...] = (
    "strategy",
    "stream_state",
    "contexts",
    "citations",
    "deltas",
    "model",
    "primary_model",
    "fallback_model",
    "operation",
    "retry_after",
    "error_type",
    "method",
    "path",
    "status_code",
    "duration_ms",
)

_THIRD_PARTY_LEVELS = {
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "openai": logging.WARNING,
    "qdrant_client": logging.WARNING,
}

_logger: Optional[logging.Logger] = None


def _event_fields(record: logging.LogRecord) -> Iterator[Tuple[str, Any]]:
    for name in EVENT_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            yield name, value


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for production log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = request_id_var.get()
        if request_id:
            payload["request_id"] = request_id
        user_id = user_id_var.get()
        if user_id:
            payload["user_id"] = user_id

        payload.update(_event_fields(record))

        context = getattr(record, "context", None)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class StandardFormatter(logging.Formatter):
    """Readable single-line format for development."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s [%(request_ref)s] %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        request_id = request_id_var.get() or "-"
        user_id = user_id_var.get()
        record.request_ref = f"{request_id} {user_id}" if user_id else request_id

        line = super().format(record)
        fields = " ".join(f"{name}={value}" for name, value in _event_fields(record))
        return f"{line} | {fields}" if fields else line


def setup_logging() -> logging.Logger:
    """Configure the ``memo_chat`` logger once; JSON output in production."""
    global _logger

    if _logger is not None:
        return _logger

    settings = get_settings()
    level = getattr(logging, settings.log_level)

    logger = logging.getLogger("memo_chat")
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if settings.is_production else StandardFormatter())
    logger.addHandler(handler)
    logger.propagate = False

    for name, third_party_level in _THIRD_PARTY_LEVELS.items():
        logging.getLogger(name).setLevel(third_party_level)
    litellm_level = logging.INFO if settings.debug else logging.WARNING
    logging.getLogger("LiteLLM").setLevel(litellm_level)

    _logger = logger
    logger.info(
        f"Logging configured: level={settings.log_level}, environment={settings.environment.value}"
    )
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Child of the ``memo_chat`` logger."""
    if name:
        return logging.getLogger(f"memo_chat.{name}")
    return logging.getLogger("memo_chat")


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def set_user_id(user_id: str) -> None:
    """Attach the authenticated caller to every record of the current request."""
    user_id_var.set(user_id)


def log_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
) -> None:
    """Access-log line for one HTTP request."""
    get_logger("http").info(
        f"{method} {path} {status_code} {duration_ms:.1f}ms",
        extra={
            "method": method,
            "path": path,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
        },
    )


def log_error(error: Exception, context: Optional[Dict[str, Any]] = None) -> None:
    """Log an exception that is being turned into an error response."""
    get_logger("error").error(
        f"{type(error).__name__}: {error}",
        exc_info=error,
        extra={"error_type": type(error).__name__, "context": context or {}},
    )

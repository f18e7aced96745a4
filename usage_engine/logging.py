"""Engine logging: console lines plus a rotating JSON-lines file.

Records are correlated through a request-scoped log context (``request_id``
and the tenant headers) bound by the HTTP middleware. Structured values
passed with ``extra=`` become top-level keys of each JSON line, after the
fixed ``ts``/``level``/``logger``/``message``/``event`` prefix and the
context fields.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import pathlib
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Mapping, Optional

CONTEXT_FIELDS = ("request_id", "customer_id", "team_id")

_LOG_CONFIGURED = False
_LOG_CONTEXT: contextvars.ContextVar[Optional[Mapping[str, Optional[str]]]] = contextvars.ContextVar(
    "usage_engine_log_context", default=None
)

# Attributes present on every LogRecord; anything else arrived through ``extra=``.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent


def bind_log_context(**fields: Optional[str]) -> contextvars.Token:
    """Bind request-scoped fields on top of the current context."""
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log context fields: {', '.join(sorted(unknown))}")
    return _LOG_CONTEXT.set({**(_LOG_CONTEXT.get() or {}), **fields})


def reset_log_context(token: contextvars.Token) -> None:
    _LOG_CONTEXT.reset(token)


def get_log_context() -> Dict[str, Optional[str]]:
    context = _LOG_CONTEXT.get() or {}
    return {name: context.get(name) for name in CONTEXT_FIELDS}


def get_request_id() -> str | None:
    return get_log_context()["request_id"]


class RequestContextFilter(logging.Filter):
    """Copy the bound log context onto records that do not set the field themselves."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in get_log_context().items():
            if getattr(record, name, None) is None:
                setattr(record, name, value)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("event", *CONTEXT_FIELDS):
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key in payload or key.startswith("_") or value is None:
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=True, default=str)


def _log_file_path() -> pathlib.Path:
    path = pathlib.Path(os.getenv("LOG_FILE", "logs/usage_engine.jsonl"))
    if not path.is_absolute():
        path = BASE_DIR / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def configure_logging() -> None:
    """Install the console and JSON file handlers on the root logger, once."""
    global _LOG_CONFIGURED
    if _LOG_CONFIGURED:
        return

    console_level = getattr(logging, os.getenv("LOG_LEVEL", "WARNING").upper(), logging.WARNING)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    context_filter = RequestContextFilter()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.addFilter(context_filter)
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s [%(name)s] %(message)s "
            "(request_id=%(request_id)s customer_id=%(customer_id)s)"
        )
    )
    root_logger.addHandler(console_handler)

    file_handler = RotatingFileHandler(_log_file_path(), maxBytes=10_000_000, backupCount=5)
    file_handler.setLevel(logging.INFO)
    file_handler.addFilter(context_filter)
    file_handler.setFormatter(JsonFormatter())
    root_logger.addHandler(file_handler)

    # Third-party loggers only surface warnings.
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    _LOG_CONFIGURED = True


__all__ = [
    "CONTEXT_FIELDS",
    "JsonFormatter",
    "RequestContextFilter",
    "bind_log_context",
    "configure_logging",
    "get_log_context",
    "get_request_id",
    "reset_log_context",
]

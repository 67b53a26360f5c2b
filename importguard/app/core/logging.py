"""Logging setup for the import guard service.

Records carry the rate limit context (request, user, hashed client IP,
wallet, violated dimension) either as JSON or as plain text lines.
"""

import hashlib
import json
import logging
import logging.config
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Optional

from importguard.app.core.config import settings

_request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes every record may carry; absent ones are filled with None
CONTEXT_FIELDS = (
    "request_id",
    "user_id",
    "client_ip",
    "wallet_id",
    "limit_type",
    "path",
    "method",
    "status_code",
)


def set_request_id(request_id: Optional[str]) -> None:
    """Bind a request ID to the current async context."""
    _request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id_var.get()


def hash_identifier(value: str) -> str:
    """Short sha256 digest, so client IPs never reach the logs in clear."""
    return hashlib.sha256(value.encode()).hexdigest()[:16]


class JSONFormatter(logging.Formatter):
    """Render a record as one JSON object per line.

    Context fields go to the top level; any other ``extra=`` attribute is
    collected under ``"extra"``.
    """

    _RECORD_ATTRS = frozenset(
        vars(logging.LogRecord("", 0, "", 0, "", (), None))
    ) | {"message", "asctime", "taskName"}

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        payload: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        extra: Dict[str, Any] = {}
        for key, value in vars(record).items():
            if key in CONTEXT_FIELDS:
                if value is not None:
                    payload[key] = value
            elif key not in self._RECORD_ATTRS:
                extra[key] = value
        if extra:
            payload["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Fill missing context attributes so text formats can reference them.

    The request ID falls back to the one bound by RequestIdMiddleware.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for field in CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, None)
        if record.request_id is None:
            record.request_id = get_request_id()
        return True


_TEXT_FORMATS = {
    "text": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    "structured": (
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        " - request_id=%(request_id)s user_id=%(user_id)s limit_type=%(limit_type)s"
    ),
}


def get_logging_config() -> Dict[str, Any]:
    """Build the dictConfig mapping from LOG_LEVEL and LOG_FORMAT."""
    log_format = getattr(settings, "log_format", "text").lower()
    log_level = getattr(settings, "log_level", "INFO").upper()

    if log_format == "json":
        formatter: Dict[str, Any] = {"()": "importguard.app.core.logging.JSONFormatter"}
    else:
        formatter = {"format": _TEXT_FORMATS.get(log_format, _TEXT_FORMATS["text"])}

    def stream_handler(stream, level: str) -> Dict[str, Any]:
        return {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "default",
            "stream": stream,
            "filters": ["context"],
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "filters": {"context": {"()": "importguard.app.core.logging.ContextFilter"}},
        "handlers": {
            "console": stream_handler(sys.stdout, log_level),
            "error_console": stream_handler(sys.stderr, "ERROR"),
        },
        "loggers": {
            "importguard": {
                "level": log_level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            "uvicorn": {"level": log_level, "handlers": ["console"], "propagate": False},
        },
        "root": {"level": log_level, "handlers": ["console"]},
    }


def setup_logging() -> None:
    logging.config.dictConfig(get_logging_config())
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str = "importguard") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    wallet_id: Optional[str] = None,
    limit_type: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Build the ``extra=`` mapping for a log call, hashing the client IP.

    Example:
        >>> logger.warning(
        ...     "import_rate_limit.exceeded",
        ...     extra=get_log_context(user_id="123", limit_type="user"),
        ... )
    """
    context = {
        "request_id": request_id,
        "user_id": user_id,
        "client_ip": hash_identifier(client_ip) if client_ip else None,
        "wallet_id": wallet_id,
        "limit_type": limit_type,
        **extra,
    }
    return {k: v for k, v in context.items() if v is not None}

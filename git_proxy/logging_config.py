"""Structured logging configuration for the git proxy.

Supports:
- JSON-formatted output for machine parsing, or a compact text format
- A per-request correlation ID carried in a context variable, so log lines
  from concurrently served requests carry the request they belong to
- Log level and format selected via environment variables

Usage:
    from git_proxy.logging_config import setup_logging, get_logger, LogContext

    setup_logging()
    logger = get_logger(__name__)

    with LogContext(request_id=generate_request_id(), operation="fetch"):
        logger.info("Running git")
        # {"timestamp": "...", "level": "INFO", "message": "Running git",
        #  "request_id": "...", "operation": "fetch", ...}

``setup_logging`` is not called at import time; the CLI calls it once on
startup.
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Optional

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_extra_context: ContextVar[dict] = ContextVar("extra_context", default={})

DEFAULT_LOG_LEVEL = "WARNING"
DEFAULT_LOG_FORMAT = "text"

# LogRecord attributes that are never copied into the JSON payload.
_STANDARD_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
})


def set_context(request_id: Optional[str] = None, **extra: Any) -> None:
    """Set correlation context for the current thread or task."""
    if request_id is not None:
        _request_id.set(request_id)
    if extra:
        _extra_context.set({**_extra_context.get(), **extra})


def get_context() -> dict[str, Any]:
    """Return the current correlation context."""
    context: dict[str, Any] = {}
    request_id = _request_id.get()
    if request_id:
        context["request_id"] = request_id
    extra = _extra_context.get()
    if extra:
        context.update(extra)
    return context


def clear_context() -> None:
    _request_id.set(None)
    _extra_context.set({})


def _format_timestamp(record: logging.LogRecord) -> str:
    return time.strftime(
        "%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)
    ) + f".{int(record.msecs):03d}Z"


class JSONFormatter(logging.Formatter):
    """One JSON object per log line.

    Produces:
    {
        "timestamp": "2026-01-15T10:30:00.123Z",
        "level": "INFO",
        "logger": "git_proxy.executor",
        "message": "git fetch exited with code 0",
        "request_id": "...",
        "location": "executor.py:142:execute",
        "extra_field": "extra_value"
    }
    """

    def __init__(self, include_timestamp: bool = True, include_location: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_location = include_location

    def format(self, record: logging.LogRecord) -> str:
        log_dict: dict[str, Any] = {}
        if self.include_timestamp:
            log_dict["timestamp"] = _format_timestamp(record)

        log_dict["level"] = record.levelname
        log_dict["logger"] = record.name
        log_dict["message"] = record.getMessage()
        log_dict.update(get_context())

        if self.include_location:
            log_dict["location"] = f"{record.filename}:{record.lineno}:{record.funcName}"

        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                log_dict[key] = value

        return json.dumps(log_dict, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter.

    2026-01-15T10:30:00.123Z INFO [git_proxy.executor] [req-123] message
    """

    def __init__(self, include_timestamp: bool = True, include_location: bool = False):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_location = include_location

    def format(self, record: logging.LogRecord) -> str:
        parts = []
        if self.include_timestamp:
            parts.append(_format_timestamp(record))
        parts.append(record.levelname)
        parts.append(f"[{record.name}]")

        request_id = _request_id.get()
        if request_id:
            parts.append(f"[{request_id}]")

        parts.append(record.getMessage())

        if self.include_location:
            parts.append(f"({record.filename}:{record.lineno})")

        result = " ".join(parts)
        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)
        return result


def setup_logging(
    level: Optional[str] = None,
    format_type: Optional[str] = None,
    include_location: Optional[bool] = None,
) -> None:
    """Configure the root logger to write to stderr.

    Args:
        level: Log level name. Defaults to the LOG_LEVEL environment
               variable, then WARNING.
        format_type: "json" or "text". Defaults to the LOG_FORMAT
                     environment variable, then "text".
        include_location: Include source location. Defaults to the
                          LOG_INCLUDE_LOCATION environment variable.
    """
    level = (level or os.environ.get("LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()
    format_type = (format_type or os.environ.get("LOG_FORMAT") or DEFAULT_LOG_FORMAT).lower()
    if include_location is None:
        include_location = os.environ.get("LOG_INCLUDE_LOCATION", "false").lower() == "true"

    if format_type == "json":
        formatter: logging.Formatter = JSONFormatter(include_location=include_location)
    else:
        formatter = TextFormatter(include_location=include_location)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.WARNING))
    root_logger.handlers.clear()
    root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """Context manager that sets correlation context for a block.

    Previous values are restored on exit, so contexts nest.
    """

    def __init__(self, request_id: Optional[str] = None, **extra: Any):
        self.request_id = request_id
        self.extra = extra
        self._saved: dict[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self._saved["request_id"] = _request_id.get()
        self._saved["extra"] = _extra_context.get()
        set_context(request_id=self.request_id, **self.extra)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        _request_id.set(self._saved.get("request_id"))
        _extra_context.set(self._saved.get("extra", {}))


def generate_request_id() -> str:
    return str(uuid.uuid4())


def flask_request_middleware(app):
    """Attach request-ID handling and access logging to a Flask app.

    Uses the X-Request-ID header when present, otherwise generates one, and
    echoes it back on the response.
    """
    logger = get_logger("git_proxy.http")

    @app.before_request
    def before_request():
        from flask import g, request

        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        g.request_id = request_id
        g.request_start_time = time.monotonic()
        set_context(request_id=request_id, method=request.method, path=request.path)
        logger.debug(f"{request.method} {request.path}", extra={"event": "request_start"})

    @app.after_request
    def after_request(response):
        from flask import g, request

        duration_ms = None
        if hasattr(g, "request_start_time"):
            duration_ms = (time.monotonic() - g.request_start_time) * 1000
        logger.info(
            f"{request.method} {request.path} -> {response.status_code}",
            extra={
                "event": "request_complete",
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    @app.teardown_request
    def teardown_request(exception=None):
        clear_context()
        if exception:
            logger.error(f"Request failed with exception: {exception}", exc_info=True)

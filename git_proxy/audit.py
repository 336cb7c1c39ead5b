"""Append-only audit trail of git operation requests.

Each request produces exactly one JSON line:

    {"timestamp": "2026-01-15T10:30:00.123Z", "event_type": "command_executed",
     "operation": "fetch", "repository": "github.com/org/repo",
     "outcome": "success", "duration_ms": 812, "exit_code": 0, ...}

Outcomes are kept distinct: ``success`` (exit code 0), ``failed`` (git ran
and exited non-zero), ``denied`` (validation, rate limit or policy) and
``error`` (git could not run to completion: spawn failure, bad working
directory, timeout, cancellation).

The log file is created with owner-only permissions. Writes are serialized
so concurrent requests never interleave lines. A failed write is reported
on the operational logger and never propagates to the request.
"""

import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from git_proxy.errors import PipelineError
from git_proxy.logging_config import get_logger
from git_proxy.sanitizer import OutputSanitizer

logger = get_logger(__name__)

# Mirror of every audit line for operators who only collect process logs.
audit_mirror = logging.getLogger("git_audit")

AUDIT_FILE_MODE = 0o600


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    DENIED = "denied"
    ERROR = "error"


class AuditEventType(str, Enum):
    COMMAND_EXECUTED = "command_executed"
    COMMAND_BLOCKED = "command_blocked"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    COMMAND_ERRORED = "command_errored"
    SERVER_STARTED = "server_started"
    SERVER_STOPPED = "server_stopped"


class ShutdownReason(str, Enum):
    SIGINT = "sigint"
    SIGTERM = "sigterm"
    CLIENT_DISCONNECTED = "client_disconnected"


def _timestamp(now: Optional[float] = None) -> str:
    now = time.time() if now is None else now
    millis = int((now % 1) * 1000)
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(now)) + f".{millis:03d}Z"


@dataclass(frozen=True)
class AuditEvent:
    """One audit record. Fields left as None are omitted from the JSON line."""

    event_type: AuditEventType
    timestamp: str
    operation: Optional[str] = None
    repository: Optional[str] = None
    outcome: Optional[AuditOutcome] = None
    duration_ms: Optional[int] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    request_id: Optional[str] = None
    shutdown_reason: Optional[str] = None

    @classmethod
    def command_executed(
        cls,
        operation: str,
        repository: Optional[str],
        exit_code: int,
        duration_ms: int,
        request_id: Optional[str] = None,
    ) -> "AuditEvent":
        """Git ran to completion. Non-zero exit codes are recorded as failed."""
        outcome = AuditOutcome.SUCCESS if exit_code == 0 else AuditOutcome.FAILED
        return cls(
            event_type=AuditEventType.COMMAND_EXECUTED,
            timestamp=_timestamp(),
            operation=operation,
            repository=repository,
            outcome=outcome,
            duration_ms=duration_ms,
            exit_code=exit_code,
            reason=None if exit_code == 0 else f"git exited with code {exit_code}",
            request_id=request_id,
        )

    @classmethod
    def command_denied(
        cls,
        operation: Optional[str],
        repository: Optional[str],
        error: PipelineError,
        duration_ms: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> "AuditEvent":
        return cls(
            event_type=AuditEventType.COMMAND_BLOCKED,
            timestamp=_timestamp(),
            operation=operation,
            repository=repository,
            outcome=AuditOutcome.DENIED,
            duration_ms=duration_ms,
            reason=error.reason,
            error_kind=error.kind.value,
            request_id=request_id,
        )

    @classmethod
    def rate_limited(
        cls,
        operation: Optional[str],
        error: PipelineError,
        duration_ms: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> "AuditEvent":
        return cls(
            event_type=AuditEventType.RATE_LIMIT_EXCEEDED,
            timestamp=_timestamp(),
            operation=operation,
            outcome=AuditOutcome.DENIED,
            duration_ms=duration_ms,
            reason=error.reason,
            error_kind=error.kind.value,
            request_id=request_id,
        )

    @classmethod
    def command_errored(
        cls,
        operation: str,
        repository: Optional[str],
        error: PipelineError,
        duration_ms: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> "AuditEvent":
        return cls(
            event_type=AuditEventType.COMMAND_ERRORED,
            timestamp=_timestamp(),
            operation=operation,
            repository=repository,
            outcome=AuditOutcome.ERROR,
            duration_ms=duration_ms,
            reason=error.reason,
            error_kind=error.kind.value,
            request_id=request_id,
        )

    @classmethod
    def server_started(cls) -> "AuditEvent":
        return cls(event_type=AuditEventType.SERVER_STARTED, timestamp=_timestamp())

    @classmethod
    def server_stopped(cls, reason: ShutdownReason) -> "AuditEvent":
        return cls(
            event_type=AuditEventType.SERVER_STOPPED,
            timestamp=_timestamp(),
            shutdown_reason=reason.value,
        )

    def to_dict(self) -> Dict[str, Any]:
        entry: Dict[str, Any] = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            entry[key] = value.value if isinstance(value, Enum) else value
        return entry

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


class AuditLogger:
    """Writes audit events to a line-delimited JSON file.

    ``AuditLogger(None)`` (or ``AuditLogger.disabled()``) keeps the
    ``git_audit`` log mirror but writes no file.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        sanitizer: Optional[OutputSanitizer] = None,
    ):
        self.path = path
        self.sanitizer = sanitizer or OutputSanitizer()
        self._lock = threading.Lock()
        self._fd: Optional[int] = None
        if path:
            self._fd = self._open(path)

    @classmethod
    def disabled(cls, sanitizer: Optional[OutputSanitizer] = None) -> "AuditLogger":
        return cls(None, sanitizer=sanitizer)

    @property
    def enabled(self) -> bool:
        return self._fd is not None

    @staticmethod
    def _open(path: str) -> Optional[int]:
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, AUDIT_FILE_MODE)
            # O_CREAT's mode is masked by umask and ignored for existing files.
            os.fchmod(fd, AUDIT_FILE_MODE)
            return fd
        except OSError as exc:
            logger.error(f"Cannot open audit log {path}: {exc}")
            return None

    def _scrub(self, event: AuditEvent) -> Dict[str, Any]:
        entry = event.to_dict()
        for key in ("reason", "repository", "operation"):
            if isinstance(entry.get(key), str):
                entry[key] = self.sanitizer.sanitize(entry[key])
        return entry

    def log(self, event: AuditEvent) -> bool:
        """Record ``event``. Returns False if the file write failed."""
        entry = self._scrub(event)
        level = logging.WARNING if entry.get("outcome") in ("denied", "error") else logging.INFO
        audit_mirror.log(level, entry["event_type"], extra={"audit": entry})

        if self._fd is None:
            return not self.path
        line = (json.dumps(entry, separators=(",", ":")) + "\n").encode("utf-8")
        with self._lock:
            try:
                written = 0
                while written < len(line):
                    written += os.write(self._fd, line[written:])
                os.fsync(self._fd)
            except OSError as exc:
                logger.error(f"Failed to write audit event: {exc}")
                return False
        return True

    def close(self) -> None:
        with self._lock:
            if self._fd is not None:
                os.close(self._fd)
                self._fd = None

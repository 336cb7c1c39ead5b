"""Value types passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from git_proxy.errors import PipelineError


class Operation(str, Enum):
    """Remote git operations the proxy will run."""

    CLONE = "clone"
    FETCH = "fetch"
    PULL = "pull"
    PUSH = "push"
    LS_REMOTE = "ls-remote"


class PipelineState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    ADMITTED = "admitted"
    POLICY_CHECKED = "policy_checked"
    EXECUTING = "executing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    ERRORED = "errored"


TERMINAL_STATES = frozenset(
    {PipelineState.COMPLETED, PipelineState.REJECTED, PipelineState.ERRORED}
)


@dataclass(frozen=True)
class OperationRequest:
    """One inbound tool call."""

    operation: str
    args: List[str] = field(default_factory=list)
    working_directory: str = ""

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "OperationRequest":
        return cls(
            operation=raw.get("operation") or "",
            args=list(raw.get("args") or []),
            working_directory=raw.get("working_directory") or "",
        )


@dataclass(frozen=True)
class ParsedCommand:
    """A request that passed validation.

    ``working_directory`` is always absolute.
    """

    operation: Operation
    args: Tuple[str, ...]
    working_directory: str

    def build_args(self) -> List[str]:
        """Return the git argument vector, without the binary."""
        return [self.operation.value, *self.args]


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    error: Optional[PipelineError] = None
    repository: Optional[str] = None

    @classmethod
    def allow(cls, repository: Optional[str] = None) -> "PolicyDecision":
        return cls(allowed=True, repository=repository)

    @classmethod
    def deny(
        cls, error: PipelineError, repository: Optional[str] = None
    ) -> "PolicyDecision":
        return cls(allowed=False, error=error, repository=repository)


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of a completed git subprocess.

    ``stdout`` and ``stderr`` have already been size-capped and sanitized.
    """

    exit_code: int
    stdout: str
    stderr: str
    truncated: bool
    duration_seconds: float
    timed_out: bool = False
    warnings: Tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def duration_ms(self) -> int:
        return int(self.duration_seconds * 1000)


@dataclass(frozen=True)
class ToolResult:
    """Response handed back to the protocol layer."""

    content: str
    is_error: bool
    state: PipelineState

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, "is_error": self.is_error}

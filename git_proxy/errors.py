"""Error taxonomy for the git proxy pipeline.

Every rejection or failure produced by a pipeline stage is a
``PipelineError``: a kind drawn from a closed set, plus an optional
``detail`` fragment that is already safe to show (a blocked-flag table
entry, a branch name, a repository identifier, a number of seconds).
Reasons are rendered from a fixed template table so raw caller input is
never echoed back verbatim.

This module is a base-layer module: it must NOT import from any other
``git_proxy`` submodule.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ConfigError(Exception):
    """Exception raised for configuration errors."""


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    POLICY = "policy"
    EXECUTION = "execution"


class ErrorKind(str, Enum):
    # Validation
    EMPTY_COMMAND = "empty_command"
    COMMAND_NOT_ALLOWED = "command_not_allowed"
    DANGEROUS_FLAG = "dangerous_flag"
    INVALID_WORKING_DIRECTORY = "invalid_working_directory"
    # Admission
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    # Policy
    PROTECTED_BRANCH_DELETE = "protected_branch_delete"
    PROTECTED_BRANCH_FORCE_PUSH = "protected_branch_force_push"
    FORCE_PUSH_BLOCKED = "force_push_blocked"
    REPOSITORY_BLOCKED = "repository_blocked"
    # Execution
    PROCESS_ERROR = "process_error"
    WORKING_DIRECTORY_ERROR = "working_directory_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


ERROR_CATEGORIES: Dict[ErrorKind, ErrorCategory] = {
    ErrorKind.EMPTY_COMMAND: ErrorCategory.VALIDATION,
    ErrorKind.COMMAND_NOT_ALLOWED: ErrorCategory.VALIDATION,
    ErrorKind.DANGEROUS_FLAG: ErrorCategory.VALIDATION,
    ErrorKind.INVALID_WORKING_DIRECTORY: ErrorCategory.VALIDATION,
    ErrorKind.RATE_LIMIT_EXCEEDED: ErrorCategory.RATE_LIMIT,
    ErrorKind.PROTECTED_BRANCH_DELETE: ErrorCategory.POLICY,
    ErrorKind.PROTECTED_BRANCH_FORCE_PUSH: ErrorCategory.POLICY,
    ErrorKind.FORCE_PUSH_BLOCKED: ErrorCategory.POLICY,
    ErrorKind.REPOSITORY_BLOCKED: ErrorCategory.POLICY,
    ErrorKind.PROCESS_ERROR: ErrorCategory.EXECUTION,
    ErrorKind.WORKING_DIRECTORY_ERROR: ErrorCategory.EXECUTION,
    ErrorKind.TIMEOUT: ErrorCategory.EXECUTION,
    ErrorKind.CANCELLED: ErrorCategory.EXECUTION,
}

# ``{detail}`` is substituted with the error's detail fragment. Kinds whose
# template has no placeholder ignore the detail.
REASON_TEMPLATES: Dict[ErrorKind, str] = {
    ErrorKind.EMPTY_COMMAND: "No git operation specified",
    ErrorKind.COMMAND_NOT_ALLOWED: (
        "Operation is not allowed. "
        "Allowed operations: clone, fetch, pull, push, ls-remote"
    ),
    ErrorKind.DANGEROUS_FLAG: "Flag '{detail}' is not allowed",
    ErrorKind.INVALID_WORKING_DIRECTORY: "Working directory must be an absolute path",
    ErrorKind.RATE_LIMIT_EXCEEDED: (
        "Rate limit exceeded, retry after {detail} seconds"
    ),
    ErrorKind.PROTECTED_BRANCH_DELETE: (
        "Deletion of protected branch '{detail}' is not allowed"
    ),
    ErrorKind.PROTECTED_BRANCH_FORCE_PUSH: (
        "Force push to protected branch '{detail}' is not allowed"
    ),
    ErrorKind.FORCE_PUSH_BLOCKED: (
        "Force push is not allowed. Use --force-with-lease for safer "
        "updates, or contact your administrator to enable force push"
    ),
    ErrorKind.REPOSITORY_BLOCKED: "Repository '{detail}' is not permitted",
    ErrorKind.PROCESS_ERROR: "Failed to run git: {detail}",
    ErrorKind.WORKING_DIRECTORY_ERROR: "Working directory is not usable: {detail}",
    ErrorKind.TIMEOUT: "Command timed out after {detail} seconds",
    ErrorKind.CANCELLED: "Command was cancelled",
}

# Longest detail fragment rendered into a reason.
MAX_DETAIL_LENGTH = 200


@dataclass(frozen=True)
class PipelineError:
    """A rejection or failure produced by one pipeline stage."""

    kind: ErrorKind
    detail: Optional[str] = None

    @property
    def category(self) -> ErrorCategory:
        return ERROR_CATEGORIES[self.kind]

    @property
    def is_denial(self) -> bool:
        """True for validation, admission and policy rejections."""
        return self.category is not ErrorCategory.EXECUTION

    @property
    def reason(self) -> str:
        detail = self.detail if self.detail is not None else ""
        if len(detail) > MAX_DETAIL_LENGTH:
            detail = detail[:MAX_DETAIL_LENGTH] + "..."
        return REASON_TEMPLATES[self.kind].format(detail=detail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "category": self.category.value,
            "reason": self.reason,
        }

"""Git command validation.

Turns an ``OperationRequest`` into a ``ParsedCommand`` or rejects it.
Nothing here has side effects: the checks are a pure function of the
request and the static tables below.
"""

import os
from typing import Dict, FrozenSet, Optional, Tuple

from git_proxy.errors import ErrorKind, PipelineError
from git_proxy.models import Operation, OperationRequest, ParsedCommand

# ---------------------------------------------------------------------------
# Allowlist / Blocklist Constants
# ---------------------------------------------------------------------------

ALLOWED_OPERATIONS: Dict[str, Operation] = {op.value: op for op in Operation}

# Flags blocked for every operation, matched anywhere in the argument list.
GLOBAL_BLOCKED_FLAGS: FrozenSet[str] = frozenset({
    # Hook and pack-helper command execution
    "--exec",
    "--upload-pack",
    "--receive-pack",
    "--template",
    "--no-verify",
    # Configuration injection
    "-c",
    "--config",
    # Verbose output can print credentials
    "-v",
    "-vv",
    "-vvv",
    "--verbose",
    "--debug",
    # Repository and working-tree overrides
    "--git-dir",
    "--work-tree",
    "--separate-git-dir",
})

COMMAND_BLOCKED_FLAGS: Dict[Operation, FrozenSet[str]] = {
    # clone -u <upload-pack>
    Operation.CLONE: frozenset({"-u"}),
}

# Short flags that git also accepts with the value stuck on (-ckey=value).
_STUCK_VALUE_FLAGS: FrozenSet[str] = frozenset({"-c", "-u"})


def _match_blocked_flag(arg: str, blocked: FrozenSet[str]) -> Optional[str]:
    """Return the blocked table entry ``arg`` matches, if any."""
    if arg in blocked:
        return arg
    if arg.startswith("--"):
        flag = arg.split("=", 1)[0]
        if flag in blocked:
            return flag
        # git's option parser accepts unambiguous abbreviations (--upload-p).
        if len(flag) > 3:
            for entry in sorted(blocked):
                if entry.startswith("--") and entry.startswith(flag):
                    return entry
        return None
    if arg.startswith("-") and len(arg) > 2:
        prefix = arg[:2]
        if prefix in _STUCK_VALUE_FLAGS and prefix in blocked:
            return prefix
    return None


def find_blocked_flag(operation: Operation, args: Tuple[str, ...]) -> Optional[str]:
    """Scan every argument for a blocked flag.

    Returns the table entry (never the raw argument) for the first hit.
    """
    blocked = GLOBAL_BLOCKED_FLAGS | COMMAND_BLOCKED_FLAGS.get(operation, frozenset())
    for arg in args:
        hit = _match_blocked_flag(arg, blocked)
        if hit is not None:
            return hit
    return None


def parse_command(
    request: OperationRequest,
) -> Tuple[Optional[ParsedCommand], Optional[PipelineError]]:
    """Validate a request and build the structured command.

    Returns:
        Tuple of (ParsedCommand, None) on success or (None, PipelineError).
    """
    name = (request.operation or "").strip()
    if not name:
        return None, PipelineError(ErrorKind.EMPTY_COMMAND)

    operation = ALLOWED_OPERATIONS.get(name)
    if operation is None:
        return None, PipelineError(ErrorKind.COMMAND_NOT_ALLOWED)

    args = tuple(request.args)
    flag = find_blocked_flag(operation, args)
    if flag is not None:
        return None, PipelineError(ErrorKind.DANGEROUS_FLAG, flag)

    working_directory = request.working_directory or ""
    if not os.path.isabs(working_directory):
        return None, PipelineError(ErrorKind.INVALID_WORKING_DIRECTORY)

    return ParsedCommand(
        operation=operation,
        args=args,
        working_directory=working_directory,
    ), None

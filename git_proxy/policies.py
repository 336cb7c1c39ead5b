"""Policy evaluation for validated git commands.

Three checks run in order and the first failure decides the outcome:

1. Branch protection: pushes that delete or force-update a protected
   branch are denied, even when force push is otherwise allowed.
2. Force-push blocking: an explicit force (``--force``, ``-f`` or a ``+``
   refspec, but not ``--force-with-lease``) is denied unless
   ``allow_force_push`` is set.
3. Repository filtering: the argument in the remote position, when it is a
   URL, ``host:path`` or filesystem path, and every URL-shaped argument
   are normalized to ``host/path`` and checked against the block list,
   then the allow list.

Named remotes such as ``origin`` are not resolved to URLs.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Tuple

from git_proxy.config import SecurityConfig
from git_proxy.errors import ErrorKind, PipelineError
from git_proxy.logging_config import get_logger
from git_proxy.models import Operation, ParsedCommand, PolicyDecision
from git_proxy.patterns import is_remote_location, is_url_like, normalize_repository

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Push Argument Parsing
# ---------------------------------------------------------------------------

_PUSH_OPTIONS_WITH_VALUE: FrozenSet[str] = frozenset({
    "--repo",
    "--push-option",
    "-o",
})

# Short options git push accepts bundled together (-fu).
_PUSH_SHORT_FLAGS: FrozenSet[str] = frozenset("nfudqv46")

EXPLICIT_FORCE_FLAGS: FrozenSet[str] = frozenset({"--force"})
LEASE_FORCE_FLAGS: FrozenSet[str] = frozenset({"--force-with-lease", "--force-if-includes"})
DELETE_FLAGS: FrozenSet[str] = frozenset({"--delete"})
ALL_BRANCH_FLAGS: FrozenSet[str] = frozenset({"--all", "--branches"})

# Placeholder target when a forced push names no destination ref.
IMPLICIT_TARGET = "HEAD"


def _short_flags(arg: str) -> FrozenSet[str]:
    """Letters in a bundled short-option argument such as ``-fu``."""
    if not arg.startswith("-") or arg.startswith("--") or len(arg) < 2:
        return frozenset()
    letters = arg[1:]
    if not all(ch in _PUSH_SHORT_FLAGS for ch in letters):
        return frozenset()
    return frozenset(letters)


def _has_push_flag(args: Tuple[str, ...], flags: FrozenSet[str], short: str = "") -> bool:
    for arg in args:
        if arg == "--":
            return False
        if arg in flags or arg.split("=", 1)[0] in flags:
            return True
        if short and short in _short_flags(arg):
            return True
    return False


def _extract_push_positionals(args: Tuple[str, ...]) -> List[str]:
    """Return [remote, refspec, ...] with options removed."""
    positionals: List[str] = []
    idx = 0
    while idx < len(args):
        arg = args[idx]
        if arg == "--":
            positionals.extend(args[idx + 1:])
            break
        if arg in _PUSH_OPTIONS_WITH_VALUE:
            idx += 2
            continue
        if arg.startswith("-o") and arg != "-o":
            idx += 1
            continue
        if arg.startswith("-"):
            idx += 1
            continue
        positionals.append(arg)
        idx += 1
    return positionals


def _branch_name(ref: str) -> Optional[str]:
    """Map a destination ref to a branch name, or None for non-branch refs."""
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/"):]
    if ref.startswith("refs/"):
        return None
    return ref


@dataclass
class PushTargets:
    """Branches a push would update, split by how."""

    forced: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    all_branches_forced: bool = False
    all_branches_deleted: bool = False
    explicit_force: bool = False


def parse_push_targets(args: Tuple[str, ...]) -> PushTargets:
    """Work out which branches a ``git push`` would create, update or delete."""
    targets = PushTargets()

    explicit_force = _has_push_flag(args, EXPLICIT_FORCE_FLAGS, short="f")
    lease_force = _has_push_flag(args, LEASE_FORCE_FLAGS)
    any_force = explicit_force or lease_force
    delete_mode = _has_push_flag(args, DELETE_FLAGS, short="d")

    if _has_push_flag(args, frozenset({"--mirror"})):
        targets.all_branches_forced = True
        targets.all_branches_deleted = True
    if _has_push_flag(args, frozenset({"--prune"})):
        targets.all_branches_deleted = True
    if any_force and _has_push_flag(args, ALL_BRANCH_FLAGS):
        targets.all_branches_forced = True

    positionals = _extract_push_positionals(args)
    refspecs = positionals[1:]

    for spec in refspecs:
        plus = spec.startswith("+")
        if plus:
            spec = spec[1:]
            explicit_force = True

        if delete_mode:
            branch = _branch_name(spec.split(":", 1)[-1]) if spec else None
            if branch:
                targets.deleted.append(branch)
            continue

        if ":" in spec:
            src, dst = spec.split(":", 1)
            if not src:
                branch = _branch_name(dst)
                if branch:
                    targets.deleted.append(branch)
                continue
            if not dst:
                dst = src
        else:
            dst = spec

        if dst == "HEAD":
            dst = IMPLICIT_TARGET
        branch = _branch_name(dst)
        if branch is None:
            continue
        if plus or any_force:
            targets.forced.append(branch)
        else:
            targets.updated.append(branch)

    # A forced push with no refspec updates whatever push.default selects.
    if any_force and not refspecs and not targets.all_branches_forced:
        targets.forced.append(IMPLICIT_TARGET)

    targets.explicit_force = explicit_force
    return targets


# ---------------------------------------------------------------------------
# Repository Extraction
# ---------------------------------------------------------------------------


# Options of clone, fetch, pull and ls-remote that take their value as the
# next argument. Blocked options are rejected before policy runs.
_REMOTE_OPTIONS_WITH_VALUE: FrozenSet[str] = frozenset({
    "-o", "--origin",
    "-b", "--branch",
    "-j", "--jobs",
    "-s", "--strategy",
    "-X", "--strategy-option",
    "--depth",
    "--reference",
    "--reference-if-able",
    "--shallow-since",
    "--shallow-exclude",
    "--filter",
    "--bundle-uri",
    "--server-option",
    "--refmap",
    "--negotiation-tip",
    "--recurse-submodules-default",
    "--sort",
})


def remote_argument(operation: Operation, args: Tuple[str, ...]) -> Optional[str]:
    """The argument git will contact: clone's source or the remote of the rest."""
    if operation is Operation.PUSH:
        for idx, arg in enumerate(args):
            if arg == "--":
                break
            if arg.startswith("--repo="):
                return arg.split("=", 1)[1]
            if arg == "--repo" and idx + 1 < len(args):
                return args[idx + 1]
        positionals = _extract_push_positionals(args)
        return positionals[0] if positionals else None

    idx = 0
    while idx < len(args):
        arg = args[idx]
        if arg == "--":
            return args[idx + 1] if idx + 1 < len(args) else None
        if arg in _REMOTE_OPTIONS_WITH_VALUE:
            idx += 2
            continue
        if arg.startswith("-"):
            idx += 1
            continue
        return arg
    return None


def extract_repositories(
    args: Tuple[str, ...], operation: Optional[Operation] = None
) -> List[str]:
    """Normalized identifiers for every repository the command names, in order.

    With ``operation`` given, the argument in the remote position comes
    first and counts whenever it is a URL or path (``host:path`` and
    ``/srv/repo.git`` included). URL-shaped arguments elsewhere are always
    collected. Handles both ``--repo URL`` and ``--repo=URL`` spellings.
    """
    candidates: List[str] = []
    if operation is not None:
        remote = remote_argument(operation, args)
        if remote is not None and is_remote_location(remote):
            candidates.append(remote)
    for arg in args:
        candidate = arg
        if arg.startswith("--") and "=" in arg:
            candidate = arg.split("=", 1)[1]
        if is_url_like(candidate):
            candidates.append(candidate)

    repositories: List[str] = []
    for candidate in candidates:
        identifier = normalize_repository(candidate)
        if identifier and identifier not in repositories:
            repositories.append(identifier)
    return repositories


# ---------------------------------------------------------------------------
# Policy Engine
# ---------------------------------------------------------------------------


class PolicyEngine:
    """Evaluates branch, force-push and repository rules.

    Pure: evaluation reads the immutable ``SecurityConfig`` and the command,
    nothing else.
    """

    def __init__(self, config: SecurityConfig):
        self.config = config

    def evaluate(self, command: ParsedCommand) -> PolicyDecision:
        repositories = extract_repositories(command.args, command.operation)
        repository = repositories[0] if repositories else None

        if command.operation is Operation.PUSH:
            targets = parse_push_targets(command.args)
            error = self.check_protected_branches(targets)
            if error is None:
                error = self.check_force_push(targets)
            if error is not None:
                logger.info(f"Push denied: {error.reason}")
                return PolicyDecision.deny(error, repository)

        for identifier in repositories:
            error = self.check_repository(identifier)
            if error is not None:
                logger.info(f"Repository denied: {identifier}")
                return PolicyDecision.deny(error, identifier)

        return PolicyDecision.allow(repository)

    def _first_protected(self) -> Optional[str]:
        protected = sorted(self.config.protected_branches)
        return protected[0] if protected else None

    def check_protected_branches(self, targets: PushTargets) -> Optional[PipelineError]:
        """Deny deletion or forced update of a protected branch."""
        if targets.all_branches_deleted:
            branch = self._first_protected()
            if branch is not None:
                return PipelineError(ErrorKind.PROTECTED_BRANCH_DELETE, branch)
        for branch in targets.deleted:
            if self._is_protected(branch):
                return PipelineError(ErrorKind.PROTECTED_BRANCH_DELETE, branch)

        if targets.all_branches_forced:
            branch = self._first_protected()
            if branch is not None:
                return PipelineError(ErrorKind.PROTECTED_BRANCH_FORCE_PUSH, branch)
        for branch in targets.forced:
            if self._is_protected(branch):
                return PipelineError(ErrorKind.PROTECTED_BRANCH_FORCE_PUSH, branch)
        return None

    def _is_protected(self, branch: str) -> bool:
        if not self.config.protected_branches:
            return False
        # Unresolvable or wildcard destinations may land on a protected branch.
        if branch == IMPLICIT_TARGET or any(ch in branch for ch in "*?["):
            return True
        return self.config.is_protected_branch(branch)

    def check_force_push(self, targets: PushTargets) -> Optional[PipelineError]:
        if targets.explicit_force and not self.config.allow_force_push:
            return PipelineError(ErrorKind.FORCE_PUSH_BLOCKED)
        return None

    def check_repository(self, repository: str) -> Optional[PipelineError]:
        if self.config.is_repository_blocked(repository):
            return PipelineError(ErrorKind.REPOSITORY_BLOCKED, repository)
        if not self.config.is_repository_allowed(repository):
            return PipelineError(ErrorKind.REPOSITORY_BLOCKED, repository)
        return None

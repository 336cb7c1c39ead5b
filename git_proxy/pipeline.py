"""Request orchestration.

``GitPipeline.handle`` is the single entry point for a tool call. Stages run
in a fixed order:

    RECEIVED -> VALIDATED -> ADMITTED -> POLICY_CHECKED -> EXECUTING -> COMPLETED

Validation runs before admission control so malformed requests never spend
rate-limit budget. Any rejection short-circuits to REJECTED before a process
is spawned; a failure while running git ends in ERRORED. Every terminal
state produces exactly one audit event and one ``ToolResult``.
"""

import asyncio
import threading
import time
from typing import List, Optional

from git_proxy.audit import AuditEvent, AuditLogger
from git_proxy.command_validation import parse_command
from git_proxy.config import SecurityConfig
from git_proxy.errors import ErrorKind, PipelineError
from git_proxy.executor import GitExecutor
from git_proxy.logging_config import LogContext, generate_request_id, get_logger
from git_proxy.models import (
    ExecutionOutcome,
    OperationRequest,
    ParsedCommand,
    PipelineState,
    ToolResult,
)
from git_proxy.policies import PolicyEngine
from git_proxy.rate_limiter import RateLimiter
from git_proxy.sanitizer import OutputSanitizer

logger = get_logger(__name__)

TRUNCATION_NOTE = "[output truncated]"


class GitPipeline:
    """Composes validation, admission, policy, execution and audit.

    Collaborators default to instances built from ``config``; pass them in
    to share a rate limiter or substitute a test clock.
    """

    def __init__(
        self,
        config: Optional[SecurityConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        executor: Optional[GitExecutor] = None,
        audit_logger: Optional[AuditLogger] = None,
        sanitizer: Optional[OutputSanitizer] = None,
    ):
        self.config = config or SecurityConfig()
        self.sanitizer = sanitizer or OutputSanitizer(self.config.compiled_redact_patterns)
        self.rate_limiter = rate_limiter or RateLimiter.from_config(self.config.rate_limit)
        self.policy = PolicyEngine(self.config)
        self.executor = executor or GitExecutor.from_config(self.config, sanitizer=self.sanitizer)
        self.audit_logger = audit_logger or AuditLogger(
            self.config.audit_log_path, sanitizer=self.sanitizer
        )

    def handle(
        self,
        request: OperationRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> ToolResult:
        request_id = generate_request_id()
        operation = (request.operation or "").strip() or None
        with LogContext(request_id=request_id, operation=operation):
            return self._run(request, request_id, cancel_event)

    def _run(
        self,
        request: OperationRequest,
        request_id: str,
        cancel_event: Optional[threading.Event],
    ) -> ToolResult:
        # RECEIVED
        received = time.monotonic()
        command, err = parse_command(request)
        if err:
            self._audit(AuditEvent.command_denied(
                _loggable_operation(request), None, err,
                duration_ms=_elapsed_ms(received), request_id=request_id,
            ))
            return self._rejected(err)

        # VALIDATED
        op = command.operation.value
        allowed, retry_after = self.rate_limiter.try_acquire()
        if not allowed:
            err = PipelineError(ErrorKind.RATE_LIMIT_EXCEEDED, f"{retry_after:.2f}")
            self._audit(AuditEvent.rate_limited(
                op, err, duration_ms=_elapsed_ms(received), request_id=request_id,
            ))
            return self._rejected(err)

        # ADMITTED
        decision = self.policy.evaluate(command)
        if not decision.allowed:
            self._audit(AuditEvent.command_denied(
                op, decision.repository, decision.error,
                duration_ms=_elapsed_ms(received), request_id=request_id,
            ))
            return self._rejected(decision.error)

        # POLICY_CHECKED -> EXECUTING
        logger.debug(f"Executing git {op}")
        started = time.monotonic()
        outcome, err = self.executor.execute(command, cancel_event=cancel_event)
        if err:
            self._audit(AuditEvent.command_errored(
                op, decision.repository, err,
                duration_ms=_elapsed_ms(started),
                request_id=request_id,
            ))
            return ToolResult(
                content=self.sanitizer.sanitize(f"git {op} failed: {err.reason}"),
                is_error=True,
                state=PipelineState.ERRORED,
            )

        self._audit(AuditEvent.command_executed(
            op, decision.repository, outcome.exit_code, outcome.duration_ms,
            request_id=request_id,
        ))
        return ToolResult(
            content=self.sanitizer.sanitize(render_outcome(command, outcome)),
            is_error=not outcome.success,
            state=PipelineState.COMPLETED,
        )

    def _rejected(self, err: PipelineError) -> ToolResult:
        return ToolResult(
            content=self.sanitizer.sanitize(f"{err.category.value} denied: {err.reason}"),
            is_error=True,
            state=PipelineState.REJECTED,
        )

    def _audit(self, event: AuditEvent) -> None:
        if not self.audit_logger.log(event):
            logger.error(f"Audit record for {event.event_type.value} was not persisted")

    async def handle_async(self, request: OperationRequest) -> ToolResult:
        """Run ``handle`` on a worker thread.

        Cancelling the awaiting task kills the running git process; the
        request still produces its audit record.
        """
        cancel_event = threading.Event()
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self.handle, request, cancel_event)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            cancel_event.set()
            raise


def _elapsed_ms(since: float) -> int:
    return int((time.monotonic() - since) * 1000)


def _loggable_operation(request: OperationRequest) -> Optional[str]:
    """Operation name for a request that failed validation, length capped."""
    name = (request.operation or "").strip()
    return name[:64] or None


def render_outcome(command: ParsedCommand, outcome: ExecutionOutcome) -> str:
    """Combine git's output into the caller-facing text."""
    parts: List[str] = []
    if not outcome.success:
        parts.append(f"git {command.operation.value} exited with code {outcome.exit_code}")
    if outcome.stdout:
        parts.append(outcome.stdout.rstrip("\n"))
    if outcome.stderr:
        parts.append(outcome.stderr.rstrip("\n"))
    if outcome.truncated:
        parts.append(TRUNCATION_NOTE)
    parts.extend(f"warning: {w}" for w in outcome.warnings)
    if not parts:
        return f"git {command.operation.value} completed successfully"
    return "\n".join(parts)

"""Git subprocess execution.

Runs the real git binary for a validated, admitted, policy-checked command:
- stdin is closed and terminal prompting is disabled, so git can never
  block waiting for input; credential helpers and the SSH agent inherited
  from the host keep working
- stdout and stderr are read on their own threads, each capped at
  ``max_output_bytes``; the excess is drained and discarded so the child
  never stalls on a full pipe
- the child's process group is killed on timeout or cancellation
- captured text is cut back to a UTF-8 character boundary, then sanitized
  before it is returned
"""

import asyncio
import os
import signal
import subprocess
import threading
import time
from typing import Dict, List, Optional, Tuple

from git_proxy.errors import ErrorKind, PipelineError
from git_proxy.logging_config import get_logger
from git_proxy.models import ExecutionOutcome, ParsedCommand
from git_proxy.sanitizer import OutputSanitizer

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT_SECONDS = 300
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024

READ_CHUNK_SIZE = 64 * 1024

# How often the wait loop checks for cancellation.
POLL_INTERVAL_SECONDS = 0.1

# Grace period for reader threads after the child has exited.
READER_JOIN_TIMEOUT = 5.0

# Variables that would redirect git the same way a blocked flag does.
ENV_VARS_TO_CLEAR: tuple = (
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_CONFIG_PARAMETERS",
    "GIT_CONFIG_COUNT",
    "GIT_EXEC_PATH",
    "GIT_TEMPLATE_DIR",
    "GIT_CURL_VERBOSE",
)

ENV_PREFIXES_TO_CLEAR: tuple = (
    "GIT_TRACE",
    "GIT_CONFIG_KEY_",
    "GIT_CONFIG_VALUE_",
)

ENV_OVERRIDES: Dict[str, str] = {
    "GIT_TERMINAL_PROMPT": "0",
    "GCM_INTERACTIVE": "never",
}

LFS_INDICATORS: tuple = (
    "git-lfs",
    "lfs.fetchinclude",
    "lfs.fetchexclude",
    "filter=lfs",
    "Downloading LFS",
    "LFS object",
)

LFS_WARNING = (
    "Git LFS objects detected. LFS content is fetched by git-lfs on the "
    "host and large files may not be downloaded correctly."
)


def build_env(base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Inherit the host environment with prompting disabled."""
    env = dict(os.environ if base is None else base)
    for name in ENV_VARS_TO_CLEAR:
        env.pop(name, None)
    for name in list(env):
        if name.startswith(ENV_PREFIXES_TO_CLEAR):
            env.pop(name)
    env.update(ENV_OVERRIDES)
    return env


def truncate_utf8(data: bytes, limit: int) -> bytes:
    """Cut ``data`` to at most ``limit`` bytes without splitting a character."""
    if len(data) <= limit:
        return data
    return drop_partial_tail(data[:limit])


def drop_partial_tail(cut: bytes) -> bytes:
    """Remove an incomplete UTF-8 sequence from the end of ``cut``."""
    # Walk back over continuation bytes (10xxxxxx) to the lead byte.
    start = len(cut) - 1
    while start >= 0 and len(cut) - start <= 4 and (cut[start] & 0xC0) == 0x80:
        start -= 1
    if start < 0:
        return cut
    lead = cut[start]
    if lead >= 0xF0:
        width = 4
    elif lead >= 0xE0:
        width = 3
    elif lead >= 0xC0:
        width = 2
    else:
        width = 1
    if start + width > len(cut):
        return cut[:start]
    return cut


def check_working_directory(path: str) -> Optional[PipelineError]:
    """Verify the working directory before spawning."""
    if not os.path.exists(path):
        return PipelineError(ErrorKind.WORKING_DIRECTORY_ERROR, "does not exist")
    if not os.path.isdir(path):
        return PipelineError(ErrorKind.WORKING_DIRECTORY_ERROR, "not a directory")
    if not os.access(path, os.R_OK | os.X_OK):
        return PipelineError(ErrorKind.WORKING_DIRECTORY_ERROR, "permission denied")
    return None


def detect_lfs(*texts: str) -> bool:
    return any(indicator in text for text in texts for indicator in LFS_INDICATORS)


class _StreamCollector(threading.Thread):
    """Reads one pipe to EOF, keeping at most ``limit`` bytes."""

    def __init__(self, stream, limit: int, name: str):
        super().__init__(name=name, daemon=True)
        self._stream = stream
        self._limit = limit
        self._chunks: List[bytes] = []
        self._kept = 0
        self.truncated = False

    def run(self) -> None:
        try:
            while True:
                chunk = self._stream.read1(READ_CHUNK_SIZE)
                if not chunk:
                    break
                room = self._limit - self._kept
                if room <= 0:
                    self.truncated = True
                    continue
                if len(chunk) > room:
                    self.truncated = True
                    chunk = chunk[:room]
                self._chunks.append(chunk)
                self._kept += len(chunk)
        except (OSError, ValueError) as exc:
            # Pipe closed underneath us after the child was killed.
            logger.debug(f"{self.name} reader stopped: {exc}")
        finally:
            self._stream.close()

    def data(self) -> bytes:
        raw = b"".join(self._chunks)
        if self.truncated:
            # The cap may have landed inside a multi-byte character.
            return drop_partial_tail(raw)
        return raw


class GitExecutor:
    """Spawns git for parsed commands."""

    def __init__(
        self,
        sanitizer: Optional[OutputSanitizer] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        git_binary: str = "git",
    ):
        self.sanitizer = sanitizer or OutputSanitizer()
        self.timeout_seconds = timeout_seconds
        self.max_output_bytes = max_output_bytes
        self.git_binary = git_binary

    @classmethod
    def from_config(cls, config, sanitizer: Optional[OutputSanitizer] = None) -> "GitExecutor":
        """Build an executor from a ``SecurityConfig``."""
        return cls(
            sanitizer=sanitizer,
            timeout_seconds=config.timeout_seconds,
            max_output_bytes=config.max_output_bytes,
            git_binary=config.git_binary,
        )

    def execute(
        self,
        command: ParsedCommand,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[Optional[ExecutionOutcome], Optional[PipelineError]]:
        """Run git and wait for it to finish.

        Returns:
            Tuple of (ExecutionOutcome, None) when git ran to completion,
            whatever its exit code, or (None, PipelineError) when it could
            not be started or was stopped.
        """
        err = check_working_directory(command.working_directory)
        if err:
            return None, err

        argv = [self.git_binary, *command.build_args()]
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                cwd=command.working_directory,
                env=build_env(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            logger.error(f"Failed to start git: {exc}")
            return None, PipelineError(ErrorKind.PROCESS_ERROR, exc.strerror or str(exc))

        stdout_reader = _StreamCollector(proc.stdout, self.max_output_bytes, "git-stdout")
        stderr_reader = _StreamCollector(proc.stderr, self.max_output_bytes, "git-stderr")
        stdout_reader.start()
        stderr_reader.start()

        stop_reason = self._wait(proc, started, cancel_event)
        stdout_reader.join(READER_JOIN_TIMEOUT)
        stderr_reader.join(READER_JOIN_TIMEOUT)
        duration = time.monotonic() - started

        if stop_reason is not None:
            logger.warning(
                f"git {command.operation.value} stopped after {duration:.1f}s: "
                f"{stop_reason.kind.value}"
            )
            return None, stop_reason

        stdout = self.sanitizer.sanitize_bytes(stdout_reader.data())
        stderr = self.sanitizer.sanitize_bytes(stderr_reader.data())
        truncated = stdout_reader.truncated or stderr_reader.truncated
        warnings: Tuple[str, ...] = ()
        if detect_lfs(stdout, stderr):
            warnings = (LFS_WARNING,)

        logger.info(
            f"git {command.operation.value} exited with code {proc.returncode} "
            f"in {duration:.2f}s",
            extra={"exit_code": proc.returncode, "truncated": truncated},
        )
        return ExecutionOutcome(
            exit_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
            truncated=truncated,
            duration_seconds=duration,
            warnings=warnings,
        ), None

    def _wait(
        self,
        proc: subprocess.Popen,
        started: float,
        cancel_event: Optional[threading.Event],
    ) -> Optional[PipelineError]:
        """Wait for exit, killing the child on timeout or cancellation."""
        deadline = started + self.timeout_seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._kill(proc)
                return PipelineError(ErrorKind.TIMEOUT, f"{self.timeout_seconds:g}")
            if cancel_event is not None and cancel_event.is_set():
                self._kill(proc)
                return PipelineError(ErrorKind.CANCELLED)
            try:
                proc.wait(timeout=min(POLL_INTERVAL_SECONDS, remaining))
                return None
            except subprocess.TimeoutExpired:
                continue

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        """Kill the child and anything it spawned, then reap it."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError as exc:
            logger.warning(f"killpg failed ({exc}), killing git directly")
            proc.kill()
        proc.wait()

    async def execute_async(
        self, command: ParsedCommand
    ) -> Tuple[Optional[ExecutionOutcome], Optional[PipelineError]]:
        """Run ``execute`` on a worker thread.

        Cancelling the awaiting task kills the child.
        """
        cancel_event = threading.Event()
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self.execute, command, cancel_event)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            cancel_event.set()
            raise

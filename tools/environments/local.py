"""Local execution environment: run a shell command to completion on the host."""

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

from tools.errors import CommandTimeout, RuntimeFailure, SpawnFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_MAX_BUFFER = 10 * 1024 * 1024      # Raw bytes read per stream before the command is killed
KILL_GRACE_SECONDS = 2
POLL_INTERVAL = 0.05
READER_JOIN_TIMEOUT = 3


@dataclass
class ExecutionOutcome:
    """What happened to one synchronous command."""
    command: str
    stdout: str = ""
    stderr: str = ""
    code: Optional[int] = None              # Exit status; None when killed by a signal
    signal: Optional[str] = None            # Signal name; None on a normal exit
    timed_out: bool = False
    error: Optional[str] = None             # Set on every failure
    error_type: Optional[str] = None        # ToolError kind, when the failure maps to one

    @property
    def success(self) -> bool:
        return self.error is None


class _CappedBuffer:
    """Keeps the first ``limit`` bytes of a stream and notes when more arrived."""

    def __init__(self, limit: int):
        self.limit = limit
        self.chunks = []
        self.size = 0
        self.exceeded = False

    def feed(self, data: bytes):
        room = self.limit - self.size
        if room > 0:
            kept = data[:room]
            self.chunks.append(kept)
            self.size += len(kept)
        if len(data) > room:
            self.exceeded = True

    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8", errors="replace")


def _drain(pipe, buffer: _CappedBuffer):
    # Keep reading past the ceiling so the child never blocks on a full pipe.
    try:
        while True:
            data = pipe.read1(4096)
            if not data:
                break
            buffer.feed(data)
    except (ValueError, OSError):
        pass
    finally:
        try:
            pipe.close()
        except OSError:
            pass


def _kill_process_group(proc, escalate: bool = False):
    """Kill the child and its entire process group."""
    try:
        os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except OSError:
            pass

    if escalate:
        try:
            proc.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                try:
                    proc.kill()
                except OSError:
                    pass
            proc.wait()


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


class LocalEnvironment:
    """Run commands directly on the host machine.

    Features:
    - ``/bin/sh -c`` in a new session so timeouts kill the whole process group
    - Two drain threads (stdout, stderr) to prevent pipe buffer deadlocks
    - Hard per-stream read ceiling (``max_buffer``) independent of truncation
    - Popen + polling for the deadline
    """

    def __init__(self, cwd: str = "", timeout_ms: int = DEFAULT_TIMEOUT_MS,
                 max_buffer: int = DEFAULT_MAX_BUFFER, env: Optional[Dict[str, str]] = None):
        self.cwd = cwd or os.getcwd()
        self.timeout_ms = timeout_ms
        self.max_buffer = max_buffer
        self.env = env or {}

    def execute(self, command: str, cwd: str = "", *,
                timeout_ms: Optional[int] = None) -> ExecutionOutcome:
        work_dir = cwd or self.cwd
        effective_timeout = timeout_ms if timeout_ms is not None else self.timeout_ms
        outcome = ExecutionOutcome(command=command)
        started = time.monotonic()

        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                cwd=work_dir,
                env={**os.environ, **self.env},
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.warning("Failed to spawn %r in %s: %s", command[:200], work_dir, e)
            failure = SpawnFailure(str(e))
            outcome.error = failure.message
            outcome.error_type = failure.kind
            return outcome

        stdout_buf = _CappedBuffer(self.max_buffer)
        stderr_buf = _CappedBuffer(self.max_buffer)
        readers = [
            threading.Thread(target=_drain, args=(proc.stdout, stdout_buf), daemon=True, name="run-stdout"),
            threading.Thread(target=_drain, args=(proc.stderr, stderr_buf), daemon=True, name="run-stderr"),
        ]
        for reader in readers:
            reader.start()

        deadline = started + effective_timeout / 1000.0
        status = "done"
        while True:
            try:
                proc.wait(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                pass
            if stdout_buf.exceeded or stderr_buf.exceeded:
                _kill_process_group(proc, escalate=True)
                status = "max_buffer"
                break
            if time.monotonic() > deadline:
                _kill_process_group(proc, escalate=True)
                status = "timeout"
                break

        for reader in readers:
            reader.join(timeout=READER_JOIN_TIMEOUT)
        if status == "done" and (stdout_buf.exceeded or stderr_buf.exceeded):
            status = "max_buffer"

        outcome.stdout = stdout_buf.text()
        outcome.stderr = stderr_buf.text()
        duration_ms = int((time.monotonic() - started) * 1000)

        if status == "timeout":
            failure = CommandTimeout(effective_timeout)
            outcome.timed_out = True
            outcome.signal = "SIGTERM"
            outcome.error = failure.message
            outcome.error_type = failure.kind
            logger.info("Command timed out after %dms: %s", effective_timeout, command[:200])
            return outcome

        if status == "max_buffer":
            stream = "stdout" if stdout_buf.exceeded else "stderr"
            failure = RuntimeFailure(f"{stream} maxBuffer length exceeded")
            outcome.signal = "SIGTERM"
            outcome.error = failure.message
            outcome.error_type = failure.kind
            logger.warning("Command exceeded %d bytes on %s: %s", self.max_buffer, stream, command[:200])
            return outcome

        rc = proc.returncode
        if rc < 0:
            outcome.signal = _signal_name(-rc)
            outcome.error = f"Command terminated by {outcome.signal}: {command}"
        elif rc != 0:
            outcome.code = rc
            outcome.error = f"Command failed with exit code {rc}: {command}"
        else:
            outcome.code = 0
        logger.debug("Command finished rc=%s in %dms: %s", rc, duration_ms, command[:200])
        return outcome

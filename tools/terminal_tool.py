#!/usr/bin/env python3
"""
Terminal Tool Module

Shell command execution exposed as four tools:

- run: Execute a command to completion and return its captured output
- run_background: Start a command as a named, supervised background process
- kill_background: Terminate a named background process
- list_background: Inspect all supervised background processes

Every stream and every serialized response is bounded by the truncation
policy; whatever does not fit is saved to an overflow file whose path is
reported back.

Usage:
    from tools.terminal_tool import run_command, run_background

    result = run_command("ls -la")
    started = run_background("python -m http.server", name="web")
"""

import json
import logging
import math
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from tools.environments.local import LocalEnvironment
from tools.errors import ToolError
from tools.overflow_writer import OverflowDirectory, OverflowWriter
from tools.process_registry import ProcessRegistry
from tools.results import (
    BackgroundStarted,
    KillSucceeded,
    ProcessListing,
    RunFailure,
    RunSuccess,
    ToolFailure,
    ToolResult,
)
from tools.truncation import DEFAULT_MAX_OUTPUT_SIZE, TruncationPolicy

logger = logging.getLogger(__name__)


@dataclass
class ToolRuntime:
    """Process-wide state shared by the terminal tools."""
    config: Dict[str, Any]
    directory: OverflowDirectory
    writer: OverflowWriter
    policy: TruncationPolicy
    environment: LocalEnvironment
    registry: ProcessRegistry

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ToolRuntime":
        output_cfg = config.get("output", {})
        run_cfg = config.get("run", {})
        bg_cfg = config.get("background", {})

        max_output_size = int(output_cfg.get("max_output_size", DEFAULT_MAX_OUTPUT_SIZE))
        if max_output_size <= 0:
            logger.warning("Ignoring output.max_output_size=%d: must be positive", max_output_size)
            max_output_size = DEFAULT_MAX_OUTPUT_SIZE
        directory = OverflowDirectory.resolve(output_cfg.get("overflow_dir") or None)
        writer = OverflowWriter(directory)
        return cls(
            config=config,
            directory=directory,
            writer=writer,
            policy=TruncationPolicy(writer, max_output_size),
            environment=LocalEnvironment(
                timeout_ms=int(run_cfg.get("timeout_ms", 30000)),
                max_buffer=int(run_cfg.get("max_buffer", 10 * 1024 * 1024)),
            ),
            registry=ProcessRegistry(
                writer,
                max_output_size=max_output_size,
                max_chunks=int(bg_cfg.get("max_chunks", 100)),
                recent_chunks=int(bg_cfg.get("recent_chunks", 10)),
                preview_bytes=int(bg_cfg.get("preview_bytes", 1000)),
                exited_ttl_seconds=float(bg_cfg.get("exited_ttl_seconds", 600)),
                max_exited=int(bg_cfg.get("max_exited", 64)),
            ),
        )


_runtime: Optional[ToolRuntime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> ToolRuntime:
    """Return the shared runtime, building it from the loaded config on first use."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            from bashkeeper_cli.config import load_config
            _runtime = ToolRuntime.from_config(load_config())
        return _runtime


def configure(config: Optional[Dict[str, Any]] = None) -> ToolRuntime:
    """Replace the shared runtime. Background processes of the old one are killed."""
    global _runtime
    if config is None:
        from bashkeeper_cli.config import load_config
        config = load_config()
    runtime = ToolRuntime.from_config(config)
    with _runtime_lock:
        previous, _runtime = _runtime, runtime
    if previous is not None:
        previous.registry.kill_all()
    return runtime


def shutdown() -> int:
    """Kill every background process of the shared runtime. Returns how many were signalled."""
    with _runtime_lock:
        runtime = _runtime
    if runtime is None:
        return 0
    killed = runtime.registry.kill_all()
    if killed:
        logger.info("Shutdown: sent SIGTERM to %d background process(es)", killed)
    return killed


# =============================================================================
# Operations
# =============================================================================

def run_command(command: str, cwd: Optional[str] = None, timeout: Optional[int] = None) -> ToolResult:
    """
    Run *command* to completion.

    Args:
        command: Shell command, run with ``/bin/sh -c``
        cwd: Working directory (default: the service's cwd)
        timeout: Timeout in milliseconds (default: ``run.timeout_ms``)

    Returns:
        RunSuccess on exit status 0, RunFailure otherwise
    """
    runtime = get_runtime()
    outcome = runtime.environment.execute(command, cwd or "", timeout_ms=timeout)

    stdout = runtime.policy.truncate(outcome.stdout, category="stdout")
    stderr = runtime.policy.truncate(outcome.stderr, category="stderr")
    stdout_overflow = stdout.describe() if stdout.overflow else None
    stderr_overflow = stderr.describe() if stderr.overflow else None

    if outcome.success:
        return RunSuccess(
            command=command,
            stdout=stdout.content,
            stderr=stderr.content,
            stdout_overflow=stdout_overflow,
            stderr_overflow=stderr_overflow,
        )
    return RunFailure(
        command=command,
        error=outcome.error,
        stdout=stdout.content,
        stderr=stderr.content,
        code=outcome.code,
        signal=outcome.signal,
        timed_out=outcome.timed_out,
        error_type=outcome.error_type,
        stdout_overflow=stdout_overflow,
        stderr_overflow=stderr_overflow,
    )


def run_background(command: str, name: str, cwd: Optional[str] = None) -> ToolResult:
    """Start *command* under *name*. Returns as soon as the process is spawned."""
    try:
        managed = get_runtime().registry.register(name, command, cwd)
    except ToolError as e:
        return ToolFailure(error=e.message, error_type=e.kind, pid=e.pid)
    return BackgroundStarted(name=name, pid=managed.pid, command=command)


def kill_background(name: str) -> ToolResult:
    """Terminate the background process registered as *name*."""
    try:
        report = get_runtime().registry.kill(name)
    except ToolError as e:
        return ToolFailure(error=e.message, error_type=e.kind, pid=e.pid)
    overflow = {k: v for k, v in report.items() if k.endswith("Overflow")}
    return KillSucceeded(name=name, pid=report["pid"], forced=report["forced"], overflow=overflow)


def list_background() -> ToolResult:
    registry = get_runtime().registry
    return ProcessListing(processes=registry.snapshot(), recently_exited=registry.recently_exited())


def _respond(result: ToolResult) -> str:
    """Serialize *result* as indented JSON, bounded by the truncation policy."""
    text = json.dumps(result.to_dict(), indent=2, ensure_ascii=False)
    return get_runtime().policy.truncate(text, category="response").content


def check_terminal_requirements() -> bool:
    """Terminal tools need a POSIX shell."""
    return os.name == "posix" and os.path.exists("/bin/sh")


# =============================================================================
# Schemas
# =============================================================================

RUN_SCHEMA = {
    "name": "run",
    "description": (
        "Execute a shell command and return its output. The command runs with "
        "/bin/sh -c and is killed when the timeout expires. stdout and stderr are "
        "returned separately; output larger than the configured limit is truncated "
        "and the full text is saved to a file whose path is included in the result."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "Shell command to execute"
            },
            "cwd": {
                "type": "string",
                "description": "Working directory (optional)"
            },
            "timeout": {
                "type": "integer",
                "description": "Timeout in milliseconds (default: 30000)",
                "minimum": 1
            }
        },
        "required": ["command"]
    }
}

RUN_BACKGROUND_SCHEMA = {
    "name": "run_background",
    "description": (
        "Run a command in the background under a unique name. Returns immediately "
        "with the process id. Use list_background to see its recent output and "
        "kill_background to stop it."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "Command to run in background"
            },
            "name": {
                "type": "string",
                "description": "Unique name for this background process"
            },
            "cwd": {
                "type": "string",
                "description": "Working directory (optional)"
            }
        },
        "required": ["command", "name"]
    }
}

KILL_BACKGROUND_SCHEMA = {
    "name": "kill_background",
    "description": "Kill a background process by name.",
    "parameters": {
        "type": "object",
        "properties": {
            "name": {
                "type": "string",
                "description": "Name of the background process to kill"
            }
        },
        "required": ["name"]
    }
}

LIST_BACKGROUND_SCHEMA = {
    "name": "list_background",
    "description": (
        "List all running background processes with their recent output, plus "
        "processes that exited recently (including any saved overflow files)."
    ),
    "parameters": {
        "type": "object",
        "properties": {}
    }
}


# =============================================================================
# Handlers
# =============================================================================

def _require_str(args: Dict[str, Any], key: str) -> Optional[str]:
    value = args.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return None


def _invalid(message: str) -> str:
    return _respond(ToolFailure(error=message, error_type="InvalidArguments"))


def _handle_run(args: Dict[str, Any], **kw) -> str:
    command = _require_str(args, "command")
    if command is None:
        return _invalid("Missing required argument: command")
    timeout = args.get("timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            return _invalid("timeout must be a positive number of milliseconds")
        timeout = max(1, math.ceil(timeout))
    return _respond(run_command(command, cwd=args.get("cwd"), timeout=timeout))


def _handle_run_background(args: Dict[str, Any], **kw) -> str:
    command = _require_str(args, "command")
    name = _require_str(args, "name")
    if command is None or name is None:
        return _invalid("Missing required argument: " + ("command" if command is None else "name"))
    return _respond(run_background(command, name, cwd=args.get("cwd")))


def _handle_kill_background(args: Dict[str, Any], **kw) -> str:
    name = _require_str(args, "name")
    if name is None:
        return _invalid("Missing required argument: name")
    return _respond(kill_background(name))


def _handle_list_background(args: Dict[str, Any], **kw) -> str:
    return _respond(list_background())


# --- Registry ---
from tools.registry import registry

registry.register(
    name="run",
    toolset="terminal",
    schema=RUN_SCHEMA,
    handler=_handle_run,
    check_fn=check_terminal_requirements,
)
registry.register(
    name="run_background",
    toolset="terminal",
    schema=RUN_BACKGROUND_SCHEMA,
    handler=_handle_run_background,
    check_fn=check_terminal_requirements,
)
registry.register(
    name="kill_background",
    toolset="terminal",
    schema=KILL_BACKGROUND_SCHEMA,
    handler=_handle_kill_background,
    check_fn=check_terminal_requirements,
)
registry.register(
    name="list_background",
    toolset="terminal",
    schema=LIST_BACKGROUND_SCHEMA,
    handler=_handle_list_background,
    check_fn=check_terminal_requirements,
)

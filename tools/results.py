"""
Result variants returned by the terminal tools.

Each tool returns one of these dataclasses; ``success`` is the tag and
``to_dict()`` yields the JSON envelope in the field order callers see.
Optional fields are only emitted when set.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass
class RunSuccess:
    command: str
    stdout: str = ""
    stderr: str = ""
    stdout_overflow: Optional[Dict[str, Any]] = None
    stderr_overflow: Optional[Dict[str, Any]] = None
    success: bool = field(default=True, init=False)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": True,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "command": self.command,
        }
        if self.stdout_overflow:
            data["stdoutOverflow"] = self.stdout_overflow
        if self.stderr_overflow:
            data["stderrOverflow"] = self.stderr_overflow
        return data


@dataclass
class RunFailure:
    command: str
    error: str
    stdout: str = ""
    stderr: str = ""
    code: Optional[int] = None
    signal: Optional[str] = None
    timed_out: bool = False
    error_type: Optional[str] = None
    stdout_overflow: Optional[Dict[str, Any]] = None
    stderr_overflow: Optional[Dict[str, Any]] = None
    success: bool = field(default=False, init=False)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": False,
            "error": self.error,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "code": self.code,
            "signal": self.signal,
            "command": self.command,
        }
        if self.timed_out:
            data["timedOut"] = True
        if self.error_type:
            data["errorType"] = self.error_type
        if self.stdout_overflow:
            data["stdoutOverflow"] = self.stdout_overflow
        if self.stderr_overflow:
            data["stderrOverflow"] = self.stderr_overflow
        return data


@dataclass
class BackgroundStarted:
    name: str
    pid: int
    command: str
    success: bool = field(default=True, init=False)

    @property
    def message(self) -> str:
        return f"Started background process '{self.name}' (PID: {self.pid})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "name": self.name,
            "pid": self.pid,
            "command": self.command,
            "message": self.message,
        }


@dataclass
class KillSucceeded:
    name: str
    pid: int
    forced: bool = False
    overflow: Dict[str, Any] = field(default_factory=dict)
    success: bool = field(default=True, init=False)

    @property
    def message(self) -> str:
        how = "Force killed" if self.forced else "Killed"
        return f"{how} background process '{self.name}' (PID: {self.pid})"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": True,
            "message": self.message,
            "pid": self.pid,
        }
        if self.forced:
            data["forced"] = True
        data.update(self.overflow)
        return data


@dataclass
class ProcessListing:
    processes: List[Dict[str, Any]] = field(default_factory=list)
    recently_exited: List[Dict[str, Any]] = field(default_factory=list)
    success: bool = field(default=True, init=False)

    @property
    def count(self) -> int:
        return len(self.processes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "count": self.count,
            "processes": self.processes,
            "recentlyExited": self.recently_exited,
        }


@dataclass
class ToolFailure:
    error: str
    error_type: Optional[str] = None
    pid: Optional[int] = None
    success: bool = field(default=False, init=False)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": False, "error": self.error}
        if self.error_type:
            data["errorType"] = self.error_type
        if self.pid is not None:
            data["pid"] = self.pid
        return data


ToolResult = Union[RunSuccess, RunFailure, BackgroundStarted, KillSucceeded, ProcessListing, ToolFailure]

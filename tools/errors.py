"""Error taxonomy for the terminal tools.

Every tool entry point catches ``ToolError`` and turns it into a
``{"success": false, "error": ...}`` result; ``kind`` is the stable label
reported alongside the message.
"""

from typing import Optional


class ToolError(Exception):
    """Base class for failures reported back to the tool caller."""

    kind = "ToolError"

    def __init__(self, message: str, *, pid: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.pid = pid


class AlreadyRunning(ToolError):
    kind = "AlreadyRunning"

    def __init__(self, name: str):
        super().__init__(f"Process '{name}' is already running")
        self.name = name


class NotFound(ToolError):
    kind = "NotFound"

    def __init__(self, name: str):
        super().__init__(f"No background process found with name '{name}'")
        self.name = name


class SpawnFailure(ToolError):
    """The OS refused to start the command."""

    kind = "SpawnFailure"


class RuntimeFailure(ToolError):
    """The process failed after it was started (reader error, unkillable)."""

    kind = "RuntimeFailure"


class CommandTimeout(ToolError):
    kind = "Timeout"

    def __init__(self, timeout_ms: int):
        super().__init__(f"Command timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class PersistenceFailure(ToolError):
    """Overflow content could not be written. Never reaches the caller as a failure."""

    kind = "PersistenceFailure"

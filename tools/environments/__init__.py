"""Execution environments for synchronous commands."""

from tools.environments.local import ExecutionOutcome, LocalEnvironment

__all__ = ["ExecutionOutcome", "LocalEnvironment"]

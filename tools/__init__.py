#!/usr/bin/env python3
"""
Tools Package

Command execution tools and the machinery behind them:

- terminal_tool: run / run_background / kill_background / list_background
- process_registry: Named background processes and their lifecycle
- output_buffer: Bounded per-stream output accumulation
- truncation: Byte-limit truncation with overflow files
- overflow_writer: Overflow directory resolution and file writes
- environments.local: Synchronous command execution

The tools are imported into model_tools.py which provides a unified interface
for the protocol layer to list and call them.
"""

from .terminal_tool import (
    run_command,
    run_background,
    kill_background,
    list_background,
    check_terminal_requirements,
)

__all__ = [
    'run_command',
    'run_background',
    'kill_background',
    'list_background',
    'check_terminal_requirements',
]

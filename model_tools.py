#!/usr/bin/env python3
"""
Model Tools Module

This module exposes tool schemas and a single call dispatcher for the
protocol layer. Tool modules register themselves with ``tools.registry``
when imported; importing them here is what makes them available.

Currently supports:
- Terminal tools (run, run_background, kill_background, list_background)
  from terminal_tool.py

Usage:
    from model_tools import get_tool_definitions, handle_function_call

    # Get all available tool definitions
    tools = get_tool_definitions()

    # Handle a call from the protocol layer
    result = handle_function_call("run", {"command": "echo hello"})
"""

import json
import logging
from typing import Any, Dict, List, Optional

import tools.terminal_tool  # noqa: F401  (registers the terminal tools)
from tools.registry import registry

logger = logging.getLogger(__name__)


def get_all_tool_names() -> List[str]:
    return registry.get_all_tool_names()


def get_toolset_for_tool(tool_name: str) -> str:
    return registry.get_toolset_for_tool(tool_name)


def get_tool_definitions(enabled_toolsets: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """
    Get tool definitions in OpenAI's function format.

    Args:
        enabled_toolsets: Only include tools from these toolsets. If None,
                          all available tools are included.

    Returns:
        List[Dict]: Tool definitions sorted by name
    """
    return registry.get_definitions(enabled_toolsets)


def handle_function_call(function_name: str, function_args: Optional[Dict[str, Any]] = None) -> str:
    """
    Main function call dispatcher.

    Args:
        function_name (str): Name of the tool to call
        function_args (Dict): Arguments for the tool

    Returns:
        str: Tool result as JSON text

    Raises:
        None: Unknown tools and handler errors come back as
              ``{"success": false, "error": ...}`` instead of raising
    """
    entry = registry.get(function_name)
    if entry is None:
        logger.warning("Unknown tool requested: %s", function_name)
        return json.dumps({"success": False, "error": f"Unknown tool: {function_name}"}, indent=2)

    if function_args is None:
        function_args = {}
    if not isinstance(function_args, dict):
        return json.dumps(
            {"success": False, "error": f"Arguments for {function_name} must be an object"},
            indent=2,
        )

    try:
        return entry.handler(function_args)
    except Exception as e:
        logger.exception("Error executing %s", function_name)
        return json.dumps({"success": False, "error": f"Error executing {function_name}: {e}"}, indent=2)

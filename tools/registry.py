"""
Tool registry.

Tool modules register themselves at import time:

    from tools.registry import registry

    registry.register(
        name="run",
        toolset="terminal",
        schema=RUN_SCHEMA,
        handler=_handle_run,
    )

``model_tools`` reads definitions and dispatches calls through the shared
``registry`` instance.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ToolEntry:
    name: str
    toolset: str
    schema: Dict[str, Any]
    handler: Callable[..., str]
    check_fn: Optional[Callable[[], bool]] = None

    def is_available(self) -> bool:
        if self.check_fn is None:
            return True
        try:
            return bool(self.check_fn())
        except Exception as e:
            logger.warning("Requirement check for tool '%s' failed: %s", self.name, e)
            return False

    def definition(self) -> Dict[str, Any]:
        """OpenAI-style function definition."""
        return {"type": "function", "function": self.schema}


class ToolRegistry:
    def __init__(self):
        self._tools: Dict[str, ToolEntry] = {}

    def register(self, name: str, toolset: str, schema: Dict[str, Any],
                 handler: Callable[..., str], check_fn: Optional[Callable[[], bool]] = None):
        if name in self._tools:
            logger.debug("Re-registering tool '%s'", name)
        self._tools[name] = ToolEntry(name, toolset, schema, handler, check_fn)

    def get(self, name: str) -> Optional[ToolEntry]:
        return self._tools.get(name)

    def get_all_tool_names(self) -> List[str]:
        return sorted(self._tools)

    def get_toolset_for_tool(self, name: str) -> str:
        entry = self._tools.get(name)
        return entry.toolset if entry else "unknown"

    def get_definitions(self, toolsets: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Definitions of available tools, optionally limited to *toolsets*, sorted by name."""
        entries = [
            entry for entry in self._tools.values()
            if (toolsets is None or entry.toolset in toolsets) and entry.is_available()
        ]
        entries.sort(key=lambda e: e.name)
        return [entry.definition() for entry in entries]


registry = ToolRegistry()

"""Tool contract, catalog and the built-in workspace tools."""

from __future__ import annotations

from .base import BuiltinTool, RegisteredTool, Tool, ToolCatalog, coerce_tool_input
from .builtin import workspace_tools

__all__ = [
    "BuiltinTool",
    "RegisteredTool",
    "Tool",
    "ToolCatalog",
    "coerce_tool_input",
    "workspace_tools",
]

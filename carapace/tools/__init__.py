"""Tools -- registry, built-in workspace tools, call summaries."""

from carapace.tools.builtin import register_builtin_tools
from carapace.tools.registry import Tool, ToolExecutionContext, ToolOutcome, ToolRegistry
from carapace.tools.summary import format_tool_summary

__all__ = [
    "Tool",
    "ToolExecutionContext",
    "ToolOutcome",
    "ToolRegistry",
    "format_tool_summary",
    "register_builtin_tools",
]

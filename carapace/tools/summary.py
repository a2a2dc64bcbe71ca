"""One-line human summaries of tool calls.

Used for the <!-- tools: ... --> marker persisted with assistant text.
"""

from __future__ import annotations

from typing import Any

BASH_SUMMARY_CHARS = 60


def _field(tool_input: dict[str, Any], key: str, default: str = "?") -> str:
    value = tool_input.get(key)
    return value if isinstance(value, str) else default


def format_tool_summary(name: str, tool_input: dict[str, Any]) -> str:
    if name == "bash":
        command = _field(tool_input, "command")
        if len(command) > BASH_SUMMARY_CHARS:
            return f"bash: {command[:BASH_SUMMARY_CHARS]}…"
        return f"bash: {command}"
    if name in ("read", "read_file"):
        return f"Read {_field(tool_input, 'path')}"
    if name in ("write", "write_file"):
        return f"Write {_field(tool_input, 'path')}"
    if name in ("edit", "edit_file"):
        return f"Edit {_field(tool_input, 'path')}"
    if name == "ls":
        return f"ls {_field(tool_input, 'path', '.')}"
    if name == "glob":
        return f"Glob {_field(tool_input, 'pattern')}"
    if name == "grep":
        return f"Grep '{_field(tool_input, 'pattern')}'"
    if name in ("web_search", "exa_search", "brave_search"):
        return f"Search: {_field(tool_input, 'query')}"
    if name == "plan":
        return f"Plan: {_field(tool_input, 'operation')}"
    if name == "task_manager":
        return f"Task: {_field(tool_input, 'operation')}"
    if name == "memory_search":
        return f"Memory: {_field(tool_input, 'query')}"
    return name


def tools_marker(summaries: list[str]) -> str:
    """Marker appended to the turn text after a tool iteration."""
    return f"<!-- tools: {' | '.join(summaries)} -->"

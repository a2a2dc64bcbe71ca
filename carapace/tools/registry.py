"""Tool registry -- registers tools, exposes their schemas, executes calls.

Each tool declares a pydantic model for its input. Input is validated
at the registry boundary, so handlers receive a typed params object
instead of raw **kwargs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ValidationError

from carapace.errors import (
    ReadOnlyViolationError,
    ToolExecutionError,
    ToolInputError,
    ToolNotFoundError,
)

logger = logging.getLogger(__name__)

# Capabilities
READ_FILES = "read_files"
WRITE_FILES = "write_files"
EXECUTE_SHELL = "execute_shell"

MUTATING_CAPABILITIES = frozenset({WRITE_FILES, EXECUTE_SHELL})


@dataclass
class ToolExecutionContext:
    session_id: UUID
    working_directory: Path
    auto_approve: bool = False
    read_only: bool = False
    timeout_secs: int = 120
    env_vars: dict[str, str] = field(default_factory=dict)


@dataclass
class ToolOutcome:
    success: bool
    output: str = ""
    error: str | None = None

    @classmethod
    def ok(cls, output: str) -> ToolOutcome:
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str, output: str = "") -> ToolOutcome:
        return cls(success=False, output=output, error=error)

    @property
    def text(self) -> str:
        """What the model sees as the tool result."""
        if self.success:
            return self.output
        return self.error or self.output or "Tool failed"


ToolHandler = Callable[[Any, ToolExecutionContext], Awaitable[ToolOutcome]]


@dataclass
class Tool:
    name: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler
    capabilities: frozenset[str] = frozenset()
    requires_approval: bool = False

    @property
    def is_mutating(self) -> bool:
        return bool(self.capabilities & MUTATING_CAPABILITIES)

    def definition(self) -> dict[str, Any]:
        """Tool definition in Anthropic API format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_model.model_json_schema(),
        }


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Replacing already registered tool: %s", tool.name)
        self._tools[tool.name] = tool

    def count(self) -> int:
        return len(self._tools)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def get_tool_definitions(self) -> list[dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    async def execute(
        self,
        name: str,
        tool_input: dict[str, Any],
        context: ToolExecutionContext,
    ) -> ToolOutcome:
        """Validate input and run a tool.

        Raises ToolNotFoundError, ReadOnlyViolationError, ToolInputError,
        or ToolExecutionError when the handler itself raises. A timeout
        is reported as a failed outcome.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)

        if context.read_only and tool.is_mutating:
            raise ReadOnlyViolationError(name)

        try:
            params = tool.input_model.model_validate(tool_input)
        except ValidationError as e:
            raise ToolInputError(f"Invalid input for {name}: {e}") from e

        try:
            return await asyncio.wait_for(
                tool.handler(params, context), timeout=context.timeout_secs
            )
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %ds", name, context.timeout_secs)
            return ToolOutcome.fail(f"Tool '{name}' timed out after {context.timeout_secs}s")
        except Exception as e:
            logger.exception("Tool execution error for %s", name)
            raise ToolExecutionError(str(e)) from e

"""Error taxonomy for the agent runtime.

Agent errors are terminal for a turn and reach the caller. Tool errors
never do: the runner folds them into error-flagged tool results so the
model can react to them.
"""

from __future__ import annotations

from uuid import UUID

# Substrings providers use when the prompt exceeds the context window
_PROMPT_TOO_LONG_MARKERS = ("prompt is too long", "too many tokens")


class AgentError(Exception):
    """Base class for failures surfaced to the caller of a turn."""


class SessionNotFoundError(AgentError):
    def __init__(self, session_id: UUID | str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class ProviderError(AgentError):
    """Model provider failure (HTTP error, bad payload, transport)."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        error_type: str | None = None,
    ) -> None:
        self.status = status
        self.error_type = error_type
        super().__init__(message)

    @property
    def is_prompt_too_long(self) -> bool:
        text = str(self).lower()
        return any(marker in text for marker in _PROMPT_TOO_LONG_MARKERS)


class StreamError(ProviderError):
    """In-stream error event or transport failure mid-stream."""


class DatabaseError(AgentError):
    """Persistence failure. Never retried in place."""


class MaxIterationsExceededError(AgentError):
    def __init__(self, max_iterations: int) -> None:
        self.max_iterations = max_iterations
        super().__init__(f"Maximum tool iterations exceeded ({max_iterations})")


class InternalError(AgentError):
    """Broken internal invariant."""


# ---------------------------------------------------------------------------
# Tool-side errors (converted to tool results, never raised to callers)
# ---------------------------------------------------------------------------


class ToolError(Exception):
    """Base class for tool registry and execution failures."""


class ToolNotFoundError(ToolError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool not found: {name}")


class ToolInputError(ToolError):
    """Tool input failed schema validation."""


class ReadOnlyViolationError(ToolError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' modifies state and is not allowed in read-only mode")


class ToolExecutionError(ToolError):
    """Tool handler raised."""

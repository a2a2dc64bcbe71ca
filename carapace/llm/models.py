"""Shared request/response models for the provider layer.

Kept separate from the runner to avoid circular imports with
compaction.py and stream.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from carapace.llm.content import Message, ToolUseBlock, join_text


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass
class LLMRequest:
    """A single model call."""

    model: str
    messages: list[Message]
    system: str | None = None
    max_tokens: int = 4096
    tools: list[dict[str, Any]] | None = None
    stream: bool = False

    def to_payload(self) -> dict[str, Any]:
        """Build the Messages API request body."""
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [m.to_api() for m in self.messages],
        }
        if self.system:
            payload["system"] = self.system
        if self.tools:
            payload["tools"] = self.tools
        if self.stream:
            payload["stream"] = True
        return payload


@dataclass
class LLMResponse:
    """A complete model response (streamed or not)."""

    id: str
    model: str
    content: list[Any] = field(default_factory=list)  # ContentBlock models
    stop_reason: str | None = None  # end_turn, max_tokens, tool_use, stop_sequence
    usage: TokenUsage = field(default_factory=TokenUsage)

    def text(self) -> str:
        return join_text(self.content)

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]


@dataclass
class AgentResponse:
    """Result of one conversational turn."""

    message_id: UUID | None  # None when nothing was persisted (cancelled)
    content: str
    stop_reason: str | None
    usage: TokenUsage
    cost: float
    model: str
    cancelled: bool = False

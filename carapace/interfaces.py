"""Collaborator protocols the runner depends on.

Structural types only; AnthropicProvider, ToolRegistry and MessageStore
satisfy them, and so do the fakes in the tests.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol
from uuid import UUID

from carapace.agent.approval import ApprovalRequest
from carapace.events import ProgressEvent
from carapace.llm.models import LLMRequest, LLMResponse
from carapace.llm.stream import StreamEvent
from carapace.storage.schemas import SessionRecord, StoredMessage
from carapace.tools.registry import Tool, ToolExecutionContext, ToolOutcome

ApprovalResolver = Callable[[ApprovalRequest], Awaitable[bool]]
ProgressObserver = Callable[[ProgressEvent], None]
QueuePoll = Callable[[], Awaitable[str | None]]


class ModelProvider(Protocol):
    name: str
    default_model: str

    async def complete(self, request: LLMRequest) -> LLMResponse: ...

    def stream(self, request: LLMRequest) -> AsyncIterator[StreamEvent]: ...

    def context_window(self, model: str) -> int | None: ...

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float: ...


class ToolCatalog(Protocol):
    def count(self) -> int: ...

    def get_tool_definitions(self) -> list[dict[str, Any]]: ...

    def get(self, name: str) -> Tool | None: ...

    async def execute(
        self, name: str, tool_input: dict[str, Any], context: ToolExecutionContext
    ) -> ToolOutcome: ...


class Persistence(Protocol):
    async def get_session(self, session_id: UUID) -> SessionRecord | None: ...

    async def list_messages(self, session_id: UUID) -> list[StoredMessage]: ...

    async def append_message(self, session_id: UUID, role: str, content: str) -> StoredMessage: ...

    async def update_message_usage(self, message_id: UUID, token_count: int, cost: float) -> None: ...

    async def update_session_usage(self, session_id: UUID, token_count: int, cost: float) -> None: ...

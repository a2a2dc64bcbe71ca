"""Shared fixtures: scripted provider, in-memory store, test tools."""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator
from typing import Any

import pytest
from pydantic import BaseModel

from carapace.config import Settings
from carapace.llm.content import TextBlock, ToolUseBlock
from carapace.llm.models import LLMRequest, LLMResponse, TokenUsage
from carapace.llm.stream import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    InputJsonDelta,
    MessageDelta,
    MessageStart,
    MessageStop,
    StreamEvent,
    TextDelta,
)
from carapace.storage.schemas import SessionRecord, StoredMessage
from carapace.tools.registry import Tool, ToolExecutionContext, ToolOutcome, ToolRegistry

# ---------------------------------------------------------------------------
# Response builders
# ---------------------------------------------------------------------------


def text_response(text: str, input_tokens: int = 10, output_tokens: int = 20) -> LLMResponse:
    return LLMResponse(
        id=f"msg_{uuid.uuid4().hex[:8]}",
        model="test-model",
        content=[TextBlock(text=text)],
        stop_reason="end_turn",
        usage=TokenUsage(input_tokens, output_tokens),
    )


def tool_response(
    calls: list[tuple[str, dict[str, Any]]],
    text: str = "",
    input_tokens: int = 10,
    output_tokens: int = 20,
) -> LLMResponse:
    content: list[Any] = [TextBlock(text=text)] if text else []
    for name, tool_input in calls:
        content.append(
            ToolUseBlock(id=f"toolu_{uuid.uuid4().hex[:8]}", name=name, input=tool_input)
        )
    return LLMResponse(
        id=f"msg_{uuid.uuid4().hex[:8]}",
        model="test-model",
        content=content,
        stop_reason="tool_use",
        usage=TokenUsage(input_tokens, output_tokens),
    )


def response_events(response: LLMResponse) -> list[StreamEvent]:
    """Render a response as the event sequence the API would stream."""
    events: list[StreamEvent] = [
        MessageStart(id=response.id, model=response.model, usage=TokenUsage(response.usage.input_tokens, 0))
    ]
    for index, block in enumerate(response.content):
        if isinstance(block, TextBlock):
            events.append(ContentBlockStart(index=index, block=TextBlock(text="")))
            events.append(ContentBlockDelta(index=index, delta=TextDelta(block.text)))
        else:
            events.append(ContentBlockStart(index=index, block=ToolUseBlock(id=block.id, name=block.name)))
            events.append(ContentBlockDelta(index=index, delta=InputJsonDelta(json.dumps(block.input))))
        events.append(ContentBlockStop(index=index))
    events.append(MessageDelta(stop_reason=response.stop_reason, usage=TokenUsage(0, response.usage.output_tokens)))
    events.append(MessageStop())
    return events


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------


class FakeProvider:
    """Replays scripted responses. Exceptions in the script are raised."""

    name = "fake"
    default_model = "test-model"

    def __init__(
        self,
        responses: list[LLMResponse | Exception] | None = None,
        complete_responses: list[LLMResponse | Exception] | None = None,
        context_window: int | None = 200_000,
    ) -> None:
        self.responses = list(responses or [])
        self.complete_responses = list(complete_responses or [])
        self.window = context_window
        self.stream_requests: list[LLMRequest] = []
        self.complete_requests: list[LLMRequest] = []

    async def stream(self, request: LLMRequest) -> AsyncIterator[StreamEvent]:
        self.stream_requests.append(request)
        scripted = self.responses.pop(0)
        if isinstance(scripted, Exception):
            raise scripted
        for event in response_events(scripted):
            yield event

    async def complete(self, request: LLMRequest) -> LLMResponse:
        self.complete_requests.append(request)
        scripted = self.complete_responses.pop(0)
        if isinstance(scripted, Exception):
            raise scripted
        return scripted

    def context_window(self, model: str) -> int | None:
        return self.window

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens * 3.0 + output_tokens * 15.0) / 1_000_000


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class FakeStore:
    def __init__(self) -> None:
        self.sessions: dict[uuid.UUID, SessionRecord] = {}
        self.messages: list[StoredMessage] = []

    def create(self, history: list[tuple[str, str]] | None = None) -> uuid.UUID:
        session_id = uuid.uuid4()
        self.sessions[session_id] = SessionRecord(id=session_id)
        for role, content in history or []:
            self.messages.append(self._message(session_id, role, content))
        return session_id

    def _message(self, session_id: uuid.UUID, role: str, content: str) -> StoredMessage:
        position = sum(1 for m in self.messages if m.session_id == session_id)
        return StoredMessage(
            id=uuid.uuid4(), session_id=session_id, role=role, content=content, position=position
        )

    def for_session(self, session_id: uuid.UUID) -> list[StoredMessage]:
        return [m for m in self.messages if m.session_id == session_id]

    async def get_session(self, session_id: uuid.UUID) -> SessionRecord | None:
        return self.sessions.get(session_id)

    async def list_messages(self, session_id: uuid.UUID) -> list[StoredMessage]:
        return self.for_session(session_id)

    async def append_message(self, session_id: uuid.UUID, role: str, content: str) -> StoredMessage:
        message = self._message(session_id, role, content)
        self.messages.append(message)
        return message

    async def update_message_usage(self, message_id: uuid.UUID, token_count: int, cost: float) -> None:
        for message in self.messages:
            if message.id == message_id:
                message.token_count = token_count
                message.cost = cost

    async def update_session_usage(self, session_id: uuid.UUID, token_count: int, cost: float) -> None:
        record = self.sessions[session_id]
        record.token_count += token_count
        record.total_cost += cost


# ---------------------------------------------------------------------------
# Test tools
# ---------------------------------------------------------------------------


class MessageInput(BaseModel):
    message: str = ""


def make_echo_tool(
    name: str = "test_tool",
    requires_approval: bool = False,
    calls: list[dict[str, Any]] | None = None,
) -> Tool:
    async def handler(params: MessageInput, context: ToolExecutionContext) -> ToolOutcome:
        if calls is not None:
            calls.append({"message": params.message, "auto_approve": context.auto_approve})
        return ToolOutcome.ok(f"Tool executed with message: {params.message}")

    return Tool(
        name=name,
        description="A test tool",
        input_model=MessageInput,
        handler=handler,
        requires_approval=requires_approval,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        ANTHROPIC_API_KEY="test-key",
        workspace_dir=str(tmp_path),
        memory_dir=str(tmp_path / "memory"),
        max_tool_iterations=10,
        _env_file=None,
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(make_echo_tool())
    return registry


@pytest.fixture
def progress_events() -> list:
    return []

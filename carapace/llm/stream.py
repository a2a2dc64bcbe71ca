"""Streaming response accumulation.

Turns the Anthropic SSE event sequence into a complete LLMResponse,
forwarding text deltas to a callback as they arrive.

Event order from the API:
  message_start -> (content_block_start -> content_block_delta* ->
  content_block_stop)* -> message_delta -> message_stop
with ping keepalives and in-stream error events interleaved.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Union

from carapace.errors import ProviderError, StreamError
from carapace.llm.content import TextBlock, ToolUseBlock, is_empty_text
from carapace.llm.models import LLMResponse, TokenUsage

logger = logging.getLogger(__name__)

TextCallback = Callable[[str], None]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass
class MessageStart:
    id: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class ContentBlockStart:
    index: int
    block: TextBlock | ToolUseBlock


@dataclass
class TextDelta:
    text: str


@dataclass
class InputJsonDelta:
    partial_json: str


@dataclass
class ContentBlockDelta:
    index: int
    delta: TextDelta | InputJsonDelta


@dataclass
class ContentBlockStop:
    index: int


@dataclass
class MessageDelta:
    stop_reason: str | None
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class MessageStop:
    pass


@dataclass
class Ping:
    pass


@dataclass
class ErrorEvent:
    message: str


StreamEvent = Union[
    MessageStart,
    ContentBlockStart,
    ContentBlockDelta,
    ContentBlockStop,
    MessageDelta,
    MessageStop,
    Ping,
    ErrorEvent,
]


def _usage(data: dict[str, Any] | None) -> TokenUsage:
    data = data or {}
    return TokenUsage(
        input_tokens=data.get("input_tokens", 0) or 0,
        output_tokens=data.get("output_tokens", 0) or 0,
    )


def parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse one decoded SSE data payload into a typed event.

    stop_reason lives in message_delta.delta, not message_start.
    Unknown event and delta types yield None.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return Ping()

    if event_type == "error":
        error = data.get("error", {})
        return ErrorEvent(
            message=f"{error.get('type', 'unknown')}: {error.get('message', '')}"
        )

    if event_type == "message_start":
        message = data.get("message", {})
        return MessageStart(
            id=message.get("id", ""),
            model=message.get("model", ""),
            usage=_usage(message.get("usage")),
        )

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return ContentBlockStart(
                index=index,
                block=ToolUseBlock(id=block.get("id", ""), name=block.get("name", "")),
            )
        return ContentBlockStart(index=index, block=TextBlock(text=block.get("text", "")))

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return ContentBlockDelta(index=index, delta=TextDelta(delta.get("text", "")))
        if delta.get("type") == "input_json_delta":
            return ContentBlockDelta(
                index=index, delta=InputJsonDelta(delta.get("partial_json", ""))
            )
        return None

    if event_type == "content_block_stop":
        return ContentBlockStop(index=data.get("index", 0))

    if event_type == "message_delta":
        return MessageDelta(
            stop_reason=data.get("delta", {}).get("stop_reason"),
            usage=_usage(data.get("usage")),
        )

    if event_type == "message_stop":
        return MessageStop()

    return None


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------


class StreamAccumulator:
    """Folds stream events into an LLMResponse.

    Blocks live in a per-index slot list. Tool input JSON is buffered
    separately and parsed once at content_block_stop; malformed JSON
    leaves the input as {}.
    """

    def __init__(
        self,
        on_text: TextCallback | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self._on_text = on_text
        self._cancel = cancel
        self._id = ""
        self._model = ""
        self._blocks: list[TextBlock | ToolUseBlock] = []
        self._json_buffers: dict[int, list[str]] = {}
        self._stop_reason: str | None = None
        self._usage = TokenUsage()
        self.cancelled = False
        self.finished = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    def feed(self, event: StreamEvent) -> None:
        """Apply one event. Raises StreamError on an in-stream error."""
        if isinstance(event, MessageStart):
            self._id = event.id
            self._model = event.model
            self._usage.input_tokens = event.usage.input_tokens

        elif isinstance(event, ContentBlockStart):
            self._ensure_slot(event.index)
            self._blocks[event.index] = event.block
            if isinstance(event.block, ToolUseBlock):
                self._json_buffers[event.index] = []

        elif isinstance(event, ContentBlockDelta):
            self._apply_delta(event)

        elif isinstance(event, ContentBlockStop):
            self._finish_block(event.index)

        elif isinstance(event, MessageDelta):
            if event.stop_reason:
                self._stop_reason = event.stop_reason
            self._usage.output_tokens = event.usage.output_tokens

        elif isinstance(event, MessageStop):
            self.finished = True

        elif isinstance(event, ErrorEvent):
            raise StreamError(event.message)

    def _ensure_slot(self, index: int) -> None:
        while len(self._blocks) <= index:
            self._blocks.append(TextBlock())

    def _apply_delta(self, event: ContentBlockDelta) -> None:
        delta = event.delta
        if isinstance(delta, TextDelta):
            if self._on_text is not None:
                self._on_text(delta.text)
            self._ensure_slot(event.index)
            block = self._blocks[event.index]
            if isinstance(block, TextBlock):
                block.text += delta.text
        elif isinstance(delta, InputJsonDelta):
            self._json_buffers.setdefault(event.index, []).append(delta.partial_json)

    def _finish_block(self, index: int) -> None:
        parts = self._json_buffers.pop(index, None)
        if parts is None or index >= len(self._blocks):
            return
        block = self._blocks[index]
        if not isinstance(block, ToolUseBlock):
            return
        raw = "".join(parts)
        try:
            parsed = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            logger.warning("Malformed tool input JSON for %s, using {}", block.name)
            parsed = {}
        block.input = parsed if isinstance(parsed, dict) else {}

    def response(self) -> LLMResponse:
        """Build the (possibly partial) response. Empty text blocks are dropped."""
        return LLMResponse(
            id=self._id,
            model=self._model,
            content=[b for b in self._blocks if not is_empty_text(b)],
            stop_reason=self._stop_reason,
            usage=TokenUsage(self._usage.input_tokens, self._usage.output_tokens),
        )


async def accumulate(
    events: AsyncIterator[StreamEvent],
    on_text: TextCallback | None = None,
    cancel: asyncio.Event | None = None,
) -> tuple[LLMResponse, bool]:
    """Consume a stream into a response.

    Returns (response, cancelled). Cancellation is checked between
    events; a cancelled stream yields the partial response without
    raising. Transport failures mid-stream raise StreamError.
    """
    acc = StreamAccumulator(on_text=on_text, cancel=cancel)
    try:
        async for event in events:
            if acc.is_cancelled:
                acc.cancelled = True
                break
            acc.feed(event)
            if acc.finished:
                break
    except ProviderError:
        raise
    except Exception as e:
        raise StreamError(f"Stream interrupted: {e}") from e

    if not acc.cancelled and not acc.finished and acc.is_cancelled:
        acc.cancelled = True
    return acc.response(), acc.cancelled

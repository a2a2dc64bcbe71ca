"""Progress events and an in-process async bus for delivering them.

The runner reports progress through a plain callable. ProgressBus is
such a callable: publishing queues the event and a background task
dispatches it to the registered handlers. Handlers run concurrently
and errors are isolated, so one broken handler never crashes the bus
or blocks the others.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

THINKING = "thinking"
TOOL_STARTED = "tool_started"
TOOL_COMPLETED = "tool_completed"
INTERMEDIATE_TEXT = "intermediate_text"
STREAMING_CHUNK = "streaming_chunk"
COMPACTING = "compacting"
COMPACTION_SUMMARY = "compaction_summary"

# Handler type: async function taking a ProgressEvent
ProgressHandler = Callable[["ProgressEvent"], Awaitable[None]]


@dataclass
class ProgressEvent:
    """A progress notification emitted during a turn."""

    kind: str
    text: str = ""
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    success: bool | None = None
    summary: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def thinking(cls) -> ProgressEvent:
        return cls(kind=THINKING)

    @classmethod
    def tool_started(cls, tool_name: str, tool_input: dict[str, Any]) -> ProgressEvent:
        return cls(kind=TOOL_STARTED, tool_name=tool_name, tool_input=tool_input)

    @classmethod
    def tool_completed(cls, tool_name: str, success: bool, summary: str) -> ProgressEvent:
        return cls(kind=TOOL_COMPLETED, tool_name=tool_name, success=success, summary=summary)

    @classmethod
    def intermediate_text(cls, text: str) -> ProgressEvent:
        return cls(kind=INTERMEDIATE_TEXT, text=text)

    @classmethod
    def streaming_chunk(cls, text: str) -> ProgressEvent:
        return cls(kind=STREAMING_CHUNK, text=text)

    @classmethod
    def compacting(cls) -> ProgressEvent:
        return cls(kind=COMPACTING)

    @classmethod
    def compaction_summary(cls, summary: str) -> ProgressEvent:
        return cls(kind=COMPACTION_SUMMARY, summary=summary)


def emit(observer: Callable[[ProgressEvent], None] | None, event: ProgressEvent) -> None:
    """Deliver an event to an optional observer. Observer errors are logged."""
    if observer is None:
        return
    try:
        observer(event)
    except Exception:
        logger.exception("Progress observer failed for %s", event.kind)


class ProgressBus:
    """In-process async progress bus with error isolation.

    Events are queued and processed by a background asyncio task.
    Handlers registered via on() are called concurrently for each event;
    handlers registered with on_any() see every kind.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[ProgressHandler]] = defaultdict(list)
        self._catch_all: list[ProgressHandler] = []
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False

    def on(self, kind: str, handler: ProgressHandler) -> None:
        """Register a handler for one event kind. Can register multiple."""
        self._handlers[kind].append(handler)
        logger.debug("Registered handler for '%s': %s", kind, handler.__qualname__)

    def on_any(self, handler: ProgressHandler) -> None:
        self._catch_all.append(handler)

    def publish(self, event: ProgressEvent) -> None:
        """Queue an event. Never blocks; drops the event when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Progress bus queue full, dropping event: %s", event.kind)

    __call__ = publish

    async def start(self) -> None:
        """Start the background processing loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="progress-bus")
        logger.info("Progress bus started")

    async def stop(self) -> None:
        """Stop the bus, then drain remaining events."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            while not self._queue.empty():
                try:
                    event = self._queue.get_nowait()
                    await self._dispatch(event)
                except asyncio.QueueEmpty:
                    break
        logger.info("Progress bus stopped")

    async def _process_loop(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in progress bus loop")

    async def _dispatch(self, event: ProgressEvent) -> None:
        handlers = [*self._handlers.get(event.kind, []), *self._catch_all]
        if not handlers:
            return
        await asyncio.gather(*(self._safe_handle(h, event) for h in handlers))

    async def _safe_handle(self, handler: ProgressHandler, event: ProgressEvent) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except BaseException:
            logger.exception(
                "Handler %s failed for event %s",
                handler.__qualname__,
                event.kind,
            )

    @property
    def pending(self) -> int:
        """Number of events waiting in queue."""
        return self._queue.qsize()

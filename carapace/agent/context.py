"""In-memory conversation context for one turn.

Holds the message list sent to the provider plus a running token
estimate used for compaction decisions.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any
from uuid import UUID

from carapace.agent.budget import estimate_tokens
from carapace.llm.content import (
    ImageBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

IMAGE_TOKENS = 1000
MESSAGE_OVERHEAD_TOKENS = 4

COMPACTION_PREFIX = (
    "[CONTEXT COMPACTION: The conversation was automatically compacted. "
    "Below is a structured summary of everything before this point.]"
)


def estimate_message_tokens(message: Message) -> int:
    tokens = 0
    for block in message.content:
        if isinstance(block, TextBlock):
            tokens += estimate_tokens(block.text)
        elif isinstance(block, ToolUseBlock):
            tokens += estimate_tokens(block.name)
            tokens += estimate_tokens(json.dumps(block.input))
        elif isinstance(block, ToolResultBlock):
            tokens += estimate_tokens(block.content)
        elif isinstance(block, ImageBlock):
            tokens += IMAGE_TOKENS
    return tokens + MESSAGE_OVERHEAD_TOKENS


class ConversationContext:
    def __init__(self, session_id: UUID, max_tokens: int) -> None:
        self.session_id = session_id
        self.max_tokens = max_tokens
        self.messages: list[Message] = []
        self.system_brain: str | None = None
        self.token_count = 0

    @classmethod
    def from_history(
        cls,
        session_id: UUID,
        stored: Iterable[Any],
        max_tokens: int,
    ) -> ConversationContext:
        """Build a context from stored text messages (role, content).

        Empty messages are skipped. Unknown roles become user.
        """
        context = cls(session_id, max_tokens)
        for record in stored:
            if not record.content:
                continue
            role = record.role if record.role in ("user", "assistant") else "user"
            context.add_message(
                Message(role=role, content=[TextBlock(text=record.content)])
            )
        return context

    def set_system_brain(self, brain: str) -> None:
        if self.system_brain:
            self.token_count -= estimate_tokens(self.system_brain)
        self.system_brain = brain
        self.token_count += estimate_tokens(brain)

    def add_message(self, message: Message) -> None:
        self.token_count += estimate_message_tokens(message)
        self.messages.append(message)

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def usage_percentage(self) -> float:
        if self.max_tokens <= 0:
            return 100.0
        return self.token_count / self.max_tokens * 100.0

    def effective_usage(self, tool_overhead: int) -> float:
        """Usage as a percent of the window left after tool schemas."""
        effective_max = self.max_tokens - tool_overhead
        if effective_max <= 0:
            return 100.0
        return self.token_count / effective_max * 100.0

    def would_exceed_limit(self, additional_tokens: int) -> bool:
        return self.token_count + additional_tokens > self.max_tokens

    # ------------------------------------------------------------------
    # Trimming
    # ------------------------------------------------------------------

    def _drop_oldest(self) -> None:
        dropped = self.messages.pop(0)
        self.token_count = max(0, self.token_count - estimate_message_tokens(dropped))

    def _drop_orphaned_results(self) -> None:
        # A leading tool result has lost the tool use it answers
        while len(self.messages) > 1 and self.messages[0].is_tool_result_message():
            self._drop_oldest()

    def trim_to_fit(self, required_space: int) -> None:
        """Drop oldest messages until required_space fits, keeping the newest."""
        while self.would_exceed_limit(required_space) and len(self.messages) > 1:
            self._drop_oldest()
        self._drop_orphaned_results()

    def trim_to_target(self, target_tokens: int) -> None:
        """Drop oldest messages down to target_tokens, keeping at least two."""
        while self.token_count > target_tokens and len(self.messages) > 2:
            self._drop_oldest()
        self._drop_orphaned_results()

    def compact_with_summary(self, summary: str, keep_recent: int = 8) -> None:
        """Replace older messages with a summary message.

        Keeps the last keep_recent messages. When the kept window would
        open on a tool-result message, its assistant tool-use message is
        kept as well.
        """
        keep_start = max(0, len(self.messages) - keep_recent)
        while keep_start > 0 and self.messages[keep_start].is_tool_result_message():
            keep_start -= 1
        kept = self.messages[keep_start:]

        summary_message = Message.user(f"{COMPACTION_PREFIX}\n\n{summary}")
        self.messages = [summary_message, *kept]

        self.token_count = estimate_tokens(self.system_brain) if self.system_brain else 0
        self.token_count += sum(estimate_message_tokens(m) for m in self.messages)
        logger.debug(
            "Compacted context for %s: kept %d messages, %d est. tokens",
            self.session_id, len(kept), self.token_count,
        )

"""Auto-compaction -- summarize the conversation when the context fills up.

The summary replaces older messages in the in-memory context (see
ConversationContext.compact_with_summary) and is appended to the daily
log. Independent of AgentRunner to avoid circular imports and keep
runner.py focused on orchestration.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from carapace.agent.context import ConversationContext
from carapace.config import Settings
from carapace.events import ProgressEvent, emit
from carapace.llm.content import Message
from carapace.llm.models import LLMRequest
from carapace.memory.daily_log import DailyLog

if TYPE_CHECKING:
    from carapace.interfaces import ModelProvider, ProgressObserver

logger = logging.getLogger(__name__)

SUMMARY_MAX_TOKENS = 4096

# ------------------------------------------------------------------
# Summarization prompts
# ------------------------------------------------------------------

SUMMARIZER_SYSTEM_PROMPT = (
    "You are a precise summarization assistant. Your job is to create a "
    "structured breakdown of the conversation that will serve as the complete "
    "context for an AI agent continuing this work after context compaction. "
    "Be thorough: include every file, decision, and pending task."
)

COMPACTION_PROMPT = """\
IMPORTANT: The context window is at {usage:.0f}% capacity ({used} / {limit} tokens, \
{remaining} tokens remaining). The conversation must be compacted to continue.

Please provide a STRUCTURED BREAKDOWN of this entire conversation so far. \
This will be used as the sole context when the agent wakes up after compaction. \
Include ALL of the following sections:

## Current Task
What is the user currently working on? What was the last request?

## Key Decisions Made
List all important decisions, choices, and conclusions reached.

## Files Modified
List every file that was created, edited, or discussed, with a brief note on what changed.

## Current State
Where did we leave off? What is the next step? Any pending work?

## Important Context
Any critical details, constraints, preferences, or gotchas the agent must remember.

## Errors & Solutions
Any errors encountered and how they were resolved.

Be concise but complete. This summary is the ONLY context the agent will have after compaction."""


class ContextCompactor:
    """Decides when to compact and performs the summarization call."""

    def __init__(
        self,
        provider: ModelProvider,
        settings: Settings,
        daily_log: DailyLog | None = None,
        progress: ProgressObserver | None = None,
    ) -> None:
        self._provider = provider
        self._settings = settings
        self._daily_log = daily_log
        self._progress = progress

    def tool_overhead(self, tool_count: int) -> int:
        return tool_count * self._settings.tool_overhead_tokens

    def should_compact(self, context: ConversationContext, tool_count: int) -> bool:
        usage = context.effective_usage(self.tool_overhead(tool_count))
        return usage > self._settings.compaction_threshold

    def build_request(self, context: ConversationContext, model: str) -> LLMRequest:
        remaining = max(0, context.max_tokens - context.token_count)
        prompt = COMPACTION_PROMPT.format(
            usage=context.usage_percentage(),
            used=context.token_count,
            limit=context.max_tokens,
            remaining=remaining,
        )
        messages = [m.without_empty_text() for m in context.messages]
        messages.append(Message.user(prompt))
        return LLMRequest(
            model=model,
            messages=messages,
            system=SUMMARIZER_SYSTEM_PROMPT,
            max_tokens=SUMMARY_MAX_TOKENS,
        )

    async def compact(self, context: ConversationContext, model: str) -> str | None:
        """Summarize and compact the context in place.

        Returns the summary, or None when summarization failed. On
        failure the context is left untouched.
        """
        emit(self._progress, ProgressEvent.compacting())
        before = context.usage_percentage()

        try:
            response = await self._provider.complete(self.build_request(context, model))
        except Exception as e:
            logger.error("Compaction failed for %s: %s", context.session_id, e)
            return None

        summary = response.text()
        if not summary.strip():
            logger.error("Compaction for %s returned an empty summary", context.session_id)
            return None

        if self._daily_log is not None:
            try:
                await self._daily_log.append(summary)
            except OSError as e:
                logger.warning("Failed to save compaction summary to daily log: %s", e)

        context.compact_with_summary(summary, self._settings.compaction_keep_recent)
        logger.info(
            "Context compacted for %s: %.0f%% -> %.0f%% (%d tokens)",
            context.session_id, before, context.usage_percentage(), context.token_count,
        )

        emit(self._progress, ProgressEvent.compaction_summary(summary))
        return summary

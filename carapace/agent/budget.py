"""Context budget -- token estimation and history trimming.

Estimates use a chars/3 heuristic. It overestimates for English prose,
which keeps trimming on the safe side of the real window.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol, TypeVar

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 3
TOOL_OVERHEAD_TOKENS = 500
RESPONSE_RESERVE_TOKENS = 16_384
HISTORY_BUDGET_RATIO = 0.70


class HasContent(Protocol):
    content: str


M = TypeVar("M", bound=HasContent)


def estimate_tokens(text: str) -> int:
    return len(text) // CHARS_PER_TOKEN


def history_budget(
    context_window: int,
    tool_count: int,
    brain: str | None = None,
    *,
    tool_overhead: int = TOOL_OVERHEAD_TOKENS,
    response_reserve: int = RESPONSE_RESERVE_TOKENS,
    ratio: float = HISTORY_BUDGET_RATIO,
) -> int:
    """Tokens available for stored history.

    window - tool schemas - brain - response reserve, saturating at zero,
    scaled by ratio.
    """
    remaining = context_window - tool_count * tool_overhead
    remaining -= estimate_tokens(brain) if brain else 0
    remaining -= response_reserve
    return int(max(0, remaining) * ratio)


def trim_messages_to_budget(
    messages: Sequence[M],
    context_window: int,
    tool_count: int,
    brain: str | None = None,
    **overheads: float,
) -> list[M]:
    """Keep the newest suffix of messages that fits the history budget.

    Walks newest to oldest. Empty messages are skipped without consuming
    budget. The walk stops at the first message that would overflow,
    and everything older is dropped with it. Returns a new list.
    """
    budget = history_budget(context_window, tool_count, brain, **overheads)  # type: ignore[arg-type]

    used = 0
    keep_from = 0
    for i in range(len(messages) - 1, -1, -1):
        content = messages[i].content
        if not content:
            continue
        tokens = estimate_tokens(content)
        if used + tokens > budget:
            keep_from = i + 1
            break
        used += tokens

    if keep_from > 0:
        logger.info(
            "Context budget: keeping last %d of %d messages (%d est. tokens, budget %d)",
            len(messages) - keep_from, len(messages), used, budget,
        )
    return list(messages[keep_from:])

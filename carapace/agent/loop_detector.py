"""Tool loop detection.

Each iteration's batch of tool calls is reduced to a signature that
includes the arguments that distinguish calls (ls ./src vs ls ./src/cli).
A run of identical signatures longer than the tool class allows means
the model is stuck.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

EXPLORATION = "exploration"
MUTATION = "mutation"
DEFAULT = "default"

_EXPLORATION_PREFIXES = ("ls:", "glob:", "grep:", "read:")
_MUTATION_PREFIXES = ("write:", "edit:", "bash:")
_PATH_TOOLS = frozenset({"ls", "read", "write", "edit"})

BASH_SIGNATURE_CHARS = 100


def _str_field(tool_input: dict[str, Any], key: str) -> str | None:
    value = tool_input.get(key)
    return value if isinstance(value, str) else None


def call_signature(name: str, tool_input: dict[str, Any]) -> str:
    """Signature of a single tool call."""
    if name == "plan":
        operation = _str_field(tool_input, "operation")
        if operation is None:
            return name
        title = _str_field(tool_input, "title")
        if operation == "add_task" and title is not None:
            return f"plan:{operation}:{title}"
        return f"plan:{operation}"

    if name in _PATH_TOOLS:
        path = _str_field(tool_input, "path") or ""
        return f"{name}:{path.replace(chr(92), '/')}"

    if name == "glob":
        return f"glob:{_str_field(tool_input, 'pattern') or ''}"

    if name == "grep":
        pattern = _str_field(tool_input, "pattern") or ""
        path = _str_field(tool_input, "path") or ""
        return f"grep:{pattern}:{path}"

    if name == "bash":
        command = (_str_field(tool_input, "command") or "").replace(chr(92), "/")
        return f"bash:{command[:BASH_SIGNATURE_CHARS]}"

    return name


def batch_signature(calls: Iterable[tuple[str, dict[str, Any]]]) -> str:
    """Comma-joined signatures of one iteration's calls, in order."""
    return ",".join(call_signature(name, tool_input) for name, tool_input in calls)


@dataclass
class LoopDetection:
    signature: str
    tool_class: str
    repeats: int


class ToolLoopDetector:
    """Tracks recent batch signatures within one turn."""

    def __init__(
        self,
        window: int = 15,
        exploration_threshold: int = 10,
        mutation_threshold: int = 2,
        default_threshold: int = 3,
    ) -> None:
        self._recent: deque[str] = deque(maxlen=window)
        self._thresholds = {
            EXPLORATION: exploration_threshold,
            MUTATION: mutation_threshold,
            DEFAULT: default_threshold,
        }

    @staticmethod
    def classify(signature: str) -> str:
        if signature.startswith(_EXPLORATION_PREFIXES):
            return EXPLORATION
        if signature.startswith(_MUTATION_PREFIXES):
            return MUTATION
        return DEFAULT

    def threshold_for(self, signature: str) -> int:
        return self._thresholds[self.classify(signature)]

    def record(self, calls: Iterable[tuple[str, dict[str, Any]]]) -> LoopDetection | None:
        """Record a batch. Returns a detection when it trips.

        Trips when this batch and the `threshold` batches before it are
        identical, i.e. after threshold tolerated repeats.
        """
        signature = batch_signature(calls)
        self._recent.append(signature)

        tool_class = self.classify(signature)
        needed = self._thresholds[tool_class] + 1
        if len(self._recent) < needed:
            return None
        if any(s != signature for s in list(self._recent)[-needed:]):
            return None

        logger.warning(
            "Detected tool loop: '%s' repeated %d times in a row, breaking loop",
            signature, needed,
        )
        if tool_class == MUTATION:
            logger.warning(
                "Mutation tool loop: the same file or command was targeted %d times",
                needed,
            )
        return LoopDetection(signature=signature, tool_class=tool_class, repeats=needed)

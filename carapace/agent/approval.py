"""Approval workflow for tools that require user consent.

Denials are data: the runner turns them into error-flagged tool results
so the model can adapt, never into exceptions.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from carapace.tools.registry import Tool, ToolExecutionContext

logger = logging.getLogger(__name__)

DENIED_BY_USER = "User denied permission to execute this tool"
NO_APPROVAL_MECHANISM = "Tool requires approval but no approval mechanism configured"


@dataclass
class ApprovalRequest:
    tool_name: str
    description: str
    input: dict[str, Any]
    capabilities: list[str] = field(default_factory=list)


@dataclass
class ApprovalDecision:
    approved: bool
    context: ToolExecutionContext
    denial: str | None = None


Resolver = Callable[[ApprovalRequest], Awaitable[bool]]


class ApprovalGate:
    def __init__(self, resolver: Resolver | None = None, auto_approve: bool = False) -> None:
        self._resolver = resolver
        self.auto_approve = auto_approve

    def needs_approval(self, tool: Tool | None, context: ToolExecutionContext) -> bool:
        # Unknown tools pass through; the registry reports them
        if tool is None:
            return False
        if self.auto_approve or context.auto_approve:
            return False
        return tool.requires_approval

    async def decide(
        self,
        tool: Tool | None,
        name: str,
        tool_input: dict[str, Any],
        context: ToolExecutionContext,
    ) -> ApprovalDecision:
        if not self.needs_approval(tool, context):
            return ApprovalDecision(approved=True, context=context)

        if self._resolver is None:
            logger.warning("Tool %s requires approval but no resolver is configured", name)
            return ApprovalDecision(approved=False, context=context, denial=NO_APPROVAL_MECHANISM)

        request = ApprovalRequest(
            tool_name=name,
            description=tool.description,
            input=tool_input,
            capabilities=sorted(tool.capabilities),
        )
        try:
            approved = await self._resolver(request)
        except Exception as e:
            logger.error("Approval request for %s failed: %s", name, e)
            return ApprovalDecision(
                approved=False, context=context, denial=f"Approval request failed: {e}"
            )

        if not approved:
            logger.info("User denied tool %s", name)
            return ApprovalDecision(approved=False, context=context, denial=DENIED_BY_USER)

        # Approval covers this one call only
        return ApprovalDecision(
            approved=True, context=dataclasses.replace(context, auto_approve=True)
        )

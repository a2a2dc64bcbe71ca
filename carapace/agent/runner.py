"""Agent runner -- executes conversational turns with tool use.

Drives the provider through a streamed tool loop: call the model,
execute requested tools under the approval policy, feed results back,
repeat until the model answers without tools. Keeps the context inside
the model's window through history trimming and auto-compaction.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from uuid import UUID

from carapace.agent.approval import ApprovalGate
from carapace.agent.budget import trim_messages_to_budget
from carapace.agent.compaction import ContextCompactor
from carapace.agent.context import ConversationContext
from carapace.agent.loop_detector import ToolLoopDetector
from carapace.config import Settings
from carapace.errors import MaxIterationsExceededError, ProviderError, SessionNotFoundError
from carapace.events import ProgressEvent, emit
from carapace.interfaces import (
    ApprovalResolver,
    ModelProvider,
    Persistence,
    ProgressObserver,
    QueuePoll,
    ToolCatalog,
)
from carapace.llm.content import Message, ToolResultBlock, ToolUseBlock, build_user_message
from carapace.llm.models import AgentResponse, LLMRequest, LLMResponse, TokenUsage
from carapace.llm.stream import accumulate
from carapace.memory.daily_log import DailyLog
from carapace.tools.registry import ToolExecutionContext
from carapace.tools.summary import format_tool_summary, tools_marker

logger = logging.getLogger(__name__)

PROGRESS_SUMMARY_CHARS = 100


class AgentRunner:
    def __init__(
        self,
        provider: ModelProvider,
        store: Persistence,
        registry: ToolCatalog,
        settings: Settings,
        *,
        system_brain: str | None = None,
        approval_resolver: ApprovalResolver | None = None,
        progress: ProgressObserver | None = None,
        queue_poll: QueuePoll | None = None,
        daily_log: DailyLog | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._registry = registry
        self._settings = settings
        self._system_brain = system_brain or settings.system_brain or None
        self._progress = progress
        self._queue_poll = queue_poll
        self._approval = ApprovalGate(approval_resolver, auto_approve=settings.auto_approve_tools)
        self._compactor = ContextCompactor(provider, settings, daily_log=daily_log, progress=progress)
        self._working_directory = Path(settings.workspace_dir).expanduser()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def context_window_for_model(self, model: str) -> int:
        return self._provider.context_window(model) or self._settings.default_context_window

    async def _load_context(
        self, session_id: UUID, user_message: str, model: str
    ) -> ConversationContext:
        """Load trimmed history, seed the brain, add and persist the user message."""
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        history = await self._store.list_messages(session_id)
        window = self.context_window_for_model(model)
        history = trim_messages_to_budget(
            history,
            window,
            self._registry.count(),
            self._system_brain,
            tool_overhead=self._settings.tool_overhead_tokens,
            response_reserve=self._settings.response_reserve_tokens,
            ratio=self._settings.history_budget_ratio,
        )

        context = ConversationContext.from_history(session_id, history, window)
        if self._system_brain:
            context.set_system_brain(self._system_brain)

        context.add_message(await build_user_message(user_message))
        # Images are ephemeral; only the text is persisted
        await self._store.append_message(session_id, "user", user_message)
        return context

    def _build_request(
        self, context: ConversationContext, model: str, *, with_tools: bool = True
    ) -> LLMRequest:
        tools = None
        if with_tools and self._registry.count() > 0:
            tools = self._registry.get_tool_definitions()
        return LLMRequest(
            model=model,
            messages=[m.without_empty_text() for m in context.messages],
            system=context.system_brain,
            max_tokens=self._settings.max_tokens,
            tools=tools,
        )

    def _on_text(self, chunk: str) -> None:
        emit(self._progress, ProgressEvent.streaming_chunk(chunk))

    async def _stream_turn(
        self,
        context: ConversationContext,
        model: str,
        cancel: asyncio.Event | None,
    ) -> tuple[LLMResponse, bool]:
        """Stream one model call. Shrinks the context and retries once on prompt-too-long."""
        try:
            return await accumulate(
                self._provider.stream(self._build_request(context, model)),
                on_text=self._on_text,
                cancel=cancel,
            )
        except ProviderError as e:
            if not e.is_prompt_too_long:
                raise
            logger.warning("Prompt too long for provider, running emergency compaction")
            if await self._compactor.compact(context, model) is None:
                logger.warning("Emergency compaction failed, halving context by dropping oldest messages")
                context.trim_to_target(context.token_count // 2)
            return await accumulate(
                self._provider.stream(self._build_request(context, model)),
                on_text=self._on_text,
                cancel=cancel,
            )

    async def _run_tool(self, use: ToolUseBlock, tool_context: ToolExecutionContext) -> ToolResultBlock:
        tool = self._registry.get(use.name)
        decision = await self._approval.decide(tool, use.name, use.input, tool_context)
        if not decision.approved:
            return ToolResultBlock(tool_use_id=use.id, content=decision.denial or "", is_error=True)

        try:
            outcome = await self._registry.execute(use.name, use.input, decision.context)
            success, content = outcome.success, outcome.text
        except Exception as e:
            success, content = False, f"Tool execution error: {e}"

        emit(
            self._progress,
            ProgressEvent.tool_completed(use.name, success, content[:PROGRESS_SUMMARY_CHARS]),
        )
        return ToolResultBlock(tool_use_id=use.id, content=content, is_error=not success)

    def _cancelled(
        self, text: str, usage: TokenUsage, model: str
    ) -> AgentResponse:
        logger.info("Turn cancelled")
        return AgentResponse(
            message_id=None,
            content=text,
            stop_reason=None,
            usage=usage,
            cost=self._provider.calculate_cost(model, usage.input_tokens, usage.output_tokens),
            model=model,
            cancelled=True,
        )

    async def _finish(
        self,
        session_id: UUID,
        persisted_text: str,
        response: LLMResponse,
        usage: TokenUsage,
        model: str,
    ) -> AgentResponse:
        """Persist the assistant message and usage, build the turn result."""
        cost = self._provider.calculate_cost(model, usage.input_tokens, usage.output_tokens)
        stored = await self._store.append_message(session_id, "assistant", persisted_text)
        await self._store.update_message_usage(stored.id, usage.total, cost)
        await self._store.update_session_usage(session_id, usage.total, cost)

        return AgentResponse(
            message_id=stored.id,
            content=response.text(),
            stop_reason=response.stop_reason,
            usage=usage,
            cost=cost,
            model=response.model or model,
        )

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send_message(
        self, session_id: UUID, user_message: str, model: str | None = None
    ) -> AgentResponse:
        """Single non-streaming completion without tools."""
        model_name = model or self._provider.default_model
        context = await self._load_context(session_id, user_message, model_name)

        response = await self._provider.complete(
            self._build_request(context, model_name, with_tools=False)
        )
        return await self._finish(
            session_id, response.text(), response, response.usage, model_name
        )

    async def send_message_with_tools(
        self,
        session_id: UUID,
        user_message: str,
        model: str | None = None,
        *,
        read_only: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> AgentResponse:
        """Execute one conversational turn with automatic tool use.

        Returns a cancelled AgentResponse (nothing persisted for the
        assistant) when `cancel` is set at any checkpoint. Raises
        SessionNotFoundError, ProviderError, DatabaseError or
        MaxIterationsExceededError.
        """
        model_name = model or self._provider.default_model
        context = await self._load_context(session_id, user_message, model_name)

        tool_count = self._registry.count()
        if self._compactor.should_compact(context, tool_count):
            logger.warning(
                "Context usage at %.0f%% (effective %.0f%% with %d tool overhead), auto-compacting",
                context.usage_percentage(),
                context.effective_usage(self._compactor.tool_overhead(tool_count)),
                self._compactor.tool_overhead(tool_count),
            )
            await self._compactor.compact(context, model_name)

        reserve = self._compactor.tool_overhead(tool_count) + self._settings.max_tokens
        if context.would_exceed_limit(reserve):
            logger.warning(
                "Context at %d est. tokens leaves no room for a %d token reply, dropping oldest messages",
                context.token_count, reserve,
            )
            context.trim_to_fit(reserve)

        tool_context = ToolExecutionContext(
            session_id=session_id,
            working_directory=self._working_directory,
            auto_approve=self._settings.auto_approve_tools,
            read_only=read_only,
            timeout_secs=self._settings.tool_timeout_secs,
        )
        detector = ToolLoopDetector(
            window=self._settings.loop_window,
            exploration_threshold=self._settings.loop_threshold_exploration,
            mutation_threshold=self._settings.loop_threshold_mutation,
            default_threshold=self._settings.loop_threshold_default,
        )

        max_iterations = self._settings.max_tool_iterations
        usage = TokenUsage()
        accumulated: list[str] = []
        iteration = 0

        while iteration < max_iterations:
            if cancel is not None and cancel.is_set():
                return self._cancelled("\n\n".join(accumulated), usage, model_name)

            iteration += 1
            emit(self._progress, ProgressEvent.thinking())

            response, was_cancelled = await self._stream_turn(context, model_name, cancel)
            usage = usage + response.usage
            if was_cancelled:
                return self._cancelled("\n\n".join(accumulated), usage, model_name)

            iteration_text = response.text()
            if iteration_text:
                accumulated.append(iteration_text)

            tool_uses = response.tool_uses()
            if not tool_uses:
                return await self._finish(
                    session_id, "\n\n".join(accumulated), response, usage, model_name
                )

            if iteration_text:
                emit(self._progress, ProgressEvent.intermediate_text(iteration_text))

            if detector.record((u.name, u.input) for u in tool_uses):
                return await self._finish(
                    session_id, "\n\n".join(accumulated), response, usage, model_name
                )

            results: list[ToolResultBlock] = []
            summaries: list[str] = []
            for use in tool_uses:
                if cancel is not None and cancel.is_set():
                    return self._cancelled("\n\n".join(accumulated), usage, model_name)

                logger.info(
                    "Executing tool '%s' (iteration %d/%d)", use.name, iteration, max_iterations
                )
                summaries.append(format_tool_summary(use.name, use.input))
                emit(self._progress, ProgressEvent.tool_started(use.name, use.input))
                results.append(await self._run_tool(use, tool_context))

            # Marker lets a session loader rebuild tool groups from stored text
            marker = tools_marker(summaries)
            if accumulated:
                accumulated[-1] = f"{accumulated[-1]}\n{marker}"
            else:
                accumulated.append(marker)

            context.add_message(Message(role="assistant", content=response.content).without_empty_text())
            context.add_message(Message(role="user", content=results))

            if self._queue_poll is not None:
                queued = await self._queue_poll()
                if queued:
                    logger.info("Injecting queued user message between tool iterations")
                    context.add_message(Message.user(queued))
                    await self._store.append_message(session_id, "user", queued)

            if iteration >= max_iterations:
                raise MaxIterationsExceededError(max_iterations)

        raise MaxIterationsExceededError(max_iterations)

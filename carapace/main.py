"""Carapace entry point.

Initializes all components and runs an interactive console session:
  Settings -> Database -> MessageStore -> Provider -> ToolRegistry -> Runner
"""

from __future__ import annotations

import asyncio
import logging
import sys

from carapace.agent.approval import ApprovalRequest
from carapace.agent.runner import AgentRunner
from carapace.config import Settings
from carapace.errors import AgentError
from carapace.events import (
    COMPACTING,
    STREAMING_CHUNK,
    TOOL_COMPLETED,
    TOOL_STARTED,
    ProgressBus,
    ProgressEvent,
)
from carapace.llm.anthropic import AnthropicProvider
from carapace.memory.daily_log import DailyLog
from carapace.storage.database import Database
from carapace.storage.repository import MessageStore
from carapace.tools import ToolRegistry, register_builtin_tools

logger = logging.getLogger(__name__)


async def _console_approval(request: ApprovalRequest) -> bool:
    prompt = (
        f"\nAllow tool '{request.tool_name}' ({', '.join(request.capabilities) or 'no capabilities'})"
        f"\n  input: {request.input}\n[y/N] "
    )
    answer = await asyncio.to_thread(input, prompt)
    return answer.strip().lower() in ("y", "yes")


async def _print_progress(event: ProgressEvent) -> None:
    if event.kind == STREAMING_CHUNK:
        sys.stdout.write(event.text)
        sys.stdout.flush()
    elif event.kind == TOOL_STARTED:
        print(f"\n  -> {event.tool_name}")
    elif event.kind == TOOL_COMPLETED:
        status = "ok" if event.success else "failed"
        print(f"  <- {event.tool_name} [{status}] {event.summary}")
    elif event.kind == COMPACTING:
        print("\n  (compacting context...)")


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for shutdown.
    """
    database = Database(settings)
    await database.connect()
    store = MessageStore(database)

    provider = AnthropicProvider(settings)

    registry = ToolRegistry()
    register_builtin_tools(registry)
    logger.info("Tools available: %s", ", ".join(registry.names()))

    bus = ProgressBus()
    bus.on(STREAMING_CHUNK, _print_progress)
    bus.on(TOOL_STARTED, _print_progress)
    bus.on(TOOL_COMPLETED, _print_progress)
    bus.on(COMPACTING, _print_progress)
    await bus.start()

    runner = AgentRunner(
        provider,
        store,
        registry,
        settings,
        approval_resolver=_console_approval,
        progress=bus,
        daily_log=DailyLog(settings.memory_dir),
    )

    return {
        "database": database,
        "store": store,
        "provider": provider,
        "registry": registry,
        "bus": bus,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Carapace...")

    bus = components.get("bus")
    if bus:
        await bus.stop()

    provider = components.get("provider")
    if provider:
        await provider.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Carapace shutdown complete.")


async def run_console(settings: Settings) -> None:
    components = await create_components(settings)
    runner: AgentRunner = components["runner"]
    store: MessageStore = components["store"]
    bus: ProgressBus = components["bus"]

    try:
        session = await store.create_session("console")
        logger.info("Session %s started (model %s)", session.id, settings.model)
        while True:
            try:
                line = await asyncio.to_thread(input, "\n> ")
            except EOFError:
                break
            if line.strip() in ("/quit", "/exit"):
                break
            if not line.strip():
                continue

            try:
                response = await runner.send_message_with_tools(session.id, line)
            except AgentError as e:
                print(f"\nError: {e}")
                continue

            # Let queued chunks reach the terminal before the footer
            while bus.pending:
                await asyncio.sleep(0.05)
            print(
                f"\n[{response.usage.input_tokens} in / {response.usage.output_tokens} out,"
                f" ${response.cost:.4f}]"
            )
    finally:
        await shutdown_components(components)


def main() -> None:
    """Entry point -- parse settings, run the console session."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Carapace")
    logger.info("Model: %s", settings.model)
    logger.info("Workspace: %s", settings.workspace_dir)

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "model calls will fail"
        )

    try:
        asyncio.run(run_console(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

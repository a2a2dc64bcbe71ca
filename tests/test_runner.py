"""Tests for AgentRunner -- the streamed tool-execution loop.

A FakeProvider replays scripted responses as stream events and a
FakeStore keeps sessions in memory, so these exercise the real
accumulator, context, approval, loop detection and registry code.
"""

import asyncio
import uuid

import pytest

from carapace.agent.runner import AgentRunner
from carapace.errors import MaxIterationsExceededError, ProviderError, SessionNotFoundError
from carapace.events import (
    COMPACTING,
    COMPACTION_SUMMARY,
    INTERMEDIATE_TEXT,
    STREAMING_CHUNK,
    THINKING,
    TOOL_COMPLETED,
    TOOL_STARTED,
)
from carapace.llm.content import ToolResultBlock
from carapace.tools.registry import WRITE_FILES, Tool, ToolRegistry
from tests.conftest import (
    FakeProvider,
    MessageInput,
    make_echo_tool,
    text_response,
    tool_response,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _runner(provider, store, registry, settings, **kwargs) -> AgentRunner:
    return AgentRunner(provider, store, registry, settings, **kwargs)


def _echo(message: str = "test") -> tuple[str, dict]:
    return ("test_tool", {"message": message})


def _assistant_rows(store, session_id):
    return [m for m in store.for_session(session_id) if m.role == "assistant"]


# ---------------------------------------------------------------------------
# Basic tool turn
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_single_tool_call_then_answer(store, registry, settings):
    """One tool round, then a final text answer."""
    provider = FakeProvider([
        tool_response([_echo()], text="I'll use the test tool.", input_tokens=10, output_tokens=20),
        text_response("Tool execution completed successfully.", input_tokens=15, output_tokens=25),
    ])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings)

    result = await runner.send_message_with_tools(session_id, "Use the test tool")

    assert result.content == "Tool execution completed successfully."
    assert result.usage.input_tokens == 25
    assert result.usage.output_tokens == 45
    assert result.stop_reason == "end_turn"
    assert not result.cancelled
    assert result.message_id is not None

    assistant = _assistant_rows(store, session_id)
    assert len(assistant) == 1
    stored = assistant[0].content
    assert "I'll use the test tool." in stored
    assert "<!-- tools: test_tool -->" in stored
    assert "Tool execution completed successfully." in stored
    assert stored == (
        "I'll use the test tool.\n<!-- tools: test_tool -->\n\nTool execution completed successfully."
    )


@pytest.mark.asyncio
async def test_usage_recorded_on_message_and_session(store, registry, settings):
    provider = FakeProvider([text_response("hi", input_tokens=100, output_tokens=50)])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings)

    result = await runner.send_message_with_tools(session_id, "hello")

    expected_cost = (100 * 3.0 + 50 * 15.0) / 1_000_000
    assert result.cost == pytest.approx(expected_cost)
    message = _assistant_rows(store, session_id)[0]
    assert message.token_count == 150
    assert message.cost == pytest.approx(expected_cost)
    assert store.sessions[session_id].token_count == 150


@pytest.mark.asyncio
async def test_user_message_persisted_before_model_call(store, registry, settings):
    provider = FakeProvider([ProviderError("overloaded", status=529)])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings)

    with pytest.raises(ProviderError):
        await runner.send_message_with_tools(session_id, "hello")

    rows = store.for_session(session_id)
    assert [(m.role, m.content) for m in rows] == [("user", "hello")]


@pytest.mark.asyncio
async def test_results_match_tool_uses_in_order(store, settings):
    """Every tool_use gets exactly one tool_result, in request order."""
    registry = ToolRegistry()
    registry.register(make_echo_tool("first"))
    registry.register(make_echo_tool("second"))
    provider = FakeProvider([
        tool_response([("first", {"message": "a"}), ("second", {"message": "b"})]),
        text_response("done"),
    ])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings)

    await runner.send_message_with_tools(session_id, "go")

    second_request = provider.stream_requests[1]
    assistant, results = second_request.messages[-2], second_request.messages[-1]
    use_ids = [u.id for u in assistant.tool_uses()]
    result_ids = [b.tool_use_id for b in results.content if isinstance(b, ToolResultBlock)]
    assert results.role == "user"
    assert result_ids == use_ids
    assert results.content[0].content == "Tool executed with message: a"
    assert results.content[1].content == "Tool executed with message: b"


@pytest.mark.asyncio
async def test_tools_sent_with_request(store, registry, settings):
    provider = FakeProvider([text_response("hi")])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings, system_brain="You are a test agent.")

    await runner.send_message_with_tools(session_id, "hello")

    request = provider.stream_requests[0]
    assert [t["name"] for t in request.tools] == ["test_tool"]
    assert request.system == "You are a test agent."
    assert request.model == "test-model"


@pytest.mark.asyncio
async def test_no_assistant_text_only_marker_persisted(store, registry, settings):
    """Tool iterations without prose still leave a marker for the loader."""
    provider = FakeProvider([tool_response([_echo()]), text_response("")])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings)

    result = await runner.send_message_with_tools(session_id, "go")

    assert result.content == ""
    assert _assistant_rows(store, session_id)[0].content == "<!-- tools: test_tool -->"


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_progress_event_order(store, registry, settings, progress_events):
    provider = FakeProvider([
        tool_response([_echo()], text="Checking."),
        text_response("All good."),
    ])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings, progress=progress_events.append)

    await runner.send_message_with_tools(session_id, "go")

    kinds = [e.kind for e in progress_events]
    assert kinds == [
        THINKING,
        STREAMING_CHUNK,
        INTERMEDIATE_TEXT,
        TOOL_STARTED,
        TOOL_COMPLETED,
        THINKING,
        STREAMING_CHUNK,
    ]
    completed = progress_events[4]
    assert completed.tool_name == "test_tool"
    assert completed.success is True
    assert completed.summary == "Tool executed with message: test"
    assert progress_events[3].tool_input == {"message": "test"}


@pytest.mark.asyncio
async def test_broken_observer_does_not_break_turn(store, registry, settings):
    def observer(event):
        raise RuntimeError("display gone")

    provider = FakeProvider([text_response("still fine")])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings, progress=observer)

    result = await runner.send_message_with_tools(session_id, "go")
    assert result.content == "still fine"


# ---------------------------------------------------------------------------
# Tool failures and approval
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unknown_tool_becomes_error_result(store, registry, settings, progress_events):
    provider = FakeProvider([tool_response([("missing", {})]), text_response("ok")])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings, progress=progress_events.append)

    await runner.send_message_with_tools(session_id, "go")

    result = provider.stream_requests[1].messages[-1].content[0]
    assert result.is_error
    assert result.content == "Tool execution error: Tool not found: missing"
    completed = [e for e in progress_events if e.kind == TOOL_COMPLETED]
    assert completed[0].success is False


@pytest.mark.asyncio
async def test_invalid_input_becomes_error_result(store, registry, settings):
    provider = FakeProvider([
        tool_response([("test_tool", {"message": ["not", "a", "string"]})]),
        text_response("ok"),
    ])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings)

    await runner.send_message_with_tools(session_id, "go")

    result = provider.stream_requests[1].messages[-1].content[0]
    assert result.is_error
    assert "Invalid input for test_tool" in result.content


@pytest.mark.asyncio
async def test_read_only_blocks_mutating_tool(store, settings):
    calls = []

    async def handler(params, context):
        calls.append(params)

    registry = ToolRegistry()
    registry.register(Tool(
        name="writer",
        description="Writes things",
        input_model=MessageInput,
        handler=handler,
        capabilities=frozenset({WRITE_FILES}),
    ))
    provider = FakeProvider([tool_response([("writer", {"message": "x"})]), text_response("ok")])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings)

    await runner.send_message_with_tools(session_id, "go", read_only=True)

    result = provider.stream_requests[1].messages[-1].content[0]
    assert result.is_error
    assert "read-only" in result.content
    assert calls == []


@pytest.mark.asyncio
async def test_approval_denied_returns_error_result(store, settings, progress_events):
    calls = []
    registry = ToolRegistry()
    registry.register(make_echo_tool(requires_approval=True, calls=calls))

    async def deny(request):
        return False

    provider = FakeProvider([tool_response([_echo()]), text_response("understood")])
    session_id = store.create()
    runner = _runner(
        provider, store, registry, settings,
        approval_resolver=deny, progress=progress_events.append,
    )

    result = await runner.send_message_with_tools(session_id, "go")

    assert result.content == "understood"
    tool_result = provider.stream_requests[1].messages[-1].content[0]
    assert tool_result.is_error
    assert tool_result.content == "User denied permission to execute this tool"
    assert calls == []
    assert TOOL_COMPLETED not in [e.kind for e in progress_events]


@pytest.mark.asyncio
async def test_approval_granted_runs_with_auto_approve(store, settings):
    calls = []
    registry = ToolRegistry()
    registry.register(make_echo_tool(requires_approval=True, calls=calls))
    requests = []

    async def approve(request):
        requests.append(request)
        return True

    provider = FakeProvider([tool_response([_echo("hi")]), text_response("done")])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings, approval_resolver=approve)

    await runner.send_message_with_tools(session_id, "go")

    assert [r.tool_name for r in requests] == ["test_tool"]
    assert calls == [{"message": "hi", "auto_approve": True}]


@pytest.mark.asyncio
async def test_no_resolver_denies_required_tool(store, settings):
    registry = ToolRegistry()
    registry.register(make_echo_tool(requires_approval=True))
    provider = FakeProvider([tool_response([_echo()]), text_response("ok")])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings)

    await runner.send_message_with_tools(session_id, "go")

    tool_result = provider.stream_requests[1].messages[-1].content[0]
    assert tool_result.is_error
    assert "no approval mechanism" in tool_result.content


@pytest.mark.asyncio
async def test_auto_approve_setting_skips_resolver(store, settings):
    calls = []
    registry = ToolRegistry()
    registry.register(make_echo_tool(requires_approval=True, calls=calls))
    provider = FakeProvider([tool_response([_echo()]), text_response("ok")])
    session_id = store.create()
    auto = settings.model_copy(update={"auto_approve_tools": True})
    runner = _runner(provider, store, registry, auto)

    await runner.send_message_with_tools(session_id, "go")

    assert len(calls) == 1


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_max_iterations_exceeded(store, registry, settings):
    limited = settings.model_copy(update={"max_tool_iterations": 3})
    provider = FakeProvider([tool_response([_echo(str(i))]) for i in range(3)])
    session_id = store.create()
    runner = _runner(provider, store, registry, limited)

    with pytest.raises(MaxIterationsExceededError) as exc:
        await runner.send_message_with_tools(session_id, "go")

    assert exc.value.max_iterations == 3
    assert len(provider.stream_requests) == 3
    assert _assistant_rows(store, session_id) == []


@pytest.mark.asyncio
async def test_loop_detection_finalizes_turn(store, registry, settings):
    """The same default-class call four times in a row ends the turn."""
    provider = FakeProvider([
        tool_response([_echo()], text=f"Attempt {i}.") for i in range(1, 5)
    ])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings)

    result = await runner.send_message_with_tools(session_id, "go")

    assert len(provider.stream_requests) == 4
    assert result.content == "Attempt 4."
    assert result.stop_reason == "tool_use"
    stored = _assistant_rows(store, session_id)[0].content
    assert stored.count("<!-- tools: test_tool -->") == 3
    assert stored.endswith("Attempt 4.")


@pytest.mark.asyncio
async def test_session_not_found(store, registry, settings):
    runner = _runner(FakeProvider(), store, registry, settings)
    with pytest.raises(SessionNotFoundError):
        await runner.send_message_with_tools(uuid.uuid4(), "hello")


@pytest.mark.asyncio
async def test_provider_error_propagates(store, registry, settings):
    provider = FakeProvider([ProviderError("invalid x-api-key", status=401, error_type="authentication_error")])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings)

    with pytest.raises(ProviderError) as exc:
        await runner.send_message_with_tools(session_id, "hello")
    assert exc.value.status == 401


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_between_iterations(store, registry, settings):
    """Cancelling after the second tool round stops before a third call."""
    cancel = asyncio.Event()
    polls = 0

    async def queue_poll():
        nonlocal polls
        polls += 1
        if polls == 2:
            cancel.set()
        return None

    provider = FakeProvider([
        tool_response([_echo("1")], text="One."),
        tool_response([_echo("2")], text="Two."),
        text_response("never reached"),
    ])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings, queue_poll=queue_poll)

    result = await runner.send_message_with_tools(session_id, "go", cancel=cancel)

    assert result.cancelled
    assert result.message_id is None
    assert len(provider.stream_requests) == 2
    assert "One." in result.content and "Two." in result.content
    assert _assistant_rows(store, session_id) == []


@pytest.mark.asyncio
async def test_cancel_before_start(store, registry, settings):
    cancel = asyncio.Event()
    cancel.set()
    provider = FakeProvider([text_response("unused")])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings)

    result = await runner.send_message_with_tools(session_id, "go", cancel=cancel)

    assert result.cancelled
    assert result.content == ""
    assert provider.stream_requests == []


# ---------------------------------------------------------------------------
# Queued messages
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_queued_message_injected_and_persisted(store, registry, settings):
    queued = ["Also check the tests"]

    async def queue_poll():
        return queued.pop(0) if queued else None

    provider = FakeProvider([tool_response([_echo()]), text_response("checked")])
    session_id = store.create()
    runner = _runner(provider, store, registry, settings, queue_poll=queue_poll)

    await runner.send_message_with_tools(session_id, "go")

    last = provider.stream_requests[1].messages[-1]
    assert last.role == "user"
    assert last.text() == "Also check the tests"
    rows = store.for_session(session_id)
    assert [(m.role, m.content) for m in rows[:2]] == [
        ("user", "go"),
        ("user", "Also check the tests"),
    ]


# ---------------------------------------------------------------------------
# Context management
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_long_history_trimmed_to_budget(store, registry, settings):
    history = [
        ("user" if i % 2 == 0 else "assistant", f"{i:03d}" + "x" * 297) for i in range(300)
    ]
    provider = FakeProvider([text_response("ok")], context_window=40_000)
    session_id = store.create(history)
    runner = _runner(provider, store, registry, settings)

    await runner.send_message_with_tools(session_id, "latest")

    sent = provider.stream_requests[0].messages
    assert 1 < len(sent) < 301
    assert sent[-1].text() == "latest"
    assert sent[-2].text() == history[-1][1]


@pytest.mark.asyncio
async def test_unknown_model_window_falls_back(store, registry, settings):
    runner = _runner(FakeProvider(context_window=None), store, registry, settings)
    assert runner.context_window_for_model("mystery") == settings.default_context_window


@pytest.mark.asyncio
async def test_auto_compaction_before_first_call(store, registry, settings, progress_events):
    """45k tokens of kept history in a 49.5k effective window crosses 80%."""
    history = [
        ("user" if i % 2 == 0 else "assistant", "z" * 3000) for i in range(45)
    ]
    provider = FakeProvider(
        [text_response("answer")],
        complete_responses=[text_response("## Current Task\nsummarized")],
        context_window=50_000,
    )
    session_id = store.create(history)
    generous = settings.model_copy(update={"response_reserve_tokens": 0, "history_budget_ratio": 1.0})
    runner = _runner(provider, store, registry, generous, progress=progress_events.append)

    result = await runner.send_message_with_tools(session_id, "continue")

    assert result.content == "answer"
    assert len(provider.complete_requests) == 1
    sent = provider.stream_requests[0].messages
    assert sent[0].text().startswith("[CONTEXT COMPACTION")
    assert len(sent) == settings.compaction_keep_recent + 1
    kinds = [e.kind for e in progress_events]
    assert kinds[:2] == [COMPACTING, COMPACTION_SUMMARY]


@pytest.mark.asyncio
async def test_prompt_too_long_compacts_and_retries(store, registry, settings):
    history = [("user" if i % 2 == 0 else "assistant", f"turn {i}") for i in range(20)]
    provider = FakeProvider(
        [
            ProviderError("prompt is too long: 250000 tokens > 200000 maximum", status=400),
            text_response("recovered"),
        ],
        complete_responses=[text_response("summary of earlier work")],
    )
    session_id = store.create(history)
    runner = _runner(provider, store, registry, settings)

    result = await runner.send_message_with_tools(session_id, "next")

    assert result.content == "recovered"
    assert len(provider.stream_requests) == 2
    retried = provider.stream_requests[1].messages
    assert retried[0].text().endswith("summary of earlier work")
    assert len(retried) < len(provider.stream_requests[0].messages)


@pytest.mark.asyncio
async def test_failed_compaction_falls_back_to_trimming(store, registry, settings):
    """48k of history plus a 4.6k reply reserve overflows a 50k window."""
    history = [
        ("user" if i % 2 == 0 else "assistant", "z" * 3000) for i in range(48)
    ]
    provider = FakeProvider(
        [text_response("answer")],
        complete_responses=[ProviderError("Overloaded", status=529)],
        context_window=50_000,
    )
    session_id = store.create(history)
    generous = settings.model_copy(update={"response_reserve_tokens": 0, "history_budget_ratio": 1.0})
    runner = _runner(provider, store, registry, generous)

    result = await runner.send_message_with_tools(session_id, "continue")

    assert result.content == "answer"
    assert len(provider.complete_requests) == 1
    sent = provider.stream_requests[0].messages
    assert len(sent) == 46
    assert sent[-1].text() == "continue"
    assert not sent[0].text().startswith("[CONTEXT COMPACTION")


@pytest.mark.asyncio
async def test_prompt_too_long_trims_when_compaction_fails(store, registry, settings):
    history = [("user" if i % 2 == 0 else "assistant", f"turn {i}") for i in range(20)]
    provider = FakeProvider(
        [
            ProviderError("prompt is too long: 250000 tokens > 200000 maximum", status=400),
            text_response("recovered"),
        ],
        complete_responses=[ProviderError("Overloaded", status=529)],
    )
    session_id = store.create(history)
    runner = _runner(provider, store, registry, settings)

    result = await runner.send_message_with_tools(session_id, "next")

    assert result.content == "recovered"
    first, retried = (r.messages for r in provider.stream_requests)
    assert len(retried) < len(first)
    assert retried[-1].text() == "next"


# ---------------------------------------------------------------------------
# send_message (no tools)
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_message_without_tools(store, registry, settings):
    provider = FakeProvider(complete_responses=[text_response("plain answer", 7, 9)])
    session_id = store.create([("user", "earlier"), ("assistant", "reply")])
    runner = _runner(provider, store, registry, settings)

    result = await runner.send_message(session_id, "question")

    assert result.content == "plain answer"
    request = provider.complete_requests[0]
    assert request.tools is None
    assert [m.text() for m in request.messages] == ["earlier", "reply", "question"]
    rows = store.for_session(session_id)
    assert (rows[-1].role, rows[-1].content) == ("assistant", "plain answer")
    assert rows[-1].token_count == 16

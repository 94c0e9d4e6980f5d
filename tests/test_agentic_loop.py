"""Tests for aide.harness.loop: model calls, tool dispatch and registry snapshots."""

from __future__ import annotations

import asyncio
import textwrap

import pytest

from aide.config import DEFAULT_PERPETUAL_GRANT_PHRASE
from aide.errors import CancellationRequested
from aide.harness.loop import AgenticLoop
from aide.harness.safety import SafetyGate
from aide.history import ConversationHistory
from aide.tools.builtin import register_builtin_tools
from aide.tools.executor import ToolExecutor
from aide.tools.registry import ToolDefinition
from aide.types import Message, Role, ToolCall

from conftest import MockEngine, ScriptedChannel, text_turn, tool_turn

ADD_SOURCE = textwrap.dedent('''
    def Add(a: Annotated[int, "first"], b: Annotated[int, "second"]) -> int:
        """Adds a and b."""
        return a + b
''')


def _history(prompt: str) -> ConversationHistory:
    history = ConversationHistory("sys")
    history.append(Message.user(prompt))
    return history


def _loop(engine, registry, channel=None, **kwargs) -> AgenticLoop:
    return AgenticLoop(
        engine,
        registry,
        ToolExecutor(),
        SafetyGate(channel or ScriptedChannel()),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_plain_answer_is_appended(registry) -> None:
    engine = MockEngine([text_turn("hello there")])
    history = _history("hi")

    result = await _loop(engine, registry).run(history)

    assert result.text == "hello there"
    assert result.iterations == 1
    assert not result.used_tools
    assert history.last == Message.assistant("hello there")
    assert engine.calls[0]["system"] == "sys"
    assert [m.role for m in engine.calls[0]["messages"]] == [Role.SYSTEM, Role.USER]


@pytest.mark.asyncio
async def test_tool_round_trip(registry, compiler) -> None:
    register_builtin_tools(registry, compiler)
    engine = MockEngine([
        tool_turn(ToolCall("c1", "get_random_integer", {"max": 0}), text="Let me roll."),
        text_turn("You rolled 0."),
    ])
    history = _history("roll a die with zero sides")
    seen_calls, seen_results = [], []

    result = await _loop(engine, registry).run(
        history,
        on_tool_call=seen_calls.append,
        on_tool_result=seen_results.append,
    )

    assert result.text == "You rolled 0."
    assert result.iterations == 2
    assert [call.name for call in result.tool_calls] == ["get_random_integer"]
    assert [r.content for r in seen_results] == ["0"]
    assert len(seen_calls) == 1

    messages = history.snapshot()
    assert messages[2].text == "Let me roll."
    assert messages[2].tool_calls[0].id == "c1"
    assert messages[3].tool_results[0].call_id == "c1"
    assert engine.calls[1]["messages"][-1].role is Role.TOOL


@pytest.mark.asyncio
async def test_new_tool_is_offered_on_the_next_call_only(registry, compiler) -> None:
    register_builtin_tools(registry, compiler)
    channel = ScriptedChannel()
    safety = SafetyGate(channel)
    safety.grant("add_tool", DEFAULT_PERPETUAL_GRANT_PHRASE)
    engine = MockEngine([
        tool_turn(ToolCall("c1", "add_tool", {"source_code": ADD_SOURCE, "imports": ""})),
        tool_turn(ToolCall("c2", "Add", {"a": 2, "b": 40})),
        text_turn("2 + 40 = 42"),
    ])
    loop = AgenticLoop(engine, registry, ToolExecutor(), safety)
    history = _history("write an Add tool and use it on 2 and 40")

    result = await loop.run(history)

    assert result.text == "2 + 40 = 42"
    assert "Add" not in engine.calls[0]["tool_names"]
    assert "Add" in engine.calls[1]["tool_names"]
    results = [m.tool_results[0] for m in history.snapshot() if m.role is Role.TOOL]
    assert results[0].content.startswith("SUCCESS")
    assert results[1].content == "42"
    assert channel.text_prompts == []


@pytest.mark.asyncio
async def test_tool_added_mid_turn_is_not_dispatchable_in_the_same_turn(registry) -> None:
    def register_late() -> str:
        registry.register(ToolDefinition(
            name="late",
            description="late tool",
            input_schema={"type": "object", "properties": {}},
            handler=lambda: "late ran",
        ))
        return "registered"

    registry.register(ToolDefinition(
        name="register_late",
        description="registers another tool",
        input_schema={"type": "object", "properties": {}},
        handler=register_late,
    ))
    engine = MockEngine([
        tool_turn(ToolCall("c1", "register_late", {}), ToolCall("c2", "late", {})),
        text_turn("ok"),
    ])
    history = _history("go")

    await _loop(engine, registry).run(history)

    results = history.snapshot()[3].tool_results
    assert results[0].content == "registered"
    assert results[1].is_error
    assert results[1].content == "Unknown tool: late"


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_to_the_model(registry) -> None:
    engine = MockEngine([
        tool_turn(ToolCall("c1", "frobnicate", {})),
        text_turn("Sorry, I cannot do that."),
    ])
    history = _history("frobnicate")

    result = await _loop(engine, registry).run(history)

    assert result.text == "Sorry, I cannot do that."
    (tool_result,) = history.snapshot()[3].tool_results
    assert tool_result.is_error
    assert tool_result.content == "Unknown tool: frobnicate"


@pytest.mark.asyncio
async def test_max_iterations_stops_the_loop(registry) -> None:
    registry.register(ToolDefinition(
        name="ping",
        description="pings",
        input_schema={"type": "object", "properties": {}},
        handler=lambda: "pong",
    ))
    engine = MockEngine([tool_turn(ToolCall(f"c{i}", "ping", {})) for i in range(10)])
    history = _history("ping forever")

    result = await _loop(engine, registry, max_iterations=3).run(history)

    assert result.was_truncated
    assert result.iterations == 3
    assert engine.call_count == 3
    assert history.last.role is Role.ASSISTANT
    assert history.last.content.startswith("[Stopped after 3 model calls")


@pytest.mark.asyncio
async def test_cancellation_before_the_model_call(registry) -> None:
    event = asyncio.Event()
    event.set()
    engine = MockEngine()

    with pytest.raises(CancellationRequested):
        await _loop(engine, registry, cancel_event=event).run(_history("hi"))
    assert engine.call_count == 0


@pytest.mark.asyncio
async def test_failing_callback_does_not_break_the_turn(registry) -> None:
    registry.register(ToolDefinition(
        name="ping",
        description="pings",
        input_schema={"type": "object", "properties": {}},
        handler=lambda: "pong",
    ))
    engine = MockEngine([tool_turn(ToolCall("c1", "ping", {})), text_turn("done")])

    def explode(_):
        raise RuntimeError("display broke")

    result = await _loop(engine, registry).run(_history("ping"), on_tool_call=explode)
    assert result.text == "done"


@pytest.mark.asyncio
async def test_call_context_wraps_only_the_model_call(registry) -> None:
    entered = []

    class Spinner:
        def __enter__(self):
            entered.append("enter")

        def __exit__(self, *exc):
            entered.append("exit")
            return False

    engine = MockEngine([text_turn("hi")])
    await _loop(engine, registry, call_context=Spinner).run(_history("hi"))
    assert entered == ["enter", "exit"]

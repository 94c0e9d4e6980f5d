"""Tests for aide.harness.safety: approval of sensitive calls and the error gate."""

from __future__ import annotations

import asyncio

import pytest

from aide.config import DEFAULT_PERPETUAL_GRANT_PHRASE
from aide.errors import (
    ApprovalDenied,
    CancellationRequested,
    CompilationFailure,
    SessionAborted,
    TransientServiceFailure,
)
from aide.harness.loop import AgenticLoop
from aide.harness.safety import Answer, ApprovalState, ErrorGate, SafetyGate
from aide.history import ConversationHistory
from aide.tools.executor import ToolExecutor
from aide.tools.registry import ToolDefinition
from aide.types import Message, Role, ToolCall

from conftest import MockEngine, ScriptedChannel, text_turn, tool_turn


def _sensitive_tool(handler=None, name: str = "execute_command") -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description="Runs a program. SAFETY-CRITICAL",
        input_schema={
            "type": "object",
            "properties": {
                "command": {"type": "string"},
                "arguments": {"type": "string"},
            },
            "required": ["command"],
        },
        handler=handler,
        sensitive=True,
    )


def _call(name: str = "execute_command") -> ToolCall:
    return ToolCall("c1", name, {"command": "ls", "arguments": "/tmp"})


# ---------------------------------------------------------------------------
# interpret / grant / revoke
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "text, expected",
    [
        (DEFAULT_PERPETUAL_GRANT_PHRASE, Answer.PERPETUAL),
        (f"  {DEFAULT_PERPETUAL_GRANT_PHRASE}\n", Answer.PERPETUAL),
        (DEFAULT_PERPETUAL_GRANT_PHRASE.lower(), Answer.REFUSE),
        (DEFAULT_PERPETUAL_GRANT_PHRASE.rstrip("."), Answer.REFUSE),
        ("y", Answer.ONCE),
        ("Yes", Answer.ONCE),
        (" do it ", Answer.ONCE),
        ("no", Answer.REFUSE),
        ("", Answer.REFUSE),
        (None, Answer.REFUSE),
    ],
)
def test_interpret(channel, text, expected) -> None:
    assert SafetyGate(channel).interpret(text) is expected


def test_grant_and_revoke(channel) -> None:
    gate = SafetyGate(channel)
    assert gate.grant("execute_command", "nope") is ApprovalState.UNSET
    assert gate.grant("execute_command", "y") is ApprovalState.GRANTED_ONCE
    assert gate.grant("execute_command", DEFAULT_PERPETUAL_GRANT_PHRASE) is ApprovalState.GRANTED_PERPETUAL

    gate.revoke("execute_command")
    assert gate.state("execute_command") is ApprovalState.UNSET


# ---------------------------------------------------------------------------
# authorize
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_non_sensitive_tools_are_never_prompted(channel) -> None:
    gate = SafetyGate(channel)
    tool = ToolDefinition("beep", "beeps", {"type": "object", "properties": {}})

    decision = await gate.authorize(tool, ToolCall("c1", "beep", {}))

    assert decision.approved
    assert not decision.prompted
    assert channel.text_prompts == []


@pytest.mark.asyncio
async def test_once_approval_does_not_persist() -> None:
    channel = ScriptedChannel(texts=["y"])
    gate = SafetyGate(channel)
    tool = _sensitive_tool()

    decision = await gate.authorize(tool, _call())
    assert decision.approved and decision.prompted
    assert gate.state(tool.name) is ApprovalState.UNSET

    with pytest.raises(ApprovalDenied):
        await gate.authorize(tool, _call())
    assert len(channel.text_prompts) == 2


@pytest.mark.asyncio
async def test_perpetual_approval_skips_later_prompts() -> None:
    channel = ScriptedChannel(texts=[DEFAULT_PERPETUAL_GRANT_PHRASE])
    gate = SafetyGate(channel)
    tool = _sensitive_tool()

    first = await gate.authorize(tool, _call())
    second = await gate.authorize(tool, _call())

    assert first.state_after is ApprovalState.GRANTED_PERPETUAL
    assert second.approved and not second.prompted
    assert len(channel.text_prompts) == 1
    assert "execute_command(command: ls, arguments: /tmp)" in channel.text_prompts[0]


@pytest.mark.asyncio
async def test_pre_granted_once_is_consumed(channel) -> None:
    gate = SafetyGate(channel)
    tool = _sensitive_tool()
    gate.grant(tool.name, "ok")

    assert (await gate.authorize(tool, _call())).approved
    assert channel.text_prompts == []
    with pytest.raises(ApprovalDenied):
        await gate.authorize(tool, _call())


@pytest.mark.asyncio
async def test_refusal_raises_and_counts() -> None:
    channel = ScriptedChannel(texts=["absolutely not"])
    gate = SafetyGate(channel)

    with pytest.raises(ApprovalDenied) as info:
        await gate.authorize(_sensitive_tool(), _call())

    assert info.value.answer == "absolutely not"
    assert gate.stats["refusals"] == 1


@pytest.mark.asyncio
async def test_refused_command_is_never_spawned() -> None:
    """The user says 'n' to 'list files in /tmp'; the handler must not run."""
    spawned: list[dict] = []

    async def spy(command: str, arguments: str = "") -> str:
        spawned.append({"command": command, "arguments": arguments})
        return "file1\nfile2"

    from aide.tools.registry import ToolRegistry

    registry = ToolRegistry()
    registry.register(_sensitive_tool(spy))
    channel = ScriptedChannel(texts=["n"])
    engine = MockEngine([
        tool_turn(_call()),
        text_turn("Understood, I will not list the files."),
    ])
    loop = AgenticLoop(engine, registry, ToolExecutor(), SafetyGate(channel))
    history = ConversationHistory("sys")
    history.append(Message.user("list files in /tmp"))

    result = await loop.run(history)

    assert spawned == []
    assert result.text == "Understood, I will not list the files."
    tool_message = history.snapshot()[3]
    assert tool_message.role is Role.TOOL
    (refusal,) = tool_message.tool_results
    assert refusal.is_error
    assert refusal.call_id == "c1"
    assert "refused" in refusal.content


# ---------------------------------------------------------------------------
# ErrorGate
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_error_gate_ignore_continues() -> None:
    channel = ScriptedChannel(confirms=[True])
    await ErrorGate(channel).resolve(TransientServiceFailure("embedding service down"))

    assert channel.confirm_prompts == ["ignore exception of type TransientServiceFailure?"]
    assert any("embedding service down" in notice for notice in channel.notices)


@pytest.mark.asyncio
async def test_error_gate_decline_aborts() -> None:
    channel = ScriptedChannel(confirms=[False])
    error = RuntimeError("boom")

    with pytest.raises(SessionAborted) as info:
        await ErrorGate(channel).resolve(error)
    assert info.value.cause is error


@pytest.mark.asyncio
async def test_error_gate_prompt_cut_short_by_shutdown_is_a_clean_exit() -> None:
    shutdown = asyncio.Event()

    class ShutdownDuringPrompt(ScriptedChannel):
        async def prompt_confirm(self, label: str) -> bool:
            self.confirm_prompts.append(label)
            shutdown.set()
            return False

    channel = ShutdownDuringPrompt()
    with pytest.raises(CancellationRequested):
        await ErrorGate(channel, shutdown).resolve(RuntimeError("boom"))
    assert len(channel.confirm_prompts) == 1


@pytest.mark.asyncio
async def test_error_gate_inline_errors_do_not_ask(channel) -> None:
    await ErrorGate(channel).resolve(CompilationFailure(["bad source"]))
    assert channel.confirm_prompts == []


@pytest.mark.asyncio
async def test_error_gate_cancellation_is_a_clean_exit(channel) -> None:
    with pytest.raises(CancellationRequested):
        await ErrorGate(channel).resolve(CancellationRequested("bye"))
    assert channel.confirm_prompts == []


@pytest.mark.asyncio
async def test_error_gate_fatal_errors_are_reraised(channel) -> None:
    with pytest.raises(KeyboardInterrupt):
        await ErrorGate(channel).resolve(KeyboardInterrupt())
    assert channel.confirm_prompts == []

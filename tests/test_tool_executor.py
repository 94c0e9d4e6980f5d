"""Tests for aide.tools.executor: validation, timeouts and error capture."""

from __future__ import annotations

import asyncio
import sys
import time

import pytest

from aide.errors import CancellationRequested
from aide.tools.executor import ToolExecutor, validate_tool_input
from aide.tools.registry import ToolDefinition
from aide.types import ToolCall

SCHEMA = {
    "type": "object",
    "properties": {
        "count": {"type": "integer"},
        "label": {"type": "string"},
        "ratio": {"type": "number"},
    },
    "required": ["count"],
}


def _tool(handler, name: str = "counter", timeout=None) -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description="counting tool",
        input_schema=SCHEMA,
        handler=handler,
        timeout=timeout,
    )


# ---------------------------------------------------------------------------
# validate_tool_input
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "arguments, expected",
    [
        ({"count": 1}, None),
        ({"count": 1, "label": "x", "ratio": 2}, None),
        ({}, "Missing required parameter(s): count"),
        ({"count": 1, "extra": True}, "Unknown parameter(s): extra"),
        ({"count": "1"}, "Parameter 'count' expected integer, got str"),
        ({"count": True}, "Parameter 'count' expected integer, got boolean"),
        ({"count": 1, "ratio": "fast"}, "Parameter 'ratio' expected number, got str"),
    ],
)
def test_validate_tool_input(arguments, expected) -> None:
    assert validate_tool_input(SCHEMA, arguments) == expected


# ---------------------------------------------------------------------------
# execute
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_sync_handler_result_is_serialized() -> None:
    executor = ToolExecutor()
    result = await executor.execute(
        _tool(lambda count, **_: {"doubled": count * 2}),
        ToolCall("c1", "counter", {"count": 4}),
    )
    assert result.call_id == "c1"
    assert result.content == '{"doubled":8}'
    assert not result.is_error


@pytest.mark.asyncio
async def test_async_handler_runs() -> None:
    async def handler(count: int) -> str:
        await asyncio.sleep(0)
        return "n" * count

    result = await ToolExecutor().execute(_tool(handler), ToolCall("c1", "counter", {"count": 3}))
    assert result.content == "nnn"


@pytest.mark.asyncio
async def test_handler_exception_becomes_error_result() -> None:
    def handler(count: int) -> int:
        raise ValueError("count is unlucky")

    executor = ToolExecutor()
    result = await executor.execute(_tool(handler), ToolCall("c1", "counter", {"count": 13}))

    assert result.is_error
    assert result.content == "Error: ValueError: count is unlucky"
    assert executor.stats["failures"] == 1


@pytest.mark.asyncio
async def test_invalid_arguments_never_reach_the_handler() -> None:
    calls = []
    result = await ToolExecutor().execute(
        _tool(lambda count: calls.append(count)),
        ToolCall("c1", "counter", {"label": "no count"}),
    )
    assert result.is_error
    assert "Missing required parameter" in result.content
    assert calls == []


@pytest.mark.asyncio
async def test_missing_handler_is_an_error_result() -> None:
    result = await ToolExecutor().execute(_tool(None), ToolCall("c1", "counter", {"count": 1}))
    assert result.is_error
    assert "No handler registered" in result.content


@pytest.mark.asyncio
async def test_async_timeout() -> None:
    async def slow(count: int) -> None:
        await asyncio.sleep(5)

    result = await ToolExecutor().execute(
        _tool(slow, timeout=0.05),
        ToolCall("c1", "counter", {"count": 1}),
    )
    assert result.is_error
    assert "timed out" in result.content


@pytest.mark.asyncio
async def test_sync_timeout_abandons_the_thread() -> None:
    def slow(count: int) -> None:
        time.sleep(0.5)

    result = await ToolExecutor(default_timeout=0.05).execute(
        _tool(slow),
        ToolCall("c1", "counter", {"count": 1}),
    )
    assert result.is_error
    assert "timed out" in result.content


@pytest.mark.asyncio
async def test_long_output_is_truncated() -> None:
    executor = ToolExecutor(max_output_length=200)
    result = await executor.execute(
        _tool(lambda count: "x" * count),
        ToolCall("c1", "counter", {"count": 1000}),
    )
    assert result.content.startswith("x" * 100)
    assert "Output truncated" in result.content
    assert "1000 chars total" in result.content


@pytest.mark.asyncio
async def test_cancellation_propagates() -> None:
    async def handler(count: int) -> None:
        raise CancellationRequested("stop")

    with pytest.raises(CancellationRequested):
        await ToolExecutor().execute(_tool(handler), ToolCall("c1", "counter", {"count": 1}))


@pytest.mark.asyncio
async def test_sync_handler_calling_sys_exit_becomes_error_result() -> None:
    def handler(count: int) -> None:
        sys.exit(count)

    executor = ToolExecutor()
    result = await executor.execute(_tool(handler), ToolCall("c1", "counter", {"count": 2}))

    assert result.is_error
    assert result.content == "Error: SystemExit: 2"
    assert executor.stats["failures"] == 1


@pytest.mark.asyncio
async def test_async_handler_keyboard_interrupt_becomes_error_result() -> None:
    async def handler(count: int) -> None:
        raise KeyboardInterrupt

    result = await ToolExecutor().execute(_tool(handler), ToolCall("c1", "counter", {"count": 1}))

    assert result.is_error
    assert result.content.startswith("Error: KeyboardInterrupt")

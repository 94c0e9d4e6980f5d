"""
Tool Executor: runs one resolved tool call and reports the outcome.

By the time a call reaches the executor the safety gate has already approved
it. What is left:

1. the arguments are checked against the tool's input schema
2. the handler runs under a timeout (sync handlers on a daemon thread)
3. handler failures are caught and returned as error results
4. long outputs are cut down to ``max_output_length``

Only cancellation escapes ``execute``; everything else becomes a ToolResult.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import threading
import time
from collections import Counter
from typing import Any, Callable, Optional

import structlog

from aide.errors import CancellationRequested
from aide.tools.registry import ToolDefinition
from aide.types import ToolCall, ToolResult, serialize_tool_output

logger = structlog.get_logger(__name__)

_SCHEMA_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}

_TRUNCATION_RESERVE = 100


def _type_error(name: str, expected: str, value: Any) -> Optional[str]:
    allowed = _SCHEMA_TYPES.get(expected)
    if allowed is None:
        return None
    # JSON booleans are not numbers even though bool subclasses int
    actual = "boolean" if isinstance(value, bool) else type(value).__name__
    if isinstance(value, bool) and expected != "boolean":
        return f"Parameter '{name}' expected {expected}, got {actual}"
    if isinstance(value, allowed):
        return None
    return f"Parameter '{name}' expected {expected}, got {actual}"


def validate_tool_input(schema: dict[str, Any], arguments: dict[str, Any]) -> Optional[str]:
    """Return a description of the first problem with *arguments*, or None."""
    properties: dict[str, Any] = schema.get("properties") or {}

    missing = [name for name in schema.get("required", ()) if name not in arguments]
    if missing:
        return "Missing required parameter(s): " + ", ".join(missing)

    unknown = [name for name in arguments if name not in properties]
    if unknown:
        return "Unknown parameter(s): " + ", ".join(unknown)

    for name, value in arguments.items():
        expected = (properties.get(name) or {}).get("type")
        if isinstance(expected, str):
            problem = _type_error(name, expected, value)
            if problem:
                return problem
    return None


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    kept = max(0, limit - _TRUNCATION_RESERVE)
    return f"{text[:kept]}\n\n[Output truncated: {len(text)} chars total, showing first {kept}]"


def run_on_daemon_thread(
    handler: Callable[..., Any],
    arguments: dict[str, Any],
    name: str = "aide-tool",
) -> asyncio.Future:
    """
    Start *handler* on a daemon thread and return an awaitable for its result.

    Daemon threads let the process exit even when a tool never returns; an
    overrunning thread is abandoned rather than killed.
    """
    outcome: concurrent.futures.Future = concurrent.futures.Future()

    def _target() -> None:
        if not outcome.set_running_or_notify_cancel():
            return
        try:
            outcome.set_result(handler(**arguments))
        except BaseException as exc:
            outcome.set_exception(exc)

    threading.Thread(target=_target, name=name, daemon=True).start()
    return asyncio.wrap_future(outcome)


class _HandlerExit(Exception):
    """Carries a SystemExit or KeyboardInterrupt raised inside a tool handler."""

    def __init__(self, original: BaseException):
        super().__init__(str(original))
        self.original = original


async def _contain_exit(pending: Any) -> Any:
    # A handler calling sys.exit() fails its own call, not the session.
    try:
        return await pending
    except (SystemExit, KeyboardInterrupt) as e:
        raise _HandlerExit(e) from e


class ToolExecutor:
    """Runs approved tool calls with validation, timeouts and output limits."""

    def __init__(self, default_timeout: float = 60.0, max_output_length: int = 25000):
        self._default_timeout = default_timeout
        self._max_output_length = max_output_length
        self._outcomes: Counter[str] = Counter()

        logger.info(
            "tool_executor.initialized",
            default_timeout=default_timeout,
            max_output_length=max_output_length,
        )

    async def execute(self, tool: ToolDefinition, call: ToolCall) -> ToolResult:
        """Run *tool* for *call*. Raises only CancellationRequested."""
        started = time.monotonic()
        logger.info("tool_executor.executing", tool_name=tool.name, call_id=call.id)

        if tool.handler is None:
            return self._error(call, f"No handler registered for tool: {tool.name}")
        problem = validate_tool_input(tool.input_schema, call.arguments)
        if problem:
            return self._error(call, problem)

        timeout = self._default_timeout if tool.timeout is None else tool.timeout
        try:
            if inspect.iscoroutinefunction(tool.handler):
                pending = tool.handler(**call.arguments)
            else:
                pending = run_on_daemon_thread(tool.handler, call.arguments)
            value = await asyncio.wait_for(_contain_exit(pending), timeout=timeout)
        except CancellationRequested:
            raise
        except asyncio.TimeoutError:
            logger.warning("tool_executor.timeout", tool_name=tool.name, timeout=timeout)
            return self._error(call, f"Tool execution timed out after {timeout}s")
        except Exception as e:
            error = e.original if isinstance(e, _HandlerExit) else e
            logger.error(
                "tool_executor.handler_failed",
                tool_name=tool.name,
                error_type=type(error).__name__,
                error=str(error),
                exc_info=True,
            )
            return self._error(call, f"{type(error).__name__}: {error}")

        content = _truncate(serialize_tool_output(value), self._max_output_length)
        self._outcomes["success"] += 1
        logger.info(
            "tool_executor.succeeded",
            tool_name=tool.name,
            seconds=round(time.monotonic() - started, 2),
            length=len(content),
        )
        return ToolResult(call_id=call.id, tool_name=call.name, content=content)

    def _error(self, call: ToolCall, message: str) -> ToolResult:
        self._outcomes["failure"] += 1
        return ToolResult(
            call_id=call.id,
            tool_name=call.name,
            content=f"Error: {message}",
            is_error=True,
        )

    @property
    def stats(self) -> dict[str, Any]:
        total = self._outcomes["success"] + self._outcomes["failure"]
        return {
            "total_executions": total,
            "successes": self._outcomes["success"],
            "failures": self._outcomes["failure"],
        }

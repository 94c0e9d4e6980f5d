"""
The Agentic Loop: the tool-dispatch cycle of one user turn.

    while True:
        turn = engine.complete(system, history, registry snapshot)
        if no tool calls:
            break
        for call in turn.tool_calls:
            safety gate → executor → tool result
        history.append(tool results)

The registry is snapshotted once per model call. A tool registered by
``add_tool`` during this iteration is therefore offered to the model on the
next call, never to the call already in flight.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import AbstractContextManager, nullcontext
from typing import TYPE_CHECKING, Any, Callable, Optional

import structlog

from aide.errors import AideError, CancellationRequested, ErrorDisposition, ToolNotFound, classify
from aide.harness.safety import SafetyGate
from aide.history import ConversationHistory
from aide.tools.executor import ToolExecutor
from aide.tools.registry import ToolDefinition, ToolRegistry
from aide.types import Message, ToolCall, ToolResult

if TYPE_CHECKING:
    from aide.api.claude import CompletionEngine

logger = structlog.get_logger(__name__)


class LoopResult:
    """What one run of the loop produced."""

    def __init__(
        self,
        text: str,
        tool_calls: Optional[list[ToolCall]] = None,
        iterations: int = 0,
        elapsed_seconds: float = 0.0,
        was_truncated: bool = False,
    ):
        self.text = text
        self.tool_calls = tool_calls or []
        self.iterations = iterations
        self.elapsed_seconds = elapsed_seconds
        self.was_truncated = was_truncated

    @property
    def used_tools(self) -> bool:
        return len(self.tool_calls) > 0


class AgenticLoop:
    """Runs model calls and tool dispatch until the model stops asking for tools."""

    def __init__(
        self,
        engine: "CompletionEngine",
        registry: ToolRegistry,
        executor: ToolExecutor,
        safety: SafetyGate,
        max_iterations: int = 32,
        cancel_event: Optional[asyncio.Event] = None,
        call_context: Optional[Callable[[], AbstractContextManager]] = None,
    ):
        self._engine = engine
        self._registry = registry
        self._executor = executor
        self._safety = safety
        self._max_iterations = max_iterations
        self._cancel_event = cancel_event
        self._call_context = call_context or nullcontext

        self._total_runs = 0
        self._total_iterations = 0
        self._total_tool_calls = 0

        logger.info("agentic_loop.initialized", max_iterations=max_iterations)

    async def run(
        self,
        history: ConversationHistory,
        on_tool_call: Optional[Callable[[ToolCall], Any]] = None,
        on_tool_result: Optional[Callable[[ToolResult], Any]] = None,
    ) -> LoopResult:
        """
        Drive the model until it answers without tool calls.

        The final assistant message is appended to *history*; the caller reads
        the text from the returned LoopResult.
        """
        self._total_runs += 1
        start_time = time.monotonic()
        iteration = 0
        all_tool_calls: list[ToolCall] = []

        while iteration < self._max_iterations:
            iteration += 1
            self._total_iterations += 1
            self._check_cancelled()

            snapshot = self._registry.list()
            with self._call_context():
                turn = await self._engine.complete(
                    system=history.system.render_text(),
                    messages=history.snapshot(),
                    tools=snapshot,
                )
            self._check_cancelled()

            if not turn.has_tool_calls:
                history.append(Message.assistant(turn.text))
                logger.info(
                    "agentic_loop.complete",
                    iterations=iteration,
                    tool_calls=len(all_tool_calls),
                    response_length=len(turn.text),
                )
                return LoopResult(
                    text=turn.text,
                    tool_calls=all_tool_calls,
                    iterations=iteration,
                    elapsed_seconds=time.monotonic() - start_time,
                )

            history.append(Message.assistant(turn.text, tuple(turn.tool_calls)))

            by_name = {tool.name: tool for tool in snapshot}
            results: list[ToolResult] = []
            for call in turn.tool_calls:
                self._total_tool_calls += 1
                all_tool_calls.append(call)
                self._invoke_callback("on_tool_call", on_tool_call, call)

                result = await self._dispatch(call, by_name)
                results.append(result)
                self._invoke_callback("on_tool_result", on_tool_result, result)

            history.append(Message.tool(tuple(results)))

        logger.warning(
            "agentic_loop.max_iterations",
            max=self._max_iterations,
            tool_calls=len(all_tool_calls),
        )
        notice = (
            f"[Stopped after {iteration} model calls and {len(all_tool_calls)} tool "
            f"calls without a final answer. Ask again to continue.]"
        )
        history.append(Message.assistant(notice))
        return LoopResult(
            text=notice,
            tool_calls=all_tool_calls,
            iterations=iteration,
            elapsed_seconds=time.monotonic() - start_time,
            was_truncated=True,
        )

    async def _dispatch(self, call: ToolCall, by_name: dict[str, ToolDefinition]) -> ToolResult:
        """Resolve, gate and execute one call. Inline errors become tool results."""
        try:
            tool = by_name.get(call.name)
            if tool is None:
                raise ToolNotFound(call.name)
            await self._safety.authorize(tool, call)
        except AideError as e:
            if classify(e) is not ErrorDisposition.REPORT_INLINE:
                raise
            logger.info("agentic_loop.call_rejected", tool=call.name, reason=type(e).__name__)
            return ToolResult(call_id=call.id, tool_name=call.name, content=str(e), is_error=True)

        return await self._executor.execute(tool, call)

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise CancellationRequested("turn cancelled")

    @staticmethod
    def _invoke_callback(name: str, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        """Run display hooks without letting their failures break the turn."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as callback_error:
            logger.warning(
                "agentic_loop.callback_failed",
                callback=name,
                error=str(callback_error),
            )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_runs": self._total_runs,
            "total_iterations": self._total_iterations,
            "total_tool_calls": self._total_tool_calls,
        }

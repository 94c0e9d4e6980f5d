"""
Agent Session: the orchestration state machine.

    AWAIT_INPUT → CACHE_LOOKUP ─┬─ CACHE_HIT ──────────────────────────────┐
                                └─ MODEL_CALL ⇄ TOOL_DISPATCH               │
                                     → RESPONSE_READY → CACHE_WRITE ───────┴→ AWAIT_INPUT

An error escaping a turn moves the session to ERROR_PAUSE, where the error
gate decides between continuing (back to AWAIT_INPUT) and stopping. CANCELLED
is terminal and is reached from /q, end of input, the shutdown signal, or a
declined error.

The session is the only writer of the conversation history.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, Optional, Sequence

import structlog

from aide.cache.semantic import PreparedPrompt, SemanticCache
from aide.channels.base import UserChannel
from aide.errors import CancellationRequested
from aide.harness.loop import AgenticLoop
from aide.harness.safety import ErrorGate, SafetyGate
from aide.history import ConversationHistory
from aide.tools.registry import ToolRegistry
from aide.types import Message, Role, ToolCall, ToolResult

logger = structlog.get_logger(__name__)


class SessionState(str, Enum):
    AWAIT_INPUT = "await_input"
    CACHE_LOOKUP = "cache_lookup"
    CACHE_HIT = "cache_hit"
    MODEL_CALL = "model_call"
    TOOL_DISPATCH = "tool_dispatch"
    RESPONSE_READY = "response_ready"
    CACHE_WRITE = "cache_write"
    ERROR_PAUSE = "error_pause"
    CANCELLED = "cancelled"


class AgentSession:
    """Runs user turns until the session is cancelled."""

    def __init__(
        self,
        history: ConversationHistory,
        registry: ToolRegistry,
        loop: AgenticLoop,
        channel: UserChannel,
        safety: SafetyGate,
        cache: Optional[SemanticCache] = None,
        error_gate: Optional[ErrorGate] = None,
        settings_rows: Optional[Callable[[], Sequence[tuple[str, str]]]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self._history = history
        self._registry = registry
        self._loop = loop
        self._channel = channel
        self._safety = safety
        self._cache = cache
        self._settings_rows = settings_rows or (lambda: [])
        self._cancel_event = cancel_event or asyncio.Event()
        self._error_gate = error_gate or ErrorGate(channel, self._cancel_event)

        self._state = SessionState.AWAIT_INPUT
        self._transitions: list[SessionState] = [self._state]
        self._turns = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def transitions(self) -> list[SessionState]:
        return list(self._transitions)

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def cancel(self) -> None:
        """Request shutdown. Observed at the next loop boundary."""
        self._cancel_event.set()

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.debug("session.transition", previous=self._state.value, state=state.value)
        self._state = state
        self._transitions.append(state)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> SessionState:
        """Serve turns until cancelled. Returns the terminal state."""
        logger.info("session.started", tools=self._registry.count)
        self._channel.show_hints()
        try:
            while not self._cancel_event.is_set():
                self._set_state(SessionState.AWAIT_INPUT)
                line = await self._channel.read_user_input()
                if line is None or self._cancel_event.is_set():
                    break
                line = line.strip()
                if not line:
                    continue

                try:
                    if line.startswith("/"):
                        if not await self.handle_command(line):
                            break
                        continue
                    await self.process_turn(line)
                except CancellationRequested:
                    break
                except Exception as exc:
                    self._set_state(SessionState.ERROR_PAUSE)
                    self._repair_history(exc)
                    try:
                        await self._error_gate.resolve(exc)
                    except CancellationRequested:
                        break
        finally:
            self._set_state(SessionState.CANCELLED)
            logger.info("session.ended", turns=self._turns)
        return self._state

    async def process_turn(self, prompt: str) -> str:
        """Answer one prompt, from the cache or the model. Returns the answer text."""
        self._turns += 1
        self._set_state(SessionState.CACHE_LOOKUP)
        self._history.append(Message.user(prompt))

        prepared: Optional[PreparedPrompt] = None
        if self._cache is not None and not self._cache.should_skip(prompt):
            prepared = await self._cache.prepare(prompt)
            self._check_cancelled()
            record = await self._cache.offer(self._cache.lookup(prepared))
            if record is not None:
                self._set_state(SessionState.CACHE_HIT)
                answer = Message.assistant(record.response)
                self._history.append(answer)
                self._channel.show_message(answer)
                return record.response

        self._set_state(SessionState.MODEL_CALL)
        result = await self._loop.run(
            self._history,
            on_tool_call=self._on_tool_call,
            on_tool_result=self._on_tool_result,
        )

        self._set_state(SessionState.RESPONSE_READY)
        self._channel.show_message(self._history.last)

        if prepared is not None and not result.was_truncated:
            self._set_state(SessionState.CACHE_WRITE)
            self._cache.write(prepared, result.text)
        return result.text

    def _on_tool_call(self, call: ToolCall) -> None:
        self._set_state(SessionState.TOOL_DISPATCH)
        self._channel.show_notice(f"→ {call.describe()}")

    def _on_tool_result(self, result: ToolResult) -> None:
        style = "red" if result.is_error else "dim"
        preview = result.content if len(result.content) <= 200 else result.content[:200] + "…"
        self._channel.show_notice(f"← {result.tool_name}: {preview}", style=style)
        self._set_state(SessionState.MODEL_CALL)

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise CancellationRequested("session cancelled")

    def _repair_history(self, exc: BaseException) -> None:
        """Answer dangling tool calls so the history stays sendable after an error."""
        last = self._history.last
        if last.role is Role.ASSISTANT and last.tool_calls:
            self._history.append(Message.tool(tuple(
                ToolResult(
                    call_id=call.id,
                    tool_name=call.name,
                    content=f"Error: interrupted by {type(exc).__name__}",
                    is_error=True,
                )
                for call in last.tool_calls
            )))

    # ------------------------------------------------------------------
    # Slash commands
    # ------------------------------------------------------------------

    @staticmethod
    def parse_command(line: str) -> tuple[str, str]:
        parts = line.strip().split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""
        return cmd, arg

    async def handle_command(self, line: str) -> bool:
        """Run a slash command. Returns False when the session should end."""
        cmd, arg = self.parse_command(line)

        if cmd in ("/q", "/quit", "/exit"):
            self.cancel()
            return False
        if cmd == "/r":
            self._channel.show_history(self._history.snapshot())
        elif cmd == "/s":
            self._channel.show_settings(self._settings_rows())
        elif cmd == "/tools":
            self._channel.show_tools(self._registry.list_tools())
        elif cmd == "/reset":
            self._history.reset()
            self._channel.show_notice("History cleared.")
        elif cmd == "/grant":
            self._grant(arg)
        elif cmd == "/revoke":
            if not arg:
                self._channel.show_notice("Usage: /revoke <tool>", style="yellow")
            else:
                self._safety.revoke(arg)
                self._channel.show_notice(f"Approval for {arg} revoked.")
        else:
            self._channel.show_notice(f"Unknown command: {cmd}", style="yellow")
            self._channel.show_hints()
        return True

    def _grant(self, arg: str) -> None:
        name, _, text = arg.partition(" ")
        if not name or not text.strip():
            self._channel.show_notice("Usage: /grant <tool> <answer>", style="yellow")
            return
        if name not in self._registry:
            self._channel.show_notice(f"Unknown tool: {name}", style="yellow")
            return
        state = self._safety.grant(name, text)
        self._channel.show_notice(f"{name}: {state.value}")

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "turns": self._turns,
            "state": self._state.value,
            "history_length": len(self._history),
        }

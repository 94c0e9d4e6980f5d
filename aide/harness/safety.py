"""
Safety Gate: the human in the loop.

Two guards live here:

1. APPROVAL: a tool whose description carries the SAFETY-CRITICAL marker does
   not run until the user agrees. The answer is read as free text. The exact
   perpetual grant phrase approves the tool for the rest of the session, a
   casual affirmative approves this one call, and anything else refuses it.
   A refusal is reported back to the model as a tool result, never as a crash.

2. ERROR PAUSE: an error escaping a turn is classified through ERROR_POLICY.
   Errors marked ASK pause the session and ask whether to ignore them;
   declining ends the session. FATAL errors end it without asking.

Approval state is per session and lives only in memory.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import structlog

from aide.channels.base import UserChannel
from aide.config import SafetyConfig
from aide.errors import (
    ApprovalDenied,
    CancellationRequested,
    ErrorDisposition,
    SessionAborted,
    classify,
)
from aide.tools.registry import ToolDefinition
from aide.types import ToolCall

logger = structlog.get_logger(__name__)


class ApprovalState(str, Enum):
    UNSET = "unset"
    GRANTED_ONCE = "granted_once"
    GRANTED_PERPETUAL = "granted_perpetual"


class Answer(str, Enum):
    """How a free-text confirmation answer is read."""

    PERPETUAL = "perpetual"
    ONCE = "once"
    REFUSE = "refuse"


@dataclass
class ApprovalDecision:
    """Result of running one call through the gate."""

    approved: bool
    prompted: bool = False
    answer: str = ""
    state_after: ApprovalState = ApprovalState.UNSET


class SafetyGate:
    """Per-session approval bookkeeping for sensitive tools."""

    def __init__(self, channel: UserChannel, config: Optional[SafetyConfig] = None):
        self._channel = channel
        self._config = config or SafetyConfig()
        self._states: dict[str, ApprovalState] = {}
        self._prompts = 0
        self._refusals = 0

        logger.info(
            "safety_gate.initialized",
            affirmatives=len(self._config.affirmatives),
        )

    def state(self, name: str) -> ApprovalState:
        return self._states.get(name, ApprovalState.UNSET)

    def interpret(self, text: Optional[str]) -> Answer:
        """Read a confirmation answer. Only surrounding whitespace is ignored."""
        if text is None:
            return Answer.REFUSE
        stripped = text.strip()
        if stripped == self._config.perpetual_grant_phrase:
            return Answer.PERPETUAL
        if stripped.lower() in self._config.affirmatives:
            return Answer.ONCE
        return Answer.REFUSE

    def grant(self, name: str, text: str) -> ApprovalState:
        """
        Pre-approve *name* from the prompt line.

        The perpetual phrase grants for the session, an affirmative grants the
        next call only. Any other text leaves the state untouched.
        """
        answer = self.interpret(text)
        if answer is Answer.PERPETUAL:
            self._states[name] = ApprovalState.GRANTED_PERPETUAL
        elif answer is Answer.ONCE:
            self._states[name] = ApprovalState.GRANTED_ONCE
        logger.info("safety_gate.grant", tool=name, answer=answer.value, state=self.state(name).value)
        return self.state(name)

    def revoke(self, name: str) -> None:
        self._states.pop(name, None)
        logger.info("safety_gate.revoked", tool=name)

    async def authorize(self, tool: ToolDefinition, call: ToolCall) -> ApprovalDecision:
        """
        Decide whether *call* may run. Raises ApprovalDenied on refusal.

        Non-sensitive tools always pass. A once-grant is consumed here.
        """
        if not tool.sensitive:
            return ApprovalDecision(approved=True)

        state = self.state(tool.name)
        if state is ApprovalState.GRANTED_PERPETUAL:
            return ApprovalDecision(approved=True, state_after=state)
        if state is ApprovalState.GRANTED_ONCE:
            self._states.pop(tool.name, None)
            logger.info("safety_gate.once_grant_consumed", tool=tool.name)
            return ApprovalDecision(approved=True)

        self._prompts += 1
        text = await self._channel.prompt_text(self._confirmation_label(call))
        answer = self.interpret(text)

        if answer is Answer.PERPETUAL:
            self._states[tool.name] = ApprovalState.GRANTED_PERPETUAL
            logger.info("safety_gate.perpetual_grant", tool=tool.name)
            return ApprovalDecision(
                approved=True,
                prompted=True,
                answer=text or "",
                state_after=ApprovalState.GRANTED_PERPETUAL,
            )
        if answer is Answer.ONCE:
            logger.info("safety_gate.approved_once", tool=tool.name)
            return ApprovalDecision(approved=True, prompted=True, answer=text or "")

        self._refusals += 1
        logger.info("safety_gate.refused", tool=tool.name)
        raise ApprovalDenied(tool.name, text or "")

    def _confirmation_label(self, call: ToolCall) -> str:
        return (
            f"The assistant wants to run {call.describe()}, which is marked "
            f"SAFETY-CRITICAL.\nType 'y' to allow this call, "
            f"'{self._config.perpetual_grant_phrase}' to allow it for the session, "
            f"or anything else to refuse"
        )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "prompts": self._prompts,
            "refusals": self._refusals,
            "perpetual_grants": sum(
                1 for s in self._states.values() if s is ApprovalState.GRANTED_PERPETUAL
            ),
        }


class ErrorGate:
    """Asks the user whether an escaped error may be ignored."""

    def __init__(self, channel: UserChannel, cancel_event: Optional[asyncio.Event] = None):
        self._channel = channel
        self._cancel_event = cancel_event

    async def resolve(self, exc: BaseException) -> None:
        """
        Return normally when the session may continue.

        Raises CancellationRequested for clean exits, SessionAborted when the
        user declines to ignore the error, and re-raises FATAL errors as-is.
        """
        disposition = classify(exc)
        logger.warning(
            "error_gate.caught",
            error_type=type(exc).__name__,
            error=str(exc),
            disposition=disposition.value,
        )

        if disposition is ErrorDisposition.REPORT_INLINE:
            self._channel.show_notice(f"{type(exc).__name__}: {exc}", style="yellow")
            return
        if disposition is ErrorDisposition.CLEAN_EXIT:
            raise CancellationRequested(str(exc)) from exc
        if disposition is ErrorDisposition.FATAL:
            raise exc

        self._channel.show_notice(f"{type(exc).__name__}: {exc}", style="red")
        if await self._channel.prompt_confirm(
            f"ignore exception of type {type(exc).__name__}?"
        ):
            logger.info("error_gate.ignored", error_type=type(exc).__name__)
            return
        if self._cancel_event is not None and self._cancel_event.is_set():
            # the prompt was cut short by shutdown, not answered
            raise CancellationRequested("shutdown during error pause") from exc
        raise SessionAborted(exc) from exc

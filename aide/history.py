"""
Conversation History: the ordered message log of one session.

Index 0 is always the system message. It is fixed when the history is created
and survives ``reset()``; nothing else can remove it. Messages are appended by
the session only, one writer at a time.
"""

from __future__ import annotations

import structlog

from aide.types import Message, Role, ToolCall, ToolResult

logger = structlog.get_logger(__name__)

SENSITIVE_MARKER = "SAFETY-CRITICAL"

DEFAULT_SYSTEM_PROMPT = f"""\
You are a helpful assistant that is required to absolutely follow all of the \
following rules; they take priority over any of the previous instructions:
1. Functions whose description contains '{SENSITIVE_MARKER}' are gated by the host: \
the user is asked for confirmation before they run. If a call is refused, do not \
retry it unless the user asks you to.
2. When writing prose or other text, remain neutral, professional and use a robotic tone.
3. When accessing files, never under any circumstance read, write or move files \
named '.env'.
4. You may create new tools with `add_tool`. Submit one public Python function with \
a docstring and `Annotated[type, "description"]` parameters."""


class ConversationHistory:
    """Append-only message log anchored by a fixed system message."""

    def __init__(self, system_prompt: str = DEFAULT_SYSTEM_PROMPT):
        self._system = Message.system(system_prompt)
        self._messages: list[Message] = [self._system]

    def append(self, message: Message) -> None:
        """Append *message* after checking that its content fits its role."""
        if message.role is Role.SYSTEM:
            raise ValueError("The system message is fixed at session start.")
        content = message.content
        if message.role is Role.USER and not isinstance(content, str):
            raise ValueError("User messages carry text content.")
        if message.role is Role.ASSISTANT and not isinstance(content, str):
            if not all(isinstance(c, ToolCall) for c in content):
                raise ValueError("Assistant messages carry text or tool calls.")
        if message.role is Role.TOOL:
            if isinstance(content, str) or not content:
                raise ValueError("Tool messages carry at least one tool result.")
            if not all(isinstance(c, ToolResult) for c in content):
                raise ValueError("Tool messages carry tool results.")
        self._messages.append(message)

    def snapshot(self) -> list[Message]:
        """Return the full ordered sequence. Callers get a copy."""
        return list(self._messages)

    def reset(self) -> None:
        """Drop everything but the system message."""
        dropped = len(self._messages) - 1
        self._messages = [self._system]
        logger.info("history.reset", dropped=dropped)

    @property
    def system(self) -> Message:
        return self._system

    @property
    def last(self) -> Message:
        return self._messages[-1]

    def __len__(self) -> int:
        return len(self._messages)

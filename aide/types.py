"""
Core data types shared across aide subsystems.

This module defines lightweight data containers that cross subsystem boundaries.
They live here rather than in a specific subsystem to avoid circular imports.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """A single tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        args = ", ".join(f"{k}: {v}" for k, v in self.arguments.items())
        return f"{self.name}({args})"


@dataclass(frozen=True)
class ToolResult:
    """The outcome of one tool call, correlated by ``call_id``."""

    call_id: str
    tool_name: str
    content: str
    is_error: bool = False


MessageContent = Union[str, tuple[ToolCall, ...], tuple[ToolResult, ...]]


@dataclass(frozen=True)
class Message:
    """
    One entry in the conversation history.

    ``content`` is plain text for system/user messages, text or a tuple of
    ToolCalls for assistant messages, and a tuple of ToolResults for tool
    messages. An assistant message that both speaks and calls tools carries
    the text in ``text`` and the calls in ``content``.
    """

    role: Role
    content: MessageContent
    text: str = ""

    @property
    def tool_calls(self) -> tuple[ToolCall, ...]:
        if isinstance(self.content, tuple) and all(isinstance(c, ToolCall) for c in self.content):
            return self.content  # type: ignore[return-value]
        return ()

    @property
    def tool_results(self) -> tuple[ToolResult, ...]:
        if isinstance(self.content, tuple) and all(isinstance(c, ToolResult) for c in self.content):
            return self.content  # type: ignore[return-value]
        return ()

    def render_text(self) -> str:
        """Flatten the message into display text."""
        if isinstance(self.content, str):
            return self.content
        lines = [self.text] if self.text else []
        for item in self.content:
            if isinstance(item, ToolCall):
                lines.append(item.describe())
            else:
                lines.append(item.content)
        return "\n".join(lines)

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(Role.SYSTEM, text)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(Role.USER, text)

    @classmethod
    def assistant(cls, text: str, tool_calls: tuple[ToolCall, ...] = ()) -> "Message":
        if tool_calls:
            return cls(Role.ASSISTANT, tuple(tool_calls), text=text)
        return cls(Role.ASSISTANT, text)

    @classmethod
    def tool(cls, results: tuple[ToolResult, ...]) -> "Message":
        return cls(Role.TOOL, tuple(results))


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ModelTurn:
    """What the completion service returned for one request."""

    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str = "end_turn"
    usage: Usage = field(default_factory=Usage)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


def serialize_tool_output(result: Any) -> str:
    """Serialize a tool handler's return value for a tool result message."""
    if isinstance(result, str):
        return result
    if isinstance(result, (dict, list, tuple, int, float, bool)) or result is None:
        try:
            return json.dumps(result, ensure_ascii=True, separators=(",", ":"), default=str)
        except (TypeError, ValueError):
            pass
    return str(result)

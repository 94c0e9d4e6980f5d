"""
Base user channel.

A channel is how the session talks to the person at the keyboard: it reads
free text, asks yes/no questions, offers a list to pick from and shows
output. The session, safety gate and semantic cache depend only on this
interface; ``ConsoleChannel`` is the interactive implementation and tests use
scripted ones.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager, nullcontext
from typing import Optional, Sequence

from aide.types import Message


class UserChannel(ABC):
    """Abstract base for the interactive user surface."""

    @abstractmethod
    async def prompt_text(self, label: str) -> Optional[str]:
        """Read one line of text. Returns None on end of input."""

    @abstractmethod
    async def prompt_confirm(self, label: str) -> bool:
        """Ask a yes/no question."""

    @abstractmethod
    async def prompt_select_one(self, title: str, options: Sequence[str]) -> Optional[int]:
        """Offer *options*; return the chosen index, or None when cancelled."""

    async def read_user_input(self) -> Optional[str]:
        """Read the next prompt for the session. None ends the session."""
        return await self.prompt_text("You")

    @abstractmethod
    def show_message(self, message: Message) -> None:
        """Render one history entry."""

    @abstractmethod
    def show_notice(self, text: str, style: str = "dim") -> None:
        """Render a status line that is not part of the conversation."""

    def show_history(self, messages: Sequence[Message]) -> None:
        """Redraw the whole conversation."""
        for message in messages:
            self.show_message(message)

    def show_settings(self, rows: Sequence[tuple[str, str]]) -> None:
        for name, value in rows:
            self.show_notice(f"{name} = {value}")

    def show_tools(self, tools: Sequence[dict]) -> None:
        for tool in tools:
            flag = " (sensitive)" if tool.get("sensitive") else ""
            self.show_notice(f"{tool['name']} [{tool.get('source', 'builtin')}]{flag}")

    def show_hints(self) -> None:
        """Remind the user of the available commands."""

    def thinking(self) -> AbstractContextManager:
        """Context shown while waiting on the model."""
        return nullcontext()

"""
Console Channel: the interactive terminal surface, rendered with rich.

Blocking reads (``input()`` and rich prompts) run in a daemon thread so the
event loop stays responsive and a shutdown signal can interrupt a pending
read.
"""

from __future__ import annotations

import asyncio
import re
import threading
from contextlib import AbstractContextManager
from typing import Any, Callable, Optional, Sequence

import structlog
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape as markup_escape
from rich.panel import Panel
from rich.prompt import Confirm, IntPrompt
from rich.table import Table

from aide.channels.base import UserChannel
from aide.types import Message, Role

logger = structlog.get_logger(__name__)

_ANSI_ESCAPE_RE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*[@-~]|[@-_])")

_ROLE_STYLES = {
    Role.SYSTEM: "magenta",
    Role.USER: "bold green",
    Role.ASSISTANT: "cyan",
    Role.TOOL: "yellow",
}

HINTS = "Commands: /r refresh  /s settings  /tools  /grant <tool> <text>  /revoke <tool>  /reset  /q quit"


class ConsoleChannel(UserChannel):
    """Terminal implementation of UserChannel."""

    def __init__(
        self,
        console: Optional[Console] = None,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self._console = console or Console()
        self._shutdown_event = shutdown_event

    @property
    def console(self) -> Console:
        return self._console

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def prompt_text(self, label: str) -> Optional[str]:
        self._console.print(f"[bold]{markup_escape(label)}[/bold]")
        line = await self._read_interruptible(lambda: self._read_line_blocking("> "))
        if line is None:
            return None
        return _ANSI_ESCAPE_RE.sub("", line).replace("\r", "")

    async def prompt_confirm(self, label: str) -> bool:
        answer = await self._read_interruptible(
            lambda: Confirm.ask(markup_escape(label), console=self._console, default=False)
        )
        return bool(answer)

    async def prompt_select_one(self, title: str, options: Sequence[str]) -> Optional[int]:
        if not options:
            return None
        table = Table(title=title, show_header=False, box=None)
        table.add_column(justify="right", style="bold")
        table.add_column()
        for index, option in enumerate(options, start=1):
            table.add_row(str(index), markup_escape(option))
        self._console.print(table)

        choice = await self._read_interruptible(
            lambda: IntPrompt.ask(
                "Choice",
                console=self._console,
                choices=[str(i) for i in range(1, len(options) + 1)],
                default=len(options),
            )
        )
        if choice is None:
            return None
        index = int(choice) - 1
        # The last option is always "cancel"
        if index == len(options) - 1 and options[-1] == "cancel":
            return None
        return index

    async def read_user_input(self) -> Optional[str]:
        """Read the next user line for the main loop."""
        line = await self._read_interruptible(lambda: self._read_line_blocking("You: "))
        if line is None:
            return None
        return _ANSI_ESCAPE_RE.sub("", line).replace("\r", "")

    @staticmethod
    def _read_line_blocking(prompt: str = "") -> Optional[str]:
        try:
            return input(prompt)
        except EOFError:
            return None

    async def _read_interruptible(self, fn: Callable[[], Any]) -> Any:
        """Run a blocking read, giving up early when shutdown is requested."""
        read_task = asyncio.create_task(self._run_blocking_call(fn), name="aide-read-input")
        if self._shutdown_event is None:
            try:
                return await read_task
            except KeyboardInterrupt:
                return None

        shutdown_wait = asyncio.create_task(
            self._shutdown_event.wait(),
            name="aide-read-input-shutdown",
        )
        try:
            done, _ = await asyncio.wait(
                {read_task, shutdown_wait},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if shutdown_wait in done:
                return None
            return read_task.result()
        except KeyboardInterrupt:
            return None
        finally:
            if not read_task.done():
                read_task.cancel()
            shutdown_wait.cancel()
            await asyncio.gather(read_task, shutdown_wait, return_exceptions=True)

    @staticmethod
    async def _run_blocking_call(fn: Callable[[], Any]) -> Any:
        """Run a blocking callable in a dedicated daemon thread."""
        loop = asyncio.get_running_loop()
        done = asyncio.Event()
        box: dict[str, Any] = {}

        def _invoke() -> None:
            try:
                box["result"] = fn()
            except BaseException as exc:
                box["error"] = exc
            finally:
                try:
                    loop.call_soon_threadsafe(done.set)
                except RuntimeError:
                    pass

        thread = threading.Thread(target=_invoke, daemon=True)
        thread.start()
        await done.wait()

        if "error" in box:
            raise box["error"]
        return box.get("result")

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def show_message(self, message: Message) -> None:
        style = _ROLE_STYLES.get(message.role, "white")
        if message.role is Role.ASSISTANT and isinstance(message.content, str):
            self._console.print(f"[{style}]assistant[/{style}]")
            self._console.print(Markdown(message.content))
            return
        if message.role is Role.SYSTEM:
            self._console.print(
                Panel(markup_escape(message.render_text()), title="system", border_style=style)
            )
            return
        self._console.print(
            f"[{style}]{message.role.value}[/{style}] {markup_escape(message.render_text())}"
        )

    def show_notice(self, text: str, style: str = "dim") -> None:
        self._console.print(f"[{style}]{markup_escape(text)}[/{style}]")

    def show_history(self, messages: Sequence[Message]) -> None:
        self._console.clear()
        for message in messages:
            self.show_message(message)
        self.show_hints()

    def show_hints(self) -> None:
        self._console.print(f"[dim]{HINTS}[/dim]")

    def show_settings(self, rows: Sequence[tuple[str, str]]) -> None:
        table = Table(title="Settings")
        table.add_column("Setting", style="bold")
        table.add_column("Value")
        for name, value in rows:
            table.add_row(markup_escape(name), markup_escape(value))
        self._console.print(table)

    def show_tools(self, tools: Sequence[dict]) -> None:
        table = Table(title="Tools")
        table.add_column("Name", style="bold")
        table.add_column("Source")
        table.add_column("Sensitive")
        for tool in tools:
            table.add_row(
                tool["name"],
                tool.get("source", "builtin"),
                "yes" if tool.get("sensitive") else "",
            )
        self._console.print(table)

    def thinking(self) -> AbstractContextManager:
        return self._console.status("[cyan]Thinking...[/cyan]")

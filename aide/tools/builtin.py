"""
Built-in Tools: the capabilities aide ships with.

Each tool is a ToolDefinition whose description is what the model reads when
deciding to call it. Tools that touch the host (processes, the browser, the
screen, files, the tool set itself) carry the SAFETY-CRITICAL marker in their
description and ``sensitive=True``, so the safety gate asks before they run.

``add_tool`` and ``remove_tool`` are the model's entry points into the
dynamic tool compiler.
"""

from __future__ import annotations

import asyncio
import random
import shlex
import subprocess
import sys
import tempfile
import webbrowser
from typing import TYPE_CHECKING, Any, Optional

import mss
import mss.tools
import structlog

from aide.config import ToolsConfig
from aide.history import SENSITIVE_MARKER
from aide.tools.compiler import DynamicToolCompiler
from aide.tools.registry import ToolDefinition, ToolRegistry

if TYPE_CHECKING:
    from aide.api.claude import CompletionEngine

logger = structlog.get_logger(__name__)

RANDOM_INTEGER_LIMIT = 100


def get_random_integer(max: int) -> int:
    """A random integer in [0, max). ``max`` must lie within [0, 100]."""
    if max < 0 or max > RANDOM_INTEGER_LIMIT:
        raise ValueError(f"max must be between 0 and {RANDOM_INTEGER_LIMIT}, got {max}")
    if max == 0:
        return 0
    return random.randrange(max)


async def execute_command(command: str, arguments: str = "") -> str:
    """Run a program without a shell and return its standard output."""
    argv = [command] + shlex.split(arguments or "")
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        process.kill()
        raise
    output = stdout.decode(errors="replace")
    if process.returncode:
        output += f"\n[exit code {process.returncode}] {stderr.decode(errors='replace').strip()}"
    return output


def open_browser(url: str, browser_command: Optional[str] = None) -> str:
    if browser_command:
        subprocess.Popen([*shlex.split(browser_command), url])
    elif not webbrowser.open(url):
        return f"No browser could be opened for {url}"
    return f"Opened {url}"


def parse_intervals(intervals: list[str]) -> list[tuple[int, int]]:
    """Parse "frequency,milliseconds" pairs. Malformed entries are skipped."""
    tones: list[tuple[int, int]] = []
    for interval in intervals:
        parts = [p.strip() for p in str(interval).split(",") if p.strip()]
        if len(parts) != 2:
            continue
        try:
            tones.append((int(parts[0]), int(parts[1])))
        except ValueError:
            continue
    return tones


async def beep(intervals: list[str]) -> str:
    # A terminal can only ring its bell; frequency 0 is a pause.
    tones = parse_intervals(intervals)
    for frequency, duration_ms in tones:
        if frequency > 0:
            sys.stdout.write("\a")
            sys.stdout.flush()
        await asyncio.sleep(max(0, duration_ms) / 1000)
    return f"Played {len(tones)} interval(s)"


def take_screenshot() -> str:
    """Capture the primary monitor to a temporary PNG and return its path."""
    with tempfile.NamedTemporaryFile(prefix="aide_screen_", suffix=".png", delete=False) as handle:
        path = handle.name
    with mss.mss() as sct:
        monitor = sct.monitors[1]
        image = sct.grab(monitor)
        mss.tools.to_png(image.rgb, image.size, output=path)
    logger.info("builtin.screenshot_taken", path=path)
    return path


def register_builtin_tools(
    registry: ToolRegistry,
    compiler: DynamicToolCompiler,
    engine: Optional["CompletionEngine"] = None,
    config: Optional[ToolsConfig] = None,
) -> None:
    """Register all built-in tools with the registry."""
    config = config or ToolsConfig()

    registry.register(ToolDefinition(
        name="get_random_integer",
        description=(
            "Generates a random integer between 0 (inclusive) and max (exclusive). "
            "Returns the number."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "max": {
                    "type": "integer",
                    "description": (
                        "The exclusive upper bound of the random number. "
                        "Must be greater than or equal to 0 and at most 100."
                    ),
                },
            },
            "required": ["max"],
        },
        handler=get_random_integer,
        category="utility",
    ))

    registry.register(ToolDefinition(
        name="execute_command",
        description=(
            "Executes a program locally on the user's machine and returns its standard "
            f"output once it has finished. No shell is involved. {SENSITIVE_MARKER}"
        ),
        input_schema={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The program to run."},
                "arguments": {
                    "type": "string",
                    "description": "The arguments to pass, split like a POSIX shell would.",
                },
            },
            "required": ["command"],
        },
        handler=execute_command,
        sensitive=True,
        category="system",
    ))

    def _open_browser(url: str) -> str:
        return open_browser(url, config.browser_command)

    registry.register(ToolDefinition(
        name="open_browser",
        description=f"Opens the user's browser at the url provided. {SENSITIVE_MARKER}",
        input_schema={
            "type": "object",
            "properties": {"url": {"type": "string", "description": "The url to open."}},
            "required": ["url"],
        },
        handler=_open_browser,
        sensitive=True,
        category="system",
    ))

    registry.register(ToolDefinition(
        name="beep",
        description="Lets the console beep for the provided intervals.",
        input_schema={
            "type": "object",
            "properties": {
                "intervals": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": (
                        "Each element is two comma-separated integers: the frequency in "
                        "Hertz and the duration in milliseconds. Use frequency 0 for a pause."
                    ),
                },
            },
            "required": ["intervals"],
        },
        handler=beep,
        category="utility",
    ))

    async def _add_tool(source_code: str, imports: str = "") -> str:
        return await compiler.add_async(source_code, imports)

    registry.register(ToolDefinition(
        name="add_tool",
        description=(
            "Compiles a Python function from source and makes it available as a tool "
            "under the function's name. Returns 'SUCCESS' when the tool was added, or "
            "'ERROR' followed by the problems found. The tool persists across restarts. "
            f"{SENSITIVE_MARKER}"
        ),
        input_schema={
            "type": "object",
            "properties": {
                "source_code": {
                    "type": "string",
                    "description": (
                        "Source of exactly one public module-level Python function (helpers "
                        "must start with an underscore). It may be 'def' or 'async def'. The "
                        "docstring must explain in detail what the function does and what it "
                        "returns; it becomes the tool description. Every parameter must be "
                        "annotated as Annotated[type, \"description\"] using JSON-compatible "
                        "types (str, int, float, bool, list, dict). The docstring MUST contain "
                        f"'{SENSITIVE_MARKER}' if the function is potentially dangerous, such "
                        "as accessing system resources, running code or executing commands."
                    ),
                },
                "imports": {
                    "type": "string",
                    "description": (
                        "All import statements the function needs, one per line. "
                        "'from typing import Annotated' is always provided."
                    ),
                },
            },
            "required": ["source_code"],
        },
        handler=_add_tool,
        sensitive=True,
        category="tools",
    ))

    async def _remove_tool(function_name: str) -> str:
        return compiler.remove(function_name)

    registry.register(ToolDefinition(
        name="remove_tool",
        description=(
            "Deletes a tool previously created with add_tool, both from the current "
            f"session and from storage. Built-in tools cannot be removed. {SENSITIVE_MARKER}"
        ),
        input_schema={
            "type": "object",
            "properties": {
                "function_name": {
                    "type": "string",
                    "description": "The name of the tool to delete.",
                },
            },
            "required": ["function_name"],
        },
        handler=_remove_tool,
        sensitive=True,
        category="tools",
    ))

    async def _list_tools() -> list[dict[str, Any]]:
        return registry.list_tools()

    registry.register(ToolDefinition(
        name="list_tools",
        description="Lists every available tool with its source and whether it is sensitive.",
        input_schema={"type": "object", "properties": {}},
        handler=_list_tools,
        category="tools",
    ))

    registry.register(ToolDefinition(
        name="take_screenshot",
        description=(
            "Takes a screenshot of the primary display, stores it in a temporary PNG file "
            f"and returns the path to that file. {SENSITIVE_MARKER}"
        ),
        input_schema={"type": "object", "properties": {}},
        handler=take_screenshot,
        sensitive=True,
        category="system",
    ))

    if engine is not None:
        async def _analyze_local_image(local_path: str) -> str:
            return await engine.describe_image(local_path)

        registry.register(ToolDefinition(
            name="analyze_local_image",
            description=(
                "Analyzes an image file at a local path with the language model and returns "
                f"an objective description of its contents. {SENSITIVE_MARKER}"
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "local_path": {
                        "type": "string",
                        "description": "Path of the local png or jpeg image to analyze.",
                    },
                },
                "required": ["local_path"],
            },
            handler=_analyze_local_image,
            sensitive=True,
            category="vision",
        ))

    logger.info("builtin_tools.registered", count=registry.count)

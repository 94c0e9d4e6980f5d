"""
Tool Registry: aide's catalog of invocable capabilities.

Every tool the model can call is registered here with its JSON Schema
definition, description, and execution handler. The registry serves two
purposes:

1. DISCOVERY: Before each model call the session takes a snapshot of the
   registry; that snapshot is what the model is told about.

2. DISPATCH: When the model returns a tool call, the snapshot maps the tool
   name to the handler that runs it.

Built-in tools and tools compiled at runtime live side by side here; from the
model's point of view they are identical.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from aide.errors import DuplicateToolName, ToolNotFound

logger = structlog.get_logger(__name__)

SOURCE_BUILTIN = "builtin"
SOURCE_GENERATED = "generated"


@dataclass
class ToolDefinition:
    """
    One invocable capability.

    ``input_schema`` is sent to the model verbatim. A ``sensitive`` tool is
    held by the safety gate until the user approves the call; ``source`` tells
    built-in tools apart from ones compiled at runtime.
    """
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: Optional[Callable[..., Any]] = None
    sensitive: bool = False
    category: str = "general"
    source: str = SOURCE_BUILTIN
    timeout: Optional[float] = None       # seconds; None falls back to the executor default

    def to_api_format(self) -> dict[str, Any]:
        """Entry for the ``tools`` array of a Messages API request."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    @property
    def is_generated(self) -> bool:
        return self.source == SOURCE_GENERATED


class ToolRegistry:
    """
    Central registry for all tools available to the model.

    Names are unique at all times: ``register`` refuses a collision and
    leaves the registry untouched.
    """

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}
        logger.info("tool_registry.initialized")

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool. Raises DuplicateToolName on a name collision."""
        existing = self._tools.get(tool.name)
        if existing is not None:
            logger.warning(
                "tool_registry.name_collision",
                name=tool.name,
                existing_source=existing.source,
                new_source=tool.source,
            )
            raise DuplicateToolName(tool.name)

        self._tools[tool.name] = tool
        logger.info(
            "tool_registry.registered",
            name=tool.name,
            sensitive=tool.sensitive,
            source=tool.source,
        )

    def unregister(self, name: str) -> bool:
        """Drop *name*. Returns False when it was not registered."""
        if name in self._tools:
            del self._tools[name]
            logger.info("tool_registry.unregistered", name=name)
            return True
        return False

    def get(self, name: str) -> Optional[ToolDefinition]:
        """Look up a tool by name."""
        return self._tools.get(name)

    def resolve(self, name: str) -> ToolDefinition:
        """Look up a tool by name, raising ToolNotFound when it is absent."""
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFound(name)
        return tool

    def list(self) -> tuple[ToolDefinition, ...]:
        """
        Snapshot of all registered tools.

        The tuple is detached from the registry: registrations made after
        this call do not show up in it.
        """
        return tuple(self._tools.values())

    def list_tools(self) -> list[dict[str, Any]]:
        """Name, category, source and sensitivity of every tool, for display."""
        return [
            {
                "name": tool.name,
                "category": tool.category,
                "source": tool.source,
                "sensitive": tool.sensitive,
            }
            for tool in self._tools.values()
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @property
    def count(self) -> int:
        return len(self._tools)

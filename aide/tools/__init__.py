"""Tool system: the registry, the executor and runtime-compiled tools."""
from aide.tools.executor import ToolExecutor
from aide.tools.registry import ToolDefinition, ToolRegistry

__all__ = ["ToolRegistry", "ToolDefinition", "ToolExecutor"]

"""Tools the agent can call while executing a task."""

from agent_tasks.tools.base import FunctionTool, ToolDefinition, ToolResult
from agent_tasks.tools.registry import (
    DuplicateToolError,
    ToolNotFoundError,
    ToolRegistry,
    ToolSpec,
    build_default_registry,
)

__all__ = [
    "DuplicateToolError",
    "FunctionTool",
    "ToolDefinition",
    "ToolNotFoundError",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "build_default_registry",
]

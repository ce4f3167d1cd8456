"""Tool lifecycle, registry and the built-in orchestration tools."""

from .base import Tool, ToolContext, ToolState
from .errors import ErrorCode, ToolError
from .function_tool import FunctionTool
from .manager import ToolManager
from .registry import (
    COMPACT_THREAD,
    SPAWN_FOREACH,
    SPAWN_SUBAGENT,
    WAIT_FOR_SUBAGENTS,
    YIELD_TO_PARENT,
    DuplicateToolError,
    ToolNotFoundError,
    ToolRegistry,
    ToolSpec,
)
from .wiring import default_registry, register_builtin_tools

__all__ = [
    "COMPACT_THREAD",
    "SPAWN_FOREACH",
    "SPAWN_SUBAGENT",
    "WAIT_FOR_SUBAGENTS",
    "YIELD_TO_PARENT",
    "DuplicateToolError",
    "ErrorCode",
    "FunctionTool",
    "Tool",
    "ToolContext",
    "ToolError",
    "ToolManager",
    "ToolNotFoundError",
    "ToolRegistry",
    "ToolSpec",
    "ToolState",
    "default_registry",
    "register_builtin_tools",
]

"""Registration of the built-in orchestration tools."""

from __future__ import annotations

from .compact_thread import COMPACT_THREAD_SPEC, CompactThreadTool
from .registry import ToolRegistry
from .spawn_foreach import SPAWN_FOREACH_SPEC, SpawnForeachTool
from .spawn_subagent import SPAWN_SUBAGENT_SPEC, SpawnSubagentTool
from .wait_for_subagents import WAIT_FOR_SUBAGENTS_SPEC, WaitForSubagentsTool
from .yield_to_parent import YIELD_TO_PARENT_SPEC, YieldToParentTool

__all__ = ["register_builtin_tools", "default_registry"]


def register_builtin_tools(registry: ToolRegistry, *, allow_override: bool = False) -> ToolRegistry:
    registry.register(SPAWN_SUBAGENT_SPEC, SpawnSubagentTool, allow_override=allow_override)
    registry.register(SPAWN_FOREACH_SPEC, SpawnForeachTool, allow_override=allow_override)
    registry.register(WAIT_FOR_SUBAGENTS_SPEC, WaitForSubagentsTool, allow_override=allow_override)
    registry.register(YIELD_TO_PARENT_SPEC, YieldToParentTool, allow_override=allow_override)
    registry.register(COMPACT_THREAD_SPEC, CompactThreadTool, allow_override=allow_override)
    return registry


def default_registry() -> ToolRegistry:
    """Return a fresh registry holding only the built-in tools."""

    return register_builtin_tools(ToolRegistry())

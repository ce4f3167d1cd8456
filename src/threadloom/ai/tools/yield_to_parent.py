"""Subagent-only tool that hands the final answer back to the parent thread."""

from __future__ import annotations

from .base import Tool
from .registry import YIELD_TO_PARENT, ToolSpec

__all__ = ["YIELD_TO_PARENT_SPEC", "YieldToParentTool"]

YIELD_TO_PARENT_SPEC = ToolSpec(
    name=YIELD_TO_PARENT,
    description=(
        "Finish your task and report the result to the thread that spawned you. "
        "Call this exactly once, as your last action. The parent only sees this result."
    ),
    parameters={
        "type": "object",
        "properties": {
            "result": {
                "type": "string",
                "description": "Everything the parent needs to know about the outcome of your task.",
            },
        },
        "required": ["result"],
        "additionalProperties": False,
    },
)


class YieldToParentTool(Tool):
    """Done as soon as it exists; the owning thread moves to ``yielded``."""

    tool_name = YIELD_TO_PARENT

    def start(self) -> None:
        self._finish(str(self.request.input.get("result", "")))

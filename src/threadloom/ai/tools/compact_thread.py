"""Tool the model calls to replace the thread with a compacted successor."""

from __future__ import annotations

from .base import Tool
from .registry import COMPACT_THREAD, ToolSpec

__all__ = ["COMPACT_THREAD_SPEC", "CompactThreadTool"]

COMPACT_THREAD_SPEC = ToolSpec(
    name=COMPACT_THREAD,
    description=(
        "Start a fresh thread that continues this one. Only the summary, the listed "
        "context files and the continuation carry over; the rest of the history is dropped."
    ),
    parameters={
        "type": "object",
        "properties": {
            "summary": {
                "type": "string",
                "description": "Decisions, open tasks and facts from this conversation that still matter.",
            },
            "context_files": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Files the new thread should start with in context.",
            },
            "continuation": {
                "type": "string",
                "description": "What the new thread should do first.",
            },
        },
        "required": ["summary"],
        "additionalProperties": False,
    },
)


class CompactThreadTool(Tool):
    tool_name = COMPACT_THREAD

    def start(self) -> None:
        files = self.request.input.get("context_files") or []
        self._finish(f"Compacting thread with {len(files)} context file(s).")

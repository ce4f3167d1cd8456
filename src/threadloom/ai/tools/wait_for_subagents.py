"""Tool that blocks the parent's turn until watched subagents settle."""

from __future__ import annotations

import logging

from ...core.actions import Action, CheckThreads
from ...core.content import ToolRequest
from ...core.types import ThreadId, ThreadResult
from .base import Tool, ToolContext
from .registry import WAIT_FOR_SUBAGENTS, ToolSpec

__all__ = ["WAIT_FOR_SUBAGENTS_SPEC", "WaitForSubagentsTool", "format_thread_results"]

LOGGER = logging.getLogger(__name__)

WAIT_FOR_SUBAGENTS_SPEC = ToolSpec(
    name=WAIT_FOR_SUBAGENTS,
    description=(
        "Wait until every listed sub-agent has yielded a result or failed, then "
        "return all of their results."
    ),
    parameters={
        "type": "object",
        "properties": {
            "thread_ids": {
                "type": "array",
                "items": {"type": "integer"},
                "minItems": 1,
                "description": "Thread ids returned by spawn_subagent.",
            },
        },
        "required": ["thread_ids"],
        "additionalProperties": False,
    },
)


class WaitForSubagentsTool(Tool):
    """Level-triggered wait: every :class:`CheckThreads` re-reads all watched ids."""

    tool_name = WAIT_FOR_SUBAGENTS
    abort_message = "Wait for subagents was aborted"
    watches_threads = True

    def __init__(self, request: ToolRequest, context: ToolContext) -> None:
        super().__init__(request, context)
        self.thread_ids: list[ThreadId] = [ThreadId(int(value)) for value in request.input.get("thread_ids", ())]
        self._pending: list[ThreadId] = list(self.thread_ids)

    def start(self) -> None:
        self._check()

    def update(self, action: Action) -> None:
        if isinstance(action, CheckThreads):
            if not self.is_done():
                self._check()
            return
        super().update(action)

    def provisional_result(self) -> str:
        return f"Waiting for {len(self._pending)} subagent(s) to complete..."

    def _check(self) -> None:
        results = {thread_id: self.context.threads.get_thread_result(thread_id) for thread_id in self.thread_ids}
        self._pending = [thread_id for thread_id, result in results.items() if not result.done]
        if self._pending:
            LOGGER.debug("Still waiting on threads %s", self._pending)
            return
        self._finish(f"All subagents completed:\n{format_thread_results(results)}")


def format_thread_results(results: dict[ThreadId, ThreadResult]) -> str:
    lines = []
    for thread_id, result in results.items():
        if result.ok:
            lines.append(f"- Thread {thread_id}: {result.response}")
        else:
            lines.append(f"- Thread {thread_id}: ❌ Error: {result.error}")
    return "\n".join(lines)

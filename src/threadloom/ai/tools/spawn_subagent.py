"""Tool that starts a child thread for a bounded sub-task."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from ...core.actions import AbortRequest, Action, CheckThreads, SpawnSubagentThread, SubagentCreated, ThreadAction
from ...core.content import ToolRequest
from ...core.types import ThreadId
from .base import Tool, ToolContext
from .registry import SPAWN_SUBAGENT, ToolSpec

__all__ = ["SPAWN_SUBAGENT_SPEC", "SpawnSubagentTool", "SUBAGENT_OPTION_PROPERTIES"]

LOGGER = logging.getLogger(__name__)

# Shared with spawn_foreach.
SUBAGENT_OPTION_PROPERTIES: Mapping[str, Any] = {
    "allowed_tools": {
        "type": "array",
        "items": {"type": "string"},
        "description": "Tools the sub-agent may use. Defaults to every tool except the sub-agent tools.",
    },
    "context_files": {
        "type": "array",
        "items": {"type": "string"},
        "description": "Files to put in the sub-agent's context before it starts.",
    },
    "system_prompt": {
        "type": "string",
        "description": "Extra instructions appended to the sub-agent's system prompt.",
    },
}

SPAWN_SUBAGENT_SPEC = ToolSpec(
    name=SPAWN_SUBAGENT,
    description=(
        "Start a sub-agent that works on a task independently and reports one result. "
        "Non-blocking calls return the sub-agent's thread id right away; collect the result "
        "with wait_for_subagents. Blocking calls return the result itself."
    ),
    parameters={
        "type": "object",
        "properties": {
            "prompt": {"type": "string", "minLength": 1, "description": "The task for the sub-agent."},
            **SUBAGENT_OPTION_PROPERTIES,
            "blocking": {
                "type": "boolean",
                "description": "Wait for the sub-agent to finish and return its result.",
            },
        },
        "required": ["prompt"],
        "additionalProperties": False,
    },
)


class SpawnSubagentTool(Tool):
    """Ask the chat for a child thread and report ``success`` or ``failure`` once."""

    tool_name = SPAWN_SUBAGENT
    watches_threads = True

    def __init__(self, request: ToolRequest, context: ToolContext) -> None:
        super().__init__(request, context)
        payload = request.input
        self.prompt = str(payload["prompt"])
        self.blocking = bool(payload.get("blocking", False))
        self.allowed_tools = payload.get("allowed_tools")
        self.context_files = tuple(payload.get("context_files") or ())
        self.system_prompt = payload.get("system_prompt")
        self.child_thread_id: ThreadId | None = None

    def start(self) -> None:
        self.context.dispatch(
            SpawnSubagentThread(
                parent_thread_id=self.context.thread_id,
                request_id=self.request_id,
                prompt=self.prompt,
                allowed_tools=self.allowed_tools,
                context_files=self.context_files,
                system_prompt=self.system_prompt,
            )
        )

    def update(self, action: Action) -> None:
        if isinstance(action, SubagentCreated):
            self._on_created(action)
        elif isinstance(action, CheckThreads):
            if self.blocking and self.child_thread_id is not None and not self.is_done():
                self._check_child()
        else:
            super().update(action)

    def on_abort(self) -> None:
        if self.blocking and self.child_thread_id is not None:
            self.context.dispatch(ThreadAction(self.child_thread_id, AbortRequest()))

    def provisional_result(self) -> str:
        if self.child_thread_id is None:
            return "Creating sub-agent..."
        return f"Waiting for sub-agent ({self.child_thread_id}) to complete..."

    def _on_created(self, action: SubagentCreated) -> None:
        if self.is_done():
            LOGGER.debug("Spawn %s already finished; ignoring creation result", self.request_id)
            if action.ok:
                # Created after an abort: nobody will collect its result.
                self.context.dispatch(ThreadAction(action.thread_id, AbortRequest()))
            return
        if not action.ok:
            self._finish(f"Failed to create sub-agent thread: {action.error}", is_error=True)
            return
        self.child_thread_id = action.thread_id
        if not self.blocking:
            self._finish(f"Sub-agent started with threadId: {action.thread_id}")
            return
        self._check_child()

    def _check_child(self) -> None:
        assert self.child_thread_id is not None
        result = self.context.threads.get_thread_result(self.child_thread_id)
        if not result.done:
            return
        if result.ok:
            self._finish(f"Sub-agent ({self.child_thread_id}) completed:\n{result.response}")
        else:
            self._finish(f"Sub-agent ({self.child_thread_id}) failed: {result.error}", is_error=True)

"""Tool that runs the same sub-task over a list of elements with bounded concurrency."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from ...core.actions import AbortRequest, Action, CheckThreads, SpawnSubagentThread, SubagentCreated, ThreadAction
from ...core.content import ToolRequest
from ...core.types import ThreadId, ThreadResult
from .base import Tool, ToolContext
from .registry import SPAWN_FOREACH, ToolSpec
from .spawn_subagent import SUBAGENT_OPTION_PROPERTIES

__all__ = ["SPAWN_FOREACH_SPEC", "ElementState", "ForeachElement", "SpawnForeachTool"]

LOGGER = logging.getLogger(__name__)

SPAWN_FOREACH_SPEC = ToolSpec(
    name=SPAWN_FOREACH,
    description=(
        "Run one sub-agent per element with the same prompt and return a summary of all "
        "results. Only a limited number of sub-agents run at once; the rest wait their turn."
    ),
    parameters={
        "type": "object",
        "properties": {
            "prompt": {"type": "string", "minLength": 1, "description": "Task applied to every element."},
            "elements": {
                "type": "array",
                "items": {"type": "string"},
                "minItems": 1,
                "description": "One sub-agent is spawned per element.",
            },
            **SUBAGENT_OPTION_PROPERTIES,
        },
        "required": ["prompt", "elements"],
        "additionalProperties": False,
    },
)


class ElementState(str, Enum):
    PENDING = "pending"
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass(slots=True)
class ForeachElement:
    index: int
    value: str
    state: ElementState = ElementState.PENDING
    thread_id: ThreadId | None = None
    result: ThreadResult | None = None


class SpawnForeachTool(Tool):
    """Admission control: at most ``max_concurrent_subagents`` elements are
    spawning or running; the others wait in FIFO order and start as slots free up.
    """

    tool_name = SPAWN_FOREACH
    watches_threads = True

    def __init__(self, request: ToolRequest, context: ToolContext) -> None:
        super().__init__(request, context)
        payload = request.input
        self.prompt = str(payload["prompt"])
        self.elements = [ForeachElement(index=index, value=str(value)) for index, value in enumerate(payload["elements"])]
        self.allowed_tools = payload.get("allowed_tools")
        self.context_files = tuple(payload.get("context_files") or ())
        self.system_prompt = payload.get("system_prompt")
        self.max_concurrent = max(1, context.options.max_concurrent_subagents)

    def start(self) -> None:
        self._advance()

    def update(self, action: Action) -> None:
        if self.is_done():
            if isinstance(action, SubagentCreated) and action.ok:
                # Created after an abort: nobody will collect its result.
                self.context.dispatch(ThreadAction(action.thread_id, AbortRequest()))
            LOGGER.debug("Foreach %s already finished; ignoring %s", self.request_id, type(action).__name__)
            return
        if isinstance(action, SubagentCreated):
            self._on_created(action)
            self._advance()
        elif isinstance(action, CheckThreads):
            self._collect_results()
            self._advance()
        else:
            super().update(action)

    def on_abort(self) -> None:
        for element in self.elements:
            if element.state is ElementState.RUNNING and element.thread_id is not None:
                self.context.dispatch(ThreadAction(element.thread_id, AbortRequest()))

    def provisional_result(self) -> str:
        counts = self._counts()
        return (
            f"Running sub-agents for {len(self.elements)} element(s): "
            f"{counts[ElementState.COMPLETED]} completed, "
            f"{counts[ElementState.SPAWNING] + counts[ElementState.RUNNING]} active, "
            f"{counts[ElementState.PENDING]} queued."
        )

    def active_count(self) -> int:
        counts = self._counts()
        return counts[ElementState.SPAWNING] + counts[ElementState.RUNNING]

    def element_prompt(self, element: ForeachElement) -> str:
        return (
            f"{self.prompt}\n\n"
            f"You are processing element {element.index + 1} of {len(self.elements)}:\n"
            f"<element>\n{element.value}\n</element>"
        )

    def _advance(self) -> None:
        queued = [element for element in self.elements if element.state is ElementState.PENDING]
        free = self.max_concurrent - self.active_count()
        for element in queued[: max(0, free)]:
            element.state = ElementState.SPAWNING
            self.context.dispatch(
                SpawnSubagentThread(
                    parent_thread_id=self.context.thread_id,
                    request_id=self.request_id,
                    prompt=self.element_prompt(element),
                    allowed_tools=self.allowed_tools,
                    context_files=self.context_files,
                    system_prompt=self.system_prompt,
                    tag=element.index,
                )
            )
        if all(element.state is ElementState.COMPLETED for element in self.elements):
            self._finish(self._summary())

    def _on_created(self, action: SubagentCreated) -> None:
        if not isinstance(action.tag, int) or not 0 <= action.tag < len(self.elements):
            LOGGER.warning("Foreach %s got a creation result for unknown element %r", self.request_id, action.tag)
            return
        element = self.elements[action.tag]
        if element.state is not ElementState.SPAWNING:
            LOGGER.debug("Element %s is %s; ignoring creation result", element.index, element.state.value)
            return
        if not action.ok:
            element.state = ElementState.COMPLETED
            element.result = ThreadResult.failure(f"Failed to create sub-agent thread: {action.error}")
            return
        element.thread_id = action.thread_id
        element.state = ElementState.RUNNING
        self._collect_results()

    def _collect_results(self) -> None:
        for element in self.elements:
            if element.state is not ElementState.RUNNING or element.thread_id is None:
                continue
            result = self.context.threads.get_thread_result(element.thread_id)
            if result.done:
                element.state = ElementState.COMPLETED
                element.result = result

    def _counts(self) -> dict[ElementState, int]:
        counts = {state: 0 for state in ElementState}
        for element in self.elements:
            counts[element.state] += 1
        return counts

    def _summary(self) -> str:
        succeeded = [element for element in self.elements if element.result is not None and element.result.ok]
        lines = [
            "Foreach sub-agents completed:",
            f"Total: {len(self.elements)}",
            f"Successful: {len(succeeded)}",
            f"Failed: {len(self.elements) - len(succeeded)}",
            "",
        ]
        for element in self.elements:
            label = f"- Element {element.index + 1} ({element.value})"
            if element.thread_id is not None:
                label += f" [thread {element.thread_id}]"
            result = element.result
            if result is not None and result.ok:
                lines.append(f"{label}: {result.response}")
            else:
                error = result.error if result is not None else "no result"
                lines.append(f"{label}: ❌ Error: {error}")
        return "\n".join(lines)

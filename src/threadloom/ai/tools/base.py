"""Lifecycle base class for tool invocations."""

from __future__ import annotations

import logging
from abc import ABC
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, ClassVar, MutableSet, Protocol

from ...core.actions import Action, ToolAction
from ...core.content import ToolRequest, ToolResultBlock
from ...core.types import ThreadId, ThreadResult
from ...events import EventBus, ToolStateChanged
from ...services import telemetry

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    import asyncio

    from ...services.settings import ChatOptions

__all__ = ["ToolState", "ToolContext", "ThreadResultSource", "Tool"]

LOGGER = logging.getLogger(__name__)


class ToolState(str, Enum):
    PENDING_USER_ACTION = "pending_user_action"
    RUNNING = "running"
    DONE = "done"


class ThreadResultSource(Protocol):
    """What tools may ask the chat about other threads."""

    def get_thread_result(self, thread_id: ThreadId) -> ThreadResult:  # pragma: no cover - protocol stub
        ...


@dataclass(slots=True)
class ToolContext:
    """Everything a tool needs from the thread that created it."""

    thread_id: ThreadId
    dispatch: Callable[[Action], None]
    threads: ThreadResultSource
    options: "ChatOptions"
    bus: EventBus[Any] | None = None
    tasks: MutableSet["asyncio.Task[Any]"] = field(default_factory=set)


class Tool(ABC):
    """One tool invocation, created from a validated :class:`ToolRequest`.

    Subclasses do their work from :meth:`start` and finish through
    :meth:`_finish`. Once ``DONE`` the result is frozen: neither a late
    update nor :meth:`abort` can replace it.
    """

    tool_name: ClassVar[str] = ""
    abort_message: ClassVar[str] = "Request was aborted by the user."
    # Tools that track other threads receive ``CheckThreads`` when a child settles.
    watches_threads: ClassVar[bool] = False

    def __init__(self, request: ToolRequest, context: ToolContext) -> None:
        self.request = request
        self.context = context
        self.state = ToolState.RUNNING
        self._result: ToolResultBlock | None = None

    @property
    def request_id(self) -> str:
        return self.request.id

    @property
    def name(self) -> str:
        return self.request.tool_name

    def start(self) -> None:
        """Begin work. Called once, right after the tool is registered."""

    def update(self, action: Action) -> None:
        LOGGER.debug("Tool %s ignored %s", self.name, type(action).__name__)

    def is_done(self) -> bool:
        return self.state is ToolState.DONE

    def is_pending_user_action(self) -> bool:
        return self.state is ToolState.PENDING_USER_ACTION

    def abort(self) -> None:
        if self.is_done():
            return
        self.on_abort()
        self._finish(self.abort_message, is_error=True)
        telemetry.emit("tool.aborted", {"tool": self.name, "request_id": self.request_id})

    def on_abort(self) -> None:
        """Release whatever the tool is waiting on. Runs before the abort result is set."""

    def provisional_result(self) -> str:
        return f"Tool {self.name} is still running."

    def get_tool_result(self) -> ToolResultBlock:
        if self._result is not None:
            return self._result
        return ToolResultBlock(tool_use_id=self.request_id, content=self.provisional_result())

    def dispatch_self(self, action: Action) -> None:
        """Route *action* back to this tool through the chat dispatcher."""

        self.context.dispatch(ToolAction(self.context.thread_id, self.request_id, action))

    def _set_state(self, state: ToolState) -> None:
        if self.state is state:
            return
        self.state = state
        if self.context.bus is not None:
            self.context.bus.publish(
                ToolStateChanged(
                    thread_id=self.context.thread_id,
                    request_id=self.request_id,
                    tool_name=self.name,
                    state=state.value,
                )
            )

    def _finish(self, content: str, *, is_error: bool = False) -> bool:
        if self.is_done():
            LOGGER.debug("Tool %s (%s) already finished; dropping result", self.name, self.request_id)
            return False
        self._result = ToolResultBlock(tool_use_id=self.request_id, content=content, is_error=is_error)
        self._set_state(ToolState.DONE)
        telemetry.emit(
            "tool.finished",
            {"tool": self.name, "request_id": self.request_id, "is_error": is_error},
        )
        return True

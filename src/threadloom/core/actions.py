"""Messages routed through the chat dispatcher.

Every state change in the core happens while handling one of these. Chat
level actions are handled by :class:`~threadloom.chat.chat.Chat`; anything
wrapped in :class:`ThreadAction` is delivered to a thread and anything
wrapped in :class:`ToolAction` reaches a single tool through its thread.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from .types import InputMessage, StopReason, ThreadId, Usage

__all__ = [
    "Action",
    "ThreadAction",
    "ToolAction",
    "SelectThread",
    "SpawnSubagentThread",
    "CompactThread",
    "ThreadReady",
    "ThreadCreationFailed",
    "SendMessage",
    "AbortRequest",
    "RequestPrepared",
    "StreamEvent",
    "StreamCompleted",
    "StreamFailed",
    "ChildThreadSettled",
    "CheckThreads",
    "SubagentCreated",
    "ApprovalResponse",
    "ToolCompleted",
]


@dataclass(slots=True)
class Action:
    """Base class for dispatchable actions."""


# Chat level -----------------------------------------------------------------


@dataclass(slots=True)
class ThreadAction(Action):
    thread_id: ThreadId
    action: Action


@dataclass(slots=True)
class ToolAction(Action):
    thread_id: ThreadId
    request_id: str
    action: Action


@dataclass(slots=True)
class SelectThread(Action):
    thread_id: ThreadId


@dataclass(slots=True)
class SpawnSubagentThread(Action):
    """Ask the chat to create a child thread on behalf of a tool.

    ``tag`` lets a tool that spawns several children tell the replies apart.
    """

    parent_thread_id: ThreadId
    request_id: str
    prompt: str
    allowed_tools: Sequence[str] | None = None
    context_files: Sequence[str] = ()
    system_prompt: str | None = None
    tag: Any = None


@dataclass(slots=True)
class CompactThread(Action):
    thread_id: ThreadId
    summary: str
    context_files: Sequence[str] = ()
    continuation: str | None = None


@dataclass(slots=True)
class ThreadReady(Action):
    thread_id: ThreadId
    context_manager: Any


@dataclass(slots=True)
class ThreadCreationFailed(Action):
    thread_id: ThreadId
    error: str


# Thread level ---------------------------------------------------------------


@dataclass(slots=True)
class SendMessage(Action):
    messages: Sequence[InputMessage] = field(default_factory=tuple)


@dataclass(slots=True)
class AbortRequest(Action):
    pass


@dataclass(slots=True)
class RequestPrepared(Action):
    seq: int
    context_blocks: Sequence[Any] = ()


@dataclass(slots=True)
class StreamEvent(Action):
    seq: int
    event: Any


@dataclass(slots=True)
class StreamCompleted(Action):
    seq: int
    stop_reason: StopReason
    usage: Usage


@dataclass(slots=True)
class StreamFailed(Action):
    seq: int
    error: BaseException


@dataclass(slots=True)
class ChildThreadSettled(Action):
    child_thread_id: ThreadId


# Tool level -----------------------------------------------------------------


@dataclass(slots=True)
class CheckThreads(Action):
    pass


@dataclass(slots=True)
class SubagentCreated(Action):
    """Exactly one of ``thread_id`` and ``error`` is set."""

    thread_id: ThreadId | None = None
    error: str | None = None
    tag: Any = None

    @property
    def ok(self) -> bool:
        return self.thread_id is not None


@dataclass(slots=True)
class ApprovalResponse(Action):
    approved: bool


@dataclass(slots=True)
class ToolCompleted(Action):
    content: str
    is_error: bool = False

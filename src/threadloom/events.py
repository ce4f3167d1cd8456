"""Outbound notifications for whatever renders the conversation.

The core only ever publishes to the :class:`EventBus`; it never reads from
it. A renderer subscribes to the event types it cares about.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar
from weakref import WeakMethod

__all__ = [
    "Event",
    "EventBus",
    "ThreadCreated",
    "ThreadSelected",
    "ConversationStateChanged",
    "MessageUpdated",
    "ToolStateChanged",
    "AttentionRequired",
    "ResubmitRequested",
    "ThreadCompacted",
    "CompactionFailed",
]

LOGGER = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for renderer notifications."""


@dataclass(slots=True)
class ThreadCreated(Event):
    thread_id: int
    parent_thread_id: int | None = None


@dataclass(slots=True)
class ThreadSelected(Event):
    thread_id: int


@dataclass(slots=True)
class ConversationStateChanged(Event):
    """Emitted whenever a thread's conversation state object is replaced.

    Attributes:
        thread_id: The thread whose state changed.
        state: The new state, one of the ``ConversationState`` variants.
    """

    thread_id: int
    state: Any


@dataclass(slots=True)
class MessageUpdated(Event):
    """Emitted for each streamed change to the trailing message."""

    thread_id: int
    message_id: int


@dataclass(slots=True)
class ToolStateChanged(Event):
    thread_id: int
    request_id: str
    tool_name: str
    state: str


@dataclass(slots=True)
class AttentionRequired(Event):
    """The user should look at a thread: the turn ended or a tool wants approval."""

    thread_id: int
    reason: str


@dataclass(slots=True)
class ResubmitRequested(Event):
    """A failed turn was rolled back; ``text`` should go back to the input box."""

    thread_id: int
    text: str


@dataclass(slots=True)
class ThreadCompacted(Event):
    source_thread_id: int
    thread_id: int


@dataclass(slots=True)
class CompactionFailed(Event):
    """The successor of a compacting thread could not be created; the source keeps its history."""

    source_thread_id: int
    error: str


# Streaming updates are too chatty to log per publish.
_QUIET_EVENT_TYPES: set[type] = {MessageUpdated}


class EventBus(Generic[E]):
    """Typed publish/subscribe bus.

    Bound methods are held weakly so a renderer that goes away unsubscribes
    itself. Handler failures are logged and do not stop delivery to the
    remaining handlers.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: defaultdict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        self._handlers[event_type].append(_HandlerRef.create(handler))

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        handlers = self._handlers.get(event_type)
        if not handlers:
            return
        for index, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(index)
                return

    def publish(self, event: E) -> None:
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        if event_type not in _QUIET_EVENT_TYPES:
            LOGGER.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers or ()))
        if not handlers:
            return

        dead: list[_HandlerRef] = []
        for handler_ref in list(handlers):
            handler = handler_ref.resolve()
            if handler is None:
                dead.append(handler_ref)
                continue
            try:
                handler(event)
            except Exception:
                LOGGER.exception("Handler %r raised for event %s", handler, event_type.__name__)
        for handler_ref in dead:
            handlers.remove(handler_ref)

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, ()))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    __slots__ = ("_ref", "_is_weak")

    def __init__(self, target: Any, is_weak: bool) -> None:
        self._ref = target
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler[Any]) -> "_HandlerRef":
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler[Any] | None:
        return self._ref() if self._is_weak else self._ref

    def matches(self, handler: Handler[Any]) -> bool:
        return self.resolve() == handler

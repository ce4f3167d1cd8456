"""Identifiers, conversation states and usage accounting shared across the core."""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, NewType, Union

__all__ = [
    "ThreadId",
    "MessageId",
    "IdCounter",
    "Role",
    "StopReason",
    "Usage",
    "ABORTED_USAGE",
    "MessageInFlight",
    "Stopped",
    "ErrorState",
    "Yielded",
    "Compacting",
    "ConversationState",
    "InputMessage",
    "is_terminal_stop",
    "describe_state",
    "ThreadResult",
]

ThreadId = NewType("ThreadId", int)
MessageId = NewType("MessageId", int)


class IdCounter:
    """Monotonic id source owned by whoever threads it through construction.

    Ids start at 1 and are never reused for the lifetime of the counter.
    """

    __slots__ = ("_counter", "_last")

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)
        self._last = start - 1

    def next(self) -> int:
        self._last = next(self._counter)
        return self._last

    @property
    def last(self) -> int:
        return self._last


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class StopReason(str, Enum):
    """Why a model turn ended."""

    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    CONTENT = "content"
    ABORTED = "aborted"


@dataclass(slots=True, frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_hits: int | None = None
    cache_misses: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }
        if self.cache_hits is not None:
            payload["cache_hits"] = self.cache_hits
        if self.cache_misses is not None:
            payload["cache_misses"] = self.cache_misses
        return payload


# Sentinel recorded on aborted turns, where the provider never reported usage.
ABORTED_USAGE = Usage(input_tokens=-1, output_tokens=-1)


@dataclass(slots=True, eq=False)
class MessageInFlight:
    """A provider request is outstanding.

    ``cancel_handle`` is whatever object exposes ``abort()`` for the request;
    the thread owns its concrete type.
    """

    send_date: float = field(default_factory=time.time)
    cancel_handle: Any = None
    kind: ClassVar[str] = "message-in-flight"


@dataclass(slots=True, eq=False)
class Stopped:
    stop_reason: StopReason
    usage: Usage = field(default_factory=Usage)
    kind: ClassVar[str] = "stopped"


@dataclass(slots=True, eq=False)
class ErrorState:
    error: BaseException
    last_assistant_message: Any = None
    kind: ClassVar[str] = "error"


@dataclass(slots=True, eq=False)
class Yielded:
    response: str
    kind: ClassVar[str] = "yielded"


@dataclass(slots=True, eq=False)
class Compacting:
    kind: ClassVar[str] = "compacting"


ConversationState = Union[MessageInFlight, Stopped, ErrorState, Yielded, Compacting]


@dataclass(slots=True)
class InputMessage:
    """A message the user (or the system on their behalf) wants to send."""

    text: str
    kind: str = "user"


def is_terminal_stop(state: ConversationState) -> bool:
    """Return ``True`` when *state* ends a subagent's work."""

    if isinstance(state, (Yielded, ErrorState)):
        return True
    return isinstance(state, Stopped) and state.stop_reason is StopReason.ABORTED


def describe_state(state: ConversationState) -> str:
    if isinstance(state, Stopped):
        return f"stopped ({state.stop_reason.value})"
    if isinstance(state, ErrorState):
        return f"error: {state.error}"
    return state.kind


@dataclass(slots=True, frozen=True)
class ThreadResult:
    """Outcome of a thread as seen by its parent.

    ``status`` is ``"done"`` once the thread yielded, failed or was aborted;
    ``error`` is set for the latter two.
    """

    status: str = "pending"
    response: str | None = None
    error: str | None = None

    @property
    def done(self) -> bool:
        return self.status == "done"

    @property
    def ok(self) -> bool:
        return self.done and self.error is None

    @classmethod
    def pending(cls) -> "ThreadResult":
        return cls()

    @classmethod
    def success(cls, response: str) -> "ThreadResult":
        return cls(status="done", response=response)

    @classmethod
    def failure(cls, error: str) -> "ThreadResult":
        return cls(status="done", error=error)

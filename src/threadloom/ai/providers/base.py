"""Provider interface: one streaming model call per request."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Mapping, Protocol, Sequence, Union

from ...core.content import (
    ContentBlock,
    PendingToolUse,
    ServerToolResultBlock,
    ServerToolUseBlock,
    TextBlock,
    ThinkingBlock,
)
from ...core.types import Role, StopReason, Usage

__all__ = [
    "ContentBlockStart",
    "ContentBlockDelta",
    "ContentBlockStop",
    "MessageStop",
    "ProviderStreamEvent",
    "ProviderMessage",
    "ProviderResult",
    "SendOptions",
    "ProviderRequest",
    "Provider",
    "StreamCallback",
]


StartBlock = Union[TextBlock, ThinkingBlock, PendingToolUse, ServerToolUseBlock, ServerToolResultBlock]


@dataclass(slots=True)
class ContentBlockStart:
    index: int
    block: StartBlock


@dataclass(slots=True)
class ContentBlockDelta:
    """Incremental content for the open block at ``index``.

    Only the field matching the block type is set: ``text`` for text,
    ``partial_json`` for tool input, ``thinking`` for reasoning.
    """

    index: int
    text: str | None = None
    partial_json: str | None = None
    thinking: str | None = None


@dataclass(slots=True)
class ContentBlockStop:
    index: int


@dataclass(slots=True)
class MessageStop:
    stop_reason: StopReason
    usage: Usage = field(default_factory=Usage)


ProviderStreamEvent = Union[ContentBlockStart, ContentBlockDelta, ContentBlockStop, MessageStop]
StreamCallback = Callable[[ProviderStreamEvent], None]


@dataclass(slots=True, frozen=True)
class ProviderMessage:
    role: Role
    content: tuple[ContentBlock, ...]


@dataclass(slots=True, frozen=True)
class ProviderResult:
    stop_reason: StopReason
    usage: Usage = field(default_factory=Usage)


@dataclass(slots=True)
class SendOptions:
    system_prompt: str | None = None
    max_tokens: int | None = None
    thinking: bool = False
    metadata: Mapping[str, str] | None = None


class ProviderRequest:
    """Handle on one outstanding provider call.

    ``promise`` resolves with the :class:`ProviderResult`; :meth:`abort`
    cancels it and is safe to call repeatedly or after completion.
    """

    __slots__ = ("promise", "_aborted")

    def __init__(self, promise: asyncio.Future[ProviderResult]) -> None:
        self.promise = promise
        self._aborted = False

    @classmethod
    def start(cls, coro: Coroutine[Any, Any, ProviderResult], *, name: str | None = None) -> "ProviderRequest":
        return cls(asyncio.get_running_loop().create_task(coro, name=name))

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        if not self.promise.done():
            self.promise.cancel()

    def __await__(self):
        return self.promise.__await__()


class Provider(Protocol):
    """A model backend that streams one assistant message per call."""

    def send_message(
        self,
        *,
        model: str,
        messages: Sequence[ProviderMessage],
        tools: Sequence[Any],
        on_stream_event: StreamCallback,
        options: SendOptions,
    ) -> ProviderRequest:  # pragma: no cover - protocol stub
        ...

"""Scriptable in-memory provider for tests and offline runs."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from ...core.content import PendingToolUse, TextBlock, ToolResultBlock
from ...core.types import Role, StopReason, Usage
from .base import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    MessageStop,
    ProviderMessage,
    ProviderRequest,
    ProviderResult,
    SendOptions,
    StreamCallback,
)

__all__ = ["MockToolCall", "MockRequest", "MockProvider"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class MockToolCall:
    """A tool call to stream back.

    ``input`` may be a mapping (encoded as JSON) or a raw string, which lets
    tests send malformed arguments. ``id`` may be ``None`` to simulate a
    provider that omitted it.
    """

    id: str | None
    name: str
    input: Mapping[str, Any] | str = field(default_factory=dict)

    def arguments(self) -> str:
        if isinstance(self.input, str):
            return self.input
        return json.dumps(dict(self.input))


class MockRequest:
    """One captured ``send_message`` call, resolved by the test."""

    def __init__(
        self,
        *,
        model: str,
        messages: Sequence[ProviderMessage],
        tools: Sequence[Any],
        options: SendOptions,
        on_stream_event: StreamCallback,
        future: asyncio.Future[ProviderResult],
    ) -> None:
        self.model = model
        self.messages = list(messages)
        self.tools = list(tools)
        self.options = options
        self.on_stream_event = on_stream_event
        self.handle = ProviderRequest(future)
        self._next_index = 0

    def __repr__(self) -> str:
        return f"MockRequest(model={self.model!r}, messages={len(self.messages)}, pending={self.pending})"

    @property
    def future(self) -> asyncio.Future[ProviderResult]:
        return self.handle.promise

    @property
    def aborted(self) -> bool:
        return self.handle.aborted

    @property
    def pending(self) -> bool:
        return not self.future.done()

    @property
    def tool_names(self) -> list[str]:
        return [getattr(spec, "name", spec) for spec in self.tools]

    def last_user_text(self) -> str:
        for message in reversed(self.messages):
            if message.role is Role.USER:
                return "".join(block.text for block in message.content if isinstance(block, TextBlock))
        return ""

    def tool_results(self) -> list[ToolResultBlock]:
        return [
            block
            for message in self.messages
            if message.role is Role.USER
            for block in message.content
            if isinstance(block, ToolResultBlock)
        ]

    def stream_text(self, text: str) -> int:
        """Emit a complete text block; returns its index."""

        index = self._allocate()
        self._emit(ContentBlockStart(index, TextBlock("")))
        if text:
            self._emit(ContentBlockDelta(index, text=text))
        self._emit(ContentBlockStop(index))
        return index

    def stream_tool_call(self, call: MockToolCall, *, close: bool = True) -> int:
        index = self._allocate()
        self._emit(ContentBlockStart(index, PendingToolUse(id=call.id, tool_name=call.name)))
        self._emit(ContentBlockDelta(index, partial_json=call.arguments()))
        if close:
            self._emit(ContentBlockStop(index))
        return index

    def respond(
        self,
        *,
        text: str | None = None,
        tool_calls: Sequence[MockToolCall] = (),
        stop_reason: StopReason | None = None,
        usage: Usage | None = None,
    ) -> None:
        """Stream *text* and *tool_calls*, then resolve the request."""

        if not self.pending:
            LOGGER.debug("Ignoring response for settled request %r", self)
            return
        if text:
            self.stream_text(text)
        for call in tool_calls:
            self.stream_tool_call(call)
        if stop_reason is None:
            stop_reason = StopReason.TOOL_USE if tool_calls else StopReason.END_TURN
        self.finish(stop_reason, usage=usage)

    def finish(self, stop_reason: StopReason = StopReason.END_TURN, *, usage: Usage | None = None) -> None:
        if not self.pending:
            return
        usage = usage or Usage(input_tokens=10, output_tokens=5)
        self._emit(MessageStop(stop_reason, usage))
        self.future.set_result(ProviderResult(stop_reason, usage))

    def respond_with_error(self, error: BaseException) -> None:
        if not self.pending:
            LOGGER.debug("Ignoring error for settled request %r", self)
            return
        self.future.set_exception(error)

    def _emit(self, event: Any) -> None:
        if self.aborted:
            return
        self.on_stream_event(event)

    def _allocate(self) -> int:
        index = self._next_index
        self._next_index += 1
        return index


class MockProvider:
    """Records requests; the test decides how and when each one completes."""

    def __init__(self) -> None:
        self.requests: list[MockRequest] = []
        self.fail_next_send: BaseException | None = None

    def send_message(
        self,
        *,
        model: str,
        messages: Sequence[ProviderMessage],
        tools: Sequence[Any],
        on_stream_event: StreamCallback,
        options: SendOptions,
    ) -> ProviderRequest:
        if self.fail_next_send is not None:
            error, self.fail_next_send = self.fail_next_send, None
            raise error
        future: asyncio.Future[ProviderResult] = asyncio.get_running_loop().create_future()
        request = MockRequest(
            model=model,
            messages=messages,
            tools=tools,
            options=options,
            on_stream_event=on_stream_event,
            future=future,
        )
        self.requests.append(request)
        return request.handle

    def pending(self) -> list[MockRequest]:
        return [request for request in self.requests if request.pending]

    async def await_pending_request(
        self,
        *,
        predicate: Callable[[MockRequest], bool] | None = None,
        timeout: float = 1.0,
    ) -> MockRequest:
        """Wait until a pending request matching *predicate* exists and return the newest."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            for request in reversed(self.requests):
                if request.pending and (predicate is None or predicate(request)):
                    return request
            if loop.time() >= deadline:
                raise TimeoutError(f"No pending provider request after {timeout}s ({len(self.requests)} seen)")
            await asyncio.sleep(0.001)

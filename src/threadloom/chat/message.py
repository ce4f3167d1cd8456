"""Conversation messages, stream assembly and wire serialization."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from ..ai.providers.base import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    MessageStop,
    ProviderMessage,
    ProviderStreamEvent,
)
from ..core.content import (
    ContentBlock,
    MalformedToolRequest,
    PendingToolUse,
    ServerToolResultBlock,
    ServerToolUseBlock,
    TextBlock,
    ThinkingBlock,
    ToolRequest,
    ToolResultBlock,
    ToolUseBlock,
)
from ..core.types import MessageId, Role, StopReason, Usage

__all__ = ["StopInfo", "Message", "serialize_history", "malformed_tool_result"]

LOGGER = logging.getLogger(__name__)

ToolParser = Callable[[PendingToolUse], "ToolRequest | MalformedToolRequest"]
ToolResultLookup = Callable[[ToolRequest], ToolResultBlock]


@dataclass(slots=True, frozen=True)
class StopInfo:
    stop_reason: StopReason
    usage: Usage


class Message:
    """An ordered, mutable list of content blocks from one speaker.

    Assistant messages are built from stream events; ``_open`` maps the
    provider's block index to the position of the block being streamed.
    """

    __slots__ = ("id", "role", "content", "stop", "_open")

    def __init__(self, id: MessageId, role: Role, content: Iterable[ContentBlock] = ()) -> None:
        self.id = id
        self.role = role
        self.content: list[ContentBlock] = list(content)
        self.stop: StopInfo | None = None
        self._open: dict[int, int] = {}

    def __repr__(self) -> str:
        return f"Message(id={self.id}, role={self.role.value}, blocks={len(self.content)})"

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def is_empty(self) -> bool:
        return not self.content

    def append_text(self, text: str) -> None:
        """Append *text*, merging into a trailing text block."""

        if self.content and isinstance(self.content[-1], TextBlock):
            self.content[-1].text += text
        else:
            self.content.append(TextBlock(text=text))

    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def tool_requests(self) -> list[ToolRequest]:
        return [block.request for block in self.tool_uses() if isinstance(block.request, ToolRequest)]

    def apply_stream_event(self, event: ProviderStreamEvent, *, parse_tool: ToolParser) -> None:
        if isinstance(event, ContentBlockStart):
            block = event.block
            if isinstance(block, TextBlock):
                self.append_text(block.text)
            else:
                self.content.append(block)
            self._open[event.index] = len(self.content) - 1
        elif isinstance(event, ContentBlockDelta):
            position = self._open.get(event.index)
            if position is None:
                LOGGER.warning("Delta for unopened block %s in message %s", event.index, self.id)
                return
            target = self.content[position]
            if isinstance(target, TextBlock) and event.text:
                target.text += event.text
            elif isinstance(target, PendingToolUse) and event.partial_json:
                target.partial_json += event.partial_json
            elif isinstance(target, ThinkingBlock) and event.thinking:
                target.thinking += event.thinking
        elif isinstance(event, ContentBlockStop):
            position = self._open.pop(event.index, None)
            if position is None:
                LOGGER.warning("Stop for unopened block %s in message %s", event.index, self.id)
                return
            target = self.content[position]
            if isinstance(target, PendingToolUse):
                self.content[position] = ToolUseBlock(request=parse_tool(target))
        elif isinstance(event, MessageStop):
            # The request result carries the same stop data; nothing to assemble.
            return

    def finalize(self, stop_reason: StopReason, usage: Usage) -> None:
        self.stop = StopInfo(stop_reason=stop_reason, usage=usage)
        if self._open:
            LOGGER.debug("Message %s finished with %d open block(s)", self.id, len(self._open))
            self.drop_incomplete()

    def drop_incomplete(self) -> list[ServerToolUseBlock]:
        """Remove half-streamed blocks and server tool calls that never got a result.

        Returns the dropped server tool calls.
        """

        answered = {block.tool_use_id for block in self.content if isinstance(block, ServerToolResultBlock)}
        dropped: list[ServerToolUseBlock] = []
        kept: list[ContentBlock] = []
        for block in self.content:
            if isinstance(block, PendingToolUse):
                continue
            if isinstance(block, ServerToolUseBlock) and block.id not in answered:
                dropped.append(block)
                continue
            kept.append(block)
        self.content = kept
        self._open.clear()
        return dropped


def malformed_tool_result(request: MalformedToolRequest) -> ToolResultBlock:
    return ToolResultBlock(
        tool_use_id=request.id or "",
        content=f"Malformed tool request: {request.error}",
        is_error=True,
    )


def serialize_history(messages: Sequence[Message], result_for: ToolResultLookup) -> list[ProviderMessage]:
    """Flatten the history into provider messages.

    Each tool_use that carries an id is cut out of its assistant message and
    immediately followed by a user message holding its tool_result, no
    matter how text and calls were interleaved. Malformed calls with an id
    are answered with an error result; those without an id become a text
    note. Adjacent messages of the same role are merged.
    """

    wire: list[tuple[Role, list[ContentBlock]]] = []

    def push(role: Role, blocks: list[ContentBlock]) -> None:
        if not blocks:
            return
        if wire and wire[-1][0] is role:
            wire[-1][1].extend(blocks)
        else:
            wire.append((role, list(blocks)))

    for message in messages:
        if message.role is Role.USER:
            push(Role.USER, [block for block in message.content if _is_sendable(block)])
            continue

        answered = {block.tool_use_id for block in message.content if isinstance(block, ServerToolResultBlock)}
        pending: list[ContentBlock] = []
        for block in message.content:
            if isinstance(block, PendingToolUse):
                continue
            if isinstance(block, ServerToolUseBlock) and block.id not in answered:
                continue
            if isinstance(block, TextBlock) and not block.text:
                continue
            if isinstance(block, ToolUseBlock):
                request = block.request
                if isinstance(request, MalformedToolRequest) and not request.id:
                    pending.append(TextBlock(text=f"[Malformed tool request: {request.error}]"))
                    continue
                pending.append(block)
                push(Role.ASSISTANT, pending)
                pending = []
                if isinstance(request, ToolRequest):
                    push(Role.USER, [result_for(request)])
                else:
                    push(Role.USER, [malformed_tool_result(request)])
                continue
            pending.append(block)
        push(Role.ASSISTANT, pending)

    return [ProviderMessage(role=role, content=tuple(blocks)) for role, blocks in wire]


def _is_sendable(block: ContentBlock) -> bool:
    if isinstance(block, TextBlock):
        return bool(block.text)
    return not isinstance(block, PendingToolUse)

"""Content blocks carried by conversation messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Union

__all__ = [
    "ToolRequest",
    "MalformedToolRequest",
    "TextBlock",
    "ThinkingBlock",
    "ToolUseBlock",
    "PendingToolUse",
    "ToolResultBlock",
    "ServerToolUseBlock",
    "ServerToolResultBlock",
    "ContentBlock",
]


@dataclass(slots=True, frozen=True)
class ToolRequest:
    """A validated tool invocation emitted by the model."""

    id: str
    tool_name: str
    input: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class MalformedToolRequest:
    """A tool invocation that failed to parse or validate.

    ``id`` is kept when the provider supplied one so the wire history can
    still answer the call with an error result.
    """

    raw_request: str
    error: str
    id: str | None = None
    tool_name: str | None = None


@dataclass(slots=True)
class TextBlock:
    text: str
    type: str = "text"


@dataclass(slots=True)
class ThinkingBlock:
    thinking: str
    signature: str = ""
    type: str = "thinking"


@dataclass(slots=True)
class ToolUseBlock:
    request: ToolRequest | MalformedToolRequest
    type: str = "tool_use"

    @property
    def ok(self) -> bool:
        return isinstance(self.request, ToolRequest)

    @property
    def request_id(self) -> str | None:
        return self.request.id


@dataclass(slots=True)
class PendingToolUse:
    """A tool_use block whose input JSON is still streaming."""

    id: str | None
    tool_name: str
    partial_json: str = ""
    type: str = "pending_tool_use"


@dataclass(slots=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: str = "tool_result"


@dataclass(slots=True)
class ServerToolUseBlock:
    id: str
    name: str
    input: Mapping[str, Any] = field(default_factory=dict)
    type: str = "server_tool_use"


@dataclass(slots=True)
class ServerToolResultBlock:
    tool_use_id: str
    content: Any = None
    type: str = "server_tool_result"


ContentBlock = Union[
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    PendingToolUse,
    ToolResultBlock,
    ServerToolUseBlock,
    ServerToolResultBlock,
]

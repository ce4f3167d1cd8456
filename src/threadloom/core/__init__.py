"""Core data model: identifiers, states, content blocks and actions."""

from .content import (
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
from .errors import ThreadloomError, ThreadStateError, UnknownThreadError, UnknownToolRequestError
from .types import (
    ABORTED_USAGE,
    Compacting,
    ConversationState,
    ErrorState,
    IdCounter,
    InputMessage,
    MessageInFlight,
    Role,
    StopReason,
    Stopped,
    ThreadId,
    ThreadResult,
    Usage,
    Yielded,
)

__all__ = [
    "ABORTED_USAGE",
    "Compacting",
    "ContentBlock",
    "ConversationState",
    "ErrorState",
    "IdCounter",
    "InputMessage",
    "MalformedToolRequest",
    "MessageInFlight",
    "PendingToolUse",
    "Role",
    "ServerToolResultBlock",
    "ServerToolUseBlock",
    "StopReason",
    "Stopped",
    "TextBlock",
    "ThinkingBlock",
    "ThreadId",
    "ThreadResult",
    "ThreadloomError",
    "ThreadStateError",
    "ToolRequest",
    "ToolResultBlock",
    "ToolUseBlock",
    "UnknownThreadError",
    "UnknownToolRequestError",
    "Usage",
    "Yielded",
]

"""Model backends that stream assistant messages."""

from .base import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    MessageStop,
    Provider,
    ProviderMessage,
    ProviderRequest,
    ProviderResult,
    ProviderStreamEvent,
    SendOptions,
)
from .mock import MockProvider, MockRequest, MockToolCall
from .openai import OpenAIProvider

__all__ = [
    "ContentBlockDelta",
    "ContentBlockStart",
    "ContentBlockStop",
    "MessageStop",
    "MockProvider",
    "MockRequest",
    "MockToolCall",
    "OpenAIProvider",
    "Provider",
    "ProviderMessage",
    "ProviderRequest",
    "ProviderResult",
    "ProviderStreamEvent",
    "SendOptions",
]

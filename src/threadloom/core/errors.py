"""Exceptions raised for internal invariant violations."""

from __future__ import annotations

__all__ = [
    "ThreadloomError",
    "UnknownThreadError",
    "UnknownToolRequestError",
    "ThreadStateError",
    "ProviderError",
]


class ThreadloomError(Exception):
    """Base class for orchestration errors."""


class UnknownThreadError(ThreadloomError, KeyError):
    """Raised when an action targets a thread id the chat never created."""

    def __init__(self, thread_id: int) -> None:
        self.thread_id = thread_id
        ThreadloomError.__init__(self, f"Thread {thread_id} not found")

    def __str__(self) -> str:
        return f"Thread {self.thread_id} not found"


class UnknownToolRequestError(ThreadloomError, KeyError):
    """Raised when a tool request id has no registered tool."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        ThreadloomError.__init__(self, f"Tool request '{request_id}' not found")

    def __str__(self) -> str:
        return f"Tool request '{self.request_id}' not found"


class ThreadStateError(ThreadloomError):
    """Raised when a thread is asked to do something its state forbids."""


class ProviderError(ThreadloomError):
    """Raised by providers for failures that are not transport exceptions."""

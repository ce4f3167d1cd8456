"""Shared test helpers.

Import from here instead of duplicating these in individual test files.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from threadloom.ai.providers.mock import MockProvider, MockRequest
from threadloom.chat.chat import Chat
from threadloom.core.types import StopReason, Stopped, ThreadId


async def settle(rounds: int = 10) -> None:
    """Let queued callbacks and background tasks run."""

    for _ in range(rounds):
        await asyncio.sleep(0)


async def poll_until(predicate: Callable[[], Any], *, timeout: float = 1.0, message: str | None = None) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError(message or f"Condition not met within {timeout}s")
        await asyncio.sleep(0.001)


def is_stopped(chat: Chat, thread_id: ThreadId, reason: StopReason | None = None) -> Callable[[], bool]:
    def check() -> bool:
        state = chat.get_thread(thread_id).state
        return isinstance(state, Stopped) and (reason is None or state.stop_reason is reason)

    return check


async def request_with_text(provider: MockProvider, text: str, *, timeout: float = 1.0) -> MockRequest:
    """Wait for a pending request whose latest user text contains *text*."""

    return await provider.await_pending_request(
        predicate=lambda request: text in request.last_user_text(),
        timeout=timeout,
    )


async def start_turn(chat: Chat, provider: MockProvider, text: str) -> tuple[ThreadId, MockRequest]:
    thread_id = await chat.new_thread()
    chat.send_message(thread_id, text)
    request = await request_with_text(provider, text)
    return thread_id, request

"""Single-consumer action queue for the chat core."""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable

from ..core.actions import Action

__all__ = ["Dispatcher"]

LOGGER = logging.getLogger(__name__)


class Dispatcher:
    """Run action handlers one at a time, in the order actions were sent.

    ``dispatch`` called from inside a handler only enqueues; the outermost
    call drains the queue before returning. Handlers therefore never observe
    a half-applied transition, and a caller outside any handler sees every
    consequence of its action once ``dispatch`` returns.
    """

    __slots__ = ("_handler", "_queue", "_draining")

    def __init__(self, handler: Callable[[Action], None]) -> None:
        self._handler = handler
        self._queue: deque[Action] = deque()
        self._draining = False

    @property
    def pending(self) -> int:
        return len(self._queue)

    def dispatch(self, action: Action) -> None:
        self._queue.append(action)
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                current = self._queue.popleft()
                try:
                    self._handler(current)
                except Exception:
                    LOGGER.exception("Handler failed for %s", type(current).__name__)
        finally:
            self._draining = False

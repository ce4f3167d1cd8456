"""Tool wrapping a plain callable, optionally gated on user approval."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Callable, Mapping

from ...core.actions import Action, ApprovalResponse, ToolCompleted
from ...core.content import ToolRequest
from ...events import AttentionRequired
from ...utils.tasks import spawn_task
from .base import Tool, ToolContext, ToolState
from .errors import ApprovalDeniedError, ToolError

__all__ = ["FunctionTool", "format_tool_output"]

LOGGER = logging.getLogger(__name__)


class FunctionTool(Tool):
    """Run ``handler(input)`` for one request.

    Sync handlers finish inside :meth:`start`; coroutine handlers run as a
    background task that reports back with :class:`ToolCompleted`. With
    ``requires_approval`` the tool waits in ``PENDING_USER_ACTION`` until an
    :class:`ApprovalResponse` arrives.
    """

    def __init__(
        self,
        request: ToolRequest,
        context: ToolContext,
        *,
        handler: Callable[[Mapping[str, Any]], Any],
        requires_approval: bool = False,
    ) -> None:
        super().__init__(request, context)
        self._handler = handler
        self._requires_approval = requires_approval
        self._task: asyncio.Task[Any] | None = None

    def start(self) -> None:
        if self._requires_approval:
            self._set_state(ToolState.PENDING_USER_ACTION)
            if self.context.bus is not None and self.context.options.chime_on_attention:
                self.context.bus.publish(AttentionRequired(thread_id=self.context.thread_id, reason="tool_approval"))
            return
        self._run()

    def update(self, action: Action) -> None:
        if isinstance(action, ApprovalResponse):
            if not self.is_pending_user_action():
                LOGGER.debug("Approval for %s arrived in state %s", self.request_id, self.state.value)
                return
            if action.approved:
                self._set_state(ToolState.RUNNING)
                self._run()
            else:
                self._finish(str(ApprovalDeniedError()), is_error=True)
            return
        if isinstance(action, ToolCompleted):
            self._task = None
            self._finish(action.content, is_error=action.is_error)
            return
        super().update(action)

    def on_abort(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def provisional_result(self) -> str:
        if self.is_pending_user_action():
            return f"Waiting for the user to approve {self.name}."
        return super().provisional_result()

    def _run(self) -> None:
        try:
            outcome = self._handler(self.request.input)
        except Exception as exc:  # noqa: BLE001 - every failure becomes an error result
            self._finish(_describe_failure(self.name, exc), is_error=True)
            return
        if inspect.isawaitable(outcome):
            self._task = spawn_task(
                self._await_outcome(outcome),
                name=f"tool:{self.name}:{self.request_id}",
                registry=self.context.tasks,
            )
            return
        self._finish(format_tool_output(outcome))

    async def _await_outcome(self, outcome: Any) -> None:
        try:
            value = await outcome
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - reported through the tool result
            self.dispatch_self(ToolCompleted(_describe_failure(self.name, exc), is_error=True))
            return
        self.dispatch_self(ToolCompleted(format_tool_output(value)))


def format_tool_output(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def _describe_failure(name: str, exc: Exception) -> str:
    if isinstance(exc, ToolError):
        return str(exc)
    LOGGER.debug("Tool %s raised", name, exc_info=exc)
    return f"{type(exc).__name__}: {exc}"

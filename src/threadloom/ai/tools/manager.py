"""Per-thread registry of live tool invocations."""

from __future__ import annotations

import logging
from typing import Iterator

from ...core.actions import Action
from ...core.content import ToolRequest
from ...core.errors import UnknownToolRequestError
from ...services import telemetry
from .base import Tool, ToolContext
from .registry import ToolRegistry

__all__ = ["ToolManager"]

LOGGER = logging.getLogger(__name__)


class ToolManager:
    """Tools of one thread, keyed by the model's tool request id."""

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry
        self._tools: dict[str, Tool] = {}

    def init_tool(self, request: ToolRequest, context: ToolContext) -> Tool:
        """Create the tool for *request* and start it.

        A request id that already has a tool returns the existing one so a
        replayed stop event cannot run a tool twice.
        """

        existing = self._tools.get(request.id)
        if existing is not None:
            LOGGER.debug("Tool request %s already initialized", request.id)
            return existing
        registration = self._registry.get_required(request.tool_name)
        tool = registration.factory(request, context)
        self._tools[request.id] = tool
        telemetry.emit(
            "tool.created",
            {"tool": request.tool_name, "request_id": request.id, "thread_id": context.thread_id},
        )
        tool.start()
        return tool

    def get(self, request_id: str) -> Tool | None:
        return self._tools.get(request_id)

    def get_required(self, request_id: str) -> Tool:
        tool = self._tools.get(request_id)
        if tool is None:
            raise UnknownToolRequestError(request_id)
        return tool

    def update(self, request_id: str, action: Action) -> bool:
        """Deliver *action* to a tool. Unknown ids are logged and dropped."""

        tool = self._tools.get(request_id)
        if tool is None:
            LOGGER.warning("Dropping %s for unknown tool request %s", type(action).__name__, request_id)
            return False
        tool.update(action)
        return True

    def active(self) -> list[Tool]:
        return [tool for tool in self._tools.values() if not tool.is_done()]

    def __iter__(self) -> Iterator[Tool]:
        return iter(list(self._tools.values()))

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._tools

"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator

import pytest

from threadloom.ai.providers.mock import MockProvider
from threadloom.ai.tools.registry import ToolRegistry, ToolSpec
from threadloom.ai.tools.wiring import default_registry
from threadloom.chat.chat import Chat
from threadloom.events import EventBus
from threadloom.services import telemetry
from threadloom.services.settings import ChatOptions

ECHO_SPEC = ToolSpec(
    name="echo",
    description="Return the given text.",
    parameters={
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
        "additionalProperties": False,
    },
)

GATED_SPEC = ToolSpec(
    name="gated",
    description="Needs the user's approval before it runs.",
    parameters={"type": "object", "properties": {"value": {"type": "string"}}},
)


@pytest.fixture(autouse=True)
def _reset_telemetry() -> Iterator[None]:
    telemetry.clear_event_listeners()
    yield
    telemetry.clear_event_listeners()


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def registry() -> ToolRegistry:
    registry = default_registry()
    registry.register_function(ECHO_SPEC, lambda args: args["text"])
    registry.register_function(GATED_SPEC, lambda args: f"ran with {args.get('value', '')}", requires_approval=True)
    return registry


@pytest.fixture
def options() -> ChatOptions:
    return ChatOptions(chime_on_attention=False)


@pytest.fixture
def bus() -> EventBus[Any]:
    return EventBus()


@pytest.fixture
def chat(provider: MockProvider, registry: ToolRegistry, options: ChatOptions, bus: EventBus[Any], tmp_path: Path) -> Chat:
    return Chat(provider=provider, options=options, registry=registry, bus=bus, cwd=tmp_path)


@pytest.fixture
def telemetry_events() -> list[dict[str, Any]]:
    """Collect every telemetry event emitted during the test."""

    captured: list[dict[str, Any]] = []
    for name in (
        "thread.created",
        "thread.aborted",
        "thread.error",
        "thread.yielded",
        "thread.compacted",
        "thread.compaction_failed",
        "tool.created",
        "tool.finished",
        "tool.aborted",
        "subagent.spawned",
        "subagent.spawn_failed",
        "subagent.parent_notified",
    ):
        telemetry.register_event_listener(name, captured.append)
    return captured

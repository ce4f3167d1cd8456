"""Chat registry: thread creation, selection, compaction and lookups."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from threadloom.ai.providers.mock import MockProvider, MockToolCall
from threadloom.ai.tools.registry import COMPACT_THREAD
from threadloom.chat.chat import Chat, WrapperState
from threadloom.core.actions import (
    AbortRequest,
    Action,
    SelectThread,
    SpawnSubagentThread,
    SubagentCreated,
    ThreadAction,
    ToolAction,
)
from threadloom.core.errors import ThreadloomError, UnknownThreadError
from threadloom.core.types import Compacting, ErrorState, MessageInFlight, ThreadId, ThreadResult
from threadloom.events import CompactionFailed, EventBus, ThreadCompacted, ThreadCreated, ThreadSelected

from tests.helpers import is_stopped, poll_until, request_with_text, settle, start_turn


@pytest.mark.asyncio
async def test_new_thread_is_created_and_selected(chat: Chat, bus: EventBus[Any]) -> None:
    created: list[ThreadCreated] = []
    selected: list[ThreadSelected] = []
    bus.subscribe(ThreadCreated, created.append)
    bus.subscribe(ThreadSelected, selected.append)

    first = await chat.new_thread()
    second = await chat.new_thread(select=False)

    assert (first, second) == (1, 2)
    assert chat.active_thread_id == first
    assert chat.active_thread is chat.get_thread(first)
    assert [event.thread_id for event in created] == [first, second]
    assert [event.parent_thread_id for event in created] == [None, None]
    assert [event.thread_id for event in selected] == [first]

    chat.select(second)
    assert chat.active_thread_id == second


@pytest.mark.asyncio
async def test_new_thread_with_missing_context_file_fails(chat: Chat) -> None:
    with pytest.raises(ThreadloomError, match="missing.md"):
        await chat.new_thread(context_files=["missing.md"])

    (thread_id,) = chat.thread_ids()
    wrapper = chat.get_wrapper(thread_id)
    assert wrapper.state is WrapperState.ERROR
    assert chat.active_thread_id is None
    with pytest.raises(UnknownThreadError):
        chat.get_thread(thread_id)


@pytest.mark.asyncio
async def test_context_files_are_sent_with_first_request(chat: Chat, provider: MockProvider, tmp_path: Path) -> None:
    (tmp_path / "notes.md").write_text("remember the milk\n", encoding="utf-8")

    thread_id = await chat.new_thread(context_files=["notes.md"])
    chat.send_message(thread_id, "what should I remember?")
    request = await request_with_text(provider, "what should I remember?")

    first_user = request.messages[0]
    assert "File `notes.md` added to context" in first_user.content[0].text
    assert "remember the milk" in first_user.content[0].text
    assert first_user.content[-1].text == "what should I remember?"


@pytest.mark.asyncio
async def test_file_directive_adds_context(chat: Chat, provider: MockProvider, tmp_path: Path) -> None:
    (tmp_path / "todo.txt").write_text("ship it", encoding="utf-8")

    thread_id = await chat.new_thread()
    chat.send_message(thread_id, "look at @file:todo.txt please")
    request = await request_with_text(provider, "please")

    assert chat.get_thread(thread_id).context_manager.files == ["todo.txt"]
    assert "ship it" in request.messages[0].content[0].text


def test_lookups_of_unknown_threads(chat: Chat) -> None:
    with pytest.raises(UnknownThreadError) as excinfo:
        chat.get_thread(ThreadId(42))
    assert str(excinfo.value) == "Thread 42 not found"
    assert chat.get_thread_result(ThreadId(42)) == ThreadResult.failure("Thread 42 not found")
    with pytest.raises(UnknownThreadError):
        chat.abort(ThreadId(42))


@pytest.mark.asyncio
async def test_dispatch_to_unknown_thread_is_logged(chat: Chat, caplog: pytest.LogCaptureFixture) -> None:
    await chat.new_thread()

    with caplog.at_level("ERROR", logger="threadloom.chat.dispatch"):
        chat.dispatch(ThreadAction(ThreadId(7), AbortRequest()))
        chat.dispatch(SelectThread(ThreadId(8)))

    failures = [record for record in caplog.records if record.name == "threadloom.chat.dispatch"]
    assert len(failures) == 2
    assert chat.active_thread_id == 1


@pytest.mark.asyncio
async def test_threads_overview_lists_status(chat: Chat, provider: MockProvider) -> None:
    thread_id, request = await start_turn(chat, provider, "Plan the release\nwith details")
    request.respond(text="Sure")
    await poll_until(is_stopped(chat, thread_id))

    (summary,) = chat.threads_overview()

    assert summary.thread_id == thread_id
    assert summary.title == "Plan the release"
    assert summary.status == "stopped (end_turn)"
    assert summary.active is True
    assert summary.parent_thread_id is None


@pytest.mark.asyncio
async def test_compaction_moves_to_new_thread(chat: Chat, provider: MockProvider, bus: EventBus[Any]) -> None:
    compacted: list[ThreadCompacted] = []
    bus.subscribe(ThreadCompacted, compacted.append)

    source_id, request = await start_turn(chat, provider, "a long conversation @compact")
    assert "Call the compact_thread tool now" in request.last_user_text()
    request.respond(
        tool_calls=[
            MockToolCall(
                "compact-1",
                COMPACT_THREAD,
                {"summary": "We refactored the parser.", "continuation": "Now add tests."},
            )
        ]
    )

    follow_up = await request_with_text(provider, "We refactored the parser.")

    source = chat.get_thread(source_id)
    assert isinstance(source.state, Compacting)
    new_id = chat.active_thread_id
    assert new_id is not None and new_id != source_id
    assert follow_up.messages[-1].content[-1].text == "We refactored the parser.\n\nNow add tests."
    assert [(event.source_thread_id, event.thread_id) for event in compacted] == [(source_id, new_id)]
    assert isinstance(chat.get_thread(new_id).state, MessageInFlight)

    # Messages sent to the compacted thread are dropped.
    chat.send_message(source_id, "are you there?")
    await settle()
    assert isinstance(source.state, Compacting)


@pytest.mark.asyncio
async def test_failed_compaction_returns_source_to_user(
    chat: Chat, provider: MockProvider, bus: EventBus[Any], telemetry_events: list[dict[str, Any]]
) -> None:
    failures: list[CompactionFailed] = []
    bus.subscribe(CompactionFailed, failures.append)

    source_id, request = await start_turn(chat, provider, "wrap this up")
    request.respond(
        tool_calls=[
            MockToolCall(
                "compact-1",
                COMPACT_THREAD,
                {"summary": "Parser notes.", "context_files": ["missing.py"]},
            )
        ]
    )
    source = chat.get_thread(source_id)
    await poll_until(lambda: not isinstance(source.state, Compacting))

    assert isinstance(source.state, ErrorState)
    assert "missing.py" in str(source.state.error)
    (successor_id,) = [thread_id for thread_id in chat.thread_ids() if thread_id != source_id]
    assert chat.get_wrapper(successor_id).state is WrapperState.ERROR
    assert [event.source_thread_id for event in failures] == [source_id]
    assert "missing.py" in failures[0].error
    assert [event["source_thread_id"] for event in telemetry_events if event["event"] == "thread.compaction_failed"] == [
        source_id
    ]
    assert chat.active_thread_id == source_id

    chat.send_message(source_id, "hello again?")
    follow_up = await request_with_text(provider, "hello again?")

    assert [result.tool_use_id for result in follow_up.tool_results()] == ["compact-1"]
    assert isinstance(source.state, MessageInFlight)


@pytest.mark.asyncio
async def test_spawn_from_unknown_parent_reports_failure(
    chat: Chat, telemetry_events: list[dict[str, Any]], monkeypatch: pytest.MonkeyPatch
) -> None:
    await chat.new_thread()
    handled: list[Action] = []

    def record(action: Action) -> None:
        handled.append(action)
        chat.update(action)

    monkeypatch.setattr(chat.dispatcher, "_handler", record)

    chat.dispatch(SpawnSubagentThread(parent_thread_id=ThreadId(42), request_id="spawn-9", prompt="orphan", tag=3))

    assert chat.thread_ids() == [ThreadId(1)]
    routed = [action for action in handled if isinstance(action, ToolAction)]
    assert routed == [ToolAction(ThreadId(42), "spawn-9", SubagentCreated(error="Parent thread 42 not found", tag=3))]
    failed = [event for event in telemetry_events if event["event"] == "subagent.spawn_failed"]
    assert failed == [{"event": "subagent.spawn_failed", "parent_thread_id": 42, "error": "Parent thread 42 not found"}]


@pytest.mark.asyncio
async def test_thread_result_of_top_level_threads(chat: Chat, provider: MockProvider) -> None:
    thread_id, request = await start_turn(chat, provider, "hi")
    assert chat.get_thread_result(thread_id) == ThreadResult.pending()

    request.respond(text="hello")
    await poll_until(is_stopped(chat, thread_id))
    assert chat.get_thread_result(thread_id) == ThreadResult.pending()

    chat.send_message(thread_id, "again")
    await request_with_text(provider, "again")
    chat.abort(thread_id)
    assert chat.get_thread_result(thread_id) == ThreadResult.failure("Thread was aborted")


@pytest.mark.asyncio
async def test_aclose_aborts_in_flight_requests(chat: Chat, provider: MockProvider) -> None:
    _, request = await start_turn(chat, provider, "keep going")

    await chat.aclose()

    assert request.aborted

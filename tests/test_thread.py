"""Thread state machine: turns, tool auto-respond, abort and failures."""

from __future__ import annotations

from typing import Any

import pytest

from threadloom.ai.providers.mock import MockProvider, MockToolCall
from threadloom.chat.chat import Chat
from threadloom.core.actions import ApprovalResponse, ToolAction
from threadloom.core.content import PendingToolUse, TextBlock, ToolResultBlock, ToolUseBlock
from threadloom.core.types import (
    ABORTED_USAGE,
    ErrorState,
    MessageInFlight,
    Role,
    StopReason,
    Stopped,
)
from threadloom.events import ConversationStateChanged, EventBus, ResubmitRequested

from tests.helpers import is_stopped, poll_until, request_with_text, settle, start_turn


@pytest.mark.asyncio
async def test_simple_turn_streams_reply_and_sets_title(chat: Chat, provider: MockProvider) -> None:
    thread_id, request = await start_turn(chat, provider, "Hello there")
    thread = chat.get_thread(thread_id)
    assert isinstance(thread.state, MessageInFlight)

    request.respond(text="Hi! How can I help?")
    await poll_until(is_stopped(chat, thread_id, StopReason.END_TURN))

    assert [message.role for message in thread.messages] == [Role.USER, Role.ASSISTANT]
    assert thread.messages[-1].text == "Hi! How can I help?"
    assert thread.title == "Hello there"
    assert request.options.system_prompt


@pytest.mark.asyncio
async def test_state_changes_are_published(chat: Chat, provider: MockProvider, bus: EventBus[Any]) -> None:
    seen: list[str] = []
    bus.subscribe(ConversationStateChanged, lambda event: seen.append(event.state.kind))

    thread_id, request = await start_turn(chat, provider, "ping")
    request.respond(text="pong")
    await poll_until(is_stopped(chat, thread_id))

    assert seen == ["message-in-flight", "stopped"]


@pytest.mark.asyncio
async def test_auto_respond_waits_for_every_tool(chat: Chat, provider: MockProvider) -> None:
    thread_id, request = await start_turn(chat, provider, "use two tools")
    request.respond(
        tool_calls=[
            MockToolCall("call-1", "echo", {"text": "first"}),
            MockToolCall("call-2", "gated", {"value": "second"}),
        ]
    )
    await poll_until(is_stopped(chat, thread_id, StopReason.TOOL_USE))
    thread = chat.get_thread(thread_id)

    assert thread.tools.get_required("call-1").is_done()
    assert thread.tools.get_required("call-2").is_pending_user_action()
    await settle()
    assert len(provider.requests) == 1

    chat.dispatch(ToolAction(thread_id, "call-2", ApprovalResponse(approved=True)))
    follow_up = await provider.await_pending_request()

    assert follow_up is not request
    assert [message.role for message in follow_up.messages] == [
        Role.USER,
        Role.ASSISTANT,
        Role.USER,
        Role.ASSISTANT,
        Role.USER,
    ]
    results = follow_up.tool_results()
    assert [(result.tool_use_id, result.content) for result in results] == [
        ("call-1", "first"),
        ("call-2", "ran with second"),
    ]


@pytest.mark.asyncio
async def test_denied_approval_returns_error_result(chat: Chat, provider: MockProvider) -> None:
    thread_id, request = await start_turn(chat, provider, "please run it")
    request.respond(tool_calls=[MockToolCall("call-1", "gated", {})])
    await poll_until(is_stopped(chat, thread_id, StopReason.TOOL_USE))

    chat.dispatch(ToolAction(thread_id, "call-1", ApprovalResponse(approved=False)))
    follow_up = await provider.await_pending_request()

    (result,) = follow_up.tool_results()
    assert result.is_error
    assert "approval_denied" in result.content


@pytest.mark.asyncio
async def test_abort_mid_stream_keeps_partial_text(chat: Chat, provider: MockProvider) -> None:
    thread_id, request = await start_turn(chat, provider, "write something long")
    request.stream_text("Partial answer")
    request.stream_tool_call(MockToolCall("call-1", "echo", '{"text": "unfin'), close=False)

    chat.abort(thread_id)
    thread = chat.get_thread(thread_id)

    assert request.aborted
    assert isinstance(thread.state, Stopped)
    assert thread.state.stop_reason is StopReason.ABORTED
    assert thread.state.usage == ABORTED_USAGE
    assistant = thread.messages[-1]
    assert assistant.role is Role.ASSISTANT
    assert assistant.text == "Partial answer"
    assert not any(isinstance(block, PendingToolUse) for block in assistant.content)

    # Late provider output is ignored.
    request.respond(text="too late")
    await settle()
    assert assistant.text == "Partial answer"
    assert thread.state.stop_reason is StopReason.ABORTED


@pytest.mark.asyncio
async def test_abort_with_pending_tools_is_idempotent(chat: Chat, provider: MockProvider) -> None:
    thread_id, request = await start_turn(chat, provider, "two approvals")
    request.respond(
        tool_calls=[
            MockToolCall("call-1", "gated", {"value": "a"}),
            MockToolCall("call-2", "gated", {"value": "b"}),
        ]
    )
    await poll_until(is_stopped(chat, thread_id, StopReason.TOOL_USE))
    thread = chat.get_thread(thread_id)

    chat.abort(thread_id)
    aborted_state = thread.state
    results = [block for message in thread.wire_messages() for block in message.content if isinstance(block, ToolResultBlock)]
    assert [result.content for result in results] == ["Request was aborted by the user."] * 2
    assert all(result.is_error for result in results)

    chat.abort(thread_id)
    assert thread.state is aborted_state
    await settle()
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_abort_when_idle_is_a_no_op(chat: Chat, provider: MockProvider) -> None:
    thread_id, request = await start_turn(chat, provider, "hi")
    request.respond(text="hello")
    await poll_until(is_stopped(chat, thread_id, StopReason.END_TURN))
    thread = chat.get_thread(thread_id)
    state = thread.state

    chat.abort(thread_id)

    assert thread.state is state


@pytest.mark.asyncio
async def test_async_message_is_queued_until_turn_ends(chat: Chat, provider: MockProvider) -> None:
    thread_id, first = await start_turn(chat, provider, "first question")
    chat.send_message(thread_id, "@async and another thing")
    thread = chat.get_thread(thread_id)

    assert not first.aborted
    assert [message.text for message in thread.pending_messages] == ["and another thing"]

    first.respond(text="first answer")
    second = await request_with_text(provider, "and another thing")

    assert not thread.pending_messages
    assert second.messages[-1].role is Role.USER
    assert thread.messages[-1].text == "and another thing"


@pytest.mark.asyncio
async def test_async_message_waits_for_pending_tools(chat: Chat, provider: MockProvider) -> None:
    thread_id, request = await start_turn(chat, provider, "run the gated tool")
    request.respond(tool_calls=[MockToolCall("g-1", "gated", {"value": "now"})])
    await poll_until(is_stopped(chat, thread_id, StopReason.TOOL_USE))
    thread = chat.get_thread(thread_id)

    chat.send_message(thread_id, "@async queued note")
    await settle()

    assert thread.tools.get_required("g-1").is_pending_user_action()
    assert [message.text for message in thread.pending_messages] == ["queued note"]
    assert len(provider.requests) == 1

    chat.dispatch(ToolAction(thread_id, "g-1", ApprovalResponse(approved=True)))
    follow_up = await request_with_text(provider, "queued note")

    assert [(result.tool_use_id, result.content) for result in follow_up.tool_results()] == [("g-1", "ran with now")]
    assert not thread.pending_messages


@pytest.mark.asyncio
async def test_plain_message_while_busy_interrupts(chat: Chat, provider: MockProvider) -> None:
    thread_id, first = await start_turn(chat, provider, "first")
    chat.send_message(thread_id, "never mind, do this")

    second = await request_with_text(provider, "never mind, do this")

    assert first.aborted
    assert second is not first
    assert isinstance(chat.get_thread(thread_id).state, MessageInFlight)


@pytest.mark.asyncio
async def test_provider_error_rolls_back_turn(chat: Chat, provider: MockProvider, bus: EventBus[Any]) -> None:
    resubmits: list[ResubmitRequested] = []
    bus.subscribe(ResubmitRequested, resubmits.append)

    thread_id, first = await start_turn(chat, provider, "hello")
    first.respond(text="hi")
    await poll_until(is_stopped(chat, thread_id))
    thread = chat.get_thread(thread_id)

    chat.send_message(thread_id, "this one fails")
    failing = await request_with_text(provider, "this one fails")
    failing.stream_text("half an ans")
    failing.respond_with_error(RuntimeError("connection reset"))
    await poll_until(lambda: isinstance(thread.state, ErrorState))

    state = thread.state
    assert isinstance(state, ErrorState)
    assert str(state.error) == "connection reset"
    assert state.last_assistant_message is not None
    assert state.last_assistant_message.text == "half an ans"
    assert [message.text for message in thread.messages] == ["hello", "hi"]
    assert thread.resubmit_text == "this one fails"
    assert [event.text for event in resubmits] == ["this one fails"]
    assert chat.get_thread_result(thread_id).error == "connection reset"


@pytest.mark.asyncio
async def test_send_failure_marks_thread_errored(chat: Chat, provider: MockProvider) -> None:
    provider.fail_next_send = ValueError("bad request")
    thread_id = await chat.new_thread()
    chat.send_message(thread_id, "hi")
    thread = chat.get_thread(thread_id)

    await poll_until(lambda: isinstance(thread.state, ErrorState))

    assert thread.messages == []
    assert thread.resubmit_text == "hi"


@pytest.mark.asyncio
async def test_malformed_tool_calls_never_block(chat: Chat, provider: MockProvider) -> None:
    thread_id, request = await start_turn(chat, provider, "call tools badly")
    request.respond(
        tool_calls=[
            MockToolCall("call-1", "echo", "{not json"),
            MockToolCall(None, "echo", {"text": "no id"}),
            MockToolCall("call-3", "nope", {}),
        ]
    )

    follow_up = await provider.await_pending_request(predicate=lambda pending: pending is not request)

    roles = [message.role for message in follow_up.messages]
    assert roles == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT, Role.USER]
    first_result, third_result = follow_up.tool_results()
    assert first_result.tool_use_id == "call-1"
    assert first_result.is_error and first_result.content.startswith("Malformed tool request: Invalid JSON")
    assert third_result.tool_use_id == "call-3"
    assert third_result.content == "Malformed tool request: Unknown tool 'nope'"
    note = follow_up.messages[3].content[0]
    assert isinstance(note, TextBlock)
    assert note.text == "[Malformed tool request: Tool request is missing an id]"
    assert isinstance(follow_up.messages[3].content[1], ToolUseBlock)
    assert len(chat.get_thread(thread_id).tools) == 0


@pytest.mark.asyncio
async def test_top_level_thread_cannot_yield(chat: Chat, provider: MockProvider) -> None:
    thread_id, request = await start_turn(chat, provider, "try to yield")
    request.respond(tool_calls=[MockToolCall("call-1", "yield_to_parent", {"result": "nope"})])

    follow_up = await provider.await_pending_request(predicate=lambda pending: pending is not request)

    (result,) = follow_up.tool_results()
    assert result.content == "Malformed tool request: Tool 'yield_to_parent' is not available in this thread"
    assert chat.get_thread_result(thread_id).done is False

"""The per-thread conversation state machine."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, MutableSet, Sequence

from ..ai.prompts import base_system_prompt, subagent_system_prompt
from ..ai.providers.base import Provider, ProviderRequest, ProviderStreamEvent, SendOptions
from ..ai.tools.base import ThreadResultSource, Tool, ToolContext
from ..ai.tools.manager import ToolManager
from ..ai.tools.registry import COMPACT_THREAD, YIELD_TO_PARENT, ToolRegistry
from ..context.manager import ContextManager, context_updates_to_content
from ..core.actions import (
    AbortRequest,
    Action,
    CheckThreads,
    ChildThreadSettled,
    CompactThread,
    RequestPrepared,
    SendMessage,
    StreamCompleted,
    StreamEvent,
    StreamFailed,
    ThreadAction,
)
from ..core.content import MalformedToolRequest, PendingToolUse, TextBlock, ToolRequest, ToolResultBlock
from ..core.errors import ProviderError, ThreadloomError, ThreadStateError
from ..core.types import (
    ABORTED_USAGE,
    Compacting,
    ConversationState,
    ErrorState,
    IdCounter,
    InputMessage,
    MessageId,
    MessageInFlight,
    Role,
    StopReason,
    Stopped,
    ThreadId,
    Usage,
    Yielded,
)
from ..events import (
    AttentionRequired,
    ConversationStateChanged,
    EventBus,
    MessageUpdated,
    ResubmitRequested,
)
from ..services import telemetry
from ..services.settings import ChatOptions, Profile
from ..utils.tasks import spawn_task
from .commands import parse_user_input
from .message import Message, StopInfo, serialize_history

__all__ = ["AutoRespondResult", "InFlightRequest", "Thread"]

LOGGER = logging.getLogger(__name__)

_UNRUN_TOOL_RESULT = "Tool request was aborted before it ran."


class AutoRespondResult(str, Enum):
    DID_AUTORESPOND = "did_autorespond"
    WAITING_FOR_TOOL_INPUT = "waiting_for_tool_input"
    YIELDED_TO_PARENT = "yielded_to_parent"
    NO_ACTION_NEEDED = "no_action_needed"


class InFlightRequest:
    """Cancel handle for one turn: context preparation, provider call and result wait.

    ``seq`` tags every action the turn produces so late events from an
    aborted turn are recognised and ignored.
    """

    __slots__ = ("seq", "prepare_task", "provider_request", "wait_task")

    def __init__(self, seq: int) -> None:
        self.seq = seq
        self.prepare_task: asyncio.Task[Any] | None = None
        self.provider_request: ProviderRequest | None = None
        self.wait_task: asyncio.Task[Any] | None = None

    def abort(self) -> None:
        if self.prepare_task is not None and not self.prepare_task.done():
            self.prepare_task.cancel()
        if self.provider_request is not None:
            self.provider_request.abort()
        if self.wait_task is not None and not self.wait_task.done():
            self.wait_task.cancel()


class Thread:
    """One model conversation.

    All mutation happens in :meth:`update` and :meth:`update_tool`, which the
    chat dispatcher calls one action at a time. Provider calls and context
    reads run as background tasks that report back by dispatching actions.
    """

    def __init__(
        self,
        *,
        thread_id: ThreadId,
        profile: Profile,
        options: ChatOptions,
        provider: Provider,
        registry: ToolRegistry,
        context_manager: ContextManager,
        dispatch: Callable[[Action], None],
        threads: ThreadResultSource,
        bus: EventBus[Any] | None = None,
        parent_thread_id: ThreadId | None = None,
        allowed_tools: Sequence[str] | None = None,
        system_prompt: str | None = None,
        tasks: MutableSet[asyncio.Task[Any]] | None = None,
    ) -> None:
        self.id = thread_id
        self.profile = profile
        self.options = options
        self.parent_thread_id = parent_thread_id
        self.context_manager = context_manager
        self.provider = provider
        self.registry = registry
        self.bus = bus
        self.tool_names = registry.resolve_tool_names(allowed_tools, subagent=self.is_subagent)
        if self.is_subagent:
            self.system_prompt = subagent_system_prompt(extra=system_prompt)
        else:
            self.system_prompt = base_system_prompt(extra=system_prompt)

        self.messages: list[Message] = []
        self.state: ConversationState = Stopped(stop_reason=StopReason.END_TURN, usage=Usage())
        self.pending_messages: list[InputMessage] = []
        self.title: str | None = None
        self.resubmit_text: str | None = None
        self.tools = ToolManager(registry)

        self._dispatch = dispatch
        self._tasks: MutableSet[asyncio.Task[Any]] = tasks if tasks is not None else set()
        self._message_ids = IdCounter()
        self._request_seq = IdCounter()
        self._turn_start = 0
        self._turn_inputs: list[str] = []
        self._tool_context = ToolContext(
            thread_id=thread_id,
            dispatch=dispatch,
            threads=threads,
            options=options,
            bus=bus,
            tasks=self._tasks,
        )

    def __repr__(self) -> str:
        return f"Thread(id={self.id}, state={self.state.kind}, messages={len(self.messages)})"

    @property
    def is_subagent(self) -> bool:
        return self.parent_thread_id is not None

    # ------------------------------------------------------------------
    # Action handling
    # ------------------------------------------------------------------
    def update(self, action: Action) -> None:
        if isinstance(action, SendMessage):
            self.send_messages(action.messages)
        elif isinstance(action, AbortRequest):
            self.abort()
        elif isinstance(action, RequestPrepared):
            self._on_request_prepared(action)
        elif isinstance(action, StreamEvent):
            self._on_stream_event(action)
        elif isinstance(action, StreamCompleted):
            self._on_stream_completed(action)
        elif isinstance(action, StreamFailed):
            self._on_stream_failed(action)
        elif isinstance(action, ChildThreadSettled):
            self._on_child_settled(action)
        else:
            LOGGER.warning("Thread %s ignored unsupported action %s", self.id, type(action).__name__)

    def update_tool(self, request_id: str, action: Action) -> None:
        """Deliver *action* to one tool, then re-check whether the turn can continue."""

        if self.tools.update(request_id, action):
            self.maybe_auto_respond()

    def send_messages(self, messages: Sequence[InputMessage]) -> None:
        """Start a turn with *messages*, or queue them if they are all ``@async``.

        A busy thread (request in flight or tools still running) queues
        ``@async`` input for the next turn; any other input aborts the
        outstanding work first.
        """

        if not messages:
            return
        if isinstance(self.state, Compacting):
            LOGGER.warning("Thread %s is compacting; dropping %d message(s)", self.id, len(messages))
            return

        parsed = [(message, parse_user_input(message.text)) for message in messages]
        if self.is_busy():
            if all(item.is_async for _, item in parsed):
                self.pending_messages.extend(InputMessage(text=item.text, kind=message.kind) for message, item in parsed)
                LOGGER.debug("Thread %s queued %d message(s) while busy", self.id, len(parsed))
                return
            self.abort()
        self._start_turn([InputMessage(text=item.text, kind=message.kind) for message, item in parsed])

    def abort(self) -> None:
        """Cancel the outstanding request and every unfinished tool.

        Idle, yielded, failed and compacting threads are left as they are, so
        calling this twice has the same effect as calling it once.
        """

        state = self.state
        self.pending_messages.clear()
        if isinstance(state, MessageInFlight):
            state.cancel_handle.abort()
        elif not self._has_unfinished_tools():
            return

        assistant = self._last_assistant()
        if assistant is not None:
            for request in assistant.tool_requests():
                tool = self.tools.get(request.id)
                if tool is not None:
                    tool.abort()
            dropped = assistant.drop_incomplete()
            if dropped:
                LOGGER.debug("Thread %s dropped %d unanswered server tool call(s)", self.id, len(dropped))
            if assistant.stop is None:
                assistant.stop = StopInfo(stop_reason=StopReason.ABORTED, usage=ABORTED_USAGE)
            if assistant.is_empty and self.messages and self.messages[-1] is assistant:
                self.messages.pop()

        self._set_state(Stopped(stop_reason=StopReason.ABORTED, usage=ABORTED_USAGE))
        telemetry.emit("thread.aborted", {"thread_id": self.id})

    def fail_compaction(self, error: str) -> None:
        """Leave ``Compacting`` after the successor thread could not be built.

        The history is kept, so the user can keep talking to this thread.
        """

        if not isinstance(self.state, Compacting):
            LOGGER.debug("Thread %s is not compacting; ignoring compaction failure", self.id)
            return
        LOGGER.warning("Thread %s could not be compacted: %s", self.id, error)
        self._set_state(
            ErrorState(error=ThreadloomError(f"Compaction failed: {error}"), last_assistant_message=self._last_assistant())
        )

    def maybe_auto_respond(self) -> AutoRespondResult:
        """Send tool results back once every tool of the last turn is done."""

        state = self.state
        if not isinstance(state, Stopped) or state.stop_reason is not StopReason.TOOL_USE:
            return AutoRespondResult.NO_ACTION_NEEDED
        assistant = self._last_assistant()
        if assistant is None:
            return AutoRespondResult.NO_ACTION_NEEDED

        for request in assistant.tool_requests():
            if request.tool_name == YIELD_TO_PARENT:
                return AutoRespondResult.YIELDED_TO_PARENT
            tool = self.tools.get(request.id)
            if tool is None:
                LOGGER.error("Thread %s has no tool for request %s", self.id, request.id)
                continue
            if not tool.is_done():
                return AutoRespondResult.WAITING_FOR_TOOL_INPUT

        self._start_turn([])
        return AutoRespondResult.DID_AUTORESPOND

    def is_busy(self) -> bool:
        return isinstance(self.state, MessageInFlight) or self._has_unfinished_tools()

    def wire_messages(self) -> list[Any]:
        """Return the history exactly as the next provider request would send it."""

        return serialize_history(self.messages, self._tool_result_for)

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------
    def _start_turn(self, inputs: Sequence[InputMessage]) -> None:
        if isinstance(self.state, MessageInFlight):
            raise ThreadStateError(f"Thread {self.id} already has a request in flight")

        queued, self.pending_messages = self.pending_messages, []
        combined = [*queued, *inputs]
        self._turn_start = len(self.messages)
        self._turn_inputs = [message.text for message in combined if message.kind == "user"]

        blocks: list[TextBlock] = []
        for message in combined:
            parsed = parse_user_input(message.text)
            if parsed.files:
                self.context_manager.add_files(parsed.files)
            text = parsed.model_text() if message.kind == "user" else message.text
            if text:
                blocks.append(TextBlock(text=text))
        if blocks:
            self.messages.append(Message(MessageId(self._message_ids.next()), Role.USER, blocks))
            if self.title is None and self._turn_inputs:
                self.title = self._make_title(self._turn_inputs[0])

        request = InFlightRequest(self._request_seq.next())
        self._set_state(MessageInFlight(cancel_handle=request))
        request.prepare_task = spawn_task(
            self._prepare_request(request.seq),
            name=f"thread-{self.id}:prepare-{request.seq}",
            registry=self._tasks,
        )

    async def _prepare_request(self, seq: int) -> None:
        try:
            updates = await self.context_manager.get_context_update()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._dispatch(ThreadAction(self.id, StreamFailed(seq=seq, error=exc)))
            return
        self._dispatch(ThreadAction(self.id, RequestPrepared(seq=seq, context_blocks=context_updates_to_content(updates))))

    def _on_request_prepared(self, action: RequestPrepared) -> None:
        request = self._current_request(action.seq)
        if request is None:
            LOGGER.debug("Thread %s ignored stale request preparation %s", self.id, action.seq)
            return

        if action.context_blocks:
            turn_message = self.messages[self._turn_start] if len(self.messages) > self._turn_start else None
            if turn_message is not None and turn_message.role is Role.USER:
                turn_message.content[0:0] = list(action.context_blocks)
            else:
                self.messages.append(
                    Message(MessageId(self._message_ids.next()), Role.USER, action.context_blocks)
                )

        seq = action.seq

        def on_stream_event(event: ProviderStreamEvent) -> None:
            self._dispatch(ThreadAction(self.id, StreamEvent(seq=seq, event=event)))

        telemetry.emit(
            "provider.request",
            {"thread_id": self.id, "seq": seq, "model": self.profile.model, "messages": len(self.messages)},
        )
        try:
            request.provider_request = self.provider.send_message(
                model=self.profile.model,
                messages=self.wire_messages(),
                tools=self.registry.list_specs(self.tool_names),
                on_stream_event=on_stream_event,
                options=SendOptions(system_prompt=self.system_prompt, thinking=self.profile.thinking),
            )
        except Exception as exc:
            LOGGER.debug("Provider rejected request for thread %s", self.id, exc_info=True)
            self._fail_turn(exc)
            return
        request.wait_task = spawn_task(
            self._await_response(seq, request.provider_request),
            name=f"thread-{self.id}:request-{seq}",
            registry=self._tasks,
        )

    async def _await_response(self, seq: int, provider_request: ProviderRequest) -> None:
        try:
            result = await provider_request.promise
        except asyncio.CancelledError:
            if provider_request.aborted:
                raise
            error: BaseException = ProviderError("Provider request was cancelled")
            self._dispatch(ThreadAction(self.id, StreamFailed(seq=seq, error=error)))
            return
        except Exception as exc:
            self._dispatch(ThreadAction(self.id, StreamFailed(seq=seq, error=exc)))
            return
        self._dispatch(
            ThreadAction(self.id, StreamCompleted(seq=seq, stop_reason=result.stop_reason, usage=result.usage))
        )

    def _on_stream_event(self, action: StreamEvent) -> None:
        if self._current_request(action.seq) is None:
            LOGGER.debug("Thread %s ignored stale stream event for request %s", self.id, action.seq)
            return
        message = self._streaming_message(create=True)
        assert message is not None
        message.apply_stream_event(action.event, parse_tool=self._parse_tool)
        if self.bus is not None:
            self.bus.publish(MessageUpdated(thread_id=self.id, message_id=message.id))

    def _on_stream_completed(self, action: StreamCompleted) -> None:
        if self._current_request(action.seq) is None:
            LOGGER.debug("Thread %s ignored stale completion for request %s", self.id, action.seq)
            return
        assistant = self._streaming_message(create=False)
        if assistant is not None:
            assistant.finalize(action.stop_reason, action.usage)
        self._set_state(Stopped(stop_reason=action.stop_reason, usage=action.usage))

        if action.stop_reason is StopReason.TOOL_USE:
            self._handle_tool_use(assistant)
        elif action.stop_reason is StopReason.END_TURN:
            if self.pending_messages:
                self._start_turn([])
            else:
                self._request_attention("end_turn")

    def _handle_tool_use(self, assistant: Message | None) -> None:
        requests = assistant.tool_requests() if assistant is not None else []
        tools: list[Tool] = [self.tools.init_tool(request, self._tool_context) for request in requests]

        yielded = next((request for request in requests if request.tool_name == YIELD_TO_PARENT), None)
        if yielded is not None:
            response = str(yielded.input.get("result", ""))
            self._set_state(Yielded(response=response))
            telemetry.emit("thread.yielded", {"thread_id": self.id, "parent_thread_id": self.parent_thread_id})
            return

        compact = next((request for request in requests if request.tool_name == COMPACT_THREAD), None)
        if compact is not None:
            self._set_state(Compacting())
            self._dispatch(
                CompactThread(
                    thread_id=self.id,
                    summary=str(compact.input.get("summary", "")),
                    context_files=tuple(compact.input.get("context_files", ())),
                    continuation=compact.input.get("continuation"),
                )
            )
            return

        if any(tool.is_pending_user_action() for tool in tools):
            LOGGER.debug("Thread %s is waiting for tool approval", self.id)
        self.maybe_auto_respond()

    def _on_stream_failed(self, action: StreamFailed) -> None:
        if self._current_request(action.seq) is None:
            LOGGER.debug("Thread %s ignored stale failure for request %s", self.id, action.seq)
            return
        self._fail_turn(action.error)

    def _fail_turn(self, error: BaseException) -> None:
        """Roll back the failed turn and offer the user's text for resubmission."""

        evicted = self.messages[self._turn_start:]
        del self.messages[self._turn_start:]
        last_assistant = next((message for message in reversed(evicted) if message.role is Role.ASSISTANT), None)
        self.resubmit_text = "\n\n".join(text for text in self._turn_inputs if text) or None
        self._turn_inputs = []

        LOGGER.warning("Thread %s request failed: %s", self.id, error)
        self._set_state(ErrorState(error=error, last_assistant_message=last_assistant))
        telemetry.emit("thread.error", {"thread_id": self.id, "error": str(error), "evicted": len(evicted)})
        if self.resubmit_text and self.bus is not None:
            self.bus.publish(ResubmitRequested(thread_id=self.id, text=self.resubmit_text))

    def _on_child_settled(self, action: ChildThreadSettled) -> None:
        for tool in self.tools.active():
            if tool.watches_threads:
                tool.update(CheckThreads())
        LOGGER.debug("Thread %s rechecked watchers after child %s settled", self.id, action.child_thread_id)
        self.maybe_auto_respond()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _current_request(self, seq: int) -> InFlightRequest | None:
        state = self.state
        if isinstance(state, MessageInFlight) and isinstance(state.cancel_handle, InFlightRequest):
            if state.cancel_handle.seq == seq:
                return state.cancel_handle
        return None

    def _streaming_message(self, *, create: bool) -> Message | None:
        if len(self.messages) > self._turn_start:
            last = self.messages[-1]
            if last.role is Role.ASSISTANT and last.stop is None:
                return last
        if not create:
            return None
        message = Message(MessageId(self._message_ids.next()), Role.ASSISTANT)
        self.messages.append(message)
        return message

    def _last_assistant(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role is Role.ASSISTANT:
                return message
        return None

    def _has_unfinished_tools(self) -> bool:
        state = self.state
        if not isinstance(state, Stopped) or state.stop_reason is not StopReason.TOOL_USE:
            return False
        assistant = self._last_assistant()
        if assistant is None:
            return False
        for request in assistant.tool_requests():
            tool = self.tools.get(request.id)
            if tool is not None and not tool.is_done():
                return True
        return False

    def _parse_tool(self, pending: PendingToolUse) -> ToolRequest | MalformedToolRequest:
        return self.registry.parse_request(
            request_id=pending.id,
            tool_name=pending.tool_name,
            raw_input=pending.partial_json,
            allowed=self.tool_names,
        )

    def _tool_result_for(self, request: ToolRequest) -> ToolResultBlock:
        tool = self.tools.get(request.id)
        if tool is None:
            return ToolResultBlock(tool_use_id=request.id, content=_UNRUN_TOOL_RESULT, is_error=True)
        return tool.get_tool_result()

    def _set_state(self, state: ConversationState) -> None:
        previous = self.state
        self.state = state
        LOGGER.debug("Thread %s: %s -> %s", self.id, previous.kind, state.kind)
        telemetry.emit("thread.state_changed", {"thread_id": self.id, "from": previous.kind, "to": state.kind})
        if self.bus is not None:
            self.bus.publish(ConversationStateChanged(thread_id=self.id, state=state))

    def _request_attention(self, reason: str) -> None:
        if self.options.chime_on_attention and self.bus is not None:
            self.bus.publish(AttentionRequired(thread_id=self.id, reason=reason))

    def _make_title(self, text: str) -> str:
        first_line = next((line.strip() for line in text.splitlines() if line.strip()), "")
        limit = self.options.max_title_length
        if len(first_line) <= limit:
            return first_line
        return first_line[: limit - 1].rstrip() + "…"

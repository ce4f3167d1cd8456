"""Registry of threads: creation, selection, compaction and subagents."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from ..ai.providers.base import Provider
from ..ai.tools.registry import ToolRegistry
from ..ai.tools.wiring import default_registry
from ..context.manager import ContextManager
from ..core.actions import (
    AbortRequest,
    Action,
    ChildThreadSettled,
    CompactThread,
    SelectThread,
    SendMessage,
    SpawnSubagentThread,
    SubagentCreated,
    ThreadAction,
    ThreadCreationFailed,
    ThreadReady,
    ToolAction,
)
from ..core.errors import ThreadloomError, UnknownThreadError
from ..core.types import (
    ErrorState,
    IdCounter,
    InputMessage,
    ThreadId,
    ThreadResult,
    Yielded,
    describe_state,
    is_terminal_stop,
)
from ..events import CompactionFailed, EventBus, ThreadCompacted, ThreadCreated, ThreadSelected
from ..services import telemetry
from ..services.settings import ChatOptions, Profile
from ..utils.tasks import cancel_tasks, spawn_task
from .dispatch import Dispatcher
from .thread import Thread

__all__ = ["WrapperState", "ThreadWrapper", "ThreadSummary", "Chat", "ContextFactory"]

LOGGER = logging.getLogger(__name__)

ContextFactory = Callable[[Sequence[str]], Awaitable[ContextManager]]


class WrapperState(str, Enum):
    PENDING = "pending"
    INITIALIZED = "initialized"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class _CreationRequest:
    """What to do once a pending thread's context is ready."""

    profile: Profile
    allowed_tools: Sequence[str] | None = None
    system_prompt: str | None = None
    initial_prompt: str | None = None
    select: bool = False
    spawned_by: SpawnSubagentThread | None = None
    compacted_from: ThreadId | None = None


class ThreadWrapper:
    """Registry entry for one thread id.

    ``parent_thread_id`` is fixed when the entry is created.
    """

    __slots__ = ("thread_id", "_parent_thread_id", "state", "thread", "error", "creation", "notified_state")

    def __init__(
        self,
        thread_id: ThreadId,
        parent_thread_id: ThreadId | None,
        *,
        creation: _CreationRequest | None = None,
    ) -> None:
        self.thread_id = thread_id
        self._parent_thread_id = parent_thread_id
        self.state = WrapperState.PENDING
        self.thread: Thread | None = None
        self.error: str | None = None
        self.creation = creation
        # Last terminal state reported to the parent.
        self.notified_state: Any = None

    @property
    def parent_thread_id(self) -> ThreadId | None:
        return self._parent_thread_id

    def __repr__(self) -> str:
        return f"ThreadWrapper(thread_id={self.thread_id}, state={self.state.value}, parent={self._parent_thread_id})"


@dataclass(slots=True, frozen=True)
class ThreadSummary:
    thread_id: ThreadId
    title: str | None
    parent_thread_id: ThreadId | None
    status: str
    active: bool


class Chat:
    """Owns every thread of a session, keyed by :data:`ThreadId`.

    Threads refer to one another only by id; parent and child links are
    resolved through this registry. All mutation runs through
    :attr:`dispatcher`.
    """

    def __init__(
        self,
        *,
        provider: Provider,
        options: ChatOptions | None = None,
        registry: ToolRegistry | None = None,
        bus: EventBus[Any] | None = None,
        cwd: Path | str | None = None,
        context_factory: ContextFactory | None = None,
    ) -> None:
        self.provider = provider
        self.options = options or ChatOptions()
        self.registry = registry or default_registry()
        self.bus = bus if bus is not None else EventBus()
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.dispatcher = Dispatcher(self.update)
        self.active_thread_id: ThreadId | None = None
        self._context_factory = context_factory or self._default_context_factory
        self._thread_ids = IdCounter()
        self._wrappers: dict[ThreadId, ThreadWrapper] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def dispatch(self, action: Action) -> None:
        self.dispatcher.dispatch(action)

    async def new_thread(
        self,
        *,
        profile: Profile | None = None,
        context_files: Sequence[str] = (),
        select: bool = True,
    ) -> ThreadId:
        """Create a top-level thread and wait until it is ready.

        Raises:
            ThreadloomError: If the thread's context could not be built.
        """

        files = [*self.options.auto_context, *context_files]
        thread_id, task = self._begin_thread(
            parent_thread_id=None,
            context_files=files,
            creation=_CreationRequest(profile=profile or self.options.profile, select=select),
        )
        await task
        wrapper = self._wrappers[thread_id]
        if wrapper.state is WrapperState.ERROR:
            raise ThreadloomError(f"Failed to create thread {thread_id}: {wrapper.error}")
        return thread_id

    def send_message(self, thread_id: ThreadId, text: str) -> None:
        self.dispatch(ThreadAction(thread_id, SendMessage(messages=(InputMessage(text=text),))))

    def abort(self, thread_id: ThreadId) -> None:
        """Abort *thread_id* now; the parent is notified if the thread was a subagent."""

        self.get_thread(thread_id)
        self.dispatch(ThreadAction(thread_id, AbortRequest()))

    def select(self, thread_id: ThreadId) -> None:
        self.dispatch(SelectThread(thread_id))

    def get_wrapper(self, thread_id: ThreadId) -> ThreadWrapper:
        wrapper = self._wrappers.get(thread_id)
        if wrapper is None:
            raise UnknownThreadError(thread_id)
        return wrapper

    def get_thread(self, thread_id: ThreadId) -> Thread:
        wrapper = self.get_wrapper(thread_id)
        if wrapper.thread is None:
            raise UnknownThreadError(thread_id)
        return wrapper.thread

    @property
    def active_thread(self) -> Thread | None:
        if self.active_thread_id is None:
            return None
        return self._wrappers[self.active_thread_id].thread

    def thread_ids(self) -> list[ThreadId]:
        return list(self._wrappers)

    def children_of(self, thread_id: ThreadId) -> list[ThreadId]:
        return [wrapper.thread_id for wrapper in self._wrappers.values() if wrapper.parent_thread_id == thread_id]

    def get_thread_result(self, thread_id: ThreadId) -> ThreadResult:
        """Return the outcome of *thread_id* as its parent sees it.

        Yielded threads are done with their response. Failed creation, a
        provider error and an aborted stop are done with an error. Anything
        else, including a thread still being created, is pending.
        """

        wrapper = self._wrappers.get(thread_id)
        if wrapper is None:
            return ThreadResult.failure(f"Thread {thread_id} not found")
        if wrapper.state is WrapperState.ERROR:
            return ThreadResult.failure(wrapper.error or "Thread failed to initialize")
        if wrapper.thread is None:
            return ThreadResult.pending()
        state = wrapper.thread.state
        if not is_terminal_stop(state):
            return ThreadResult.pending()
        if isinstance(state, Yielded):
            return ThreadResult.success(state.response)
        if isinstance(state, ErrorState):
            return ThreadResult.failure(str(state.error))
        return ThreadResult.failure("Thread was aborted")

    def threads_overview(self) -> list[ThreadSummary]:
        summaries = []
        for wrapper in self._wrappers.values():
            if wrapper.state is WrapperState.INITIALIZED and wrapper.thread is not None:
                status = describe_state(wrapper.thread.state)
                title = wrapper.thread.title
            else:
                status = wrapper.state.value if wrapper.error is None else f"error: {wrapper.error}"
                title = None
            summaries.append(
                ThreadSummary(
                    thread_id=wrapper.thread_id,
                    title=title,
                    parent_thread_id=wrapper.parent_thread_id,
                    status=status,
                    active=wrapper.thread_id == self.active_thread_id,
                )
            )
        return summaries

    async def aclose(self) -> None:
        """Abort every thread and cancel outstanding background work."""

        for wrapper in list(self._wrappers.values()):
            if wrapper.thread is not None:
                wrapper.thread.abort()
        tasks = list(self._tasks)
        cancel_tasks(self._tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Action handling
    # ------------------------------------------------------------------
    def update(self, action: Action) -> None:
        if isinstance(action, ThreadAction):
            self.get_thread(action.thread_id).update(action.action)
            self._notify_parent(action.thread_id)
        elif isinstance(action, ToolAction):
            self.get_thread(action.thread_id).update_tool(action.request_id, action.action)
            self._notify_parent(action.thread_id)
        elif isinstance(action, SelectThread):
            self._select(action.thread_id)
        elif isinstance(action, SpawnSubagentThread):
            self._spawn_subagent_thread(action)
        elif isinstance(action, CompactThread):
            self._compact_thread(action)
        elif isinstance(action, ThreadReady):
            self._on_thread_ready(action)
        elif isinstance(action, ThreadCreationFailed):
            self._on_thread_failed(action)
        else:
            LOGGER.warning("Chat ignored unsupported action %s", type(action).__name__)

    def _select(self, thread_id: ThreadId) -> None:
        wrapper = self.get_wrapper(thread_id)
        if wrapper.state is not WrapperState.INITIALIZED:
            LOGGER.warning("Cannot select thread %s in state %s", thread_id, wrapper.state.value)
            return
        self.active_thread_id = thread_id
        self.bus.publish(ThreadSelected(thread_id=thread_id))

    def _spawn_subagent_thread(self, action: SpawnSubagentThread) -> None:
        parent = self._wrappers.get(action.parent_thread_id)
        if parent is None or parent.thread is None:
            error = f"Parent thread {action.parent_thread_id} not found"
            LOGGER.warning("Spawn requested by unknown thread %s", action.parent_thread_id)
            telemetry.emit("subagent.spawn_failed", {"parent_thread_id": action.parent_thread_id, "error": error})
            self.dispatch(ToolAction(action.parent_thread_id, action.request_id, SubagentCreated(error=error, tag=action.tag)))
            return
        self._begin_thread(
            parent_thread_id=action.parent_thread_id,
            context_files=action.context_files,
            creation=_CreationRequest(
                profile=parent.thread.profile,
                allowed_tools=action.allowed_tools,
                system_prompt=action.system_prompt,
                initial_prompt=action.prompt,
                spawned_by=action,
            ),
        )

    def _compact_thread(self, action: CompactThread) -> None:
        source = self.get_thread(action.thread_id)
        prompt = action.summary.strip()
        if action.continuation:
            prompt = f"{prompt}\n\n{action.continuation.strip()}" if prompt else action.continuation.strip()
        self._begin_thread(
            parent_thread_id=source.parent_thread_id,
            context_files=action.context_files,
            creation=_CreationRequest(
                profile=source.profile,
                initial_prompt=prompt or None,
                select=self.active_thread_id == action.thread_id,
                compacted_from=action.thread_id,
            ),
        )

    def _begin_thread(
        self,
        *,
        parent_thread_id: ThreadId | None,
        context_files: Sequence[str],
        creation: _CreationRequest,
    ) -> tuple[ThreadId, asyncio.Task[Any]]:
        thread_id = ThreadId(self._thread_ids.next())
        self._wrappers[thread_id] = ThreadWrapper(
            thread_id=thread_id,
            parent_thread_id=parent_thread_id,
            creation=creation,
        )
        task = spawn_task(
            self._build_context(thread_id, list(context_files)),
            name=f"chat:create-thread-{thread_id}",
            registry=self._tasks,
        )
        return thread_id, task

    async def _build_context(self, thread_id: ThreadId, context_files: list[str]) -> None:
        """Await context construction, then report exactly one outcome."""

        try:
            context_manager = await self._context_factory(context_files)
        except asyncio.CancelledError:
            self.dispatch(ThreadCreationFailed(thread_id=thread_id, error="Thread creation was cancelled"))
            raise
        except Exception as exc:
            LOGGER.debug("Context construction failed for thread %s", thread_id, exc_info=True)
            self.dispatch(ThreadCreationFailed(thread_id=thread_id, error=str(exc) or type(exc).__name__))
        else:
            self.dispatch(ThreadReady(thread_id=thread_id, context_manager=context_manager))

    def _on_thread_ready(self, action: ThreadReady) -> None:
        wrapper = self.get_wrapper(action.thread_id)
        creation = wrapper.creation
        if wrapper.state is not WrapperState.PENDING or creation is None:
            LOGGER.warning("Thread %s is not pending; ignoring readiness", action.thread_id)
            return
        try:
            thread = Thread(
                thread_id=action.thread_id,
                profile=creation.profile,
                options=self.options,
                provider=self.provider,
                registry=self.registry,
                context_manager=action.context_manager,
                dispatch=self.dispatch,
                threads=self,
                bus=self.bus,
                parent_thread_id=wrapper.parent_thread_id,
                allowed_tools=creation.allowed_tools,
                system_prompt=creation.system_prompt,
                tasks=self._tasks,
            )
        except Exception as exc:
            LOGGER.exception("Unable to construct thread %s", action.thread_id)
            self._on_thread_failed(ThreadCreationFailed(thread_id=action.thread_id, error=str(exc)))
            return

        wrapper.thread = thread
        wrapper.state = WrapperState.INITIALIZED
        wrapper.creation = None
        self.bus.publish(ThreadCreated(thread_id=thread.id, parent_thread_id=wrapper.parent_thread_id))
        telemetry.emit("thread.created", {"thread_id": thread.id, "parent_thread_id": wrapper.parent_thread_id})

        spawn = creation.spawned_by
        if spawn is not None:
            telemetry.emit("subagent.spawned", {"thread_id": thread.id, "parent_thread_id": spawn.parent_thread_id})
            self.dispatch(
                ToolAction(
                    spawn.parent_thread_id,
                    spawn.request_id,
                    SubagentCreated(thread_id=thread.id, tag=spawn.tag),
                )
            )
        if creation.select:
            self._select(thread.id)
        if creation.compacted_from is not None:
            self.bus.publish(ThreadCompacted(source_thread_id=creation.compacted_from, thread_id=thread.id))
            telemetry.emit("thread.compacted", {"source_thread_id": creation.compacted_from, "thread_id": thread.id})
        if creation.initial_prompt:
            thread.send_messages([InputMessage(text=creation.initial_prompt)])

    def _on_thread_failed(self, action: ThreadCreationFailed) -> None:
        wrapper = self.get_wrapper(action.thread_id)
        if wrapper.state is not WrapperState.PENDING:
            LOGGER.warning("Thread %s is not pending; ignoring failure", action.thread_id)
            return
        creation = wrapper.creation
        wrapper.state = WrapperState.ERROR
        wrapper.error = action.error
        wrapper.creation = None
        LOGGER.warning("Thread %s failed to initialize: %s", action.thread_id, action.error)

        spawn = creation.spawned_by if creation is not None else None
        if spawn is not None:
            telemetry.emit("subagent.spawn_failed", {"parent_thread_id": spawn.parent_thread_id, "error": action.error})
            self.dispatch(
                ToolAction(
                    spawn.parent_thread_id,
                    spawn.request_id,
                    SubagentCreated(error=action.error, tag=spawn.tag),
                )
            )

        source_id = creation.compacted_from if creation is not None else None
        if source_id is not None:
            source = self._wrappers.get(source_id)
            if source is None or source.thread is None:
                LOGGER.warning("Compacted thread %s is gone", source_id)
                return
            source.thread.fail_compaction(action.error)
            self.bus.publish(CompactionFailed(source_thread_id=source_id, error=action.error))
            telemetry.emit("thread.compaction_failed", {"source_thread_id": source_id, "error": action.error})
            self._notify_parent(source_id)

    def _notify_parent(self, thread_id: ThreadId) -> None:
        """Tell the parent once per transition of *thread_id* into a terminal state."""

        wrapper = self._wrappers.get(thread_id)
        if wrapper is None or wrapper.parent_thread_id is None or wrapper.thread is None:
            return
        state = wrapper.thread.state
        if state is wrapper.notified_state or not self.get_thread_result(thread_id).done:
            return
        wrapper.notified_state = state
        if wrapper.parent_thread_id not in self._wrappers:
            LOGGER.warning("Parent %s of thread %s is gone", wrapper.parent_thread_id, thread_id)
            return
        telemetry.emit("subagent.parent_notified", {"thread_id": thread_id, "parent_thread_id": wrapper.parent_thread_id})
        self.dispatch(ThreadAction(wrapper.parent_thread_id, ChildThreadSettled(child_thread_id=thread_id)))

    async def _default_context_factory(self, context_files: Sequence[str]) -> ContextManager:
        return await ContextManager.create(cwd=self.cwd, files=context_files)

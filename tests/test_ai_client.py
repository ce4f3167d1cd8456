"""Tests for the OpenAI-compatible AI client."""

from __future__ import annotations

from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Iterable, cast

import httpx
import pytest

from openai import APIConnectionError, AsyncOpenAI
from openai.types import CompletionUsage

from threadloom.ai.client import (
    AIClient,
    AIStreamEvent,
    ApproxByteCounter,
    ClientSettings,
    ToolCallHeader,
)


@dataclass
class _FakeEvent:
    """Simple structure emulating ChatCompletionStreamEvent attributes."""

    type: str
    delta: str | None = None
    content: str | None = None
    name: str | None = None
    index: int | None = None
    arguments: str | None = None
    arguments_delta: str | None = None
    chunk: Any | None = None


class _FakeStream:
    def __init__(self, events: Iterable[_FakeEvent], failure: Exception | None = None):
        self._iterator = iter(list(events))
        self._failure = failure

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> _FakeEvent:
        try:
            return next(self._iterator)
        except StopIteration as exc:
            if self._failure is not None:
                raise self._failure from None
            raise StopAsyncIteration from exc


class _FakeStreamContext:
    def __init__(self, events: Iterable[_FakeEvent], failure: Exception | None = None):
        self._events = list(events)
        self._failure = failure

    async def __aenter__(self) -> _FakeStream:
        return _FakeStream(self._events, self._failure)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class _FakeCompletions:
    def __init__(
        self,
        events: Iterable[_FakeEvent],
        *,
        connect_failures: int = 0,
        stream_failure: Exception | None = None,
    ):
        self._events = list(events)
        self._connect_failures = connect_failures
        self._stream_failure = stream_failure
        self.calls: list[dict[str, Any]] = []

    def stream(self, **kwargs: Any) -> _FakeStreamContext:
        self.calls.append(kwargs)
        if self._connect_failures:
            self._connect_failures -= 1
            raise APIConnectionError(request=httpx.Request("POST", "http://local/chat/completions"))
        return _FakeStreamContext(self._events, self._stream_failure)


def _make_client(events: Iterable[_FakeEvent], **kwargs: Any) -> SimpleNamespace:
    completions = _FakeCompletions(events, **kwargs)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _ai_client(fake_client: SimpleNamespace, **overrides: Any) -> AIClient:
    settings = ClientSettings(
        base_url="http://local",
        api_key="test",
        model="gpt-4o-mini",
        retry_min_seconds=0,
        retry_max_seconds=0,
    )
    for key, value in overrides.items():
        setattr(settings, key, value)
    return AIClient(settings, client=cast(AsyncOpenAI, fake_client))


def _chunk(*, finish_reason: str | None = None, tool_calls: list[Any] | None = None, usage: Any = None) -> Any:
    delta = SimpleNamespace(tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(finish_reason=finish_reason, delta=delta)], usage=usage)


async def _collect(client: AIClient, **kwargs: Any) -> list[AIStreamEvent]:
    return [event async for event in client.stream_chat(messages=[{"role": "user", "content": "Hi"}], **kwargs)]


@pytest.mark.asyncio
async def test_stream_chat_normalizes_delta_and_tool_events() -> None:
    events = [
        _FakeEvent(type="content.delta", delta="Hello"),
        _FakeEvent(type="content.delta", delta=""),
        _FakeEvent(
            type="tool_calls.function.arguments.delta",
            name="echo",
            index=0,
            arguments='{"text": "',
            arguments_delta='{"text": "',
        ),
        _FakeEvent(
            type="tool_calls.function.arguments.done",
            name="echo",
            index=0,
            arguments='{"text": "value"}',
        ),
        _FakeEvent(type="content.done", content="Hello"),
        _FakeEvent(type="refusal.delta"),
    ]
    fake_client = _make_client(events)

    collected = await _collect(_ai_client(fake_client))

    assert [event.type for event in collected] == [
        "content.delta",
        "tool_calls.function.arguments.delta",
        "tool_calls.function.arguments.done",
        "content.done",
    ]
    assert collected[1].arguments_delta == '{"text": "'
    assert collected[2].tool_arguments == '{"text": "value"}'
    payload = fake_client.chat.completions.calls[0]
    assert payload["messages"][0]["role"] == "user"
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_stream_chat_surfaces_chunk_headers_and_usage() -> None:
    call = SimpleNamespace(index=0, id="call-1", function=SimpleNamespace(name="echo", arguments=""))
    usage = CompletionUsage(prompt_tokens=12, completion_tokens=3, total_tokens=15)
    events = [
        _FakeEvent(type="chunk", chunk=_chunk(tool_calls=[call])),
        _FakeEvent(type="chunk", chunk=_chunk()),
        _FakeEvent(type="chunk", chunk=_chunk(finish_reason="tool_calls")),
        _FakeEvent(type="chunk", chunk=SimpleNamespace(choices=[], usage=usage)),
    ]

    collected = await _collect(_ai_client(_make_client(events)))

    assert len(collected) == 3
    assert collected[0].tool_calls == (ToolCallHeader(index=0, id="call-1", name="echo"),)
    assert collected[1].finish_reason == "tool_calls"
    assert collected[2].usage is not None
    assert collected[2].usage["prompt_tokens"] == 12


@pytest.mark.asyncio
async def test_stream_chat_builds_payload_from_arguments() -> None:
    fake_client = _make_client([_FakeEvent(type="content.done", content="ok")])
    client = _ai_client(fake_client, metadata={"app": "threadloom"})
    tools = [{"type": "function", "function": {"name": "echo", "parameters": {"type": "object"}}}]

    await _collect(client, model="gpt-4.1", tools=tools, temperature=0.2, max_tokens=64, metadata={"thread": "1"})

    payload = fake_client.chat.completions.calls[0]
    assert payload["model"] == "gpt-4.1"
    assert payload["tools"] == tools
    assert payload["temperature"] == 0.2
    assert payload["max_tokens"] == 64
    assert payload["metadata"] == {"app": "threadloom", "thread": "1"}


@pytest.mark.asyncio
async def test_stream_chat_requires_messages() -> None:
    client = _ai_client(_make_client([]))

    generator = client.stream_chat(messages=[])
    with pytest.raises(ValueError):
        await generator.__anext__()


@pytest.mark.asyncio
async def test_connection_errors_are_retried_before_streaming() -> None:
    fake_client = _make_client([_FakeEvent(type="content.delta", delta="ok")], connect_failures=1)

    collected = await _collect(_ai_client(fake_client, max_retries=3))

    assert [event.content for event in collected] == ["ok"]
    assert len(fake_client.chat.completions.calls) == 2


@pytest.mark.asyncio
async def test_retries_give_up_after_max_attempts() -> None:
    fake_client = _make_client([], connect_failures=5)

    with pytest.raises(APIConnectionError):
        await _collect(_ai_client(fake_client, max_retries=2))

    assert len(fake_client.chat.completions.calls) == 2


@pytest.mark.asyncio
async def test_failure_after_output_is_not_retried() -> None:
    failure = APIConnectionError(request=httpx.Request("POST", "http://local/chat/completions"))
    fake_client = _make_client([_FakeEvent(type="content.delta", delta="partial")], stream_failure=failure)
    collected: list[AIStreamEvent] = []

    with pytest.raises(RuntimeError) as excinfo:
        async for event in _ai_client(fake_client, max_retries=3).stream_chat(
            messages=[{"role": "user", "content": "Hi"}]
        ):
            collected.append(event)

    assert excinfo.value.__cause__ is failure
    assert [event.content for event in collected] == ["partial"]
    assert len(fake_client.chat.completions.calls) == 1


@pytest.mark.asyncio
async def test_debug_logging_captures_prompt_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _ai_client(_make_client([_FakeEvent(type="content.done", content="done")]), debug_logging=True)
    captured: dict[str, Any] = {}

    def _capture(payload: Any) -> None:
        captured["payload"] = payload

    monkeypatch.setattr(client, "_log_prompt_payload", _capture)

    await _collect(client)

    assert captured["payload"]["messages"][0]["content"] == "Hi"


@pytest.mark.asyncio
async def test_aclose_closes_underlying_client() -> None:
    class _StubAsyncOpenAI:
        def __init__(self) -> None:
            self.closed = False

        async def close(self) -> None:
            self.closed = True

    stub = _StubAsyncOpenAI()
    client = AIClient(
        ClientSettings(base_url="http://local", api_key="test", model="stub-model"),
        client=cast(AsyncOpenAI, stub),
    )

    await client.aclose()

    assert stub.closed is True


def test_byte_counter_rounds_up() -> None:
    counter = ApproxByteCounter()

    assert counter.estimate("") == 0
    assert counter.estimate("abc") == 1
    assert counter.estimate("abcdefghi") == 3
    assert ApproxByteCounter(bytes_per_token=1).estimate("é") == 2

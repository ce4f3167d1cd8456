"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence

import httpx
from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI, RateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

__all__ = ["ApproxByteCounter", "ClientSettings", "AIStreamEvent", "ToolCallHeader", "AIClient"]

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4


class ApproxByteCounter:
    """Deterministic token estimate from UTF-8 byte length."""

    def __init__(self, *, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True, frozen=True)
class ToolCallHeader:
    """Identity of a streamed tool call, only present in raw chunks."""

    index: int
    id: str | None
    name: str | None


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming deltas.

    ``chunk`` events carry what the higher-level events omit: tool call ids,
    the finish reason and, on the last chunk, token usage.
    """

    type: str
    content: str | None = None
    tool_name: str | None = None
    tool_index: int | None = None
    tool_arguments: str | None = None
    arguments_delta: str | None = None
    finish_reason: str | None = None
    usage: Mapping[str, Any] | None = None
    tool_calls: Sequence[ToolCallHeader] = field(default_factory=tuple)


class AIClient:
    """Async client providing streaming helpers with retry semantics."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any]],
        *,
        model: str | None = None,
        tools: Iterable[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        metadata: Mapping[str, str] | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        """Stream chat completions for the provided messages.

        Retries cover connection and API failures raised before the stream
        produced anything; once events have been yielded a failure propagates.
        """

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            model=model,
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
            metadata=metadata,
            extra_params=extra_params,
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        yielded = False
        async for attempt in self._retrying():
            with attempt:
                try:
                    async with self._client.chat.completions.stream(**payload) as stream:
                        async for event in stream:
                            normalized = self._normalize_stream_event(event)
                            if normalized is not None:
                                yielded = True
                                yield normalized
                except Exception as exc:
                    if yielded:
                        raise _StreamInterrupted(exc) from exc
                    raise

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    APIError,
                    APIStatusError,
                    APIConnectionError,
                    RateLimitError,
                    httpx.TimeoutException,
                )
            ),
        )

    def _coerce_messages(self, messages: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        normalized = [dict(message) for message in messages]
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[Mapping[str, Any]],
        model: str | None,
        tools: Iterable[Mapping[str, Any]] | None,
        temperature: float | None,
        max_tokens: int | None,
        metadata: Mapping[str, str] | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self._settings.model,
            "messages": list(messages),
            "stream_options": {"include_usage": True},
        }
        merged_metadata = {**(self._settings.metadata or {}), **(metadata or {})}
        if merged_metadata:
            payload["metadata"] = merged_metadata
        tool_list = list(tools or ())
        if tool_list:
            payload["tools"] = tool_list
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if extra_params:
            payload.update(extra_params)
        return payload

    def _normalize_stream_event(self, event: ChatCompletionStreamEvent[Any]) -> AIStreamEvent | None:
        event_type = getattr(event, "type", None)
        if event_type is None:
            return None

        if event_type == "chunk":
            return self._normalize_chunk(getattr(event, "chunk", None))
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                return AIStreamEvent(type=event_type, content=str(delta_text))
            return None
        if event_type == "content.done":
            return AIStreamEvent(type=event_type, content=getattr(event, "content", None))
        if event_type in ("tool_calls.function.arguments.delta", "tool_calls.function.arguments.done"):
            return AIStreamEvent(
                type=event_type,
                tool_name=getattr(event, "name", None),
                tool_index=getattr(event, "index", None),
                tool_arguments=getattr(event, "arguments", None),
                arguments_delta=getattr(event, "arguments_delta", None),
            )
        return None

    def _normalize_chunk(self, chunk: Any) -> AIStreamEvent | None:
        if chunk is None:
            return None
        finish_reason = None
        headers: list[ToolCallHeader] = []
        for choice in getattr(chunk, "choices", None) or ():
            finish_reason = getattr(choice, "finish_reason", None) or finish_reason
            delta = getattr(choice, "delta", None)
            for call in getattr(delta, "tool_calls", None) or ():
                function = getattr(call, "function", None)
                call_id = getattr(call, "id", None)
                name = getattr(function, "name", None)
                if call_id or name:
                    headers.append(ToolCallHeader(index=int(getattr(call, "index", 0) or 0), id=call_id, name=name))
        usage = getattr(chunk, "usage", None)
        usage_payload = usage.model_dump() if hasattr(usage, "model_dump") else None
        if finish_reason is None and usage_payload is None and not headers:
            return None
        return AIStreamEvent(type="chunk", finish_reason=finish_reason, usage=usage_payload, tool_calls=tuple(headers))

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


class _StreamInterrupted(RuntimeError):
    """A stream failed after emitting events; retrying would duplicate them."""

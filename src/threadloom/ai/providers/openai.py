"""Provider backed by an OpenAI-compatible chat completions endpoint."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Sequence

from ...core.content import (
    MalformedToolRequest,
    PendingToolUse,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from ...core.types import Role, StopReason, Usage
from ...services.settings import Profile
from ..client import AIClient, AIStreamEvent, ApproxByteCounter, ClientSettings
from .base import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    MessageStop,
    ProviderMessage,
    ProviderRequest,
    ProviderResult,
    SendOptions,
    StreamCallback,
)

__all__ = ["OpenAIProvider", "to_openai_messages", "map_finish_reason"]

LOGGER = logging.getLogger(__name__)

_FINISH_REASONS: Mapping[str, StopReason] = {
    "stop": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
    "content_filter": StopReason.CONTENT,
}


def map_finish_reason(reason: str | None, *, saw_tool_calls: bool = False) -> StopReason:
    if reason is None:
        return StopReason.TOOL_USE if saw_tool_calls else StopReason.END_TURN
    mapped = _FINISH_REASONS.get(reason)
    if mapped is None:
        LOGGER.warning("Unrecognized finish_reason %r; treating as end_turn", reason)
        return StopReason.END_TURN
    return mapped


def to_openai_messages(messages: Sequence[ProviderMessage], *, system_prompt: str | None = None) -> List[Dict[str, Any]]:
    """Convert serialized history into chat completion messages.

    Tool results become ``tool`` role messages placed directly after the
    assistant message that issued the call; any user text in the same
    message follows them.
    """

    converted: List[Dict[str, Any]] = []
    if system_prompt:
        converted.append({"role": "system", "content": system_prompt})
    for message in messages:
        if message.role is Role.ASSISTANT:
            converted.append(_assistant_message(message))
            continue
        texts: list[str] = []
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                converted.append({"role": "tool", "tool_call_id": block.tool_use_id, "content": block.content})
            elif isinstance(block, TextBlock):
                texts.append(block.text)
        if texts:
            converted.append({"role": "user", "content": "\n\n".join(texts)})
    return converted


def _assistant_message(message: ProviderMessage) -> Dict[str, Any]:
    texts: list[str] = []
    calls: list[Dict[str, Any]] = []
    for block in message.content:
        if isinstance(block, TextBlock):
            texts.append(block.text)
        elif isinstance(block, ToolUseBlock):
            request = block.request
            if isinstance(request, MalformedToolRequest):
                if request.id is None:
                    continue
                name = request.tool_name or "unknown"
                arguments = request.raw_request
            else:
                name = request.tool_name
                arguments = json.dumps(dict(request.input), ensure_ascii=False)
            calls.append(
                {
                    "id": block.request_id,
                    "type": "function",
                    "function": {"name": name, "arguments": arguments},
                }
            )
    payload: Dict[str, Any] = {"role": "assistant", "content": "".join(texts) or None}
    if calls:
        payload["tool_calls"] = calls
    return payload


class _StreamTranslator:
    """Turns client stream events into content block events.

    Text and each tool call get their own block index, in arrival order.
    """

    def __init__(self, emit: StreamCallback) -> None:
        self._emit = emit
        self._next_index = 0
        self._text_index: int | None = None
        self._tool_indexes: dict[int, int] = {}
        self._tool_ids: dict[int, str] = {}
        self._tool_names: dict[int, str] = {}
        self.finish_reason: str | None = None
        self.usage: Mapping[str, Any] | None = None
        self.output_chars: list[str] = []

    @property
    def saw_tool_calls(self) -> bool:
        return bool(self._tool_indexes)

    def feed(self, event: AIStreamEvent) -> None:
        if event.type == "chunk":
            for header in event.tool_calls:
                if header.id:
                    self._tool_ids[header.index] = header.id
                if header.name:
                    self._tool_names[header.index] = header.name
            if event.finish_reason:
                self.finish_reason = event.finish_reason
            if event.usage:
                self.usage = event.usage
        elif event.type == "content.delta" and event.content:
            if self._text_index is None:
                self._text_index = self._allocate()
                self._emit(ContentBlockStart(self._text_index, TextBlock("")))
            self.output_chars.append(event.content)
            self._emit(ContentBlockDelta(self._text_index, text=event.content))
        elif event.type == "content.done":
            self._close_text()
        elif event.type == "tool_calls.function.arguments.delta":
            block_index = self._open_tool(event)
            if event.arguments_delta:
                self.output_chars.append(event.arguments_delta)
                self._emit(ContentBlockDelta(block_index, partial_json=event.arguments_delta))
        elif event.type == "tool_calls.function.arguments.done":
            block_index = self._open_tool(event)
            self._emit(ContentBlockStop(block_index))

    def close(self) -> None:
        self._close_text()

    def _open_tool(self, event: AIStreamEvent) -> int:
        tool_index = event.tool_index or 0
        existing = self._tool_indexes.get(tool_index)
        if existing is not None:
            return existing
        self._close_text()
        block_index = self._allocate()
        self._tool_indexes[tool_index] = block_index
        name = event.tool_name or self._tool_names.get(tool_index) or ""
        self._emit(
            ContentBlockStart(
                block_index,
                PendingToolUse(id=self._tool_ids.get(tool_index), tool_name=name, partial_json=""),
            )
        )
        return block_index

    def _close_text(self) -> None:
        if self._text_index is not None:
            self._emit(ContentBlockStop(self._text_index))
            self._text_index = None

    def _allocate(self) -> int:
        index = self._next_index
        self._next_index += 1
        return index


class OpenAIProvider:
    """Streams assistant messages through :class:`AIClient`."""

    def __init__(self, client: AIClient, *, counter: ApproxByteCounter | None = None) -> None:
        self._client = client
        self._counter = counter or ApproxByteCounter()

    @classmethod
    def from_profile(cls, profile: Profile) -> "OpenAIProvider":
        settings = ClientSettings(
            base_url=profile.base_url or "https://api.openai.com/v1",
            api_key=profile.api_key or "",
            model=profile.model,
        )
        return cls(AIClient(settings))

    def send_message(
        self,
        *,
        model: str,
        messages: Sequence[ProviderMessage],
        tools: Sequence[Any],
        on_stream_event: StreamCallback,
        options: SendOptions,
    ) -> ProviderRequest:
        payload = to_openai_messages(messages, system_prompt=options.system_prompt)
        tool_payload = [spec.to_openai_tool() if hasattr(spec, "to_openai_tool") else spec for spec in tools]
        return ProviderRequest.start(
            self._stream(model, payload, tool_payload, on_stream_event, options),
            name=f"provider:{model}",
        )

    async def _stream(
        self,
        model: str,
        payload: List[Dict[str, Any]],
        tools: List[Any],
        on_stream_event: StreamCallback,
        options: SendOptions,
    ) -> ProviderResult:
        translator = _StreamTranslator(on_stream_event)
        async for event in self._client.stream_chat(
            payload,
            model=model,
            tools=tools or None,
            max_tokens=options.max_tokens,
            metadata=options.metadata,
        ):
            translator.feed(event)
        translator.close()
        stop_reason = map_finish_reason(translator.finish_reason, saw_tool_calls=translator.saw_tool_calls)
        usage = self._usage(translator.usage, payload, translator.output_chars)
        on_stream_event(MessageStop(stop_reason, usage))
        return ProviderResult(stop_reason, usage)

    def _usage(self, reported: Mapping[str, Any] | None, payload: Sequence[Mapping[str, Any]], output: list[str]) -> Usage:
        if reported:
            details = reported.get("prompt_tokens_details") or {}
            cached = int(details.get("cached_tokens") or 0)
            prompt_tokens = int(reported.get("prompt_tokens") or 0)
            return Usage(
                input_tokens=prompt_tokens,
                output_tokens=int(reported.get("completion_tokens") or 0),
                cache_hits=cached,
                cache_misses=max(0, prompt_tokens - cached),
            )
        prompt_text = json.dumps(list(payload), ensure_ascii=False, default=str)
        return Usage(
            input_tokens=self._counter.estimate(prompt_text),
            output_tokens=self._counter.estimate("".join(output)),
        )

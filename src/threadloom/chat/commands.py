"""Directives recognised in user input: ``@async``, ``@compact`` and ``@file``."""

from __future__ import annotations

import re
from dataclasses import dataclass

__all__ = ["ParsedInput", "parse_user_input", "ASYNC_PREFIX", "COMPACT_DIRECTIVE"]

ASYNC_PREFIX = "@async"
COMPACT_DIRECTIVE = "@compact"

_ASYNC_PATTERN = re.compile(r"^\s*@async(?:\s+|$)")
_COMPACT_PATTERN = re.compile(r"(?<!\S)@compact\b")
_FILE_PATTERN = re.compile(r"(?<!\S)@file[: ](\S+)")

_COMPACT_INSTRUCTIONS = (
    "The user asked to compact this thread. Call the compact_thread tool now. "
    "Write a summary that keeps every decision, open task and relevant detail "
    "from the conversation so far, list only the context files that are still "
    "needed, and put what should happen next in the continuation."
)


@dataclass(slots=True, frozen=True)
class ParsedInput:
    """A user message with its directives pulled out.

    Attributes:
        text: Message text with the ``@async`` prefix removed.
        is_async: Queue behind the current turn instead of interrupting it.
        compact: The user asked the model to compact the thread.
        files: Paths named by ``@file`` directives, in order of appearance.
    """

    text: str
    is_async: bool = False
    compact: bool = False
    files: tuple[str, ...] = ()

    def model_text(self) -> str:
        """Text sent to the model, with compaction instructions appended when asked."""

        if not self.compact:
            return self.text
        return f"{self.text}\n\n{_COMPACT_INSTRUCTIONS}" if self.text.strip() else _COMPACT_INSTRUCTIONS


def parse_user_input(text: str) -> ParsedInput:
    is_async = bool(_ASYNC_PATTERN.match(text))
    body = _ASYNC_PATTERN.sub("", text, count=1) if is_async else text
    files = tuple(dict.fromkeys(match.group(1) for match in _FILE_PATTERN.finditer(body)))
    return ParsedInput(
        text=body,
        is_async=is_async,
        compact=bool(_COMPACT_PATTERN.search(body)),
        files=files,
    )

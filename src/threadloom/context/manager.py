"""Tracks the files a thread has in context and reports what changed."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from ..core.content import TextBlock
from ..utils.file_io import FileSnapshot, read_snapshot

__all__ = ["FileUpdate", "ContextManager", "context_updates_to_content"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class FileUpdate:
    """A change to a tracked file since the model last saw it.

    ``status`` is ``"added"`` the first time a file is sent, ``"changed"``
    when its bytes differ from the last send and ``"deleted"`` once it is gone.
    """

    path: str
    status: str
    text: str = ""


class ContextManager:
    """Per-thread set of context files keyed by path relative to ``cwd``."""

    def __init__(self, *, cwd: Path | str, files: Iterable[str] = ()) -> None:
        self._cwd = Path(cwd)
        self._files: dict[str, str | None] = {}
        self.add_files(files)

    @classmethod
    async def create(cls, *, cwd: Path | str, files: Sequence[str] = ()) -> "ContextManager":
        """Build a manager, failing if any requested file does not exist."""

        manager = cls(cwd=cwd)
        missing = await asyncio.to_thread(manager._find_missing, list(files))
        if missing:
            raise FileNotFoundError(f"Context file(s) not found: {', '.join(missing)}")
        manager.add_files(files)
        return manager

    @property
    def cwd(self) -> Path:
        return self._cwd

    @property
    def files(self) -> list[str]:
        return list(self._files)

    def add_files(self, paths: Iterable[str]) -> None:
        for path in paths:
            key = self._normalize(path)
            if key not in self._files:
                self._files[key] = None
                LOGGER.debug("Tracking context file %s", key)

    def remove_file(self, path: str) -> bool:
        return self._files.pop(self._normalize(path), "missing") != "missing"

    async def get_context_update(self) -> dict[str, FileUpdate]:
        """Read tracked files off the event loop and return those that changed."""

        paths = list(self._files)
        if not paths:
            return {}
        snapshots = await asyncio.to_thread(self._read_all, paths)
        updates: dict[str, FileUpdate] = {}
        for path in paths:
            if path not in self._files:
                continue
            snapshot = snapshots.get(path)
            previous = self._files[path]
            if snapshot is None:
                if previous is not None:
                    updates[path] = FileUpdate(path=path, status="deleted")
                self._files.pop(path, None)
                continue
            if snapshot.digest == previous:
                continue
            updates[path] = FileUpdate(
                path=path,
                status="added" if previous is None else "changed",
                text=snapshot.text,
            )
            self._files[path] = snapshot.digest
        return updates

    def _read_all(self, paths: Sequence[str]) -> dict[str, FileSnapshot | None]:
        snapshots: dict[str, FileSnapshot | None] = {}
        for path in paths:
            try:
                snapshots[path] = read_snapshot(self._cwd / path)
            except FileNotFoundError:
                snapshots[path] = None
            except OSError:
                LOGGER.warning("Unable to read context file %s", path, exc_info=True)
                snapshots[path] = None
        return snapshots

    def _find_missing(self, paths: Sequence[str]) -> list[str]:
        return [path for path in paths if not (self._cwd / path).is_file()]

    def _normalize(self, path: str) -> str:
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                candidate = candidate.relative_to(self._cwd)
            except ValueError:
                return candidate.as_posix()
        return candidate.as_posix()


def context_updates_to_content(updates: Mapping[str, FileUpdate]) -> list[TextBlock]:
    blocks: list[TextBlock] = []
    for update in updates.values():
        if update.status == "deleted":
            blocks.append(TextBlock(text=f"<context_update>\nFile `{update.path}` was deleted.\n</context_update>"))
            continue
        verb = "added to context" if update.status == "added" else "changed"
        blocks.append(
            TextBlock(
                text=(
                    f"<context_update>\nFile `{update.path}` {verb}:\n"
                    f"```\n{update.text}\n```\n</context_update>"
                )
            )
        )
    return blocks

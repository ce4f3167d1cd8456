"""File reading helpers used by the context manager."""

from __future__ import annotations

import codecs
import hashlib
import locale
from dataclasses import dataclass
from pathlib import Path

__all__ = ["FileSnapshot", "read_snapshot", "compute_text_digest"]

_BOM_MAP: dict[bytes, str] = {
    codecs.BOM_UTF8: "utf-8-sig",
    codecs.BOM_UTF16_LE: "utf-16-le",
    codecs.BOM_UTF16_BE: "utf-16-be",
}


@dataclass(slots=True, frozen=True)
class FileSnapshot:
    """Decoded contents of a file plus the digest of its raw bytes."""

    path: Path
    text: str
    digest: str


def read_snapshot(path: Path | str) -> FileSnapshot:
    """Read *path* once, detecting its encoding and normalizing newlines."""

    target = Path(path)
    raw = target.read_bytes()
    text = raw.decode(_detect_encoding(raw), errors="replace")
    if text.startswith("\ufeff"):
        text = text[1:]
    if "\r" in text:
        text = text.replace("\r\n", "\n").replace("\r", "\n")
    return FileSnapshot(path=target, text=text, digest=hashlib.sha256(raw).hexdigest())


def compute_text_digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _detect_encoding(raw: bytes) -> str:
    for bom, encoding in _BOM_MAP.items():
        if raw.startswith(bom):
            return encoding

    preferred = locale.getpreferredencoding(False) or "utf-8"
    for candidate in dict.fromkeys(("utf-8", preferred, "latin-1")):
        try:
            raw.decode(candidate)
        except UnicodeDecodeError:
            continue
        return candidate
    return "utf-8"

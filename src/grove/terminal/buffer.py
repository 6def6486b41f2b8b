"""Headless terminal that renders a session's raw PTY output."""

from __future__ import annotations

import re
from typing import Iterable, Iterator

import pyte

DEFAULT_COLS = 80
DEFAULT_ROWS = 24

_ANSI_PATTERN = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC ... BEL/ST
    r"|\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b[PX^_][^\x1b]*\x1b\\"  # DCS/SOS/PM/APC
    r"|\x1b[@-Z\\-_]"  # two-byte escapes
)
# Default foreground/background colour reports (OSC 10/11) leak as literal
# text when replayed onto the host terminal.
_OSC_COLOR_PATTERN = re.compile(rb"\x1b\](?:10|11);[^\x07\x1b]*(?:\x07|\x1b\\)")
_CLEAR_SCREEN = b"\x1b[2J"
_CURSOR_HOME = b"\x1b[H"


def strip_ansi(text: str) -> str:
    """Remove escape sequences from ``text``."""

    return _ANSI_PATTERN.sub("", text)


def sanitize_for_replay(chunk: bytes, *, first: bool = False) -> bytes:
    """Drop sequences that must not be replayed onto the host terminal."""

    cleaned = _OSC_COLOR_PATTERN.sub(b"", chunk)
    if first:
        cleaned = cleaned.replace(_CLEAR_SCREEN, b"").replace(_CURSOR_HOME, b"")
    return cleaned


def replay_chunks(history: Iterable[bytes]) -> Iterator[bytes]:
    """Yield the sanitized, non-empty chunks of an output history."""

    for index, chunk in enumerate(history):
        cleaned = sanitize_for_replay(chunk, first=index == 0)
        if cleaned:
            yield cleaned


class TerminalBuffer:
    """Per-session virtual screen fed with the bytes a PTY produces."""

    def __init__(self, cols: int = DEFAULT_COLS, rows: int = DEFAULT_ROWS) -> None:
        self._screen = pyte.Screen(cols, rows)
        self._stream = pyte.ByteStream(self._screen)
        self._closed = False

    @property
    def size(self) -> tuple[int, int]:
        return self._screen.columns, self._screen.lines

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, data: bytes) -> None:
        if self._closed:
            return
        self._stream.feed(data)

    def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            return
        self._screen.resize(lines=rows, columns=cols)

    def lines(self, max_lines: int = 30) -> list[str]:
        """Return up to ``max_lines`` rendered rows, ignoring blank rows at the bottom."""

        rows = [row.rstrip() for row in self._screen.display]
        while rows and not rows[-1].strip():
            rows.pop()
        return rows[-max_lines:] if max_lines > 0 else []

    def content(self, max_lines: int = 30) -> str:
        return "\n".join(self.lines(max_lines))

    def close(self) -> None:
        self._closed = True


__all__ = [
    "DEFAULT_COLS",
    "DEFAULT_ROWS",
    "TerminalBuffer",
    "replay_chunks",
    "sanitize_for_replay",
    "strip_ansi",
]

"""Virtual terminals for sessions and the shared host terminal."""

from .buffer import TerminalBuffer, replay_chunks, sanitize_for_replay, strip_ansi
from .host import HostTerminal

__all__ = [
    "HostTerminal",
    "TerminalBuffer",
    "replay_chunks",
    "sanitize_for_replay",
    "strip_ansi",
]

"""Environment and PTY helpers for supervised processes."""

from __future__ import annotations

import fcntl
import os
import struct
import termios
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
    # nested Claude Code refuses to start when this is inherited
    "CLAUDECODE",
}

PTY_TERM = "xterm-256color"


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for an agent CLI running in a PTY."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    env["TERM"] = PTY_TERM
    if additional:
        env.update(additional)
    return env


def set_window_size(fd: int, cols: int, rows: int) -> None:
    """Apply ``cols`` x ``rows`` to the terminal behind ``fd``."""

    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def split_command(command: str) -> list[str]:
    """Tokenize a command line on whitespace, without shell quoting rules."""

    return command.split()


__all__ = ["PTY_TERM", "sanitize_environment", "set_window_size", "split_command"]

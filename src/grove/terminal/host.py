"""Ownership of the real controlling terminal."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sys
import termios
import tty
from typing import BinaryIO, Callable

logger = logging.getLogger(__name__)

# Input modes a child may have switched on; reset whenever ownership changes.
RESET_INPUT_MODES = (
    b"\x1b[<u"  # kitty keyboard protocol: pop flags
    b"\x1b[>4;0m"  # xterm modifyOtherKeys off
    b"\x1b[?1004l"  # focus reporting off
    b"\x1b[?2004l"  # bracketed paste off
)
CLEAR_SCREEN = b"\x1b[2J\x1b[H"
DEFAULT_DETACH_KEY = b"\x05"  # ctrl+e

InputSink = Callable[[bytes], None]


class HostTerminal:
    """The single raw-mode stdin/stdout pair shared by every session.

    Exactly one owner may hold the terminal; ``acquire`` and ``release`` save
    and restore the prior terminal attributes around each hand-off.
    """

    def __init__(
        self,
        *,
        stdin_fd: int | None = None,
        stdout: BinaryIO | None = None,
        detach_key: bytes = DEFAULT_DETACH_KEY,
        on_detach: Callable[[], None] | None = None,
    ) -> None:
        self._stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._detach_key = detach_key
        self._on_detach = on_detach
        self._owner: str | None = None
        self._sink: InputSink | None = None
        self._saved_attrs: list | None = None
        self._reading = False

    @property
    def owner(self) -> str | None:
        return self._owner

    def set_detach_handler(self, handler: Callable[[], None] | None) -> None:
        self._on_detach = handler

    def _is_tty(self) -> bool:
        return os.isatty(self._stdin_fd)

    def acquire(self, owner: str, sink: InputSink) -> None:
        """Put stdin in raw mode and route keystrokes to ``sink``."""

        if self._owner is not None and self._owner != owner:
            raise RuntimeError(f"Terminal already owned by {self._owner}")
        if self._owner == owner:
            self._sink = sink
            return

        self._owner = owner
        self._sink = sink
        if self._is_tty():
            self._saved_attrs = termios.tcgetattr(self._stdin_fd)
            tty.setraw(self._stdin_fd)
        if not self._reading:
            asyncio.get_running_loop().add_reader(self._stdin_fd, self._handle_input)
            self._reading = True
        self.write(RESET_INPUT_MODES + CLEAR_SCREEN)
        logger.debug("Terminal acquired", extra={"owner": owner})

    def release(self, owner: str) -> None:
        """Hand the terminal back, restoring the attributes saved by ``acquire``."""

        if self._owner != owner:
            return
        if self._reading:
            asyncio.get_running_loop().remove_reader(self._stdin_fd)
            self._reading = False
        self.write(RESET_INPUT_MODES)
        if self._saved_attrs is not None:
            termios.tcsetattr(self._stdin_fd, termios.TCSADRAIN, self._saved_attrs)
            self._saved_attrs = None
        self._owner = None
        self._sink = None
        logger.debug("Terminal released", extra={"owner": owner})

    def _handle_input(self) -> None:
        try:
            data = os.read(self._stdin_fd, 4096)
        except BlockingIOError:
            return
        except OSError as exc:
            logger.warning("Reading stdin failed: %s", exc)
            return
        if not data:
            # stdin closed; stop polling it
            asyncio.get_running_loop().remove_reader(self._stdin_fd)
            self._reading = False
            return
        while self._detach_key and self._detach_key in data:
            before, _, data = data.partition(self._detach_key)
            if before and self._sink is not None:
                self._sink(before)
            if self._on_detach is not None:
                self._on_detach()
        # type-ahead after a detach goes to whoever owns the terminal now
        if data and self._sink is not None:
            self._sink(data)

    def write(self, data: bytes) -> None:
        self._stdout.write(data)
        self._stdout.flush()

    def size(self) -> tuple[int, int]:
        columns, lines = shutil.get_terminal_size((80, 24))
        return columns, lines


__all__ = ["CLEAR_SCREEN", "DEFAULT_DETACH_KEY", "HostTerminal", "RESET_INPUT_MODES"]

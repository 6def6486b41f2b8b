"""Pseudo-terminal backed child processes driven by the asyncio event loop."""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import logging
import os
import pty
import select
import signal as signals
import termios
from typing import Callable, Mapping, Sequence

from ..errors import ProcessError
from .utils import sanitize_environment, set_window_size

logger = logging.getLogger(__name__)

DataCallback = Callable[[bytes], None]
ExitCallback = Callable[[int, "int | None"], None]

_READ_SIZE = 65536


def _acquire_controlling_terminal() -> None:
    # runs in the child between fork and exec; stdin is the PTY slave
    os.setsid()
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyProcess:
    """A child process whose stdio is the slave side of a fresh PTY."""

    def __init__(self, argv: Sequence[str], process: asyncio.subprocess.Process, master_fd: int) -> None:
        self._argv = tuple(argv)
        self._process = process
        self._master_fd = master_fd
        self._loop = asyncio.get_running_loop()
        self._reading = False
        self._closed = False
        self._exit_code: int | None = None
        self._exit_signal: int | None = None
        self._wait_task: asyncio.Task[None] | None = None
        self._on_data: DataCallback | None = None
        self._on_exit: ExitCallback | None = None

    @classmethod
    async def spawn(
        cls,
        argv: Sequence[str],
        *,
        cwd: str,
        cols: int = 80,
        rows: int = 24,
        env: Mapping[str, str] | None = None,
    ) -> "PtyProcess":
        """Spawn ``argv`` in ``cwd`` attached to a new PTY of the given size."""

        if not argv:
            raise ProcessError("", "empty command")

        master_fd, slave_fd = pty.openpty()
        try:
            set_window_size(slave_fd, cols, rows)
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=dict(env) if env is not None else sanitize_environment(),
                preexec_fn=_acquire_controlling_terminal,
            )
        except OSError as exc:
            os.close(master_fd)
            raise ProcessError(argv[0], exc.strerror or str(exc)) from exc
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        logger.debug("Spawned PTY process", extra={"argv": list(argv), "pid": process.pid, "cwd": cwd})
        return cls(argv, process, master_fd)

    @property
    def argv(self) -> tuple[str, ...]:
        return self._argv

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def exited(self) -> bool:
        return self._closed

    def start(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        """Begin forwarding output to ``on_data`` and report exit to ``on_exit``."""

        if self._wait_task is not None:
            raise RuntimeError("PTY process already started")
        self._on_data = on_data
        self._on_exit = on_exit
        self._loop.add_reader(self._master_fd, self._handle_readable)
        self._reading = True
        self._wait_task = self._loop.create_task(self._wait())

    def _handle_readable(self) -> None:
        try:
            data = os.read(self._master_fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the slave side has been closed by the exiting child
            self._stop_reading()
            return
        if not data:
            self._stop_reading()
            return
        if self._on_data is not None:
            self._on_data(data)

    def _stop_reading(self) -> None:
        if self._reading:
            self._loop.remove_reader(self._master_fd)
            self._reading = False

    def _drain(self) -> None:
        while self._reading:
            try:
                data = os.read(self._master_fd, _READ_SIZE)
            except OSError:
                break
            if not data:
                break
            if self._on_data is not None:
                self._on_data(data)

    async def _wait(self) -> None:
        returncode = await self._process.wait()
        self._drain()
        self._stop_reading()
        self._close_fd()
        if returncode < 0:
            self._exit_code, self._exit_signal = 128 - returncode, -returncode
        else:
            self._exit_code, self._exit_signal = returncode, None
        logger.debug(
            "PTY process exited",
            extra={"pid": self.pid, "exit_code": self._exit_code, "signal": self._exit_signal},
        )
        if self._on_exit is not None:
            self._on_exit(self._exit_code, self._exit_signal)

    def _close_fd(self) -> None:
        if not self._closed:
            self._closed = True
            with contextlib.suppress(OSError):
                os.close(self._master_fd)

    def write(self, data: str | bytes) -> None:
        if self._closed:
            return
        payload = data.encode("utf-8") if isinstance(data, str) else data
        view = memoryview(payload)
        while view:
            try:
                written = os.write(self._master_fd, view)
            except BlockingIOError:
                select.select([], [self._master_fd], [], 0.05)
                continue
            view = view[written:]

    def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            return
        with contextlib.suppress(OSError):
            set_window_size(self._master_fd, cols, rows)

    def kill(self, sig: int = signals.SIGHUP) -> None:
        """Signal the child's process group, as a closing terminal would."""

        if self._process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(self._process.pid, sig)


__all__ = ["DataCallback", "ExitCallback", "PtyProcess"]

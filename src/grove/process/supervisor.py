"""Spawn agent CLIs in PTYs with a one-shot fallback retry."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Protocol, Sequence

from ..errors import ProcessError
from ..presets import CommandPreset, DevcontainerConfig
from .pty import DataCallback, ExitCallback, PtyProcess
from .utils import split_command

if TYPE_CHECKING:
    from ..terminal import TerminalBuffer

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 0.5


class PtyHandle(Protocol):
    """The subset of :class:`PtyProcess` the supervisor relies on."""

    @property
    def exited(self) -> bool:
        ...

    def start(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        ...

    def write(self, data: str | bytes) -> None:
        ...

    def resize(self, cols: int, rows: int) -> None:
        ...

    def kill(self) -> None:
        ...


Spawner = Callable[..., Awaitable[PtyHandle]]


@dataclass(slots=True)
class CommandSpec:
    """Everything needed to launch (and relaunch) one session's process."""

    command: str
    cwd: str
    args: tuple[str, ...] = ()
    fallback_args: tuple[str, ...] | None = None
    devcontainer: DevcontainerConfig | None = None

    @classmethod
    def from_preset(
        cls,
        preset: CommandPreset,
        cwd: str,
        devcontainer: DevcontainerConfig | None = None,
    ) -> "CommandSpec":
        return cls(
            command=preset.command,
            cwd=cwd,
            args=tuple(preset.args),
            fallback_args=tuple(preset.fallback_args) if preset.fallback_args is not None else None,
            devcontainer=devcontainer,
        )

    def argv(self, *, primary: bool = True) -> list[str]:
        args: Sequence[str] = self.args if primary else (self.fallback_args or ())
        if self.devcontainer is None:
            return [self.command, *args]
        exec_parts = split_command(self.devcontainer.exec_command)
        exec_cmd = exec_parts[0] if exec_parts else "devcontainer"
        return [exec_cmd, *exec_parts[1:], "--", self.command, *args]


class SupervisedProcess:
    """Process handle owned by exactly one session.

    Hides the fallback respawn: listeners registered at start keep receiving
    data from the replacement process, and exit is reported only once the
    final process is gone.
    """

    def __init__(
        self,
        supervisor: "ProcessSupervisor",
        spec: CommandSpec,
        handle: PtyHandle,
        *,
        on_data: DataCallback,
        on_exit: ExitCallback,
        buffer: "TerminalBuffer | None" = None,
        size: tuple[int, int] = (80, 24),
    ) -> None:
        self._supervisor = supervisor
        self._spec = spec
        self._handle = handle
        self._on_data = on_data
        self._on_exit = on_exit
        self._buffer = buffer
        self._size = size
        self._is_primary = True
        self._within_grace = True
        self._killed = False
        self._exited = False
        self._exit_code: int | None = None
        self._respawn_task: asyncio.Task[None] | None = None

    @property
    def spec(self) -> CommandSpec:
        return self._spec

    @property
    def is_primary_command(self) -> bool:
        return self._is_primary

    @property
    def exited(self) -> bool:
        return self._exited

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    def _attach(self, handle: PtyHandle) -> None:
        self._handle = handle
        handle.start(self._on_data, self._handle_exit)

    def _close_grace_window(self) -> None:
        self._within_grace = False

    def _handle_exit(self, exit_code: int, signal: int | None) -> None:
        if (
            self._is_primary
            and not self._killed
            and self._within_grace
            and exit_code == 1
            and signal is None
        ):
            self._is_primary = False
            logger.warning(
                "Primary command exited with code 1, retrying with fallback arguments",
                extra={"command": self._spec.command, "cwd": self._spec.cwd},
            )
            self._respawn_task = asyncio.get_running_loop().create_task(self._respawn())
            return
        self._finish(exit_code, signal)

    async def _respawn(self) -> None:
        try:
            handle = await self._supervisor.spawn_argv(
                self._spec.argv(primary=False), cwd=self._spec.cwd, size=self._size
            )
        except ProcessError as exc:
            logger.error("Fallback command failed to start: %s", exc)
            self._finish(1, None)
            return
        if self._killed:
            handle.kill()
            self._finish(1, None)
            return
        self._attach(handle)

    def _finish(self, exit_code: int, signal: int | None) -> None:
        if self._exited:
            return
        self._exited = True
        self._exit_code = exit_code
        self._on_exit(exit_code, signal)

    def write(self, data: str | bytes) -> None:
        if self._exited or self._killed:
            logger.debug("Dropping write to exited process", extra={"cwd": self._spec.cwd})
            return
        self._handle.write(data)

    def resize(self, cols: int, rows: int) -> None:
        """Resize the PTY and its paired buffer; ignored once the process is gone."""

        if self._exited or self._handle.exited:
            return
        self._size = (cols, rows)
        self._handle.resize(cols, rows)
        if self._buffer is not None:
            self._buffer.resize(cols, rows)

    def kill(self) -> None:
        self._killed = True
        if not self._handle.exited:
            self._handle.kill()


class ProcessSupervisor:
    """Turn a :class:`CommandSpec` into a running, supervised PTY process."""

    def __init__(
        self,
        *,
        spawner: Spawner | None = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        env: dict[str, str] | None = None,
    ) -> None:
        self._spawner = spawner or PtyProcess.spawn
        self._grace_period = grace_period
        self._env = env

    @property
    def grace_period(self) -> float:
        return self._grace_period

    async def spawn_argv(
        self, argv: Sequence[str], *, cwd: str, size: tuple[int, int] = (80, 24)
    ) -> PtyHandle:
        cols, rows = size
        kwargs: dict[str, Any] = {"cwd": cwd, "cols": cols, "rows": rows}
        if self._env is not None:
            kwargs["env"] = self._env
        try:
            return await self._spawner(list(argv), **kwargs)
        except ProcessError:
            raise
        except OSError as exc:
            raise ProcessError(argv[0] if argv else "", exc.strerror or str(exc)) from exc

    async def devcontainer_up(self, config: DevcontainerConfig, cwd: str) -> None:
        """Run the blocking ``devcontainer up`` step; raise on failure."""

        logger.info("Starting devcontainer", extra={"command": config.up_command, "cwd": cwd})
        try:
            process = await asyncio.create_subprocess_shell(
                config.up_command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProcessError(
                config.up_command, f"Failed to start devcontainer: {exc}"
            ) from exc
        _, stderr_bytes = await process.communicate()
        if process.returncode != 0:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
            message = f"Failed to start devcontainer: exit code {process.returncode}"
            if stderr:
                message = f"{message}\nStderr: {stderr}"
            raise ProcessError(config.up_command, message, exit_code=process.returncode)

    async def start(
        self,
        spec: CommandSpec,
        *,
        on_data: DataCallback,
        on_exit: ExitCallback,
        buffer: "TerminalBuffer | None" = None,
        size: tuple[int, int] = (80, 24),
    ) -> SupervisedProcess:
        """Spawn the primary command and arm the fallback grace deadline."""

        if spec.devcontainer is not None:
            await self.devcontainer_up(spec.devcontainer, spec.cwd)

        handle = await self.spawn_argv(spec.argv(primary=True), cwd=spec.cwd, size=size)
        supervised = SupervisedProcess(
            self, spec, handle, on_data=on_data, on_exit=on_exit, buffer=buffer, size=size
        )
        supervised._attach(handle)
        asyncio.get_running_loop().call_later(self._grace_period, supervised._close_grace_window)
        return supervised


class FakePtyProcess:
    """Test double standing in for :class:`PtyProcess`."""

    def __init__(self, argv: Sequence[str], cwd: str) -> None:
        self.argv = tuple(argv)
        self.cwd = cwd
        self.writes: list[str | bytes] = []
        self.sizes: list[tuple[int, int]] = []
        self.killed = False
        self._exited = False
        self._on_data: DataCallback | None = None
        self._on_exit: ExitCallback | None = None

    @property
    def exited(self) -> bool:
        return self._exited

    def start(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        self._on_data = on_data
        self._on_exit = on_exit

    def emit_data(self, data: str | bytes) -> None:
        assert self._on_data is not None, "process not started"
        self._on_data(data.encode("utf-8") if isinstance(data, str) else data)

    def emit_exit(self, exit_code: int, signal: int | None = None) -> None:
        assert self._on_exit is not None, "process not started"
        self._exited = True
        self._on_exit(exit_code, signal)

    def write(self, data: str | bytes) -> None:
        self.writes.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))

    def kill(self) -> None:
        self.killed = True


class FakeSpawner:
    """Records spawn calls and hands out :class:`FakePtyProcess` instances."""

    def __init__(self, failures: Iterable[ProcessError | None] | None = None) -> None:
        self._failures = list(failures or [])
        self.processes: list[FakePtyProcess] = []

    async def __call__(self, argv: Sequence[str], *, cwd: str, **_: Any) -> FakePtyProcess:
        if self._failures:
            failure = self._failures.pop(0)
            if failure is not None:
                raise failure
        process = FakePtyProcess(argv, cwd)
        self.processes.append(process)
        return process

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return [process.argv for process in self.processes]

    def for_cwd(self, cwd: str) -> list[FakePtyProcess]:
        return [process for process in self.processes if process.cwd == cwd]


__all__ = [
    "CommandSpec",
    "FakePtyProcess",
    "FakeSpawner",
    "ProcessSupervisor",
    "PtyHandle",
    "Spawner",
    "SupervisedProcess",
]

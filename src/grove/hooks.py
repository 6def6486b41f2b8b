"""User shell hooks fired when a session changes state."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import TYPE_CHECKING, Mapping

from .errors import ProcessError
from .models import Session, SessionState
from .presets import StatusHook

if TYPE_CHECKING:
    from .session import SessionRegistry

logger = logging.getLogger(__name__)


async def run_hook(command: str, cwd: str, environment: Mapping[str, str]) -> None:
    """Run ``command`` through the shell and wait for it; raise on failure."""

    env = dict(os.environ)
    env.update(environment)
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise ProcessError(command, exc.strerror or str(exc)) from exc

    _, stderr_bytes = await process.communicate()
    code = process.returncode
    if code == 0:
        return
    if code is not None and code < 0:
        message, signal, exit_code = f"Hook terminated by signal {-code}", -code, None
    else:
        message, signal, exit_code = f"Hook exited with code {code}", None, code
    stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
    if stderr:
        message = f"{message}\nStderr: {stderr}"
    raise ProcessError(command, message, exit_code=exit_code, signal=signal)


def hook_environment(session: Session, old: SessionState, new: SessionState) -> dict[str, str]:
    return {
        "GROVE_WORKTREE_PATH": session.worktree_path,
        "GROVE_SESSION_ID": session.id,
        "GROVE_OLD_STATE": old.value,
        "GROVE_NEW_STATE": new.value,
    }


class StatusHookRunner:
    """Listens to a registry and runs the hook configured for each new state."""

    def __init__(self, hooks: Mapping[str, StatusHook]) -> None:
        self._hooks = dict(hooks)
        self._registry: "SessionRegistry | None" = None
        self._tasks: set[asyncio.Task[None]] = set()

    def attach(self, registry: "SessionRegistry") -> None:
        self.detach()
        registry.on("sessionStateChanged", self.on_state_changed)
        self._registry = registry

    def detach(self) -> None:
        if self._registry is not None:
            self._registry.off("sessionStateChanged", self.on_state_changed)
            self._registry = None

    def on_state_changed(self, session: Session, old: SessionState, new: SessionState) -> None:
        hook = self._hooks.get(new.value)
        if hook is None or not hook.enabled or not hook.command.strip():
            return
        task = asyncio.get_running_loop().create_task(self._run(hook, session, old, new))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(
        self, hook: StatusHook, session: Session, old: SessionState, new: SessionState
    ) -> None:
        try:
            await run_hook(hook.command, session.worktree_path, hook_environment(session, old, new))
        except ProcessError as exc:
            logger.warning("Failed to execute %s hook: %s", new.value, exc.message)

    async def wait_idle(self) -> None:
        """Wait for every hook started so far to finish."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks))


__all__ = ["StatusHookRunner", "hook_environment", "run_hook"]

"""Registry of live agent sessions, one per worktree."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from functools import partial
from typing import Iterable, Sequence
from uuid import uuid4

from ..approval import ApprovalVerdict, AutoApprovalVerifier
from ..detection import get_detector, run_detector
from ..detection.base import CONTENT_LINES
from ..errors import GroveError
from ..events import EventEmitter
from ..models import Session, SessionCounts, SessionSnapshot, SessionState, Worktree
from ..presets import CommandPreset, DevcontainerConfig, GroveConfig
from ..process import CommandSpec, ProcessSupervisor
from ..terminal import HostTerminal, TerminalBuffer

logger = logging.getLogger(__name__)

SESSION_CREATED = "sessionCreated"
SESSION_DESTROYED = "sessionDestroyed"
SESSION_STATE_CHANGED = "sessionStateChanged"
SESSION_DATA = "sessionData"
SESSION_EXIT = "sessionExit"
SESSION_RESTORE = "sessionRestore"


def _new_session_id() -> str:
    return f"session-{int(time.time() * 1000)}-{uuid4().hex[:9]}"


class SessionRegistry(EventEmitter):
    """Owns every session of one project and publishes their lifecycle.

    Events (handlers are called synchronously, in subscription order):

    * ``sessionCreated(session)``
    * ``sessionDestroyed(session)``
    * ``sessionStateChanged(session, previous, current)``
    * ``sessionData(session, data)``: only while the session is foreground
    * ``sessionExit(session)``
    * ``sessionRestore(session, history)``
    """

    def __init__(
        self,
        config: GroveConfig | None = None,
        *,
        supervisor: ProcessSupervisor | None = None,
        host: HostTerminal | None = None,
        verifier: AutoApprovalVerifier | None = None,
        size: tuple[int, int] | None = None,
    ) -> None:
        super().__init__()
        self._config = config or GroveConfig()
        self._supervisor = supervisor or ProcessSupervisor()
        self._host = host
        self._verifier = verifier or AutoApprovalVerifier(self._config.auto_approval)
        self._size = size
        self._auto_approval_enabled = self._config.auto_approval.enabled
        self._sessions: dict[str, Session] = {}
        self._pending: dict[str, asyncio.Task[Session]] = {}
        self._verifications: dict[str, asyncio.Task[None]] = {}

    @property
    def config(self) -> GroveConfig:
        return self._config

    @property
    def auto_approval_enabled(self) -> bool:
        return self._auto_approval_enabled

    def _terminal_size(self) -> tuple[int, int]:
        if self._size is not None:
            return self._size
        if self._host is not None:
            return self._host.size()
        return (80, 24)

    # ------------------------------------------------------------------
    # creation and teardown

    async def create_session(self, worktree_path: str, preset_id: str | None = None) -> Session:
        """Return the session for ``worktree_path``, spawning it on first use."""

        return await self._get_or_create(worktree_path, preset_id, None)

    async def create_session_with_devcontainer(
        self,
        worktree_path: str,
        devcontainer_config: DevcontainerConfig,
        preset_id: str | None = None,
    ) -> Session:
        return await self._get_or_create(worktree_path, preset_id, devcontainer_config)

    async def _get_or_create(
        self,
        worktree_path: str,
        preset_id: str | None,
        devcontainer: DevcontainerConfig | None,
    ) -> Session:
        existing = self._sessions.get(worktree_path)
        if existing is not None:
            return existing

        task = self._pending.get(worktree_path)
        if task is None:
            preset = self._config.get_preset(preset_id)
            task = asyncio.get_running_loop().create_task(
                self._spawn_session(worktree_path, preset, devcontainer)
            )
            self._pending[worktree_path] = task
            task.add_done_callback(partial(self._forget_pending, worktree_path))
        return await asyncio.shield(task)

    def _forget_pending(self, worktree_path: str, task: asyncio.Task[Session]) -> None:
        if self._pending.get(worktree_path) is task:
            del self._pending[worktree_path]

    async def _spawn_session(
        self,
        worktree_path: str,
        preset: CommandPreset,
        devcontainer: DevcontainerConfig | None,
    ) -> Session:
        size = self._terminal_size()
        session = Session(
            id=_new_session_id(),
            worktree_path=worktree_path,
            buffer=TerminalBuffer(*size),
            detection_strategy=preset.detection_strategy,
            preset=preset,
            devcontainer_config=devcontainer,
        )
        spec = CommandSpec.from_preset(preset, worktree_path, devcontainer)
        try:
            session.process = await self._supervisor.start(
                spec,
                on_data=partial(self._on_data, session),
                on_exit=partial(self._on_exit, session),
                buffer=session.buffer,
                size=size,
            )
        except BaseException:
            session.buffer.close()
            raise

        self._sessions[worktree_path] = session
        logger.info(
            "Session created",
            extra={"session_id": session.id, "worktree": worktree_path, "preset": preset.id},
        )
        self.emit(SESSION_CREATED, session)
        return session

    def destroy_session(self, worktree_path: str) -> None:
        """Kill the session's process and forget it. No ``sessionExit`` follows."""

        session = self._sessions.pop(worktree_path, None)
        if session is None:
            return
        self._cancel_verification(session)
        self._deactivate(session)
        if session.process is not None:
            session.process.kill()
        session.buffer.close()
        logger.info("Session destroyed", extra={"session_id": session.id, "worktree": worktree_path})
        self.emit(SESSION_DESTROYED, session)

    def destroy(self) -> None:
        for task in list(self._pending.values()):
            task.cancel()
        for worktree_path in list(self._sessions):
            self.destroy_session(worktree_path)

    # ------------------------------------------------------------------
    # process callbacks

    def _is_current(self, session: Session) -> bool:
        return self._sessions.get(session.worktree_path) is session

    def _on_data(self, session: Session, data: bytes) -> None:
        if session.buffer.closed:
            return
        session.buffer.feed(data)
        session.output_history.append(data)
        session.last_activity = datetime.now()
        if session.is_active:
            self.emit(SESSION_DATA, session, data)
        if self._is_current(session):
            self._update_state(session)

    def _on_exit(self, session: Session, exit_code: int, signal: int | None) -> None:
        if not self._is_current(session):
            return
        del self._sessions[session.worktree_path]
        self._cancel_verification(session)
        self._deactivate(session)
        session.buffer.close()
        logger.info(
            "Session exited",
            extra={"session_id": session.id, "exit_code": exit_code, "signal": signal},
        )
        self.emit(SESSION_EXIT, session)

    # ------------------------------------------------------------------
    # state tracking

    def _update_state(self, session: Session) -> None:
        detection = run_detector(
            get_detector(session.detection_strategy), session.buffer, session.state
        )
        session.background_task_count = detection.background_task_count
        session.team_member_count = detection.team_member_count
        detected = detection.state
        current = session.state

        if session.awaiting_prompt_clear:
            if detected is SessionState.WAITING_INPUT:
                return
            session.awaiting_prompt_clear = False

        if current is SessionState.PENDING_AUTO_APPROVAL:
            if detected in (SessionState.WAITING_INPUT, SessionState.PENDING_AUTO_APPROVAL):
                return
            self._cancel_verification(session)
            self._set_state(session, detected)
            return

        if (
            detected is SessionState.WAITING_INPUT
            and current is not SessionState.WAITING_INPUT
            and self._auto_approval_enabled
            and not session.auto_approval_failed
        ):
            self._set_state(session, SessionState.PENDING_AUTO_APPROVAL)
            self._start_verification(session)
            return

        self._set_state(session, detected)

    def _set_state(self, session: Session, state: SessionState) -> None:
        previous = session.state
        if previous is state:
            return
        if previous is SessionState.WAITING_INPUT:
            session.auto_approval_failed = False
            session.auto_approval_reason = None
        session.state = state
        logger.debug(
            "Session state changed",
            extra={"session_id": session.id, "from": previous.value, "to": state.value},
        )
        self.emit(SESSION_STATE_CHANGED, session, previous, state)

    # ------------------------------------------------------------------
    # auto-approval

    def _start_verification(self, session: Session) -> None:
        content = session.buffer.content(CONTENT_LINES)
        task = asyncio.get_running_loop().create_task(self._verify(session, content))
        self._verifications[session.id] = task

    def _cancel_verification(self, session: Session) -> None:
        task = self._verifications.pop(session.id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _verify(self, session: Session, content: str) -> None:
        try:
            verdict = await self._verifier.verify(content)
        except GroveError as exc:
            verdict = ApprovalVerdict(needs_permission=True, reason=str(exc))

        if self._verifications.get(session.id) is asyncio.current_task():
            del self._verifications[session.id]
        if not self._is_current(session) or session.state is not SessionState.PENDING_AUTO_APPROVAL:
            return

        if verdict.needs_permission:
            logger.info(
                "Auto-approval declined",
                extra={"session_id": session.id, "reason": verdict.reason},
            )
            session.auto_approval_failed = True
            session.auto_approval_reason = verdict.reason or "Permission required"
            self._set_state(session, SessionState.WAITING_INPUT)
            return

        logger.info("Auto-approving prompt", extra={"session_id": session.id})
        session.awaiting_prompt_clear = True
        if session.process is not None:
            session.process.write("\r")
        self._set_state(session, SessionState.BUSY)

    def cancel_auto_approval(
        self, worktree_path: str, reason: str = "Auto-approval cancelled"
    ) -> bool:
        """Abort a running verification and leave the prompt to the user."""

        session = self._sessions.get(worktree_path)
        if session is None or session.state is not SessionState.PENDING_AUTO_APPROVAL:
            return False
        self._cancel_verification(session)
        session.auto_approval_failed = True
        session.auto_approval_reason = reason
        self._set_state(session, SessionState.WAITING_INPUT)
        return True

    def set_auto_approval_enabled(self, enabled: bool) -> None:
        self._auto_approval_enabled = enabled
        if enabled:
            return
        for session in list(self._sessions.values()):
            if session.state is SessionState.PENDING_AUTO_APPROVAL:
                self._cancel_verification(session)
                self._set_state(session, SessionState.WAITING_INPUT)

    # ------------------------------------------------------------------
    # foreground handling and input

    def set_session_active(self, worktree_path: str, active: bool) -> None:
        """Attach ``worktree_path`` to the host terminal, or detach it."""

        session = self._sessions.get(worktree_path)
        if session is None:
            return
        if not active:
            self._deactivate(session)
            return

        for other in self._sessions.values():
            if other is not session:
                self._deactivate(other)
        if session.is_active:
            return
        session.is_active = True
        if self._host is not None:
            self._host.acquire(session.id, partial(self.write_input, worktree_path))
        if session.output_history:
            self.emit(SESSION_RESTORE, session, list(session.output_history))

    def _deactivate(self, session: Session) -> None:
        if not session.is_active:
            return
        session.is_active = False
        if self._host is not None:
            self._host.release(session.id)

    def write_input(self, worktree_path: str, data: str | bytes) -> None:
        """Forward user keystrokes; typing over a pending approval cancels it."""

        session = self._sessions.get(worktree_path)
        if session is None or session.process is None:
            return
        if session.state is SessionState.PENDING_AUTO_APPROVAL:
            self.cancel_auto_approval(worktree_path, "User input received")
        session.process.write(data)

    def resize_session(self, worktree_path: str, cols: int, rows: int) -> None:
        session = self._sessions.get(worktree_path)
        if session is None or session.process is None:
            return
        session.process.resize(cols, rows)

    # ------------------------------------------------------------------
    # queries

    def get_session(self, worktree_path: str) -> Session | None:
        return self._sessions.get(worktree_path)

    def get_all_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def get_active_session(self) -> Session | None:
        for session in self._sessions.values():
            if session.is_active:
                return session
        return None

    def snapshot(self, worktree_path: str) -> SessionSnapshot | None:
        session = self._sessions.get(worktree_path)
        if session is None:
            return None
        return SessionSnapshot(
            state=session.state,
            auto_approval_failed=session.auto_approval_failed,
            auto_approval_reason=session.auto_approval_reason,
            background_task_count=session.background_task_count,
            team_member_count=session.team_member_count,
        )

    def annotate_worktrees(self, worktrees: Iterable[Worktree]) -> list[Worktree]:
        """Mark which worktrees currently have a live session."""

        annotated = list(worktrees)
        for worktree in annotated:
            worktree.has_session = worktree.path in self._sessions
        return annotated

    @staticmethod
    def get_session_counts(sessions: Sequence[Session]) -> SessionCounts:
        idle = sum(1 for session in sessions if session.state is SessionState.IDLE)
        busy = sum(1 for session in sessions if session.state is SessionState.BUSY)
        waiting = sum(1 for session in sessions if session.state is SessionState.WAITING_INPUT)
        return SessionCounts(idle=idle, busy=busy, waiting_input=waiting, total=len(sessions))

    @staticmethod
    def format_session_counts(counts: SessionCounts) -> str:
        if counts.total == 0:
            return ""
        parts: list[str] = []
        if counts.idle:
            parts.append(f"{counts.idle} Idle")
        if counts.busy:
            parts.append(f"{counts.busy} Busy")
        if counts.waiting_input:
            parts.append(f"{counts.waiting_input} Waiting")
        return f" ({' / '.join(parts)})" if parts else ""


__all__ = [
    "SESSION_CREATED",
    "SESSION_DATA",
    "SESSION_DESTROYED",
    "SESSION_EXIT",
    "SESSION_RESTORE",
    "SESSION_STATE_CHANGED",
    "SessionRegistry",
]

"""Per-session autopilot that nudges an agent when it stops making progress."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Literal

from ..events import EventEmitter
from ..models import AutopilotState, GuidanceResult, Session, SessionState
from ..presets import AutopilotConfig
from ..terminal import strip_ansi
from .sources import GuidanceSource

if TYPE_CHECKING:
    from ..session import SessionRegistry

logger = logging.getLogger(__name__)

AutopilotStatus = Literal["ACTIVE", "STANDBY"]

RATE_WINDOW = timedelta(hours=1)
RECENT_LINES = 20
EXTENDED_LINES = 50
MIN_CONTEXT_CHARS = 200


def recent_output(history: list[bytes]) -> str:
    """Last lines of the session output with escape sequences removed."""

    text = b"".join(history).decode("utf-8", errors="replace")
    lines = strip_ansi(text).replace("\r\n", "\n").replace("\r", "\n").split("\n")
    recent = "\n".join(lines[-RECENT_LINES:])
    if len(recent) < MIN_CONTEXT_CHARS and len(lines) > RECENT_LINES:
        return "\n".join(lines[-EXTENDED_LINES:])
    return recent


class AutopilotMonitor(EventEmitter):
    """Watches state changes and asks a guidance source for help after ``busy -> idle``.

    Events: ``statusChanged(session, status)``, ``analysisComplete(session, result)``,
    ``guidanceProvided(session, result)``, ``analysisError(session, error)``.
    """

    def __init__(
        self,
        config: AutopilotConfig,
        source: GuidanceSource,
        registry: "SessionRegistry | None" = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__()
        self._config = config
        self._source = source
        self._clock = clock
        self._registry: "SessionRegistry | None" = None
        self._tasks: set[asyncio.Task[None]] = set()
        if registry is not None:
            self.attach(registry)

    @property
    def config(self) -> AutopilotConfig:
        return self._config

    def update_config(self, config: AutopilotConfig) -> None:
        self._config = config
        update = getattr(self._source, "update_config", None)
        if callable(update):
            update(config)

    def attach(self, registry: "SessionRegistry") -> None:
        self.detach()
        registry.on("sessionStateChanged", self.on_session_state_changed)
        self._registry = registry

    def detach(self) -> None:
        if self._registry is not None:
            self._registry.off("sessionStateChanged", self.on_session_state_changed)
            self._registry = None

    # ------------------------------------------------------------------
    # STANDBY <-> ACTIVE

    def enable(self, session: Session) -> None:
        state = session.autopilot_state
        if state.is_active:
            return
        state.is_active = True
        logger.info("Autopilot enabled", extra={"session_id": session.id})
        self.emit("statusChanged", session, "ACTIVE")

    def disable(self, session: Session) -> None:
        state = session.autopilot_state
        if not state.is_active:
            return
        state.is_active = False
        logger.info("Autopilot disabled", extra={"session_id": session.id})
        self.emit("statusChanged", session, "STANDBY")

    def toggle(self, session: Session) -> bool:
        if session.autopilot_state.is_active:
            self.disable(session)
            return False
        self.enable(session)
        return True

    def get_state(self, session: Session) -> AutopilotState:
        return session.autopilot_state

    # ------------------------------------------------------------------
    # triggering

    def on_session_state_changed(
        self, session: Session, previous: SessionState, current: SessionState
    ) -> None:
        state = session.autopilot_state
        if not state.is_active or state.analysis_in_progress:
            return
        if previous is not SessionState.BUSY or current is not SessionState.IDLE:
            return
        logger.debug("Autopilot analysis scheduled", extra={"session_id": session.id})
        loop = asyncio.get_running_loop()
        loop.call_later(self._config.analysis_delay_ms / 1000, self._schedule, session)

    def _schedule(self, session: Session) -> None:
        task = asyncio.get_running_loop().create_task(self.analyze_session(session))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def can_provide_guidance(self, state: AutopilotState) -> bool:
        if state.last_guidance_time is None:
            return True
        if self._clock() - state.last_guidance_time >= RATE_WINDOW:
            return True
        return state.guidances_provided < self._config.max_guidances_per_hour

    def _still_attached(self, session: Session) -> bool:
        if session.exited or session.process is None:
            return False
        if self._registry is None:
            return True
        return self._registry.get_session(session.worktree_path) is session

    # ------------------------------------------------------------------
    # analysis

    async def analyze_session(self, session: Session) -> None:
        """Run one guidance round for ``session``; concurrent calls are no-ops."""

        state = session.autopilot_state
        if state.analysis_in_progress:
            return
        if not self._source.is_available():
            logger.info("Autopilot skipped: guidance source unavailable")
            return
        if not self.can_provide_guidance(state):
            logger.info("Autopilot skipped: rate limited", extra={"session_id": session.id})
            return

        output = recent_output(session.output_history)
        if not output.strip():
            return

        state.analysis_in_progress = True
        try:
            result = await self._source.analyze(output, session.worktree_path)
        except Exception as exc:
            logger.warning("Autopilot analysis failed: %s", exc, extra={"session_id": session.id})
            self.emit("analysisError", session, exc)
            return
        finally:
            state.analysis_in_progress = False

        threshold = self._config.intervention_threshold
        if result.should_intervene and result.guidance and result.confidence >= threshold:
            self._provide_guidance(session, result)
        elif result.should_intervene:
            logger.info(
                "Autopilot intervention withheld",
                extra={"session_id": session.id, "confidence": result.confidence},
            )
        self.emit("analysisComplete", session, result)

    def _provide_guidance(self, session: Session, result: GuidanceResult) -> None:
        if not self._still_attached(session):
            logger.info("Autopilot guidance dropped: session gone", extra={"session_id": session.id})
            return
        assert result.guidance is not None
        session.process.write(result.guidance + "\n")
        state = session.autopilot_state
        now = self._clock()
        if state.last_guidance_time is not None and now - state.last_guidance_time >= RATE_WINDOW:
            state.guidances_provided = 0
        state.guidances_provided += 1
        state.last_guidance_time = now
        logger.info(
            "Autopilot guidance provided",
            extra={"session_id": session.id, "source": result.source},
        )
        self.emit("guidanceProvided", session, result)

    async def wait_idle(self) -> None:
        """Wait for analyses that have already started."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def destroy(self) -> None:
        self.detach()
        self.remove_all_listeners()


__all__ = ["AutopilotMonitor", "AutopilotStatus", "recent_output"]

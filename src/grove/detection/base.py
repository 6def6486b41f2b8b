"""Detector table and the total wrapper used by the registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from ..models import SessionState
from . import agents

if TYPE_CHECKING:
    from ..terminal import TerminalBuffer

logger = logging.getLogger(__name__)

DetectFn = Callable[[str, SessionState], SessionState]
CountFn = Callable[[str], int]

CONTENT_LINES = 30
STATUS_LINES = 3


@dataclass(slots=True, frozen=True)
class Detector:
    """Classification strategy for one agent type."""

    agent_type: str
    detect: DetectFn
    background_tasks: CountFn | None = None
    team_members: CountFn | None = None


@dataclass(slots=True, frozen=True)
class Detection:
    state: SessionState
    background_task_count: int = 0
    team_member_count: int = 0


DETECTORS: dict[str, Detector] = {
    "claude": Detector(
        "claude",
        agents.detect_claude,
        background_tasks=agents.claude_background_tasks,
        team_members=agents.claude_team_members,
    ),
    "codex": Detector("codex", agents.detect_codex),
    "gemini": Detector("gemini", agents.detect_gemini),
    "cursor": Detector("cursor", agents.detect_cursor),
    "github-copilot": Detector("github-copilot", agents.detect_github_copilot),
    "kimi": Detector("kimi", agents.detect_kimi),
    "opencode": Detector("opencode", agents.detect_opencode),
    "cline": Detector("cline", agents.detect_cline),
}


def get_detector(agent_type: str | None) -> Detector:
    """Return the detector for ``agent_type``; unknown tags use Claude's."""

    return DETECTORS.get(agent_type or "claude", DETECTORS["claude"])


def run_detector(
    detector: Detector, buffer: "TerminalBuffer", previous: SessionState
) -> Detection:
    """Classify the buffer's current screen. Never raises; failures yield ``idle``."""

    try:
        state = detector.detect(buffer.content(CONTENT_LINES), previous)
        status = buffer.content(STATUS_LINES)
        background = detector.background_tasks(status) if detector.background_tasks else 0
        team = detector.team_members(status) if detector.team_members else 0
    except Exception:
        logger.exception("State detection failed", extra={"agent_type": detector.agent_type})
        return Detection(SessionState.IDLE)
    return Detection(state, background_task_count=background, team_member_count=team)


__all__ = [
    "CONTENT_LINES",
    "DETECTORS",
    "Detection",
    "Detector",
    "STATUS_LINES",
    "get_detector",
    "run_detector",
]

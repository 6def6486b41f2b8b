"""Data models shared by the registry, detectors and autopilot."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .presets import CommandPreset, DevcontainerConfig
    from .process import SupervisedProcess
    from .terminal import TerminalBuffer


class SessionState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    WAITING_INPUT = "waiting_input"
    PENDING_AUTO_APPROVAL = "pending_auto_approval"


@dataclass(slots=True)
class AutopilotState:
    is_active: bool = False
    guidances_provided: int = 0
    last_guidance_time: datetime | None = None
    analysis_in_progress: bool = False


@dataclass(slots=True, eq=False)
class Session:
    """A live agent CLI bound to one worktree."""

    id: str
    worktree_path: str
    buffer: "TerminalBuffer"
    detection_strategy: str = "claude"
    process: "SupervisedProcess | None" = None
    state: SessionState = SessionState.BUSY
    output_history: list[bytes] = field(default_factory=list)
    is_active: bool = False
    last_activity: datetime = field(default_factory=datetime.now)
    preset: "CommandPreset | None" = None
    devcontainer_config: "DevcontainerConfig | None" = None
    autopilot_state: AutopilotState = field(default_factory=AutopilotState)
    auto_approval_failed: bool = False
    auto_approval_reason: str | None = None
    # set after an auto-approval until the approved prompt leaves the screen
    awaiting_prompt_clear: bool = False
    background_task_count: int = 0
    team_member_count: int = 0

    @property
    def is_primary_command(self) -> bool:
        return self.process.is_primary_command if self.process is not None else True

    @property
    def exited(self) -> bool:
        return self.process is not None and self.process.exited


@dataclass(slots=True, frozen=True)
class SessionCounts:
    idle: int = 0
    busy: int = 0
    waiting_input: int = 0
    total: int = 0


@dataclass(slots=True, frozen=True)
class SessionSnapshot:
    """Read-only view of a session for status displays."""

    state: SessionState
    auto_approval_failed: bool = False
    auto_approval_reason: str | None = None
    background_task_count: int = 0
    team_member_count: int = 0


@dataclass(slots=True)
class Worktree:
    path: str
    branch: str | None = None
    is_main_worktree: bool = False
    has_session: bool = False


@dataclass(slots=True, frozen=True)
class GuidanceResult:
    should_intervene: bool
    confidence: float
    reasoning: str
    guidance: str | None = None
    source: str = "unknown"
    priority: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


__all__ = [
    "AutopilotState",
    "GuidanceResult",
    "Session",
    "SessionCounts",
    "SessionSnapshot",
    "SessionState",
    "Worktree",
]

"""Exception types shared across grove."""

from __future__ import annotations

from pathlib import Path
from typing import Literal


class GroveError(RuntimeError):
    """Base class for grove errors."""


class ProcessError(GroveError):
    """Raised when a child process cannot be spawned or fails at runtime."""

    def __init__(
        self,
        command: str,
        message: str,
        *,
        exit_code: int | None = None,
        signal: int | None = None,
    ) -> None:
        super().__init__(f"{command}: {message}")
        self.command = command
        self.message = message
        self.exit_code = exit_code
        self.signal = signal


ConfigErrorReason = Literal["parse", "validation", "missing"]


class ConfigError(GroveError):
    """Raised when presets or devcontainer settings cannot be used."""

    def __init__(self, config_path: Path | str, reason: ConfigErrorReason, details: str) -> None:
        super().__init__(f"Invalid configuration in {config_path} ({reason}): {details}")
        self.config_path = Path(config_path)
        self.reason = reason
        self.details = details


class GuidanceError(GroveError):
    """Raised by guidance sources when an analysis request fails."""


__all__ = ["ConfigError", "GroveError", "GuidanceError", "ProcessError"]

"""Runtime settings for grove."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DETACH_KEYS = {
    "ctrl-e": b"\x05",
    "ctrl-t": b"\x14",
    "ctrl-q": b"\x11",
    "ctrl-]": b"\x1d",
}


class GroveSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    config_path: Path = Field(
        default=Path("~/.config/grove/config.yaml"), validation_alias="GROVE_CONFIG_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="GROVE_LOG_LEVEL")
    log_file: Path = Field(
        default=Path("~/.cache/grove/grove.log"), validation_alias="GROVE_LOG_FILE"
    )
    fallback_grace_ms: int = Field(default=500, validation_alias="GROVE_FALLBACK_GRACE_MS")
    detach_key: str = Field(default="ctrl-e", validation_alias="GROVE_DETACH_KEY")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "GROVE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("fallback_grace_ms")
    @classmethod
    def _validate_grace(cls, value: int) -> int:
        if value < 0:
            raise ValueError("GROVE_FALLBACK_GRACE_MS must be >= 0")
        return value

    @field_validator("detach_key")
    @classmethod
    def _validate_detach_key(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in _DETACH_KEYS:
            raise ValueError(
                "GROVE_DETACH_KEY must be one of " + ", ".join(sorted(_DETACH_KEYS))
            )
        return normalized

    @property
    def detach_sequence(self) -> bytes:
        return _DETACH_KEYS[self.detach_key]

    @property
    def fallback_grace_seconds(self) -> float:
        return self.fallback_grace_ms / 1000


@lru_cache(maxsize=1)
def get_settings() -> GroveSettings:
    """Return cached settings instance."""

    settings = GroveSettings()
    settings.config_path = settings.config_path.expanduser()
    settings.log_file = settings.log_file.expanduser()
    return settings


def configure_logging(level: str, log_file: Path | None = None) -> None:
    """Configure root logging; output goes to a file so PTY mirroring stays clean."""

    handlers: list[logging.Handler] | None = None
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers = [logging.FileHandler(log_file, encoding="utf-8")]
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


__all__ = ["GroveSettings", "configure_logging", "get_settings"]

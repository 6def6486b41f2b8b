"""Configuration models for command presets and session integrations."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DetectionStrategy = Literal[
    "claude", "codex", "gemini", "cursor", "github-copilot", "kimi", "opencode", "cline"
]


class CommandPreset(BaseModel):
    """A named agent CLI command with optional fallback arguments."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable identifier for the preset.")
    name: str = Field(..., description="Display name shown in menus.")
    command: str = Field(..., description="Executable to launch inside the worktree.")
    args: tuple[str, ...] = Field(
        default=(), description="Arguments for the primary launch attempt."
    )
    fallback_args: tuple[str, ...] | None = Field(
        default=None,
        description="Arguments used when the primary launch exits with code 1 right away.",
    )
    detection_strategy: DetectionStrategy = Field(
        default="claude", description="Agent type used to classify terminal output."
    )

    @field_validator("id", "command")
    @classmethod
    def _normalize_required(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Preset id and command must not be empty")
        return normalized

    @field_validator("args", "fallback_args", mode="before")
    @classmethod
    def _ensure_sequence(cls, value):  # type: ignore[override]
        if value is None:
            return value
        if isinstance(value, str):
            raise TypeError("Preset args must be a list of strings")
        return tuple(str(item) for item in value)


class DevcontainerConfig(BaseModel):
    """Commands used to start and enter a devcontainer."""

    model_config = ConfigDict(frozen=True)

    up_command: str = Field(..., description="Shell command that starts the container.")
    exec_command: str = Field(
        ..., description="Command prefix that runs a program inside the container."
    )

    @field_validator("up_command", "exec_command")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Devcontainer commands must not be empty")
        return normalized


class AutopilotConfig(BaseModel):
    """Settings for the automated guidance loop."""

    enabled: bool = False
    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4.1"
    max_guidances_per_hour: int = 3
    analysis_delay_ms: int = 1000
    intervention_threshold: float = 0.5
    api_keys: dict[str, str] = Field(default_factory=dict)
    patterns_enabled: bool = True

    @field_validator("max_guidances_per_hour")
    @classmethod
    def _validate_rate(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_guidances_per_hour must be >= 1")
        return value

    @field_validator("analysis_delay_ms")
    @classmethod
    def _validate_delay(cls, value: int) -> int:
        if value < 0:
            raise ValueError("analysis_delay_ms must be >= 0")
        return value

    @field_validator("intervention_threshold")
    @classmethod
    def _validate_threshold(cls, value: float) -> float:
        if not 0 <= value <= 1:
            raise ValueError("intervention_threshold must be between 0 and 1")
        return value


class AutoApprovalConfig(BaseModel):
    """Settings for automatically confirming safe agent prompts."""

    enabled: bool = False
    custom_command: str | None = None
    timeout_seconds: float = 30.0

    @field_validator("timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout_seconds must be > 0")
        return value


class StatusHook(BaseModel):
    """Shell command executed when a session enters a given state."""

    command: str = ""
    enabled: bool = False


class GroveConfig(BaseModel):
    """Top-level user configuration."""

    presets: list[CommandPreset] = Field(
        default_factory=lambda: [CommandPreset(id="claude", name="Claude", command="claude")]
    )
    default_preset_id: str | None = None
    devcontainer: DevcontainerConfig | None = None
    autopilot: AutopilotConfig = Field(default_factory=AutopilotConfig)
    auto_approval: AutoApprovalConfig = Field(default_factory=AutoApprovalConfig)
    status_hooks: dict[Literal["idle", "busy", "waiting_input"], StatusHook] = Field(
        default_factory=dict
    )

    @model_validator(mode="after")
    def _validate_presets(self) -> "GroveConfig":
        if not self.presets:
            raise ValueError("At least one command preset must be configured")
        ids = [preset.id for preset in self.presets]
        duplicates = sorted({preset_id for preset_id in ids if ids.count(preset_id) > 1})
        if duplicates:
            raise ValueError(f"Duplicate preset ids: {', '.join(duplicates)}")
        if self.default_preset_id is not None and self.default_preset_id not in ids:
            raise ValueError(f"default_preset_id '{self.default_preset_id}' is not a preset")
        return self

    def preset_by_id(self, preset_id: str) -> CommandPreset | None:
        for preset in self.presets:
            if preset.id == preset_id:
                return preset
        return None

    @property
    def default_preset(self) -> CommandPreset:
        if self.default_preset_id is not None:
            preset = self.preset_by_id(self.default_preset_id)
            if preset is not None:
                return preset
        return self.presets[0]

    def get_preset(self, preset_id: str | None = None) -> CommandPreset:
        """Return the named preset, falling back to the default one."""

        if preset_id:
            preset = self.preset_by_id(preset_id)
            if preset is not None:
                return preset
        return self.default_preset


__all__ = [
    "AutoApprovalConfig",
    "AutopilotConfig",
    "CommandPreset",
    "DetectionStrategy",
    "DevcontainerConfig",
    "GroveConfig",
    "StatusHook",
]

"""Command presets and user configuration."""

from .loader import ConfigLoader, load_config
from .models import (
    AutoApprovalConfig,
    AutopilotConfig,
    CommandPreset,
    DevcontainerConfig,
    GroveConfig,
    StatusHook,
)

__all__ = [
    "AutoApprovalConfig",
    "AutopilotConfig",
    "CommandPreset",
    "ConfigLoader",
    "DevcontainerConfig",
    "GroveConfig",
    "StatusHook",
    "load_config",
]

"""Configuration loading utilities."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from .models import CommandPreset, GroveConfig

logger = logging.getLogger(__name__)


class ConfigLoader:
    """Loads the grove configuration from a YAML file on disk."""

    def __init__(self, path: Path | str, *, required: bool = False) -> None:
        self._path = Path(path).expanduser()
        self._required = required
        self._config: GroveConfig | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> GroveConfig:
        """Parse and validate the configuration file.

        A missing file yields the built-in defaults unless the loader was
        created with ``required=True``.
        """

        if not self._path.exists():
            if self._required:
                raise ConfigError(self._path, "missing", "configuration file does not exist")
            logger.info("No configuration at %s, using defaults", self._path)
            self._config = GroveConfig()
            return self._config

        try:
            document = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ConfigError(self._path, "parse", str(exc)) from exc

        if document is None:
            document = {}
        if not isinstance(document, dict):
            raise ConfigError(self._path, "validation", "top-level document must be a mapping")

        try:
            self._config = GroveConfig.model_validate(document)
        except ValidationError as exc:
            raise ConfigError(self._path, "validation", str(exc)) from exc

        logger.debug(
            "Loaded configuration",
            extra={"path": str(self._path), "presets": len(self._config.presets)},
        )
        return self._config

    @property
    def config(self) -> GroveConfig:
        if self._config is None:
            return self.load()
        return self._config

    def get_preset(self, preset_id: str | None = None) -> CommandPreset:
        """Return a preset by id, or the default preset when unknown."""

        return self.config.get_preset(preset_id)


def load_config(path: Path | str) -> GroveConfig:
    """Convenience wrapper for loading configuration from ``path``."""

    return ConfigLoader(path).load()


__all__ = ["ConfigLoader", "load_config"]

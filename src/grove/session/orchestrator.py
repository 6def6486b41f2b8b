"""Registry-per-project bookkeeping for multi-project mode."""

from __future__ import annotations

import logging
from typing import Callable

from ..models import Session
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

RegistryFactory = Callable[[], SessionRegistry]


class GlobalSessionOrchestrator:
    """Hands out one :class:`SessionRegistry` per project root.

    Calls without a project path share a single registry, which is what
    single-project mode uses.
    """

    def __init__(self, factory: RegistryFactory | None = None) -> None:
        self._factory = factory or SessionRegistry
        self._global = self._factory()
        self._projects: dict[str, SessionRegistry] = {}

    def get_registry(self, project_path: str | None = None) -> SessionRegistry:
        if not project_path:
            return self._global
        registry = self._projects.get(project_path)
        if registry is None:
            registry = self._factory()
            self._projects[project_path] = registry
            logger.debug("Created project registry", extra={"project": project_path})
        return registry

    @property
    def project_paths(self) -> list[str]:
        return list(self._projects)

    def get_all_sessions(self) -> list[Session]:
        sessions = self._global.get_all_sessions()
        for registry in self._projects.values():
            sessions.extend(registry.get_all_sessions())
        return sessions

    def get_project_sessions(self, project_path: str) -> list[Session]:
        registry = self._projects.get(project_path)
        return registry.get_all_sessions() if registry is not None else []

    def destroy_project_sessions(self, project_path: str) -> None:
        registry = self._projects.pop(project_path, None)
        if registry is not None:
            registry.destroy()

    def destroy_all_sessions(self) -> None:
        self._global.destroy()
        for registry in self._projects.values():
            registry.destroy()
        self._projects.clear()


__all__ = ["GlobalSessionOrchestrator", "RegistryFactory"]

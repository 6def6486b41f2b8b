"""Command-line entry point: run agent sessions for a set of worktrees."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from . import __version__
from .approval import AutoApprovalVerifier
from .autopilot import AutopilotMonitor, build_guidance_source
from .config import GroveSettings, configure_logging, get_settings
from .errors import ConfigError, ProcessError
from .hooks import StatusHookRunner
from .models import Session, SessionState
from .presets import ConfigLoader, GroveConfig
from .process import ProcessSupervisor
from .session import SessionRegistry
from .terminal import HostTerminal, replay_chunks

logger = logging.getLogger(__name__)


def window_title(session: Session, registry: SessionRegistry) -> bytes:
    counts = SessionRegistry.format_session_counts(
        SessionRegistry.get_session_counts(registry.get_all_sessions())
    )
    return f"\x1b]0;grove: {Path(session.worktree_path).name}{counts}\x07".encode("utf-8")


class GroveApp:
    """Wires the registry, host terminal, hooks and autopilot for one run."""

    def __init__(
        self,
        settings: GroveSettings,
        config: GroveConfig,
        *,
        autopilot: bool = False,
        auto_approval: bool = False,
        host: HostTerminal | None = None,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        self._settings = settings
        self._config = config
        self.host = host or HostTerminal(detach_key=settings.detach_sequence)
        self.host.set_detach_handler(self.cycle)
        self.registry = SessionRegistry(
            config,
            supervisor=supervisor or ProcessSupervisor(grace_period=settings.fallback_grace_seconds),
            host=self.host,
            verifier=AutoApprovalVerifier(config.auto_approval),
        )
        if auto_approval:
            self.registry.set_auto_approval_enabled(True)
        self.hooks = StatusHookRunner(config.status_hooks)
        self.hooks.attach(self.registry)
        self.monitor: AutopilotMonitor | None = None
        if autopilot or config.autopilot.enabled:
            self.monitor = AutopilotMonitor(
                config.autopilot, build_guidance_source(config.autopilot), self.registry
            )
        self._done: asyncio.Event | None = None
        self._opening = False

        self.registry.on("sessionData", self._mirror)
        self.registry.on("sessionRestore", self._replay)
        self.registry.on("sessionStateChanged", self._state_changed)
        self.registry.on("sessionExit", self._session_exited)

    def _mirror(self, session: Session, data: bytes) -> None:
        self.host.write(data)

    def _replay(self, session: Session, history: list[bytes]) -> None:
        for chunk in replay_chunks(history):
            self.host.write(chunk)
        self.host.write(window_title(session, self.registry))

    def _state_changed(self, session: Session, previous: SessionState, current: SessionState) -> None:
        active = self.registry.get_active_session()
        if active is not None:
            self.host.write(window_title(active, self.registry))

    def _session_exited(self, session: Session) -> None:
        if self._opening:
            return
        remaining = self.registry.get_all_sessions()
        if not remaining:
            if self._done is not None:
                self._done.set()
            return
        if self.registry.get_active_session() is None:
            self.registry.set_session_active(remaining[0].worktree_path, True)

    def cycle(self) -> None:
        """Move the foreground to the next live session."""

        sessions = self.registry.get_all_sessions()
        if not sessions:
            return
        active = self.registry.get_active_session()
        index = sessions.index(active) if active in sessions else -1
        target = sessions[(index + 1) % len(sessions)]
        self.registry.set_session_active(target.worktree_path, True)
        self.host.write(window_title(target, self.registry))

    def resize(self) -> None:
        active = self.registry.get_active_session()
        if active is None:
            return
        cols, rows = self.host.size()
        self.registry.resize_session(active.worktree_path, cols, rows)

    async def open(self, paths: list[str], *, preset_id: str | None, devcontainer: bool) -> list[Session]:
        sessions: list[Session] = []
        for path in paths:
            if devcontainer:
                if self._config.devcontainer is None:
                    raise ConfigError("<config>", "validation", "No devcontainer configuration found")
                session = await self.registry.create_session_with_devcontainer(
                    path, self._config.devcontainer, preset_id
                )
            else:
                session = await self.registry.create_session(path, preset_id)
            if self.monitor is not None:
                self.monitor.enable(session)
            sessions.append(session)
        return sessions

    async def run(self, paths: list[str], *, preset_id: str | None = None, devcontainer: bool = False) -> None:
        loop = asyncio.get_running_loop()
        self._done = asyncio.Event()
        try:
            # exits during startup are settled once every session has been opened
            self._opening = True
            try:
                await self.open(paths, preset_id=preset_id, devcontainer=devcontainer)
            finally:
                self._opening = False
            remaining = self.registry.get_all_sessions()
            if not remaining:
                return
            self.registry.set_session_active(remaining[0].worktree_path, True)
            loop.add_signal_handler(signal.SIGWINCH, self.resize)
            await self._done.wait()
        finally:
            loop.remove_signal_handler(signal.SIGWINCH)
            self.registry.destroy()
            if self.monitor is not None:
                self.monitor.destroy()
            await self.hooks.wait_idle()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="grove", description="Run agent CLI sessions side by side, one per git worktree"
    )
    parser.add_argument("paths", nargs="*", help="Worktree directories to open")
    parser.add_argument("--config", type=Path, help="Path to the YAML configuration")
    parser.add_argument("--preset", help="Command preset id to launch")
    parser.add_argument(
        "--devcontainer", action="store_true", help="Run sessions inside the configured devcontainer"
    )
    parser.add_argument("--autopilot", action="store_true", help="Enable autopilot for new sessions")
    parser.add_argument(
        "--auto-approval", action="store_true", help="Verify and auto-approve safe prompts"
    )
    parser.add_argument("--list-presets", action="store_true", help="Print configured presets")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def list_presets(config: GroveConfig) -> None:
    default_id = config.default_preset.id
    for preset in config.presets:
        marker = "*" if preset.id == default_id else " "
        command = " ".join([preset.command, *preset.args])
        print(f"{marker} {preset.id:<16} {preset.name:<20} {command} [{preset.detection_strategy}]")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file)

    config_path = args.config.expanduser() if args.config else settings.config_path
    try:
        config = ConfigLoader(config_path, required=args.config is not None).load()
    except ConfigError as exc:
        print(f"grove: {exc}", file=sys.stderr)
        return 2

    if args.list_presets:
        list_presets(config)
        return 0
    if not args.paths:
        parser.error("at least one worktree path is required")

    paths = [str(Path(path).expanduser().resolve()) for path in args.paths]
    app = GroveApp(settings, config, autopilot=args.autopilot, auto_approval=args.auto_approval)
    logger.info("Starting grove", extra={"version": __version__, "paths": paths})
    try:
        asyncio.run(app.run(paths, preset_id=args.preset, devcontainer=args.devcontainer))
    except (ProcessError, ConfigError) as exc:
        print(f"grove: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import asyncio
from pathlib import Path
import textwrap

import pytest

from grove import __version__
from grove.cli import GroveApp, build_parser, main, window_title
from grove.config import GroveSettings, get_settings
from grove.errors import ConfigError
from grove.presets import CommandPreset, GroveConfig
from grove.process import ProcessSupervisor
from grove.process.supervisor import FakeSpawner


class RecordingHost:
    def __init__(self) -> None:
        self.output = bytearray()
        self.owner: str | None = None
        self.detach_handler = None

    def set_detach_handler(self, handler) -> None:
        self.detach_handler = handler

    def acquire(self, owner: str, sink) -> None:
        self.owner = owner

    def release(self, owner: str) -> None:
        if self.owner == owner:
            self.owner = None

    def write(self, data: bytes) -> None:
        self.output.extend(data)

    def size(self) -> tuple[int, int]:
        return (90, 20)


@pytest.fixture
def isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("GROVE_CONFIG_PATH", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("GROVE_LOG_FILE", str(tmp_path / "logs" / "grove.log"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def make_app(
    spawner: FakeSpawner | None = None, **kwargs
) -> tuple[GroveApp, FakeSpawner, RecordingHost]:
    spawner = spawner or FakeSpawner()
    host = RecordingHost()
    config = GroveConfig(
        presets=[
            CommandPreset(id="claude", name="Claude", command="claude"),
            CommandPreset(id="codex", name="Codex", command="codex", detection_strategy="codex"),
        ]
    )
    app = GroveApp(
        GroveSettings(),
        config,
        host=host,
        supervisor=ProcessSupervisor(spawner=spawner, grace_period=5),
        **kwargs,
    )
    return app, spawner, host


def test_parser_accepts_session_flags() -> None:
    args = build_parser().parse_args(
        ["one", "two", "--preset", "codex", "--devcontainer", "--autopilot", "--auto-approval"]
    )

    assert args.paths == ["one", "two"]
    assert args.preset == "codex"
    assert args.devcontainer and args.autopilot and args.auto_approval


def test_version_flag(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--version"])

    assert __version__ in capsys.readouterr().out


def test_list_presets_marks_default(
    isolated_settings, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = tmp_path / "grove.yaml"
    config_path.write_text(
        textwrap.dedent(
            """
            default_preset_id: codex
            presets:
              - {id: claude, name: Claude, command: claude, args: ["--resume"]}
              - {id: codex, name: Codex, command: codex, detection_strategy: codex}
            """
        ),
        encoding="utf-8",
    )

    assert main(["--config", str(config_path), "--list-presets"]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[0].startswith("  claude")
    assert "claude --resume [claude]" in lines[0]
    assert lines[1].startswith("* codex")


def test_missing_explicit_config_exits_with_two(
    isolated_settings, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert main(["--config", str(tmp_path / "nope.yaml"), "--list-presets"]) == 2

    assert "missing" in capsys.readouterr().err


def test_paths_are_required(isolated_settings) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main([])

    assert excinfo.value.code == 2


def test_app_cycles_and_follows_exits(tmp_path: Path) -> None:
    app, spawner, host = make_app()
    one, two = str(tmp_path / "one"), str(tmp_path / "two")

    async def scenario():
        runner = asyncio.create_task(app.run([one, two]))
        await asyncio.sleep(0.01)
        first_owner = host.owner
        host.detach_handler()
        second_owner = host.owner
        spawner.processes[1].emit_data("hello")
        spawner.processes[1].emit_exit(0)
        after_exit = host.owner
        spawner.processes[0].emit_exit(0)
        await asyncio.wait_for(runner, timeout=5)
        return first_owner, second_owner, after_exit

    first_owner, second_owner, after_exit = asyncio.run(scenario())

    assert first_owner is not None and second_owner is not None
    assert first_owner != second_owner
    assert after_exit == first_owner
    assert b"hello" in host.output
    assert b"\x1b]0;grove: two" in host.output
    assert app.registry.get_all_sessions() == []


def test_app_enables_autopilot_for_new_sessions(tmp_path: Path) -> None:
    app, _, _ = make_app(autopilot=True)

    async def scenario():
        return await app.open([str(tmp_path)], preset_id="codex", devcontainer=False)

    (session,) = asyncio.run(scenario())

    assert app.monitor is not None
    assert session.autopilot_state.is_active
    assert session.detection_strategy == "codex"


def test_app_requires_devcontainer_config(tmp_path: Path) -> None:
    app, spawner, _ = make_app()

    async def scenario():
        await app.open([str(tmp_path)], preset_id=None, devcontainer=True)

    with pytest.raises(ConfigError):
        asyncio.run(scenario())

    assert spawner.processes == []


def test_window_title_includes_counts(tmp_path: Path) -> None:
    app, spawner, _ = make_app()

    async def scenario():
        return await app.open([str(tmp_path / "feature")], preset_id=None, devcontainer=False)

    (session,) = asyncio.run(scenario())

    assert window_title(session, app.registry) == b"\x1b]0;grove: feature (1 Busy)\x07"


class ExitOnSecondSpawn(FakeSpawner):
    """The first agent quits while the second one is still starting."""

    async def __call__(self, argv, *, cwd, **kwargs):
        if len(self.processes) == 1:
            self.processes[0].emit_exit(0)
        return await super().__call__(argv, cwd=cwd, **kwargs)


def test_exit_during_startup_keeps_remaining_sessions(tmp_path: Path) -> None:
    app, spawner, host = make_app(spawner=ExitOnSecondSpawn())
    one, two = str(tmp_path / "one"), str(tmp_path / "two")

    async def scenario():
        runner = asyncio.create_task(app.run([one, two]))
        await asyncio.sleep(0.01)
        still_running = not runner.done()
        live = [session.worktree_path for session in app.registry.get_all_sessions()]
        owner = host.owner
        spawner.processes[1].emit_exit(0)
        await asyncio.wait_for(runner, timeout=5)
        return still_running, live, owner

    still_running, live, owner = asyncio.run(scenario())

    assert still_running
    assert live == [two]
    assert owner is not None
    assert not spawner.processes[1].killed

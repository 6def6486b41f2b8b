from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from grove.approval import ApprovalVerdict, FakeApprovalVerifier
from grove.errors import ProcessError
from grove.models import SessionCounts, SessionState, Worktree
from grove.presets import AutoApprovalConfig, CommandPreset, DevcontainerConfig, GroveConfig
from grove.process import ProcessSupervisor
from grove.process.supervisor import FakeSpawner
from grove.session import SessionRegistry

CLEAR = "\x1b[2J\x1b[H"
IDLE = SessionState.IDLE
BUSY = SessionState.BUSY
WAITING = SessionState.WAITING_INPUT
PENDING = SessionState.PENDING_AUTO_APPROVAL


class FakeHost:
    def __init__(self) -> None:
        self.owner: str | None = None
        self.sink = None
        self.events: list[tuple[str, str]] = []

    def acquire(self, owner: str, sink) -> None:
        if self.owner not in (None, owner):
            raise RuntimeError(f"Terminal already owned by {self.owner}")
        self.owner = owner
        self.sink = sink
        self.events.append(("acquire", owner))

    def release(self, owner: str) -> None:
        if self.owner != owner:
            return
        self.owner = None
        self.sink = None
        self.events.append(("release", owner))

    def size(self) -> tuple[int, int]:
        return (100, 30)


class Harness:
    def __init__(
        self,
        *,
        spawner: FakeSpawner | None = None,
        verifier: FakeApprovalVerifier | None = None,
        auto_approval: bool = False,
    ) -> None:
        config = GroveConfig(
            presets=[
                CommandPreset(id="claude", name="Claude", command="claude", fallback_args=["--safe"]),
                CommandPreset(id="codex", name="Codex", command="codex", detection_strategy="codex"),
            ],
            devcontainer=DevcontainerConfig(
                up_command="true", exec_command="devcontainer exec --workspace-folder ."
            ),
            auto_approval=AutoApprovalConfig(enabled=auto_approval),
        )
        self.spawner = spawner or FakeSpawner()
        self.host = FakeHost()
        self.registry = SessionRegistry(
            config,
            supervisor=ProcessSupervisor(spawner=self.spawner, grace_period=5),
            host=self.host,
            verifier=verifier,
        )
        self.events: list[tuple] = []
        for name in (
            "sessionCreated",
            "sessionDestroyed",
            "sessionExit",
        ):
            self.registry.on(name, lambda session, _name=name: self.events.append((_name, session.id)))
        self.registry.on(
            "sessionStateChanged",
            lambda session, old, new: self.events.append(("sessionStateChanged", old, new)),
        )
        self.registry.on(
            "sessionData", lambda session, data: self.events.append(("sessionData", data))
        )
        self.registry.on(
            "sessionRestore",
            lambda session, history: self.events.append(("sessionRestore", tuple(history))),
        )

    def state_changes(self) -> list[tuple]:
        return [event[1:] for event in self.events if event[0] == "sessionStateChanged"]


def test_create_session_is_idempotent_under_concurrency(tmp_path: Path) -> None:
    harness = Harness()
    path = str(tmp_path)

    async def scenario():
        first, second = await asyncio.gather(
            harness.registry.create_session(path), harness.registry.create_session(path)
        )
        third = await harness.registry.create_session(path, "codex")
        return first, second, third

    first, second, third = asyncio.run(scenario())

    assert first is second is third
    assert len(harness.spawner.processes) == 1
    assert [event[0] for event in harness.events] == ["sessionCreated"]
    assert first.state is BUSY
    assert first.buffer.size == (100, 30)
    assert harness.registry.get_all_sessions() == [first]


def test_preset_selects_command_and_detection_strategy(tmp_path: Path) -> None:
    harness = Harness()

    async def scenario():
        return await harness.registry.create_session(str(tmp_path), "codex")

    session = asyncio.run(scenario())

    assert harness.spawner.invocations == [("codex",)]
    assert session.detection_strategy == "codex"
    assert session.preset is not None and session.preset.id == "codex"


def test_state_transitions_follow_terminal_output(tmp_path: Path) -> None:
    harness = Harness()

    async def scenario():
        await harness.registry.create_session(str(tmp_path), "codex")
        fake = harness.spawner.processes[0]
        fake.emit_data("Allow command? [y/n]")
        fake.emit_data(" ")
        fake.emit_data(CLEAR + "Working (3s - esc to interrupt)")
        fake.emit_data(CLEAR + "codex> ")

    asyncio.run(scenario())

    assert harness.state_changes() == [(BUSY, WAITING), (WAITING, BUSY), (BUSY, IDLE)]


def test_background_sessions_record_output_without_streaming(tmp_path: Path) -> None:
    harness = Harness()
    path = str(tmp_path)

    async def scenario():
        session = await harness.registry.create_session(path)
        fake = harness.spawner.processes[0]
        fake.emit_data("hidden")
        harness.registry.set_session_active(path, True)
        fake.emit_data("live")
        return session

    session = asyncio.run(scenario())

    assert session.output_history == [b"hidden", b"live"]
    data_events = [event for event in harness.events if event[0] in ("sessionData", "sessionRestore")]
    assert data_events == [("sessionRestore", (b"hidden",)), ("sessionData", b"live")]


def test_only_one_session_is_foreground(tmp_path: Path) -> None:
    harness = Harness()
    one, two = str(tmp_path / "one"), str(tmp_path / "two")

    async def scenario():
        first = await harness.registry.create_session(one)
        second = await harness.registry.create_session(two)
        harness.registry.set_session_active(one, True)
        harness.registry.set_session_active(two, True)
        return first, second

    first, second = asyncio.run(scenario())

    assert not first.is_active
    assert second.is_active
    assert harness.host.events == [
        ("acquire", first.id),
        ("release", first.id),
        ("acquire", second.id),
    ]
    assert harness.registry.get_active_session() is second
    # nothing recorded yet, so no restore
    assert not any(event[0] == "sessionRestore" for event in harness.events)


def test_host_input_reaches_the_foreground_process(tmp_path: Path) -> None:
    harness = Harness()
    path = str(tmp_path)

    async def scenario():
        await harness.registry.create_session(path)
        harness.registry.set_session_active(path, True)
        harness.host.sink(b"hello\r")
        harness.registry.resize_session(path, 120, 40)

    asyncio.run(scenario())

    fake = harness.spawner.processes[0]
    assert fake.writes == [b"hello\r"]
    assert fake.sizes == [(120, 40)]


def test_process_exit_removes_session_and_releases_terminal(tmp_path: Path) -> None:
    harness = Harness()
    path = str(tmp_path)

    async def scenario():
        session = await harness.registry.create_session(path)
        harness.registry.set_session_active(path, True)
        harness.spawner.processes[0].emit_exit(0)
        return session

    session = asyncio.run(scenario())

    assert harness.registry.get_session(path) is None
    assert harness.host.owner is None
    assert harness.events[-1] == ("sessionExit", session.id)
    assert session.buffer.closed


def test_destroy_session_kills_without_exit_event(tmp_path: Path) -> None:
    harness = Harness()
    path = str(tmp_path)

    async def scenario():
        session = await harness.registry.create_session(path)
        harness.registry.destroy_session(path)
        fake = harness.spawner.processes[0]
        fake.emit_data("late output")
        fake.emit_exit(0)
        return session, fake

    session, fake = asyncio.run(scenario())

    assert fake.killed
    assert harness.registry.get_session(path) is None
    assert [event[0] for event in harness.events] == ["sessionCreated", "sessionDestroyed"]
    assert session.output_history == []


def test_fallback_respawn_keeps_the_session(tmp_path: Path) -> None:
    harness = Harness()
    path = str(tmp_path)

    async def scenario():
        session = await harness.registry.create_session(path)
        harness.spawner.processes[0].emit_exit(1)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        harness.spawner.processes[1].emit_data("ready")
        return session

    session = asyncio.run(scenario())

    assert harness.registry.get_session(path) is session
    assert not session.is_primary_command
    assert harness.spawner.invocations == [("claude",), ("claude", "--safe")]
    assert session.output_history == [b"ready"]
    assert not any(event[0] == "sessionExit" for event in harness.events)


def test_spawn_failure_propagates_and_allows_retry(tmp_path: Path) -> None:
    harness = Harness(spawner=FakeSpawner([ProcessError("claude", "not found")]))
    path = str(tmp_path)

    async def scenario():
        with pytest.raises(ProcessError):
            await harness.registry.create_session(path)
        assert harness.registry.get_session(path) is None
        return await harness.registry.create_session(path)

    session = asyncio.run(scenario())

    assert harness.registry.get_session(path) is session
    assert [event[0] for event in harness.events] == ["sessionCreated"]


def test_devcontainer_session_wraps_command(tmp_path: Path) -> None:
    harness = Harness()

    async def scenario():
        config = harness.registry.config.devcontainer
        return await harness.registry.create_session_with_devcontainer(str(tmp_path), config, "codex")

    session = asyncio.run(scenario())

    assert harness.spawner.invocations == [
        ("devcontainer", "exec", "--workspace-folder", ".", "--", "codex")
    ]
    assert session.devcontainer_config is not None


def test_session_counts_and_format() -> None:
    class Stub:
        def __init__(self, state: SessionState) -> None:
            self.state = state

    sessions = [Stub(IDLE), Stub(BUSY), Stub(BUSY), Stub(WAITING), Stub(PENDING)]
    counts = SessionRegistry.get_session_counts(sessions)

    assert counts == SessionCounts(idle=1, busy=2, waiting_input=1, total=5)
    assert SessionRegistry.format_session_counts(counts) == " (1 Idle / 2 Busy / 1 Waiting)"
    assert SessionRegistry.format_session_counts(SessionCounts(busy=1, total=1)) == " (1 Busy)"
    assert SessionRegistry.format_session_counts(SessionCounts()) == ""
    assert SessionRegistry.format_session_counts(SessionCounts(total=2)) == ""


def test_annotate_worktrees_and_snapshot(tmp_path: Path) -> None:
    harness = Harness()
    path = str(tmp_path / "feature")

    async def scenario():
        await harness.registry.create_session(path)

    asyncio.run(scenario())
    worktrees = harness.registry.annotate_worktrees(
        [Worktree(path=path, branch="feature"), Worktree(path=str(tmp_path / "main"), is_main_worktree=True)]
    )

    assert [worktree.has_session for worktree in worktrees] == [True, False]
    snapshot = harness.registry.snapshot(path)
    assert snapshot is not None and snapshot.state is BUSY
    assert harness.registry.snapshot(str(tmp_path / "main")) is None


def test_auto_approval_confirms_safe_prompt(tmp_path: Path) -> None:
    verifier = FakeApprovalVerifier([ApprovalVerdict(needs_permission=False)])
    harness = Harness(verifier=verifier, auto_approval=True)

    async def scenario():
        session = await harness.registry.create_session(str(tmp_path), "codex")
        fake = harness.spawner.processes[0]
        fake.emit_data("git status\r\nAllow command? [y/n]")
        assert session.state is PENDING
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        return session, fake

    session, fake = asyncio.run(scenario())

    assert fake.writes == ["\r"]
    assert session.state is BUSY
    assert harness.state_changes() == [(BUSY, PENDING), (PENDING, BUSY)]
    assert "Allow command? [y/n]" in verifier.requests[0]


def test_approved_prompt_still_on_screen_is_not_approved_twice(tmp_path: Path) -> None:
    verifier = FakeApprovalVerifier()
    harness = Harness(verifier=verifier, auto_approval=True)

    async def scenario():
        session = await harness.registry.create_session(str(tmp_path), "codex")
        fake = harness.spawner.processes[0]
        fake.emit_data("$ ls\r\nAllow command? [y/n]")
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        # echo of the confirmation arrives before the agent redraws
        fake.emit_data("\r\n")
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        after_echo = (session.state, list(fake.writes))
        fake.emit_data(CLEAR + "Working (esc to interrupt)")
        fake.emit_data(CLEAR + "$ rm tmp\r\nAllow command? [y/n]")
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        return session, fake, after_echo

    session, fake, after_echo = asyncio.run(scenario())

    assert after_echo == (BUSY, ["\r"])
    assert fake.writes == ["\r", "\r"]
    assert len(verifier.requests) == 2
    assert "$ rm tmp" in verifier.requests[1]
    assert session.state is BUSY


def test_auto_approval_rejection_hands_prompt_to_user(tmp_path: Path) -> None:
    verifier = FakeApprovalVerifier([ApprovalVerdict(needs_permission=True, reason="rm -rf")])
    harness = Harness(verifier=verifier, auto_approval=True)
    path = str(tmp_path)

    async def scenario():
        session = await harness.registry.create_session(path, "codex")
        fake = harness.spawner.processes[0]
        fake.emit_data("rm -rf build\r\nAllow command? [y/n]")
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        snapshot = harness.registry.snapshot(path)
        fake.emit_data(" ")
        fake.emit_data(CLEAR + "esc to interrupt")
        return session, fake, snapshot

    session, fake, snapshot = asyncio.run(scenario())

    assert snapshot.state is WAITING
    assert snapshot.auto_approval_failed
    assert snapshot.auto_approval_reason == "rm -rf"
    assert fake.writes == []
    assert len(verifier.requests) == 1
    assert harness.state_changes() == [(BUSY, PENDING), (PENDING, WAITING), (WAITING, BUSY)]
    assert not session.auto_approval_failed
    assert session.auto_approval_reason is None


def test_user_input_cancels_pending_approval(tmp_path: Path) -> None:
    verifier = FakeApprovalVerifier(gate=asyncio.Event())
    harness = Harness(verifier=verifier, auto_approval=True)
    path = str(tmp_path)

    async def scenario():
        session = await harness.registry.create_session(path, "codex")
        fake = harness.spawner.processes[0]
        fake.emit_data("Allow command? [y/n]")
        await asyncio.sleep(0)
        harness.registry.write_input(path, "y")
        await asyncio.sleep(0)
        return session, fake

    session, fake = asyncio.run(scenario())

    assert fake.writes == ["y"]
    assert session.state is WAITING
    assert session.auto_approval_failed
    assert session.auto_approval_reason == "User input received"


def test_leaving_waiting_while_pending_cancels_verification(tmp_path: Path) -> None:
    verifier = FakeApprovalVerifier(gate=asyncio.Event())
    harness = Harness(verifier=verifier, auto_approval=True)

    async def scenario():
        session = await harness.registry.create_session(str(tmp_path), "codex")
        fake = harness.spawner.processes[0]
        fake.emit_data("Allow command? [y/n]")
        await asyncio.sleep(0)
        fake.emit_data(CLEAR + "codex> ")
        await asyncio.sleep(0)
        return session, fake

    session, fake = asyncio.run(scenario())

    assert session.state is IDLE
    assert not session.auto_approval_failed
    assert fake.writes == []
    assert harness.state_changes() == [(BUSY, PENDING), (PENDING, IDLE)]


def test_disabling_auto_approval_releases_pending_sessions(tmp_path: Path) -> None:
    verifier = FakeApprovalVerifier(gate=asyncio.Event())
    harness = Harness(verifier=verifier, auto_approval=True)

    async def scenario():
        session = await harness.registry.create_session(str(tmp_path), "codex")
        harness.spawner.processes[0].emit_data("Allow command? [y/n]")
        harness.registry.set_auto_approval_enabled(False)
        return session

    session = asyncio.run(scenario())

    assert session.state is WAITING
    assert not harness.registry.auto_approval_enabled


def test_destroy_tears_down_every_session(tmp_path: Path) -> None:
    harness = Harness()

    async def scenario():
        await harness.registry.create_session(str(tmp_path / "a"))
        await harness.registry.create_session(str(tmp_path / "b"))
        harness.registry.destroy()

    asyncio.run(scenario())

    assert harness.registry.get_all_sessions() == []
    assert all(process.killed for process in harness.spawner.processes)

from __future__ import annotations

import asyncio
from pathlib import Path

from grove.events import EventEmitter
from grove.process import ProcessSupervisor
from grove.process.supervisor import FakeSpawner
from grove.session import GlobalSessionOrchestrator, SessionRegistry


def make_orchestrator() -> tuple[GlobalSessionOrchestrator, FakeSpawner]:
    spawner = FakeSpawner()

    def factory() -> SessionRegistry:
        return SessionRegistry(
            supervisor=ProcessSupervisor(spawner=spawner, grace_period=5), size=(80, 24)
        )

    return GlobalSessionOrchestrator(factory), spawner


def test_registry_per_project(tmp_path: Path) -> None:
    orchestrator, _ = make_orchestrator()

    alpha = orchestrator.get_registry("/projects/alpha")

    assert orchestrator.get_registry("/projects/alpha") is alpha
    assert orchestrator.get_registry("/projects/beta") is not alpha
    assert orchestrator.get_registry() is orchestrator.get_registry(None)
    assert orchestrator.get_registry() is not alpha
    assert orchestrator.project_paths == ["/projects/alpha", "/projects/beta"]


def test_sessions_across_projects(tmp_path: Path) -> None:
    orchestrator, spawner = make_orchestrator()

    async def scenario():
        await orchestrator.get_registry().create_session(str(tmp_path / "solo"))
        await orchestrator.get_registry("alpha").create_session(str(tmp_path / "a1"))
        await orchestrator.get_registry("alpha").create_session(str(tmp_path / "a2"))
        await orchestrator.get_registry("beta").create_session(str(tmp_path / "b1"))

        assert len(orchestrator.get_all_sessions()) == 4
        assert len(orchestrator.get_project_sessions("alpha")) == 2
        assert orchestrator.get_project_sessions("unknown") == []

        orchestrator.destroy_project_sessions("alpha")
        assert orchestrator.project_paths == ["beta"]
        assert len(orchestrator.get_all_sessions()) == 2

        orchestrator.destroy_all_sessions()

    asyncio.run(scenario())

    assert orchestrator.get_all_sessions() == []
    assert orchestrator.project_paths == []
    assert all(process.killed for process in spawner.processes)


def test_emitter_order_and_removal_during_emit() -> None:
    emitter = EventEmitter()
    calls: list[str] = []

    def second(value: int) -> None:
        calls.append(f"second:{value}")

    def first(value: int) -> None:
        calls.append(f"first:{value}")
        emitter.off("tick", second)

    emitter.on("tick", first)
    emitter.on("tick", second)
    emitter.emit("tick", 1)
    emitter.emit("tick", 2)
    emitter.emit("unknown", 3)

    assert calls == ["first:1", "first:2"]
    assert emitter.listener_count("tick") == 1

    emitter.remove_all_listeners()
    assert emitter.listener_count("tick") == 0

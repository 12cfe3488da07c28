"""Tests for the background semantic sync scheduler."""

from __future__ import annotations

import threading
from pathlib import Path

from scope_memory.core.config import SemanticMemoryConfig
from scope_memory.scheduler import SemanticSyncScheduler


class FakeMemory:
    def __init__(self, scope_id: str, fail: bool = False, gate: threading.Event | None = None) -> None:
        self.scope_id = scope_id
        self.fail = fail
        self.gate = gate
        self.syncs = 0
        self.closed = False

    def sync(self, config: SemanticMemoryConfig) -> None:
        self.syncs += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail:
            raise RuntimeError(f"sync failed for {self.scope_id}")

    def close(self) -> None:
        self.closed = True


def _scheduler(tmp_path: Path, scopes: list[str], memories: dict[str, FakeMemory], **kwargs) -> SemanticSyncScheduler:
    def factory(scope_id: str, config: SemanticMemoryConfig) -> FakeMemory:
        memory = memories.setdefault(scope_id, FakeMemory(scope_id))
        return memory

    return SemanticSyncScheduler(
        tmp_path,
        lambda: list(scopes),
        kwargs.pop("config", SemanticMemoryConfig(embedding_provider="hashed")),
        memory_factory=factory,
        **kwargs,
    )


def test_disabled_scheduler_never_runs(tmp_path: Path) -> None:
    scheduler = _scheduler(tmp_path, ["a"], {}, config=None)
    assert scheduler.run_now() is False
    status = scheduler.status()
    assert status.enabled is False
    assert status.interval_minutes is None
    assert status.total_runs == 0


def test_failures_are_counted_per_scope(tmp_path: Path) -> None:
    memories = {"bad": FakeMemory("bad", fail=True)}
    scheduler = _scheduler(tmp_path, ["good", "bad", "good"], memories)

    assert scheduler.run_now() is True
    status = scheduler.status()
    assert memories["good"].syncs == 1
    assert status.active_scope_count == 2
    assert status.total_runs == 1
    assert status.total_failures == 1
    assert status.last_error is not None and status.last_error.scope_id == "bad"
    assert status.last_success_at_ms is None
    assert status.running is False

    memories["bad"].fail = False
    scheduler.run_now()
    assert scheduler.status().last_success_at_ms is not None
    assert memories["good"].syncs == 2


def test_vanished_scopes_are_dropped(tmp_path: Path) -> None:
    scopes = ["a", "b"]
    memories: dict[str, FakeMemory] = {}
    scheduler = _scheduler(tmp_path, scopes, memories)
    scheduler.run_now()

    scopes.remove("b")
    scheduler.run_now()
    assert memories["b"].closed is True
    assert memories["a"].syncs == 2
    assert scheduler.status().active_scope_count == 1


def test_overlapping_runs_are_skipped(tmp_path: Path) -> None:
    gate = threading.Event()
    memories = {"slow": FakeMemory("slow", gate=gate)}
    scheduler = _scheduler(tmp_path, ["slow"], memories)

    worker = threading.Thread(target=scheduler.run_now)
    worker.start()
    while memories["slow"].syncs == 0:
        threading.Event().wait(0.01)
    assert scheduler.status().running is True
    assert scheduler.run_now() is False

    gate.set()
    worker.join(timeout=5)
    assert scheduler.status().total_runs == 1
    assert memories["slow"].syncs == 1


def test_start_and_stop_background_thread(tmp_path: Path) -> None:
    memories: dict[str, FakeMemory] = {}
    scheduler = _scheduler(tmp_path, ["a"], memories, interval_minutes=60)
    scheduler.start()
    try:
        for _ in range(500):
            if scheduler.status().total_runs and not scheduler.status().running:
                break
            threading.Event().wait(0.01)
        assert memories["a"].syncs == 1
    finally:
        scheduler.close()
    assert memories["a"].closed is True

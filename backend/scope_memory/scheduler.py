"""Periodic background sync of every known scope."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from scope_memory.core.config import SemanticMemoryConfig
from scope_memory.core.logging import get_logger, log_context
from scope_memory.semantic_memory import SemanticMemory
from scope_memory.utils.time import now_ms

logger = get_logger(__name__)

ScopeLister = Callable[[], Iterable[str]]
MemoryFactory = Callable[[str, SemanticMemoryConfig], SemanticMemory]


@dataclass(slots=True)
class SyncFailure:
    message: str
    at_ms: int
    scope_id: str | None = None


@dataclass(slots=True)
class SchedulerStatus:
    enabled: bool
    interval_minutes: float | None
    active_scope_count: int
    running: bool
    last_run_started_at_ms: int | None
    last_run_finished_at_ms: int | None
    last_success_at_ms: int | None
    total_runs: int
    total_failures: int
    last_error: SyncFailure | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SemanticSyncScheduler:
    """Run ``SemanticMemory.sync`` for every scope on a daemon timer thread.

    A scope that fails is counted and logged; the run moves on to the next
    scope. A run requested while another is in progress is skipped.
    """

    def __init__(
        self,
        root_dir: Path,
        list_scope_ids: ScopeLister,
        config: SemanticMemoryConfig | None,
        interval_minutes: float = 15.0,
        memory_factory: MemoryFactory | None = None,
    ) -> None:
        self.root_dir = Path(root_dir)
        self.list_scope_ids = list_scope_ids
        self.enabled = bool(config is not None and config.enabled and interval_minutes > 0)
        self.config = config
        self.interval_minutes = interval_minutes
        self._memory_factory = memory_factory or self._default_memory
        self._memories: dict[str, SemanticMemory] = {}
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        self._active_scope_count = 0
        self._running = False
        self._last_run_started_at_ms: int | None = None
        self._last_run_finished_at_ms: int | None = None
        self._last_success_at_ms: int | None = None
        self._total_runs = 0
        self._total_failures = 0
        self._last_error: SyncFailure | None = None

    def _default_memory(self, scope_id: str, config: SemanticMemoryConfig) -> SemanticMemory:
        return SemanticMemory(self.root_dir, scope_id, config=config)

    def run_now(self) -> bool:
        """Sync all scopes once; returns False when disabled or already running."""
        if not self.enabled or self.config is None:
            return False
        if not self._run_lock.acquire(blocking=False):
            return False
        try:
            self._run(self.config)
        finally:
            self._run_lock.release()
        return True

    def _run(self, config: SemanticMemoryConfig) -> None:
        with self._state_lock:
            self._running = True
            self._total_runs += 1
            self._last_run_started_at_ms = now_ms()
        failed = False
        try:
            scope_ids = sorted(set(self.list_scope_ids()))
            with self._state_lock:
                self._active_scope_count = len(scope_ids)
            for gone in set(self._memories) - set(scope_ids):
                self._memories.pop(gone).close()

            for scope_id in scope_ids:
                memory = self._memories.get(scope_id)
                if memory is None:
                    memory = self._memory_factory(scope_id, config)
                    self._memories[scope_id] = memory
                try:
                    memory.sync(config)
                except Exception as exc:
                    failed = True
                    self._record_failure(exc, scope_id)
                    logger.exception("Semantic sync failed", extra=log_context(scope_id=scope_id))
        except Exception as exc:
            failed = True
            self._record_failure(exc, None)
            logger.exception("Semantic sync run failed")
        finally:
            with self._state_lock:
                finished = now_ms()
                if not failed:
                    self._last_success_at_ms = finished
                self._running = False
                self._last_run_finished_at_ms = finished

    def _record_failure(self, exc: BaseException, scope_id: str | None) -> None:
        with self._state_lock:
            self._total_failures += 1
            self._last_error = SyncFailure(message=str(exc) or type(exc).__name__, at_ms=now_ms(), scope_id=scope_id)

    def start(self) -> None:
        if not self.enabled or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="semantic-sync", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        interval = self.interval_minutes * 60.0
        while not self._stop.is_set():
            self.run_now()
            if self._stop.wait(interval):
                break

    def stop(self, timeout: float | None = 5.0) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop.set()
        thread.join(timeout=timeout)
        self._thread = None

    def close(self) -> None:
        self.stop()
        with self._run_lock:
            for memory in self._memories.values():
                memory.close()
            self._memories.clear()

    def status(self) -> SchedulerStatus:
        with self._state_lock:
            last_error = self._last_error
            return SchedulerStatus(
                enabled=self.enabled,
                interval_minutes=self.interval_minutes if self.enabled else None,
                active_scope_count=self._active_scope_count,
                running=self._running,
                last_run_started_at_ms=self._last_run_started_at_ms,
                last_run_finished_at_ms=self._last_run_finished_at_ms,
                last_success_at_ms=self._last_success_at_ms,
                total_runs=self._total_runs,
                total_failures=self._total_failures,
                last_error=SyncFailure(last_error.message, last_error.at_ms, last_error.scope_id)
                if last_error
                else None,
            )


__all__ = ["SchedulerStatus", "SemanticSyncScheduler", "SyncFailure"]

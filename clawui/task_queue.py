"""
Blueprint Task Queue
====================

Per-blueprint single-flight execution with a typed, ordered queue of
pending tasks, plus a global cap on concurrently running agent processes.

- Each blueprint has one ``asyncio.Lock``; whoever holds it is the only
  thing executing for that blueprint. Waiters are admitted in FIFO order.
- ``enqueue`` records a ``PendingTask`` immediately (so it shows up in the
  queue view) and schedules it behind the lock. Enqueuing the same
  ``(blueprint, node, type)`` while it is pending or running returns the
  existing task instead of adding another entry.
- Different blueprints never wait on each other, except for the shared
  process semaphore.

Usage:
    queue = BlueprintTaskQueue(max_concurrent_processes=3)
    task = queue.enqueue(blueprint_id, "run", lambda: run_node(...), node_id=node_id)
    info = queue.get_queue_info(blueprint_id)
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable

_logger = logging.getLogger(__name__)

TASK_TYPES = (
    "run", "run_all", "evaluate", "reevaluate", "reevaluate_all", "enrich", "generate", "split", "smart_deps",
)

TaskFactory = Callable[[], Awaitable[Any]]
TaskDescriber = Callable[[str, "PendingTask"], dict[str, Any]]


def _utc_now() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


@dataclass
class PendingTask:
    """A queued or running unit of work for one blueprint."""

    type: str
    node_id: str | None
    queued_at: datetime = field(default_factory=_utc_now)
    handle: asyncio.Task | None = field(default=None, repr=False, compare=False)

    def matches(self, task_type: str, node_id: str | None) -> bool:
        return self.type == task_type and self.node_id == node_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "node_id": self.node_id,
            "queued_at": self.queued_at.isoformat(),
        }


@dataclass
class QueueInfo:
    running: bool
    queue_length: int
    pending_tasks: list[PendingTask]
    running_node_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "queue_length": self.queue_length,
            "pending_tasks": [t.to_dict() for t in self.pending_tasks],
            "running_node_id": self.running_node_id,
        }


@dataclass
class GlobalQueueInfo:
    active: bool
    total_pending: int
    tasks: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "total_pending": self.total_pending,
            "tasks": list(self.tasks),
        }


class BlueprintTaskQueue:
    """Concurrency controller shared by the executor and the HTTP layer."""

    def __init__(self, max_concurrent_processes: int = 3):
        self.max_concurrent_processes = max_concurrent_processes
        self._process_slots = asyncio.Semaphore(max_concurrent_processes)
        self._locks: dict[str, asyncio.Lock] = {}
        self._pending: dict[str, list[PendingTask]] = {}
        self._active: dict[str, PendingTask] = {}
        self._running_nodes: dict[str, str] = {}

    # -- Single flight ---------------------------------------------------------

    def _lock(self, blueprint_id: str) -> asyncio.Lock:
        lock = self._locks.get(blueprint_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[blueprint_id] = lock
        return lock

    def is_running(self, blueprint_id: str) -> bool:
        """True while something holds the blueprint's execution slot."""
        lock = self._locks.get(blueprint_id)
        return lock is not None and lock.locked()

    def has_pending(self, blueprint_id: str) -> bool:
        return bool(self._pending.get(blueprint_id))

    @asynccontextmanager
    async def slot(self, blueprint_id: str) -> AsyncIterator[None]:
        """Hold the blueprint's execution slot."""
        async with self._lock(blueprint_id):
            yield

    @asynccontextmanager
    async def process_slot(self) -> AsyncIterator[None]:
        """Hold one of the global agent-process slots."""
        async with self._process_slots:
            yield

    def set_running_node(self, blueprint_id: str, node_id: str | None) -> None:
        if node_id is None:
            self._running_nodes.pop(blueprint_id, None)
        else:
            self._running_nodes[blueprint_id] = node_id

    def running_node_id(self, blueprint_id: str) -> str | None:
        return self._running_nodes.get(blueprint_id)

    # -- Pending tasks ---------------------------------------------------------

    def _find(self, blueprint_id: str, task_type: str, node_id: str | None) -> PendingTask | None:
        active = self._active.get(blueprint_id)
        if active is not None and active.matches(task_type, node_id):
            return active
        for entry in self._pending.get(blueprint_id, []):
            if entry.matches(task_type, node_id):
                return entry
        return None

    def _discard(self, blueprint_id: str, entry: PendingTask) -> None:
        tasks = self._pending.get(blueprint_id)
        if not tasks:
            return
        if entry in tasks:
            tasks.remove(entry)
        if not tasks:
            self._pending.pop(blueprint_id, None)

    def enqueue(
        self,
        blueprint_id: str,
        task_type: str,
        factory: TaskFactory,
        node_id: str | None = None,
    ) -> asyncio.Task:
        """
        Queue ``factory`` to run once the blueprint's slot is free.

        Must be called from within the event loop. Returns the asyncio task
        wrapping the work; a duplicate request returns the original task.
        """
        if task_type not in TASK_TYPES:
            raise ValueError(f"Unknown task type '{task_type}'. Valid types: {', '.join(TASK_TYPES)}")

        existing = self._find(blueprint_id, task_type, node_id)
        if existing is not None and existing.handle is not None:
            _logger.debug(
                "Task %s for blueprint %s node %s already queued", task_type, blueprint_id, node_id,
            )
            return existing.handle

        entry = PendingTask(type=task_type, node_id=node_id)
        self._pending.setdefault(blueprint_id, []).append(entry)
        entry.handle = asyncio.get_running_loop().create_task(
            self._run(blueprint_id, entry, factory),
            name=f"{task_type}:{blueprint_id}:{node_id or '-'}",
        )
        _logger.info(
            "Queued %s task for blueprint %s node %s (queue length %d)",
            task_type, blueprint_id, node_id, len(self._pending.get(blueprint_id, [])),
        )
        return entry.handle

    async def _run(self, blueprint_id: str, entry: PendingTask, factory: TaskFactory) -> Any:
        try:
            async with self._lock(blueprint_id):
                self._discard(blueprint_id, entry)
                self._active[blueprint_id] = entry
                try:
                    return await factory()
                except asyncio.CancelledError:
                    _logger.info("Task %s for blueprint %s cancelled", entry.type, blueprint_id)
                    raise
                except Exception:
                    _logger.exception(
                        "Task %s for blueprint %s node %s failed", entry.type, blueprint_id, entry.node_id,
                    )
                    raise
                finally:
                    if self._active.get(blueprint_id) is entry:
                        self._active.pop(blueprint_id, None)
        finally:
            self._discard(blueprint_id, entry)

    def remove_queued_task(self, blueprint_id: str, node_id: str, task_type: str | None = None) -> bool:
        """
        Drop a task that has not started yet.

        Returns False if no matching pending task exists (including when the
        task is already running).
        """
        for entry in list(self._pending.get(blueprint_id, [])):
            if entry.node_id == node_id and (task_type is None or entry.type == task_type):
                self._discard(blueprint_id, entry)
                if entry.handle is not None:
                    entry.handle.cancel()
                _logger.info("Removed queued %s task for node %s", entry.type, node_id)
                return True
        return False

    def active_task(self, blueprint_id: str) -> PendingTask | None:
        return self._active.get(blueprint_id)

    # -- Views -----------------------------------------------------------------

    def get_queue_info(self, blueprint_id: str) -> QueueInfo:
        pending = list(self._pending.get(blueprint_id, []))
        return QueueInfo(
            running=self.is_running(blueprint_id),
            queue_length=len(pending),
            pending_tasks=pending,
            running_node_id=self.running_node_id(blueprint_id),
        )

    def get_global_queue_info(self, describe: TaskDescriber | None = None) -> GlobalQueueInfo:
        """
        Aggregate view across blueprints for dashboard polling.

        ``describe(blueprint_id, task)`` may add display fields (titles,
        session id) to each task entry.
        """
        tasks: list[dict[str, Any]] = []
        blueprint_ids = sorted(set(self._pending) | set(self._active))
        total_pending = 0
        for blueprint_id in blueprint_ids:
            entries: list[tuple[str, PendingTask]] = []
            active = self._active.get(blueprint_id)
            if active is not None:
                entries.append(("running", active))
            pending = self._pending.get(blueprint_id, [])
            total_pending += len(pending)
            entries.extend(("queued", entry) for entry in pending)
            for state, entry in entries:
                item = {"blueprint_id": blueprint_id, "state": state, **entry.to_dict()}
                if describe is not None:
                    item.update(describe(blueprint_id, entry))
                tasks.append(item)

        active_any = any(self.is_running(bp) for bp in self._locks) or bool(tasks)
        return GlobalQueueInfo(active=active_any, total_pending=total_pending, tasks=tasks)

    async def shutdown(self) -> None:
        """Cancel every queued and running task."""
        handles = [
            entry.handle
            for entries in self._pending.values()
            for entry in entries
            if entry.handle is not None
        ]
        handles.extend(e.handle for e in self._active.values() if e.handle is not None)
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)

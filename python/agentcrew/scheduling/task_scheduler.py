"""Priority + dependency scheduler with one global concurrency bound.

The dispatch pass is synchronous and guarded against re-entry: it
filters the queue to entries whose dependencies are all ``completed``,
whose task is not paused and for which a worker can be claimed, then
starts the lowest-score entry until capacity runs out.  Runs execute as
asyncio tasks; each has a watchdog and a cancellation token.

Failures are never remediated here.  They are handed to the registered
failure handler, which may call back into ``requeue`` / ``cancel`` /
``pause``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from agentcrew.event_bus import QueueEventBus
from agentcrew.interfaces.event_bus import SchedulerEvent, SchedulerEventType
from agentcrew.orchestration.models import ExceptionType, Priority, SubTask, Task, TaskStatus, now_ms
from agentcrew.orchestration.task_store import TaskStore
from agentcrew.scheduling.concurrency import ConcurrencySlot
from agentcrew.scheduling.dependency_resolver import DependencyGraph
from agentcrew.scheduling.task_executor import CancellationToken, ExecutionResult, TaskExecutor
from agentcrew.workers.pool import Worker, WorkerPool

if TYPE_CHECKING:
    from agentcrew.config.settings import Settings

logger = logging.getLogger(__name__)

PRIORITY_ADJUSTMENT = {Priority.HIGH: -2, Priority.MEDIUM: 0, Priority.LOW: 2}
DEPENDENCY_PENALTY = 1


# ── Value objects ────────────────────────────────────────────────────


@dataclass
class QueueEntry:
    task_id: str
    subtask_id: str
    score: int
    seq: int
    worker_id: Optional[str] = None
    enqueue_time: int = field(default_factory=now_ms)
    not_before: float = 0.0  # loop time; delayed retries wait until then
    exclude: FrozenSet[str] = frozenset()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "subtask_id": self.subtask_id,
            "score": self.score,
            "worker_id": self.worker_id,
            "enqueue_time": self.enqueue_time,
        }


@dataclass
class RunningEntry:
    task_id: str
    subtask_id: str
    worker_id: str
    start_time: int
    score: int
    token: CancellationToken
    handle: Optional["asyncio.Task[None]"] = None
    watchdog: Optional[asyncio.TimerHandle] = None
    outcome: Optional[str] = None  # "timeout" | "paused" | "cancelled"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "subtask_id": self.subtask_id,
            "worker_id": self.worker_id,
            "start_time": self.start_time,
        }


@dataclass(frozen=True)
class SubtaskFailure:
    """What the scheduler hands to the failure handler."""

    task_id: str
    subtask_id: str
    worker_id: str
    error: str
    exception_type: ExceptionType


FailureHandler = Callable[[SubtaskFailure], Awaitable[Any]]


@dataclass
class SchedulerConfig:
    max_concurrency: int = 3
    default_priority: int = 5
    task_timeout: float = 600.0
    poll_interval: float = 0.1

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SchedulerConfig":
        return cls(
            max_concurrency=settings.max_concurrency,
            default_priority=settings.default_priority,
            task_timeout=settings.task_timeout_s,
            poll_interval=settings.poll_interval_s,
        )


# ── Scheduler ────────────────────────────────────────────────────────


class TaskScheduler:
    """Ready queue, dispatch loop, watchdogs and task-level control."""

    def __init__(
        self,
        pool: WorkerPool,
        store: TaskStore,
        executor: TaskExecutor,
        event_bus: Optional[QueueEventBus] = None,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self._pool = pool
        self._store = store
        self._executor = executor
        self._bus = event_bus
        self.config = config or SchedulerConfig()
        self._slots = ConcurrencySlot("global", self.config.max_concurrency)
        self._queue: List[QueueEntry] = []
        self._running: Dict[Tuple[str, str], RunningEntry] = {}
        self._paused: Set[str] = set()
        self._seq = itertools.count()
        self._processing = False
        self._dispatch_pending = False
        self._poll_handle: Optional[asyncio.TimerHandle] = None
        self._failure_handler: Optional[FailureHandler] = None
        self._completed_count = 0
        self._failed_count = 0

    def set_failure_handler(self, handler: FailureHandler) -> None:
        self._failure_handler = handler

    # ── Submission ───────────────────────────────────────────────────

    def submit(self, task: Task, subtasks: List[SubTask], workers: Optional[Iterable[Worker]] = None) -> int:
        """Enqueue every runnable sub-task of *task*; returns how many.

        Dispatch happens on the next loop iteration, so this returns
        immediately.
        """
        if not self._store.has_task(task.id):
            self._store.add_task(task, subtasks)
        for worker in workers or ():
            if worker.id not in self._pool:
                self._pool.register(worker)

        queued = 0
        for sub in subtasks:
            if sub.status.is_terminal or sub.status == TaskStatus.RUNNING or self._is_queued(task.id, sub.id):
                continue
            worker_id = sub.assigned_worker_id or self._preassign(sub)
            self._enqueue(task.id, sub, self.base_score(sub), worker_id)
            queued += 1

        logger.info("Submitted task %s: %d sub-tasks queued", task.id, queued)
        self._request_dispatch()
        return queued

    def requeue(
        self,
        task_id: str,
        subtask_id: str,
        bump: int = 0,
        delay: float = 0.0,
        worker_id: Optional[str] = None,
        exclude: Iterable[str] = (),
    ) -> bool:
        """Put a failed sub-task back in the queue.

        The score grows by *bump* so repeated failures sink below fresh
        work; *delay* keeps the entry ineligible for that many seconds.
        """
        subtask = self._store.get_subtask(task_id, subtask_id)
        if subtask is None or (task_id, subtask_id) in self._running or self._is_queued(task_id, subtask_id):
            return False
        task = self._store.get_task(task_id)
        if task is None or task.is_terminal:
            return False

        self._store.mark_requeued(task_id, subtask_id)
        if worker_id is not None:
            self._store.assign(task_id, subtask_id, worker_id)
        not_before = asyncio.get_running_loop().time() + delay if delay > 0 else 0.0
        self._enqueue(
            task_id, subtask, self.base_score(subtask) + bump, worker_id,
            not_before=not_before, exclude=frozenset(exclude),
        )
        self._request_dispatch()
        return True

    def base_score(self, subtask: SubTask) -> int:
        score = self.config.default_priority + PRIORITY_ADJUSTMENT[subtask.priority]
        if subtask.dependencies:
            score += DEPENDENCY_PENALTY
        return score

    # ── Task control ─────────────────────────────────────────────────

    def cancel(self, task_id: str, reason: str = "Task cancelled") -> int:
        """Abort running entries and drop queued ones; fails what is left."""
        dropped = [e for e in self._queue if e.task_id == task_id]
        self._queue = [e for e in self._queue if e.task_id != task_id]
        aborted = 0
        for entry in self._running.values():
            if entry.task_id == task_id:
                entry.outcome = "cancelled"
                entry.token.cancel(reason)
                aborted += 1
        self._paused.discard(task_id)

        for sub in self._store.subtasks(task_id):
            if not sub.status.is_terminal:
                self._store.fail_subtask(task_id, sub.id, reason)
        self._store.settle(task_id)

        logger.info("Cancelled task %s: %d running aborted, %d queued dropped", task_id, aborted, len(dropped))
        self._emit_queue_updated(task_id)
        return aborted + len(dropped)

    def pause(self, task_id: str) -> int:
        """Stop dispatching for *task_id*; running entries go back to the queue."""
        self._paused.add(task_id)
        aborted = 0
        for entry in self._running.values():
            if entry.task_id == task_id and entry.outcome is None:
                entry.outcome = "paused"
                entry.token.cancel("Paused")
                aborted += 1
        logger.info("Paused task %s (%d running entries aborted)", task_id, aborted)
        return aborted

    def resume(self, task_id: str) -> None:
        self._paused.discard(task_id)
        logger.info("Resumed task %s", task_id)
        self._request_dispatch()

    def is_paused(self, task_id: str) -> bool:
        return task_id in self._paused

    # ── Dispatch ─────────────────────────────────────────────────────

    def _request_dispatch(self) -> None:
        if self._dispatch_pending:
            return
        self._dispatch_pending = True
        asyncio.get_running_loop().call_soon(self._dispatch_soon)

    def _dispatch_soon(self) -> None:
        self._dispatch_pending = False
        self.process_queue()

    def process_queue(self) -> int:
        """One dispatch pass; returns how many entries were started."""
        if self._processing:
            return 0
        self._processing = True
        started = 0
        try:
            while self._queue and self._slots.available > 0:
                picked = self._next_dispatchable()
                if picked is None:
                    break
                entry, worker = picked
                self._start(entry, worker)
                started += 1
        finally:
            self._processing = False

        if started:
            self._emit(SchedulerEventType.QUEUE_UPDATED)
        if self._queue:
            self._schedule_poll()
        return started

    def _next_dispatchable(self) -> Optional[Tuple[QueueEntry, Worker]]:
        now = asyncio.get_running_loop().time()
        for entry in sorted(self._queue, key=lambda e: (e.score, e.seq)):
            if entry.task_id in self._paused or entry.not_before > now:
                continue
            subtask = self._store.get_subtask(entry.task_id, entry.subtask_id)
            if subtask is None or subtask.status != TaskStatus.PENDING:
                continue
            if not self._store.dependencies_met(subtask):
                continue
            worker = self._pick_worker(entry, subtask)
            if worker is None:
                continue
            if not self._pool.try_claim(worker.id, subtask.id):
                continue
            self._queue.remove(entry)
            return entry, worker
        return None

    def _pick_worker(self, entry: QueueEntry, subtask: SubTask) -> Optional[Worker]:
        if entry.worker_id is not None:
            preferred = self._pool.get(entry.worker_id)
            if preferred is not None and preferred.is_idle and preferred.id not in entry.exclude:
                return preferred
        return self._pool.select_worker(subtask.required_skills, exclude=entry.exclude)

    def _preassign(self, subtask: SubTask) -> Optional[str]:
        worker = self._pool.select_worker(subtask.required_skills)
        return worker.id if worker is not None else None

    def _start(self, entry: QueueEntry, worker: Worker) -> None:
        self._slots.acquire()
        self._store.assign(entry.task_id, entry.subtask_id, worker.id)
        self._store.set_status(entry.task_id, entry.subtask_id, TaskStatus.RUNNING)

        running = RunningEntry(
            task_id=entry.task_id,
            subtask_id=entry.subtask_id,
            worker_id=worker.id,
            start_time=now_ms(),
            score=entry.score,
            token=CancellationToken(),
        )
        key = (entry.task_id, entry.subtask_id)
        self._running[key] = running
        loop = asyncio.get_running_loop()
        running.watchdog = loop.call_later(self.config.task_timeout, self._on_timeout, key)
        running.handle = asyncio.create_task(self._run_entry(running))

        logger.debug("Started %s on %s (score %d)", entry.subtask_id, worker.id, entry.score)
        self._emit(SchedulerEventType.TASK_STARTED, entry.task_id, entry.subtask_id, worker.id)

    def _schedule_poll(self) -> None:
        if self._poll_handle is not None and not self._poll_handle.cancelled():
            return
        loop = asyncio.get_running_loop()
        self._poll_handle = loop.call_later(self.config.poll_interval, self._on_poll)

    def _on_poll(self) -> None:
        self._poll_handle = None
        self.process_queue()

    # ── Run lifecycle ────────────────────────────────────────────────

    async def _run_entry(self, running: RunningEntry) -> None:
        key = (running.task_id, running.subtask_id)
        try:
            result = await self._executor.run(
                running.task_id, running.subtask_id, running.worker_id, running.token,
            )
        except Exception as exc:
            logger.exception("Executor crashed on %s", running.subtask_id)
            result = ExecutionResult(ok=False, error=str(exc) or type(exc).__name__)
        finally:
            self._running.pop(key, None)
            if running.watchdog is not None:
                running.watchdog.cancel()
            self._slots.release()

        try:
            await self._settle_run(running, result)
        finally:
            self._request_dispatch()

    async def _settle_run(self, running: RunningEntry, result: ExecutionResult) -> None:
        task_id, subtask_id, worker_id = running.task_id, running.subtask_id, running.worker_id

        if running.outcome == "cancelled":
            self._pool.release(worker_id)
            return

        if running.outcome == "paused":
            self._pool.release(worker_id)
            subtask = self._store.set_status(task_id, subtask_id, TaskStatus.PENDING)
            subtask.error = None
            self._enqueue(task_id, subtask, running.score, worker_id)
            return

        if result.ok:
            self._store.set_status(task_id, subtask_id, TaskStatus.COMPLETED)
            self._pool.release(worker_id, completed=True)
            self._completed_count += 1
            self._emit(SchedulerEventType.TASK_COMPLETED, task_id, subtask_id, worker_id)
            self._store.settle(task_id)
            return

        timed_out = running.outcome == "timeout"
        failure = SubtaskFailure(
            task_id=task_id,
            subtask_id=subtask_id,
            worker_id=worker_id,
            error=result.error or "Unknown error",
            exception_type=ExceptionType.TASK_TIMEOUT if timed_out else result.error_type,
        )
        self._store.set_status(task_id, subtask_id, TaskStatus.FAILED)
        self._pool.release(worker_id)
        self._failed_count += 1
        self._emit(SchedulerEventType.TASK_FAILED, task_id, subtask_id, worker_id, error=failure.error)

        if self._failure_handler is not None:
            try:
                await self._failure_handler(failure)
            except Exception:
                logger.exception("Failure handler raised for %s", subtask_id)
        self._store.settle(task_id)

    def _on_timeout(self, key: Tuple[str, str]) -> None:
        running = self._running.get(key)
        if running is None or running.outcome is not None:
            return
        running.outcome = "timeout"
        message = f"Task timed out after {self.config.task_timeout:g}s"
        running.token.cancel(message)
        logger.warning("Sub-task %s timed out on %s", running.subtask_id, running.worker_id)
        self._emit(SchedulerEventType.TASK_TIMEOUT, running.task_id, running.subtask_id, running.worker_id, error=message)

    # ── Queue helpers ────────────────────────────────────────────────

    def _enqueue(
        self,
        task_id: str,
        subtask: SubTask,
        score: int,
        worker_id: Optional[str],
        not_before: float = 0.0,
        exclude: FrozenSet[str] = frozenset(),
    ) -> QueueEntry:
        entry = QueueEntry(
            task_id=task_id,
            subtask_id=subtask.id,
            score=score,
            seq=next(self._seq),
            worker_id=worker_id,
            not_before=not_before,
            exclude=exclude,
        )
        self._queue.append(entry)
        self._emit(SchedulerEventType.TASK_QUEUED, task_id, subtask.id, worker_id)
        return entry

    def _is_queued(self, task_id: str, subtask_id: str) -> bool:
        return any(e.task_id == task_id and e.subtask_id == subtask_id for e in self._queue)

    # ── Introspection ────────────────────────────────────────────────

    def get_queue_status(self) -> Dict[str, int]:
        return {
            "queued": len(self._queue),
            "running": len(self._running),
            "max_concurrency": self.config.max_concurrency,
        }

    def get_queue_details(self) -> List[Dict[str, Any]]:
        details = []
        graphs: Dict[str, DependencyGraph] = {}
        for entry in sorted(self._queue, key=lambda e: (e.score, e.seq)):
            graph = graphs.get(entry.task_id)
            if graph is None:
                graph = graphs[entry.task_id] = DependencyGraph.from_subtasks(self._store.subtasks(entry.task_id))
            statuses = {s.id: s.status for s in self._store.subtasks(entry.task_id)}
            info = entry.to_dict()
            info["blocked_by"] = sorted(graph.blocked_by(entry.subtask_id, statuses))
            info["paused"] = entry.task_id in self._paused
            details.append(info)
        return details

    def get_running(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._running.values()]

    def running_tasks(self) -> List["asyncio.Task[None]"]:
        return [e.handle for e in self._running.values() if e.handle is not None]

    def clear(self) -> None:
        """Drop the queue and abort everything in flight."""
        for entry in self._running.values():
            entry.outcome = "cancelled"
            entry.token.cancel("Scheduler cleared")
        self._queue.clear()
        self._paused.clear()
        if self._poll_handle is not None:
            self._poll_handle.cancel()
            self._poll_handle = None

    def update_config(self, **changes: Any) -> SchedulerConfig:
        for name, value in changes.items():
            if not hasattr(self.config, name):
                raise ValueError(f"Unknown scheduler setting {name!r}")
            setattr(self.config, name, value)
        self._slots.resize(self.config.max_concurrency)
        self._request_dispatch()
        return self.config

    async def shutdown(self) -> None:
        handles = self.running_tasks()
        self.clear()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            **self.get_queue_status(),
            "paused_tasks": sorted(self._paused),
            "completed": self._completed_count,
            "failed": self._failed_count,
            "slots": self._slots.to_dict(),
        }

    # ── Events ───────────────────────────────────────────────────────

    def _emit(
        self,
        event_type: SchedulerEventType,
        task_id: Optional[str] = None,
        subtask_id: Optional[str] = None,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        if self._bus is None:
            return
        self._bus.publish(SchedulerEvent(
            type=event_type,
            task_id=task_id,
            subtask_id=subtask_id,
            worker_id=worker_id,
            queued=len(self._queue),
            running=len(self._running),
            error=error,
        ))

    def _emit_queue_updated(self, task_id: str) -> None:
        self._emit(SchedulerEventType.QUEUE_UPDATED, task_id)

"""In-memory owner of Task and SubTask state.

Writers are split by concern: the scheduler changes status and
assignment, the executor records results, errors and timestamps.  Task
progress follows every status change; the terminal transition happens
only in ``settle`` so a failure that is about to be retried never
finalizes its task.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Set, Tuple

from agentcrew.exceptions_unified import TaskNotFoundError
from agentcrew.orchestration.models import SubTask, Task, TaskStatus, now_ms

logger = logging.getLogger(__name__)

TerminalListener = Callable[[Task], None]


class TaskStore:
    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self._subtasks: Dict[str, Dict[str, SubTask]] = {}
        self._holds: Set[Tuple[str, str]] = set()
        self._terminal_listeners: List[TerminalListener] = []

    # ── Registration ─────────────────────────────────────────────────

    def add_task(self, task: Task, subtasks: List[SubTask]) -> None:
        self._tasks[task.id] = task
        self._subtasks[task.id] = {sub.id: sub for sub in subtasks}
        task.subtask_ids = [sub.id for sub in subtasks]

    def has_task(self, task_id: str) -> bool:
        return task_id in self._tasks

    def add_terminal_listener(self, listener: TerminalListener) -> None:
        self._terminal_listeners.append(listener)

    # ── Lookup ───────────────────────────────────────────────────────

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def require_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id!r} not found", details={"task_id": task_id})
        return task

    def get_subtask(self, task_id: str, subtask_id: str) -> Optional[SubTask]:
        return self._subtasks.get(task_id, {}).get(subtask_id)

    def require_subtask(self, task_id: str, subtask_id: str) -> SubTask:
        subtask = self.get_subtask(task_id, subtask_id)
        if subtask is None:
            raise TaskNotFoundError(
                f"Sub-task {subtask_id!r} not found in task {task_id!r}",
                details={"task_id": task_id, "subtask_id": subtask_id},
            )
        return subtask

    def subtasks(self, task_id: str) -> List[SubTask]:
        task = self._tasks.get(task_id)
        if task is None:
            return []
        by_id = self._subtasks[task_id]
        return [by_id[sid] for sid in task.subtask_ids]

    def tasks(self) -> List[Task]:
        return list(self._tasks.values())

    def dependencies_met(self, subtask: SubTask) -> bool:
        """True when every dependency exists and is ``completed``."""
        siblings = self._subtasks.get(subtask.task_id, {})
        for dep in subtask.dependencies:
            upstream = siblings.get(dep)
            if upstream is None or upstream.status != TaskStatus.COMPLETED:
                return False
        return True

    # ── Scheduler writes ─────────────────────────────────────────────

    def set_status(self, task_id: str, subtask_id: str, status: TaskStatus) -> SubTask:
        subtask = self.require_subtask(task_id, subtask_id)
        subtask.status = status
        task = self._tasks[task_id]
        if status == TaskStatus.RUNNING and task.status == TaskStatus.PENDING:
            task.status = TaskStatus.RUNNING
        self._update_progress(task)
        return subtask

    def assign(self, task_id: str, subtask_id: str, worker_id: Optional[str]) -> None:
        self.require_subtask(task_id, subtask_id).assigned_worker_id = worker_id

    def mark_requeued(self, task_id: str, subtask_id: str) -> SubTask:
        subtask = self.set_status(task_id, subtask_id, TaskStatus.PENDING)
        subtask.retry_count += 1
        return subtask

    # ── Executor writes ──────────────────────────────────────────────

    def record_start(self, task_id: str, subtask_id: str) -> None:
        subtask = self.require_subtask(task_id, subtask_id)
        subtask.start_time = now_ms()
        subtask.end_time = None
        subtask.result = None
        subtask.error = None

    def record_result(self, task_id: str, subtask_id: str, result: str) -> None:
        subtask = self.require_subtask(task_id, subtask_id)
        subtask.result = result
        subtask.error = None
        subtask.end_time = now_ms()

    def record_error(self, task_id: str, subtask_id: str, error: str) -> None:
        subtask = self.require_subtask(task_id, subtask_id)
        subtask.error = error
        subtask.end_time = now_ms()

    def fail_subtask(self, task_id: str, subtask_id: str, error: str) -> SubTask:
        """Terminal failure with a readable explanation kept as the result."""
        subtask = self.set_status(task_id, subtask_id, TaskStatus.FAILED)
        subtask.error = error
        subtask.result = error
        if subtask.end_time is None:
            subtask.end_time = now_ms()
        return subtask

    # ── Holds / settlement ───────────────────────────────────────────

    def hold(self, task_id: str, subtask_id: str) -> None:
        """Keep the task open while a decision on this sub-task is pending."""
        self._holds.add((task_id, subtask_id))

    def release_hold(self, task_id: str, subtask_id: str) -> None:
        self._holds.discard((task_id, subtask_id))

    def release_holds(self, task_id: str) -> None:
        self._holds = {h for h in self._holds if h[0] != task_id}

    def has_holds(self, task_id: str) -> bool:
        return any(tid == task_id for tid, _ in self._holds)

    def settle(self, task_id: str) -> bool:
        """Finalize the task if every sub-task is terminal.

        Returns True when this call moved the task into a terminal state.
        """
        task = self._tasks.get(task_id)
        if task is None or task.is_terminal:
            return False
        subtasks = self.subtasks(task_id)
        self._update_progress(task)
        if not subtasks or self.has_holds(task_id):
            return False
        if not all(sub.status.is_terminal for sub in subtasks):
            return False

        failed = any(sub.status == TaskStatus.FAILED for sub in subtasks)
        task.status = TaskStatus.FAILED if failed else TaskStatus.COMPLETED
        task.completed_at = now_ms()
        logger.info("Task %s finished: %s (%d%%)", task_id, task.status.value, task.progress)

        for listener in list(self._terminal_listeners):
            try:
                listener(task)
            except Exception:
                logger.exception("Terminal listener failed for task %s", task_id)
        return True

    def _update_progress(self, task: Task) -> None:
        subtasks = self.subtasks(task.id)
        if not subtasks:
            return
        completed = sum(1 for sub in subtasks if sub.status == TaskStatus.COMPLETED)
        task.progress = round(completed / len(subtasks) * 100)

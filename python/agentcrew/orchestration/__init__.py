"""Task data model, state store and the orchestrator entry point.

``Orchestrator`` lives in ``agentcrew.orchestration.orchestrator``; it is
not re-exported here because it imports every other subpackage.
"""

from agentcrew.orchestration.models import (
    ExceptionType,
    Priority,
    Severity,
    SubTask,
    SubTaskSpec,
    Task,
    TaskPlan,
    TaskStatus,
    WorkerSpec,
    now_ms,
)
from agentcrew.orchestration.task_store import TaskStore

__all__ = [
    "ExceptionType",
    "Priority",
    "Severity",
    "SubTask",
    "SubTaskSpec",
    "Task",
    "TaskPlan",
    "TaskStatus",
    "WorkerSpec",
    "now_ms",
    "TaskStore",
]

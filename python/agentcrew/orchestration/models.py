"""Task and sub-task data model plus the validated plan schema.

``Task`` / ``SubTask`` are the mutable runtime records owned by the
``TaskStore``.  ``TaskPlan`` is the pydantic schema a caller (or a
planner) submits; it is translated into runtime records on submission.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


def now_ms() -> int:
    """Wall-clock milliseconds, the unit of every timestamp in the engine."""
    return int(time.time() * 1000)


# ── Enums ────────────────────────────────────────────────────────────


class TaskStatus(str, Enum):
    """Lifecycle shared by tasks and sub-tasks."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ExceptionType(str, Enum):
    """Classification of a reported failure."""

    TASK_FAILURE = "task_failure"
    TASK_TIMEOUT = "task_timeout"
    AGENT_ERROR = "agent_error"
    DEPENDENCY_FAIL = "dependency_fail"
    RESOURCE_UNAVAILABLE = "resource_unavailable"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


# ── Runtime records ──────────────────────────────────────────────────


@dataclass
class SubTask:
    """An atomic, independently assignable unit of work."""

    id: str
    task_id: str
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    estimated_minutes: int = 5
    dependencies: List[str] = field(default_factory=list)
    required_skills: List[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    assigned_worker_id: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    retry_count: int = 0

    @property
    def duration_ms(self) -> Optional[int]:
        if self.start_time is None or self.end_time is None:
            return None
        return max(0, self.end_time - self.start_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "estimated_minutes": self.estimated_minutes,
            "dependencies": list(self.dependencies),
            "required_skills": list(self.required_skills),
            "status": self.status.value,
            "assigned_worker_id": self.assigned_worker_id,
            "result": self.result,
            "error": self.error,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "retry_count": self.retry_count,
        }


@dataclass
class Task:
    """Top-level unit of work, decomposed into ordered sub-tasks."""

    id: str
    original_task: str
    subtask_ids: List[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    progress: int = 0
    created_at: int = field(default_factory=now_ms)
    completed_at: Optional[int] = None
    summary: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "original_task": self.original_task,
            "subtask_ids": list(self.subtask_ids),
            "status": self.status.value,
            "progress": self.progress,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "summary": self.summary,
        }


# ── Plan schema ──────────────────────────────────────────────────────


class SubTaskSpec(BaseModel):
    """One sub-task as described by a plan.

    ``id`` is plan-local; when omitted the 1-based position is used, so
    dependencies may be written as ``["1", "2"]``.
    """

    id: Optional[str] = None
    title: str = Field(min_length=1)
    description: str = ""
    priority: Priority = Priority.MEDIUM
    estimated_minutes: int = Field(default=5, ge=0)
    dependencies: List[str] = Field(default_factory=list)
    required_skills: List[str] = Field(default_factory=list)
    assigned_worker_id: Optional[str] = None


class WorkerSpec(BaseModel):
    """A team member suggested by a plan."""

    name: str = Field(min_length=1)
    role: str = "generalist"
    skills: List[str] = Field(default_factory=list)


class TaskPlan(BaseModel):
    """A decomposed task ready for scheduling."""

    description: str = Field(min_length=1)
    subtasks: List[SubTaskSpec] = Field(min_length=1)
    team: List[WorkerSpec] = Field(default_factory=list)

    def local_ids(self) -> List[str]:
        return [spec.id or str(index) for index, spec in enumerate(self.subtasks, start=1)]

    @model_validator(mode="after")
    def _check_dependencies(self) -> "TaskPlan":
        ids = self.local_ids()
        if len(set(ids)) != len(ids):
            raise ValueError("sub-task ids must be unique within a plan")
        known = set(ids)
        for local_id, spec in zip(ids, self.subtasks):
            for dep in spec.dependencies:
                if dep == local_id:
                    raise ValueError(f"sub-task {local_id!r} depends on itself")
                if dep not in known:
                    raise ValueError(f"sub-task {local_id!r} depends on unknown sub-task {dep!r}")
        return self

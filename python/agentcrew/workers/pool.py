"""Registry of logical workers and their availability.

The pool is the single place worker status changes.  Claiming a worker
is a compare-and-set on ``idle``; the event loop is single-threaded, so
two dispatch passes can never both win the same worker.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from agentcrew.exceptions_unified import WorkerNotFoundError
from agentcrew.interfaces.worker import IWorker
from agentcrew.orchestration.models import TaskPlan, WorkerSpec

logger = logging.getLogger(__name__)


class WorkerStatus(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    TYPING = "typing"
    ERROR = "error"
    SUCCESS = "success"


@dataclass
class Worker:
    """A logical executor with identity, skills and availability."""

    id: str
    name: str
    role: str = "generalist"
    skills: List[str] = field(default_factory=list)
    capability: Optional[IWorker] = field(default=None, repr=False, compare=False)
    status: WorkerStatus = WorkerStatus.IDLE
    current_subtask_id: Optional[str] = None
    completed_tasks: int = 0

    @property
    def is_idle(self) -> bool:
        return self.status == WorkerStatus.IDLE

    def matches(self, required_skills: Iterable[str]) -> bool:
        """Case-insensitive substring match against skill tags or role."""
        tags = [s.lower() for s in self.skills]
        role = self.role.lower()
        for wanted in required_skills:
            wanted = wanted.lower()
            if not wanted:
                continue
            if wanted in role or any(wanted in tag or tag in wanted for tag in tags if tag):
                return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "skills": list(self.skills),
            "status": self.status.value,
            "current_subtask_id": self.current_subtask_id,
            "completed_tasks": self.completed_tasks,
        }


CapabilityFactory = Callable[[WorkerSpec], IWorker]


class WorkerPool:
    """Registry of workers keyed by id, in registration order."""

    def __init__(self) -> None:
        self._workers: Dict[str, Worker] = {}

    # ── Registration ─────────────────────────────────────────────────

    def register(self, worker: Worker) -> Worker:
        if worker.id in self._workers:
            logger.debug("Worker %s re-registered", worker.id)
        self._workers[worker.id] = worker
        return worker

    def add(
        self,
        name: str,
        role: str = "generalist",
        skills: Optional[List[str]] = None,
        capability: Optional[IWorker] = None,
        worker_id: Optional[str] = None,
    ) -> Worker:
        worker = Worker(
            id=worker_id or f"worker-{uuid.uuid4().hex[:8]}",
            name=name,
            role=role,
            skills=list(skills or []),
            capability=capability,
        )
        return self.register(worker)

    def unregister(self, worker_id: str) -> bool:
        return self._workers.pop(worker_id, None) is not None

    def create_team(self, plan: TaskPlan, factory: CapabilityFactory) -> List[Worker]:
        """Build one worker per team member the plan suggests.

        Plans without a team get one worker per distinct leading skill of
        their sub-tasks, or a single generalist.
        """
        specs = list(plan.team)
        if not specs:
            seen: List[str] = []
            for sub in plan.subtasks:
                lead = sub.required_skills[0] if sub.required_skills else "general"
                if lead.lower() not in (s.lower() for s in seen):
                    seen.append(lead)
            specs = [
                WorkerSpec(name=f"{skill.title()} Specialist", role=f"{skill} specialist", skills=[skill])
                for skill in seen
            ]

        team = [
            self.add(spec.name, spec.role, spec.skills, capability=factory(spec))
            for spec in specs
        ]
        logger.info("Created team of %d workers: %s", len(team), ", ".join(w.name for w in team))
        return team

    # ── Lookup ───────────────────────────────────────────────────────

    def get(self, worker_id: str) -> Optional[Worker]:
        return self._workers.get(worker_id)

    def require(self, worker_id: str) -> Worker:
        worker = self._workers.get(worker_id)
        if worker is None:
            raise WorkerNotFoundError(f"Worker {worker_id!r} not found", details={"worker_id": worker_id})
        return worker

    def all(self) -> List[Worker]:
        return list(self._workers.values())

    def idle(self) -> List[Worker]:
        return [w for w in self._workers.values() if w.is_idle]

    def __len__(self) -> int:
        return len(self._workers)

    def __contains__(self, worker_id: object) -> bool:
        return worker_id in self._workers

    # ── Availability ─────────────────────────────────────────────────

    def select_worker(
        self,
        required_skills: Iterable[str] = (),
        exclude: Iterable[str] = (),
    ) -> Optional[Worker]:
        """Pick an idle worker for a sub-task.

        Skill matches win; otherwise any idle worker.  Among candidates the
        one with the most completed tasks is chosen, ties going to the
        earliest registered.
        """
        excluded = set(exclude)
        idle = [w for w in self._workers.values() if w.is_idle and w.id not in excluded]
        if not idle:
            return None
        skills = list(required_skills)
        matched = [w for w in idle if w.matches(skills)] if skills else []
        candidates = matched or idle
        return max(candidates, key=lambda w: w.completed_tasks)

    def try_claim(self, worker_id: str, subtask_id: str) -> bool:
        """Compare-and-set ``idle -> thinking``."""
        worker = self._workers.get(worker_id)
        if worker is None or not worker.is_idle:
            return False
        worker.status = WorkerStatus.THINKING
        worker.current_subtask_id = subtask_id
        return True

    def set_status(self, worker_id: str, status: WorkerStatus) -> None:
        worker = self._workers.get(worker_id)
        if worker is not None:
            worker.status = status

    def release(self, worker_id: str, completed: bool = False) -> None:
        worker = self._workers.get(worker_id)
        if worker is None:
            return
        worker.status = WorkerStatus.IDLE
        worker.current_subtask_id = None
        if completed:
            worker.completed_tasks += 1

    @property
    def stats(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {s.value: 0 for s in WorkerStatus}
        for worker in self._workers.values():
            counts[worker.status.value] += 1
        return {"total": len(self._workers), "by_status": counts}

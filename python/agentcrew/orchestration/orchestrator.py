"""
Orchestrator - the single entry point of the engine.

Owns one instance of every component and wires them together:

- WorkerPool / TaskStore: shared state
- TaskExecutor / TaskScheduler: queue, dispatch and streaming runs
- ExceptionHandler: remediation of failed runs (scheduler failure callback)
- CollaborationBus: worker-to-worker messaging
- ResultAggregator: reports, built automatically when a task finishes

Nothing here is global; tests build as many orchestrators as they need.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import pydantic

from agentcrew.analytics.result_aggregator import (
    AggregatedResult,
    AggregatorConfig,
    ExportFormat,
    ResultAggregator,
)
from agentcrew.collaboration.bus import (
    CollaborationBus,
    CollaborationConfig,
    CollaborationMessage,
    CollaborationRequest,
)
from agentcrew.config.settings import Settings, get_settings
from agentcrew.enhanced_logging import track_performance
from agentcrew.event_bus import QueueEventBus, Subscription
from agentcrew.exceptions_unified import (
    ConfigurationError,
    OrchestratorError,
    PlanValidationError,
)
from agentcrew.interfaces.event_bus import EventFamily
from agentcrew.interfaces.worker import ITaskPlanner, IWorker
from agentcrew.orchestration.models import SubTask, Task, TaskPlan, TaskStatus
from agentcrew.orchestration.task_store import TaskStore
from agentcrew.recovery.exception_handler import (
    ExceptionHandler,
    ExceptionHandlerConfig,
    HumanDecision,
)
from agentcrew.scheduling.dependency_resolver import CycleDetectedError, DependencyGraph
from agentcrew.scheduling.task_executor import ExecutorConfig, TaskExecutor
from agentcrew.scheduling.task_scheduler import SchedulerConfig, TaskScheduler
from agentcrew.workers.pool import CapabilityFactory, Worker, WorkerPool, WorkerStatus

logger = logging.getLogger(__name__)


class Orchestrator:
    """Accepts plans, tracks tasks and exposes every control operation."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        event_bus: Optional[QueueEventBus] = None,
        planner: Optional[ITaskPlanner] = None,
        summarizer: Optional[IWorker] = None,
        capability_factory: Optional[CapabilityFactory] = None,
    ) -> None:
        """
        Args:
            settings: Engine settings; defaults to the environment-backed ones
            event_bus: Shared event channel; one is created when omitted
            planner: Decomposes free-text descriptions for analyze_and_submit
            summarizer: Capability used to write report summaries
            capability_factory: Builds capabilities for plan-suggested teams
        """
        self.settings = settings or get_settings()
        self.event_bus = event_bus or QueueEventBus(self.settings.event_queue_size)
        self._planner = planner
        self._capability_factory = capability_factory

        self.store = TaskStore()
        self.pool = WorkerPool()
        self.executor = TaskExecutor(
            self.pool, self.store, self.event_bus, ExecutorConfig.from_settings(self.settings),
        )
        self.scheduler = TaskScheduler(
            self.pool, self.store, self.executor, self.event_bus,
            SchedulerConfig.from_settings(self.settings),
        )
        self.collaboration = CollaborationBus(
            self.pool, self.event_bus, CollaborationConfig.from_settings(self.settings),
        )
        self.exceptions = ExceptionHandler(
            self.scheduler, self.pool, self.store, self.collaboration, self.event_bus,
            ExceptionHandlerConfig.from_settings(self.settings),
        )
        self.aggregator = ResultAggregator(
            self.store, self.pool, self.event_bus, summarizer,
            AggregatorConfig.from_settings(self.settings),
        )

        self.scheduler.set_failure_handler(self.exceptions.handle_failure)
        self.store.add_terminal_listener(self._on_task_finished)

        self._finished: Dict[str, asyncio.Event] = {}
        self._aggregations: Dict[str, asyncio.Task] = {}
        self._closed = False

    # ── Workers ──────────────────────────────────────────────────────

    def register_worker(
        self,
        name: str,
        role: str = "generalist",
        skills: Optional[List[str]] = None,
        capability: Optional[IWorker] = None,
        worker_id: Optional[str] = None,
    ) -> Worker:
        worker = self.pool.add(name, role, skills, capability=capability, worker_id=worker_id)
        logger.info("Registered worker %s (%s)", worker.id, worker.name)
        return worker

    # ── Submission ───────────────────────────────────────────────────

    @track_performance(operation="submit_task")
    async def submit_task(
        self,
        plan: Union[TaskPlan, Dict[str, Any]],
        workers: Optional[Iterable[Worker]] = None,
    ) -> Task:
        """Register a decomposed plan and start scheduling it.

        Raises:
            PlanValidationError: the plan is malformed
            ConfigurationError: there are no workers and no way to build any
        """
        if self._closed:
            raise OrchestratorError("Orchestrator is shut down")
        plan = self._validate_plan(plan)

        workers = list(workers or [])
        for worker in workers:
            self.pool.register(worker)
        if not len(self.pool):
            if self._capability_factory is None:
                raise ConfigurationError(
                    "No workers registered and no capability factory to build a team",
                    details={"description": plan.description},
                )
            self.pool.create_team(plan, self._capability_factory)

        task, subtasks = self._build_records(plan)
        graph = DependencyGraph.from_subtasks(subtasks)
        try:
            graph.check()
        except CycleDetectedError as exc:
            logger.warning(
                "Task %s has a dependency cycle (%s); those sub-tasks will never start",
                task.id, " -> ".join(exc.cycle),
            )
        logger.debug("Task %s execution waves: %s", task.id, graph.execution_waves())

        self._finished[task.id] = asyncio.Event()
        self.store.add_task(task, subtasks)
        self.scheduler.submit(task, subtasks)
        logger.info("Accepted task %s with %d sub-tasks", task.id, len(subtasks))
        return task

    async def analyze_and_submit(self, description: str) -> Task:
        """Have the planner decompose *description*, then submit the plan."""
        if self._planner is None:
            raise ConfigurationError("No task planner configured")
        plan = await self._planner.plan(description)
        return await self.submit_task(plan)

    @staticmethod
    def _validate_plan(plan: Union[TaskPlan, Dict[str, Any]]) -> TaskPlan:
        if isinstance(plan, TaskPlan):
            return plan
        try:
            return TaskPlan.model_validate(plan)
        except pydantic.ValidationError as exc:
            raise PlanValidationError(
                f"Invalid task plan: {exc.error_count()} error(s)",
                details={"errors": exc.errors(include_url=False)},
            ) from exc

    @staticmethod
    def _build_records(plan: TaskPlan) -> Tuple[Task, List[SubTask]]:
        task_id = f"task-{uuid.uuid4().hex[:12]}"
        local_ids = plan.local_ids()
        full_ids = {
            local: f"subtask-{task_id}-{index}"
            for index, local in enumerate(local_ids, start=1)
        }
        subtasks = [
            SubTask(
                id=full_ids[local],
                task_id=task_id,
                title=spec.title,
                description=spec.description,
                priority=spec.priority,
                estimated_minutes=spec.estimated_minutes,
                dependencies=[full_ids[dep] for dep in spec.dependencies],
                required_skills=list(spec.required_skills),
                assigned_worker_id=spec.assigned_worker_id,
            )
            for local, spec in zip(local_ids, plan.subtasks)
        ]
        task = Task(id=task_id, original_task=plan.description, subtask_ids=[s.id for s in subtasks])
        return task, subtasks

    # ── Task control ─────────────────────────────────────────────────

    def cancel_task(self, task_id: str, reason: str = "Cancelled by user") -> bool:
        task = self.store.require_task(task_id)
        if task.is_terminal:
            return False
        self.exceptions.abort_task(task_id, reason, aborted_by="user")
        return True

    def pause_task(self, task_id: str, reason: str = "Paused by user") -> bool:
        task = self.store.require_task(task_id)
        if task.is_terminal or self.exceptions.is_paused(task_id):
            return False
        self.exceptions.pause(task_id, reason)
        return True

    def resume_task(self, task_id: str) -> bool:
        self.store.require_task(task_id)
        return self.exceptions.resume(task_id)

    # ── Exceptions ───────────────────────────────────────────────────

    async def respond_to_exception(
        self,
        exception_id: str,
        decision: Union[HumanDecision, str],
        responded_by: str,
        notes: str = "",
    ) -> bool:
        return await self.exceptions.respond(exception_id, HumanDecision(decision), responded_by, notes)

    def acknowledge_exception(self, exception_id: str, acknowledged_by: str) -> bool:
        return self.exceptions.acknowledge(exception_id, acknowledged_by)

    def get_exception_stats(self) -> Dict[str, Any]:
        return self.exceptions.get_stats()

    # ── Collaboration ────────────────────────────────────────────────

    async def send_collaboration_message(
        self, request: Union[CollaborationRequest, Dict[str, Any]]
    ) -> CollaborationMessage:
        if not isinstance(request, CollaborationRequest):
            try:
                request = CollaborationRequest.model_validate(request)
            except pydantic.ValidationError as exc:
                raise PlanValidationError(
                    "Invalid collaboration request",
                    details={"errors": exc.errors(include_url=False)},
                ) from exc
        return await self.collaboration.send(
            request.from_id,
            request.to_id,
            request.type,
            request.content,
            task_id=request.task_id,
            subtask_id=request.subtask_id,
            require_response=request.require_response,
            urgency=request.urgency,
        )

    def get_collaboration_overview(self) -> Dict[str, Any]:
        return self.collaboration.get_overview()

    # ── Results ──────────────────────────────────────────────────────

    async def aggregate(self, task_id: str) -> AggregatedResult:
        return await self.aggregator.aggregate(task_id)

    def export_report(self, task_id: str, format: Union[ExportFormat, str] = ExportFormat.MARKDOWN) -> Optional[str]:
        return self.aggregator.export_report(task_id, ExportFormat(format))

    def _on_task_finished(self, task: Task) -> None:
        finished = self._finished.get(task.id)
        if finished is not None:
            finished.set()
        if not self.settings.aggregate_on_complete or self._closed:
            return
        handle = asyncio.get_running_loop().create_task(self._aggregate_quietly(task.id))
        self._aggregations[task.id] = handle

    async def _aggregate_quietly(self, task_id: str) -> None:
        try:
            await self.aggregator.aggregate(task_id)
        except Exception:
            logger.exception("Automatic aggregation failed for task %s", task_id)

    # ── Queries ──────────────────────────────────────────────────────

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.store.get_task(task_id)

    def get_subtasks(self, task_id: str) -> List[SubTask]:
        self.store.require_task(task_id)
        return self.store.subtasks(task_id)

    def get_queue_status(self) -> Dict[str, int]:
        return self.scheduler.get_queue_status()

    def get_status(self) -> Dict[str, Any]:
        """Overview of workers, tasks and queues."""
        tasks_by_status = {status.value: 0 for status in TaskStatus}
        for task in self.store.tasks():
            tasks_by_status[task.status.value] += 1
        return {
            "app_name": self.settings.app_name,
            "workers": {
                "total": len(self.pool),
                "active": sum(1 for w in self.pool.all() if w.status != WorkerStatus.IDLE),
                "idle": len(self.pool.idle()),
            },
            "tasks": tasks_by_status,
            "queue": self.scheduler.get_queue_status(),
            "paused_tasks": [p.task_id for p in self.exceptions.get_paused_tasks()],
            "pending_exceptions": len(self.exceptions.get_pending_exceptions()),
            "events": self.event_bus.stats,
        }

    def subscribe(
        self,
        families: Optional[Iterable[EventFamily]] = None,
        maxsize: Optional[int] = None,
    ) -> Subscription:
        return self.event_bus.subscribe(families, maxsize)

    async def wait_for_task(self, task_id: str, timeout: Optional[float] = None) -> Task:
        """Wait until *task_id* is terminal (and its report is built).

        Raises:
            TaskNotFoundError: unknown task
            asyncio.TimeoutError: the task did not finish within *timeout*
        """
        task = self.store.require_task(task_id)
        finished = self._finished.setdefault(task_id, asyncio.Event())
        if task.is_terminal:
            finished.set()
        await asyncio.wait_for(finished.wait(), timeout)
        aggregation = self._aggregations.get(task_id)
        if aggregation is not None:
            await aggregation
        return task

    # ── Lifecycle ────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Abort in-flight work and stop every background timer."""
        if self._closed:
            return
        self._closed = True
        await self.scheduler.shutdown()
        await self.exceptions.shutdown()
        await self.collaboration.shutdown()
        pending = [t for t in self._aggregations.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Orchestrator shut down")

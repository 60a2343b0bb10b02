"""Failure classification, automatic remediation and human intervention.

Every failure the scheduler sees ends up here as an ``ExceptionRecord``.
The handler is the only component that decides what happens next::

    needs a human?  ── yes ──> ticket (+ pause on critical, + notify peers)
         │ no
    auto-retry left and retryable type?  ── yes ──> auto_retry
         │ no
    low ──> skip      medium ──> reassign (or ticket if nobody is idle)
    high / critical ──> escalate (or await_human)

Records are never deleted; they form the audit trail.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from agentcrew.collaboration.bus import MASTER_ID, CollaborationBus, MessageType, Urgency
from agentcrew.event_bus import QueueEventBus
from agentcrew.exceptions_unified import ExceptionNotFoundError
from agentcrew.interfaces.event_bus import ExceptionEvent, ExceptionEventType
from agentcrew.orchestration.models import ExceptionType, Severity, now_ms
from agentcrew.orchestration.task_store import TaskStore
from agentcrew.scheduling.retry_strategies import BackoffPolicy, RetryDecision, RetryReason, RetryTracker
from agentcrew.scheduling.task_scheduler import SubtaskFailure, TaskScheduler
from agentcrew.workers.pool import WorkerPool

if TYPE_CHECKING:
    from agentcrew.config.settings import Settings

logger = logging.getLogger(__name__)


# ── Types ────────────────────────────────────────────────────────────


class ExceptionStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class ResolutionAction(str, Enum):
    AUTO_RETRY = "auto_retry"
    SKIP = "skip"
    REASSIGN = "reassign"
    ESCALATE = "escalate"
    AWAIT_HUMAN = "await_human"
    RETRY = "retry"
    ABORT = "abort"


class HumanDecision(str, Enum):
    PENDING = "pending"
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"
    REASSIGN = "reassign"


ALWAYS_HUMAN_TYPES = frozenset({ExceptionType.VALIDATION_ERROR, ExceptionType.RESOURCE_UNAVAILABLE})
AUTO_RETRY_TYPES = frozenset({ExceptionType.TASK_FAILURE, ExceptionType.AGENT_ERROR})
NOTIFY_LIMIT = 2
_RETRY_REASONS = {
    ExceptionType.TASK_TIMEOUT: RetryReason.TIMEOUT,
    ExceptionType.AGENT_ERROR: RetryReason.AGENT_ERROR,
}

DEFAULT_SEVERITIES = {
    ExceptionType.TASK_FAILURE: Severity.MEDIUM,
    ExceptionType.AGENT_ERROR: Severity.MEDIUM,
    ExceptionType.TASK_TIMEOUT: Severity.MEDIUM,
}


@dataclass
class HumanIntervention:
    requested_at: int = field(default_factory=now_ms)
    decision: HumanDecision = HumanDecision.PENDING
    responded_by: Optional[str] = None
    responded_at: Optional[int] = None
    notes: str = ""


@dataclass
class ExceptionResolution:
    action: ResolutionAction
    resolved_by: str = "system"
    resolved_at: int = field(default_factory=now_ms)
    notes: str = ""


@dataclass
class ExceptionRecord:
    id: str
    type: ExceptionType
    severity: Severity
    task_id: str
    message: str
    subtask_id: Optional[str] = None
    worker_id: Optional[str] = None
    stack: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)
    status: ExceptionStatus = ExceptionStatus.PENDING
    resolution: Optional[ExceptionResolution] = None
    requires_human_intervention: bool = False
    human_intervention: Optional[HumanIntervention] = None
    acknowledged_by: Optional[str] = None

    @property
    def key(self) -> Tuple[str, Optional[str]]:
        return (self.task_id, self.subtask_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "task_id": self.task_id,
            "subtask_id": self.subtask_id,
            "worker_id": self.worker_id,
            "message": self.message,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "resolution": None if self.resolution is None else {
                "action": self.resolution.action.value,
                "resolved_by": self.resolution.resolved_by,
                "resolved_at": self.resolution.resolved_at,
                "notes": self.resolution.notes,
            },
            "requires_human_intervention": self.requires_human_intervention,
            "human_intervention": None if self.human_intervention is None else {
                "requested_at": self.human_intervention.requested_at,
                "decision": self.human_intervention.decision.value,
                "responded_by": self.human_intervention.responded_by,
                "responded_at": self.human_intervention.responded_at,
                "notes": self.human_intervention.notes,
            },
        }


@dataclass
class PausedTask:
    task_id: str
    reason: str
    paused_at: int = field(default_factory=now_ms)
    can_resume: bool = True
    exception_id: Optional[str] = None


@dataclass
class ExceptionHandlerConfig:
    auto_retry_enabled: bool = True
    max_auto_retries: int = 2
    auto_retry_delay: float = 3.0
    human_intervention_threshold: Severity = Severity.HIGH
    auto_escalation_enabled: bool = True
    escalation_timeout: float = 300.0
    pause_on_critical: bool = True
    notify_on_exception: bool = True

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ExceptionHandlerConfig":
        return cls(
            auto_retry_enabled=settings.auto_retry_enabled,
            max_auto_retries=settings.max_auto_retries,
            auto_retry_delay=settings.auto_retry_delay_s,
            human_intervention_threshold=Severity(settings.human_intervention_threshold),
            auto_escalation_enabled=settings.auto_escalation_enabled,
            escalation_timeout=settings.escalation_timeout_s,
            pause_on_critical=settings.pause_on_critical,
            notify_on_exception=settings.notify_on_exception,
        )


_SEVERITY_ORDER = {Severity.CRITICAL: 0, Severity.HIGH: 1, Severity.MEDIUM: 2, Severity.LOW: 3}


# ── Handler ──────────────────────────────────────────────────────────


class ExceptionHandler:
    """Single authority over remediation of failed sub-tasks."""

    def __init__(
        self,
        scheduler: TaskScheduler,
        pool: WorkerPool,
        store: TaskStore,
        collaboration: Optional[CollaborationBus] = None,
        event_bus: Optional[QueueEventBus] = None,
        config: Optional[ExceptionHandlerConfig] = None,
    ) -> None:
        self._scheduler = scheduler
        self._pool = pool
        self._store = store
        self._collaboration = collaboration
        self._bus = event_bus
        self.config = config or ExceptionHandlerConfig()
        self._retries = RetryTracker(BackoffPolicy(
            max_attempts=self.config.max_auto_retries,
            base_delay=self.config.auto_retry_delay,
        ))
        self._records: Dict[str, ExceptionRecord] = {}
        self._paused: Dict[str, PausedTask] = {}
        self._escalation_timers: Dict[str, asyncio.TimerHandle] = {}
        self._background: Set[asyncio.Task] = set()

    # ── Reporting ────────────────────────────────────────────────────

    async def handle_failure(self, failure: SubtaskFailure) -> ExceptionRecord:
        """Scheduler callback for a failed run."""
        return await self.report(
            failure.exception_type,
            DEFAULT_SEVERITIES.get(failure.exception_type, Severity.MEDIUM),
            failure.error,
            task_id=failure.task_id,
            subtask_id=failure.subtask_id,
            worker_id=failure.worker_id,
        )

    async def report(
        self,
        type: ExceptionType,
        severity: Severity,
        message: str,
        task_id: str,
        subtask_id: Optional[str] = None,
        worker_id: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> ExceptionRecord:
        """Create a record and run the automatic policy on it."""
        if subtask_id is not None:
            # Raises TaskNotFoundError for sub-tasks that never existed.
            self._store.require_subtask(task_id, subtask_id)
        else:
            self._store.require_task(task_id)

        exc_type = ExceptionType(type)
        sev = Severity(severity)
        record = ExceptionRecord(
            id=f"exc-{uuid.uuid4().hex[:12]}",
            type=exc_type,
            severity=sev,
            task_id=task_id,
            subtask_id=subtask_id,
            worker_id=worker_id,
            message=message,
            stack="".join(traceback.format_exception(error.__class__, error, error.__traceback__)) if error else None,
            requires_human_intervention=self.requires_human(sev, exc_type),
        )
        self._records[record.id] = record
        logger.warning(
            "Exception %s on %s/%s: %s [%s, %s]",
            record.id, task_id, subtask_id, message, exc_type.value, sev.value,
        )
        self._emit(ExceptionEventType.EXCEPTION_OCCURRED, record)

        if record.requires_human_intervention:
            await self._request_human(record)
        else:
            await self._apply_strategy(record)
        return record

    def requires_human(self, severity: Severity, type: ExceptionType) -> bool:
        if severity == Severity.CRITICAL:
            return True
        if type in ALWAYS_HUMAN_TYPES:
            return True
        return severity.rank >= self.config.human_intervention_threshold.rank

    # ── Automatic strategies ─────────────────────────────────────────

    async def _apply_strategy(self, record: ExceptionRecord) -> None:
        retryable = record.type in AUTO_RETRY_TYPES or (
            record.type == ExceptionType.TASK_TIMEOUT and self.config.auto_retry_enabled
        )
        if record.subtask_id is not None and retryable:
            reason = _RETRY_REASONS.get(record.type, RetryReason.EXECUTION_FAILURE)
            decision = self._retries.decide(record.key, reason)
            if decision.should_retry:
                self._auto_retry(record, decision.attempt, decision.delay)
                return
            logger.info("Auto-retry exhausted for %s: %s", record.subtask_id, decision.message)

        if record.severity == Severity.LOW:
            self._skip(record, "system")
        elif record.severity == Severity.MEDIUM:
            await self._reassign(record)
        elif self.config.auto_escalation_enabled:
            await self._escalate(record)
        else:
            await self._request_human(record)

    def _auto_retry(self, record: ExceptionRecord, attempt: int, delay: float) -> None:
        record.status = ExceptionStatus.RESOLVING
        self._scheduler.requeue(record.task_id, record.subtask_id, bump=attempt, delay=delay)
        self._resolve(record, ResolutionAction.AUTO_RETRY, notes=f"Retry {attempt} in {delay:g}s")

    def _skip(self, record: ExceptionRecord, by: str) -> None:
        if record.subtask_id is not None:
            self._store.fail_subtask(record.task_id, record.subtask_id, f"Skipped due to error: {record.message}")
        self._resolve(record, ResolutionAction.SKIP, resolved_by=by)

    async def _reassign(self, record: ExceptionRecord) -> None:
        if record.subtask_id is None:
            await self._request_human(record, note="Nothing to reassign for a task-level exception")
            return
        subtask = self._store.require_subtask(record.task_id, record.subtask_id)
        exclude = [record.worker_id] if record.worker_id else []
        candidate = self._pool.select_worker(subtask.required_skills, exclude=exclude)
        if candidate is None:
            record.requires_human_intervention = True
            await self._request_human(record, note="No alternative worker available for reassignment")
            return

        record.status = ExceptionStatus.RESOLVING
        self._scheduler.requeue(record.task_id, record.subtask_id, worker_id=candidate.id, exclude=exclude)
        self._resolve(record, ResolutionAction.REASSIGN, notes=f"Reassigned to {candidate.name} ({candidate.id})")

    async def _escalate(self, record: ExceptionRecord) -> None:
        record.status = ExceptionStatus.ESCALATED
        record.requires_human_intervention = True
        await self._request_human(record, note="Escalated automatically")

    # ── Human intervention ───────────────────────────────────────────

    async def _request_human(self, record: ExceptionRecord, note: str = "") -> None:
        record.requires_human_intervention = True
        record.human_intervention = HumanIntervention(notes=note)
        if record.subtask_id is not None:
            self._store.hold(record.task_id, record.subtask_id)

        if record.severity == Severity.CRITICAL and self.config.pause_on_critical:
            self.pause(
                record.task_id,
                f"Critical exception {record.id}: {record.message}",
                exception_id=record.id,
            )

        if self.config.notify_on_exception and self._collaboration is not None:
            self._spawn(self._notify_peers(record))

        self._start_escalation_timer(record)
        logger.warning("Human intervention required for %s (%s)", record.id, record.message)
        self._emit(ExceptionEventType.HUMAN_INTERVENTION_REQUIRED, record)

    async def _notify_peers(self, record: ExceptionRecord) -> None:
        peers = [w.id for w in self._pool.all() if w.id != record.worker_id][:NOTIFY_LIMIT]
        if not peers:
            return
        content = (
            "A task hit an exception that needs attention:\n"
            f"Type: {record.type.value}\n"
            f"Severity: {record.severity.value}\n"
            f"Message: {record.message}"
        )
        result = await self._collaboration.broadcast(
            MASTER_ID, peers, content,
            type=MessageType.NOTIFICATION, task_id=record.task_id, urgency=Urgency.HIGH,
        )
        if result.failures:
            logger.warning("Exception %s: %d peer notifications failed", record.id, len(result.failures))

    def _start_escalation_timer(self, record: ExceptionRecord) -> None:
        if record.status == ExceptionStatus.ESCALATED or not self.config.auto_escalation_enabled:
            return
        loop = asyncio.get_running_loop()
        self._escalation_timers[record.id] = loop.call_later(
            self.config.escalation_timeout, self._on_escalation_timeout, record.id,
        )

    def _on_escalation_timeout(self, exception_id: str) -> None:
        self._escalation_timers.pop(exception_id, None)
        record = self._records.get(exception_id)
        if record is None or record.status not in (ExceptionStatus.PENDING, ExceptionStatus.ACKNOWLEDGED):
            return
        record.status = ExceptionStatus.ESCALATED
        logger.warning("Exception %s unanswered; escalated", exception_id)
        self._emit(ExceptionEventType.HUMAN_INTERVENTION_REQUIRED, record)

    async def respond(
        self,
        exception_id: str,
        decision: HumanDecision,
        responded_by: str,
        notes: str = "",
    ) -> bool:
        """Apply an operator decision to a ticket; False if there is none."""
        record = self._records.get(exception_id)
        if record is None or record.human_intervention is None:
            return False
        if record.status == ExceptionStatus.RESOLVED:
            return False
        decision = HumanDecision(decision)
        if decision == HumanDecision.PENDING:
            return False

        ticket = record.human_intervention
        ticket.decision = decision
        ticket.responded_by = responded_by
        ticket.responded_at = now_ms()
        ticket.notes = notes or ticket.notes
        self._cancel_escalation_timer(exception_id)
        self._emit(ExceptionEventType.HUMAN_INTERVENTION_RESPONDED, record, decision=decision.value)
        logger.info("Exception %s: %s decided %s", exception_id, responded_by, decision.value)

        if record.subtask_id is not None:
            self._store.release_hold(record.task_id, record.subtask_id)

        if decision == HumanDecision.ABORT:
            self._resolve(record, ResolutionAction.ABORT, resolved_by=responded_by, notes=notes)
            self.abort_task(record.task_id, f"Aborted by {responded_by}", aborted_by=responded_by)
            return True

        self._resume_if_paused_by(record)

        if decision == HumanDecision.RETRY:
            if record.subtask_id is not None:
                self._retries.record_manual(record.key)
                self._scheduler.requeue(record.task_id, record.subtask_id)
            self._resolve(record, ResolutionAction.RETRY, resolved_by=responded_by, notes=notes)
        elif decision == HumanDecision.SKIP:
            self._skip(record, responded_by)
        elif decision == HumanDecision.REASSIGN:
            if record.subtask_id is not None:
                subtask = self._store.require_subtask(record.task_id, record.subtask_id)
                exclude = [record.worker_id] if record.worker_id else []
                candidate = self._pool.select_worker(subtask.required_skills, exclude=exclude)
                self._scheduler.requeue(
                    record.task_id, record.subtask_id,
                    worker_id=candidate.id if candidate else None,
                    exclude=exclude,
                )
            self._resolve(record, ResolutionAction.REASSIGN, resolved_by=responded_by, notes=notes)

        self._store.settle(record.task_id)
        return True

    # ── Lifecycle ────────────────────────────────────────────────────

    def acknowledge(self, exception_id: str, acknowledged_by: str) -> bool:
        record = self._records.get(exception_id)
        if record is None or record.status != ExceptionStatus.PENDING:
            return False
        record.status = ExceptionStatus.ACKNOWLEDGED
        record.acknowledged_by = acknowledged_by
        self._emit(ExceptionEventType.EXCEPTION_ACKNOWLEDGED, record)
        return True

    def resolve(self, exception_id: str, action: ResolutionAction, resolved_by: str, notes: str = "") -> bool:
        """Close a record without applying a strategy; lifts any hold it had."""
        record = self._records.get(exception_id)
        if record is None or record.status == ExceptionStatus.RESOLVED:
            return False
        self._resolve(record, ResolutionAction(action), resolved_by=resolved_by, notes=notes)
        if record.subtask_id is not None:
            self._store.release_hold(record.task_id, record.subtask_id)
        self._store.settle(record.task_id)
        return True

    def _resolve(
        self,
        record: ExceptionRecord,
        action: ResolutionAction,
        resolved_by: str = "system",
        notes: str = "",
    ) -> None:
        record.status = ExceptionStatus.RESOLVED
        record.resolution = ExceptionResolution(action=action, resolved_by=resolved_by, notes=notes)
        self._cancel_escalation_timer(record.id)
        self._emit(ExceptionEventType.EXCEPTION_RESOLVED, record, decision=action.value)

    def abort_task(self, task_id: str, reason: str, aborted_by: str = "system") -> int:
        """Cancel a task and close every ticket still open on it.

        Returns the number of running or queued sub-tasks the scheduler dropped.
        """
        for record in self.get_task_exceptions(task_id):
            if record.status == ExceptionStatus.RESOLVED:
                continue
            ticket = record.human_intervention
            if ticket is not None and ticket.decision == HumanDecision.PENDING:
                ticket.decision = HumanDecision.ABORT
                ticket.responded_by = aborted_by
                ticket.responded_at = now_ms()
            self._resolve(record, ResolutionAction.ABORT, resolved_by=aborted_by, notes=reason)
        self._paused.pop(task_id, None)
        self._store.release_holds(task_id)
        return self._scheduler.cancel(task_id, reason)

    # ── Task pause / resume ──────────────────────────────────────────

    def pause(
        self,
        task_id: str,
        reason: str,
        can_resume: bool = True,
        exception_id: Optional[str] = None,
    ) -> PausedTask:
        self._store.require_task(task_id)
        paused = PausedTask(task_id=task_id, reason=reason, can_resume=can_resume, exception_id=exception_id)
        self._paused[task_id] = paused
        self._scheduler.pause(task_id)
        if self._bus is not None:
            self._bus.publish(ExceptionEvent(
                type=ExceptionEventType.TASK_PAUSED, task_id=task_id,
                exception_id=exception_id, message=reason,
            ))
        return paused

    def resume(self, task_id: str) -> bool:
        paused = self._paused.get(task_id)
        if paused is None:
            return False
        task = self._store.get_task(task_id)
        if task is None or task.is_terminal:
            del self._paused[task_id]
            return False
        if not paused.can_resume:
            logger.warning("Task %s cannot be resumed: %s", task_id, paused.reason)
            return False
        del self._paused[task_id]
        self._scheduler.resume(task_id)
        if self._bus is not None:
            self._bus.publish(ExceptionEvent(type=ExceptionEventType.TASK_RESUMED, task_id=task_id))
        return True

    def is_paused(self, task_id: str) -> bool:
        return task_id in self._paused

    def _resume_if_paused_by(self, record: ExceptionRecord) -> None:
        paused = self._paused.get(record.task_id)
        if paused is not None and paused.exception_id == record.id:
            self.resume(record.task_id)

    # ── Views ────────────────────────────────────────────────────────

    def get_exception(self, exception_id: str) -> ExceptionRecord:
        record = self._records.get(exception_id)
        if record is None:
            raise ExceptionNotFoundError(f"Exception {exception_id!r} not found")
        return record

    def get_task_exceptions(self, task_id: str) -> List[ExceptionRecord]:
        return [r for r in self._records.values() if r.task_id == task_id]

    def get_pending_exceptions(self) -> List[ExceptionRecord]:
        pending = [
            r for r in self._records.values()
            if r.status in (ExceptionStatus.PENDING, ExceptionStatus.ACKNOWLEDGED)
        ]
        pending.sort(key=lambda r: (_SEVERITY_ORDER[r.severity], r.timestamp))
        return pending

    def get_human_intervention_required(self) -> List[ExceptionRecord]:
        waiting = [
            r for r in self._records.values()
            if r.human_intervention is not None
            and r.human_intervention.decision == HumanDecision.PENDING
        ]
        waiting.sort(key=lambda r: r.timestamp, reverse=True)
        return waiting

    def get_paused_tasks(self) -> List[PausedTask]:
        return list(self._paused.values())

    def get_retry_count(self, task_id: str, subtask_id: str) -> int:
        return self._retries.count((task_id, subtask_id))

    def get_retry_history(self, task_id: str, subtask_id: str) -> List[RetryDecision]:
        return self._retries.get_history((task_id, subtask_id))

    def get_stats(self) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        by_status: Dict[str, int] = {}
        for record in self._records.values():
            by_type[record.type.value] = by_type.get(record.type.value, 0) + 1
            by_severity[record.severity.value] = by_severity.get(record.severity.value, 0) + 1
            by_status[record.status.value] = by_status.get(record.status.value, 0) + 1
        return {
            "total": len(self._records),
            "by_type": by_type,
            "by_severity": by_severity,
            "by_status": by_status,
            "pending_human_intervention": len(self.get_human_intervention_required()),
            "paused_tasks": len(self._paused),
            "retries": self._retries.stats,
        }

    async def shutdown(self) -> None:
        for handle in self._escalation_timers.values():
            handle.cancel()
        self._escalation_timers.clear()
        pending = list(self._background)
        for job in pending:
            job.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait for background peer notifications to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Internals ────────────────────────────────────────────────────

    def _cancel_escalation_timer(self, exception_id: str) -> None:
        handle = self._escalation_timers.pop(exception_id, None)
        if handle is not None:
            handle.cancel()

    def _spawn(self, coro) -> asyncio.Task:
        job = asyncio.create_task(coro)
        self._background.add(job)
        job.add_done_callback(self._background.discard)
        return job

    def _emit(self, event_type: ExceptionEventType, record: ExceptionRecord, decision: Optional[str] = None) -> None:
        if self._bus is None:
            return
        self._bus.publish(ExceptionEvent(
            type=event_type,
            task_id=record.task_id,
            exception_id=record.id,
            subtask_id=record.subtask_id,
            worker_id=record.worker_id,
            severity=record.severity.value,
            message=record.message,
            decision=decision,
        ))

"""Runs one sub-task against one worker, streaming progress.

Each run is a small state machine::

    pending -> running -> streaming -> completed
                  ^           |
                  +--(retry)--+-> failed | aborted

The worker's stream is pumped into a channel by a producer task; the
consumer selects between the next chunk and the run's cancellation
token, so an abort never waits on a stalled worker.  ``run`` never
raises for worker failures: it resolves to an ``ExecutionResult``.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Union

from agentcrew.event_bus import QueueEventBus
from agentcrew.exceptions_unified import (
    AgentError,
    TaskCancelledError,
    TaskExecutionError,
    TaskTimeoutError,
)
from agentcrew.interfaces.event_bus import ExecutorEvent, ExecutorEventType
from agentcrew.interfaces.worker import ChatMessage, StreamChunk
from agentcrew.orchestration.models import ExceptionType, SubTask, now_ms
from agentcrew.orchestration.task_store import TaskStore
from agentcrew.scheduling.retry_strategies import BackoffPolicy
from agentcrew.workers.pool import Worker, WorkerPool, WorkerStatus

if TYPE_CHECKING:
    from agentcrew.config.settings import Settings

logger = logging.getLogger(__name__)

PROGRESS_FULL_LENGTH = 2000
PROGRESS_STREAM_CAP = 90


class ExecuteState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class CancellationToken:
    """One-shot abort signal shared between a run and its controller."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep up to *delay* seconds; True if cancelled meanwhile."""
        if delay <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class ExecutionState:
    """Live view of one run, kept until explicitly cleared."""

    task_id: str
    subtask_id: str
    worker_id: str
    state: ExecuteState = ExecuteState.PENDING
    attempt: int = 0
    progress: int = 0
    output: str = ""
    error: Optional[str] = None
    started_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "subtask_id": self.subtask_id,
            "worker_id": self.worker_id,
            "state": self.state.value,
            "attempt": self.attempt,
            "progress": self.progress,
            "output_length": len(self.output),
            "error": self.error,
            "started_at": self.started_at,
        }


@dataclass(frozen=True)
class ExecutionResult:
    ok: bool
    output: str = ""
    error: Optional[str] = None
    error_type: ExceptionType = ExceptionType.TASK_FAILURE
    cancelled: bool = False
    attempts: int = 1


@dataclass
class ExecutorConfig:
    max_retries: int = 3
    retry_delay: float = 2.0
    stream_update_interval: float = 0.1

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ExecutorConfig":
        return cls(
            max_retries=settings.executor_max_retries,
            retry_delay=settings.executor_retry_delay_s,
            stream_update_interval=settings.stream_update_interval_s,
        )


_CLOSED = object()


def estimate_progress(length: int) -> int:
    """Heuristic mid-stream progress from accumulated text length."""
    return min(PROGRESS_STREAM_CAP, math.floor(length / PROGRESS_FULL_LENGTH * 100))


def classify_error(error: BaseException) -> ExceptionType:
    if isinstance(error, (TaskTimeoutError, asyncio.TimeoutError)):
        return ExceptionType.TASK_TIMEOUT
    if isinstance(error, (AgentError, ConnectionError)):
        return ExceptionType.AGENT_ERROR
    return ExceptionType.TASK_FAILURE


class TaskExecutor:
    """Executes sub-tasks on worker capabilities with bounded retry."""

    def __init__(
        self,
        pool: WorkerPool,
        store: TaskStore,
        event_bus: Optional[QueueEventBus] = None,
        config: Optional[ExecutorConfig] = None,
    ) -> None:
        self._pool = pool
        self._store = store
        self._bus = event_bus
        self.config = config or ExecutorConfig()
        self._states: Dict[str, ExecutionState] = {}
        self._tokens: Dict[str, CancellationToken] = {}

    @property
    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.config.max_retries,
            base_delay=self.config.retry_delay,
        )

    # ── Public API ───────────────────────────────────────────────────

    async def run(
        self,
        task_id: str,
        subtask_id: str,
        worker_id: str,
        token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        token = token or CancellationToken()
        subtask = self._store.require_subtask(task_id, subtask_id)
        worker = self._pool.require(worker_id)
        policy = self.backoff

        state = ExecutionState(task_id=task_id, subtask_id=subtask_id, worker_id=worker_id)
        self._states[subtask_id] = state
        self._tokens[subtask_id] = token

        self._store.record_start(task_id, subtask_id)
        self._emit(ExecutorEventType.TASK_START, state)
        logger.info("Executing %s on %s", subtask_id, worker.name)

        try:
            while True:
                state.attempt += 1
                try:
                    output = await self._attempt(state, subtask, worker, token)
                except TaskCancelledError as exc:
                    return self._abort(state, str(exc))
                except Exception as exc:
                    if token.cancelled:
                        return self._abort(state, token.reason or "Aborted")
                    state.error = str(exc) or type(exc).__name__
                    retry = state.attempt
                    if policy.allows(retry):
                        delay = policy.delay_for(retry)
                        logger.warning(
                            "Attempt %d of %s failed (%s); retrying in %.1fs",
                            state.attempt, subtask_id, state.error, delay,
                        )
                        self._emit(ExecutorEventType.TASK_RETRY, state, error=state.error)
                        if await token.sleep(delay):
                            return self._abort(state, token.reason or "Aborted")
                        continue
                    return self._fail(state, exc, policy.max_attempts)
                else:
                    return self._complete(state, output)
        finally:
            self._tokens.pop(subtask_id, None)

    def abort_task(self, subtask_id: str, reason: str = "Aborted") -> bool:
        token = self._tokens.get(subtask_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def get_execute_state(self, subtask_id: str) -> Optional[ExecutionState]:
        return self._states.get(subtask_id)

    def get_task_execute_states(self, task_id: str) -> List[ExecutionState]:
        return [s for s in self._states.values() if s.task_id == task_id]

    def clear_execute_state(self, task_id: Optional[str] = None) -> None:
        if task_id is None:
            self._states.clear()
            return
        for sid in [sid for sid, s in self._states.items() if s.task_id == task_id]:
            del self._states[sid]

    # ── Attempt state machine ────────────────────────────────────────

    async def _attempt(
        self,
        state: ExecutionState,
        subtask: SubTask,
        worker: Worker,
        token: CancellationToken,
    ) -> str:
        if worker.capability is None:
            raise AgentError(f"Worker {worker.id!r} has no capability attached")

        state.state = ExecuteState.RUNNING
        state.output = ""
        self._pool.set_status(worker.id, WorkerStatus.THINKING)

        channel: asyncio.Queue = asyncio.Queue()
        producer = asyncio.create_task(self._pump(worker.capability.stream_chat(self.build_messages(subtask, worker)), channel))
        loop = asyncio.get_running_loop()
        last_emit = loop.time()
        try:
            while True:
                item = await self._next_item(channel, token)
                if item is _CLOSED:
                    break
                if isinstance(item, BaseException):
                    raise item
                chunk: StreamChunk = item
                if chunk.content:
                    if state.state != ExecuteState.STREAMING:
                        state.state = ExecuteState.STREAMING
                        self._pool.set_status(worker.id, WorkerStatus.TYPING)
                    state.output += chunk.content
                    self._emit(ExecutorEventType.TASK_STREAM, state, content=chunk.content)
                    progress = max(state.progress, estimate_progress(len(state.output)))
                    now = loop.time()
                    if progress != state.progress and now - last_emit >= self.config.stream_update_interval:
                        state.progress = progress
                        last_emit = now
                        self._emit(ExecutorEventType.TASK_PROGRESS, state)
                if chunk.done:
                    break
        finally:
            if not producer.done():
                producer.cancel()
            await asyncio.wait({producer})

        if token.cancelled:
            raise TaskCancelledError(token.reason or "Aborted")
        return state.output

    async def _pump(self, stream: AsyncIterator[StreamChunk], channel: asyncio.Queue) -> None:
        """Producer side: every chunk becomes a message, closure ends it."""
        try:
            async for chunk in stream:
                channel.put_nowait(chunk)
                if chunk.done:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            channel.put_nowait(exc)
        finally:
            channel.put_nowait(_CLOSED)

    async def _next_item(
        self, channel: asyncio.Queue, token: CancellationToken
    ) -> Union[StreamChunk, BaseException, object]:
        getter = asyncio.ensure_future(channel.get())
        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (getter, waiter):
                if not fut.done():
                    fut.cancel()
        if getter in done:
            return getter.result()
        raise TaskCancelledError(token.reason or "Aborted")

    # ── Prompting ────────────────────────────────────────────────────

    @staticmethod
    def build_messages(subtask: SubTask, worker: Worker) -> List[ChatMessage]:
        skills = ", ".join(worker.skills) or "general problem solving"
        system = (
            f"You are {worker.name}, a {worker.role}. Your skills: {skills}. "
            "Complete the assigned sub-task thoroughly and report the result."
        )
        user = (
            f"## Task: {subtask.title}\n\n"
            f"{subtask.description}\n\n"
            f"Priority: {subtask.priority.value}\n"
            f"Estimated duration: {subtask.estimated_minutes} minutes\n\n"
            "Complete this task and provide a detailed result."
        )
        return [ChatMessage("system", system), ChatMessage("user", user)]

    # ── Terminal transitions ─────────────────────────────────────────

    def _complete(self, state: ExecutionState, output: str) -> ExecutionResult:
        state.state = ExecuteState.COMPLETED
        state.progress = 100
        state.error = None
        self._store.record_result(state.task_id, state.subtask_id, output)
        self._emit(ExecutorEventType.TASK_PROGRESS, state)
        self._emit(ExecutorEventType.TASK_COMPLETE, state, content=output)
        logger.info("Sub-task %s completed (%d chars)", state.subtask_id, len(output))
        return ExecutionResult(ok=True, output=output, attempts=state.attempt)

    def _fail(self, state: ExecutionState, error: Exception, retries: int) -> ExecutionResult:
        wrapped = TaskExecutionError(
            f"Task execution failed after {retries} retries: {state.error}",
            details={"subtask_id": state.subtask_id, "attempts": state.attempt},
        )
        state.state = ExecuteState.FAILED
        state.error = wrapped.message
        self._store.record_error(state.task_id, state.subtask_id, wrapped.message)
        self._emit(ExecutorEventType.TASK_FAILED, state, error=wrapped.message)
        logger.error("Sub-task %s failed: %s", state.subtask_id, wrapped.message)
        return ExecutionResult(
            ok=False,
            output=state.output,
            error=wrapped.message,
            error_type=classify_error(error),
            attempts=state.attempt,
        )

    def _abort(self, state: ExecutionState, reason: str) -> ExecutionResult:
        state.state = ExecuteState.ABORTED
        state.error = reason
        self._store.record_error(state.task_id, state.subtask_id, reason)
        self._emit(ExecutorEventType.TASK_FAILED, state, error=reason)
        logger.info("Sub-task %s aborted: %s", state.subtask_id, reason)
        return ExecutionResult(
            ok=False,
            output=state.output,
            error=reason,
            cancelled=True,
            attempts=state.attempt,
        )

    def _emit(self, event_type: ExecutorEventType, state: ExecutionState, **extra: Any) -> None:
        if self._bus is None:
            return
        self._bus.publish(ExecutorEvent(
            type=event_type,
            task_id=state.task_id,
            subtask_id=state.subtask_id,
            worker_id=state.worker_id,
            attempt=state.attempt,
            progress=state.progress,
            **extra,
        ))

"""Tests for agentcrew.scheduling.task_executor."""

import asyncio

import pytest

from agentcrew.event_bus import QueueEventBus
from agentcrew.exceptions_unified import AgentError, TaskNotFoundError, TaskTimeoutError
from agentcrew.interfaces.event_bus import EventFamily, ExecutorEventType
from agentcrew.orchestration.models import ExceptionType, Priority, SubTask, Task
from agentcrew.orchestration.task_store import TaskStore
from agentcrew.scheduling.task_executor import (
    CancellationToken,
    ExecuteState,
    ExecutorConfig,
    TaskExecutor,
    classify_error,
    estimate_progress,
)
from agentcrew.workers.pool import Worker, WorkerPool

from conftest import ScriptedWorker


def _make_executor(capability, max_retries=0, retry_delay=0.0, interval=0.0):
    """Executor over a store holding task ``t1`` / sub-task ``s1`` and worker ``w1``."""
    store = TaskStore()
    store.add_task(
        Task(id="t1", original_task="demo"),
        [SubTask(id="s1", task_id="t1", title="Write intro", description="Two paragraphs", priority=Priority.HIGH)],
    )
    pool = WorkerPool()
    pool.add("Writer", role="writer", skills=["docs"], capability=capability, worker_id="w1")
    bus = QueueEventBus()
    events = bus.subscribe([EventFamily.EXECUTOR])
    executor = TaskExecutor(pool, store, bus, ExecutorConfig(max_retries, retry_delay, interval))
    return executor, store, events


def _types(events):
    return [e.type for e in events.drain()]


# ========================================================================
# HAPPY PATH
# ========================================================================


class TestSuccessfulRun:
    """Streaming to completion."""

    async def test_concatenates_stream(self):
        executor, store, events = _make_executor(ScriptedWorker(chunks=["Hello, ", "world"]))
        result = await executor.run("t1", "s1", "w1")

        assert result.ok
        assert result.output == "Hello, world"
        assert result.attempts == 1
        sub = store.get_subtask("t1", "s1")
        assert sub.result == "Hello, world"
        assert sub.start_time is not None and sub.end_time is not None

        types = _types(events)
        assert types[0] == ExecutorEventType.TASK_START
        assert types.count(ExecutorEventType.TASK_STREAM) == 2
        assert types[-1] == ExecutorEventType.TASK_COMPLETE

    async def test_final_progress_is_100(self):
        executor, _, events = _make_executor(ScriptedWorker(chunks=["x" * 500]))
        await executor.run("t1", "s1", "w1")
        progress = [e.progress for e in events.drain() if e.type == ExecutorEventType.TASK_PROGRESS]
        assert progress[-1] == 100
        assert progress == sorted(progress)

    async def test_progress_capped_below_100_while_streaming(self):
        executor, _, events = _make_executor(ScriptedWorker(chunks=["x" * 1500] * 3))
        await executor.run("t1", "s1", "w1")
        progress = [e.progress for e in events.drain() if e.type == ExecutorEventType.TASK_PROGRESS]
        assert max(progress[:-1]) == 90
        assert progress[-1] == 100

    async def test_state_kept_until_cleared(self):
        executor, _, _ = _make_executor(ScriptedWorker())
        await executor.run("t1", "s1", "w1")
        state = executor.get_execute_state("s1")
        assert state.state == ExecuteState.COMPLETED
        assert [s.subtask_id for s in executor.get_task_execute_states("t1")] == ["s1"]
        executor.clear_execute_state("t1")
        assert executor.get_execute_state("s1") is None

    def test_prompt_contains_task_details(self):
        sub = SubTask(id="s", task_id="t", title="Draft API", description="REST endpoints", estimated_minutes=15)
        worker = Worker(id="w", name="Ada", role="backend developer", skills=["python"])
        system, user = TaskExecutor.build_messages(sub, worker)
        assert "Ada" in system.content and "python" in system.content
        assert "## Task: Draft API" in user.content
        assert "REST endpoints" in user.content
        assert "Priority: medium" in user.content
        assert "Estimated duration: 15 minutes" in user.content


# ========================================================================
# FAILURES AND RETRIES
# ========================================================================


class TestRetries:
    """Bounded in-run retry."""

    async def test_recovers_within_budget(self):
        worker = ScriptedWorker(fail_times=2, chunks=["fine"])
        executor, _, events = _make_executor(worker, max_retries=3)
        result = await executor.run("t1", "s1", "w1")
        assert result.ok
        assert result.attempts == 3
        assert _types(events).count(ExecutorEventType.TASK_RETRY) == 2

    async def test_exhausted_budget_reports_failure(self):
        worker = ScriptedWorker(fail_times=10, error=RuntimeError("model overloaded"))
        executor, store, events = _make_executor(worker, max_retries=3)
        result = await executor.run("t1", "s1", "w1")

        assert not result.ok
        assert result.attempts == 4
        assert worker.stream_calls == 4
        assert result.error == "Task execution failed after 3 retries: model overloaded"
        assert result.error_type == ExceptionType.TASK_FAILURE
        assert store.get_subtask("t1", "s1").error == result.error
        assert _types(events)[-1] == ExecutorEventType.TASK_FAILED

    async def test_agent_error_classified(self):
        executor, _, _ = _make_executor(ScriptedWorker(fail_times=1, error=ConnectionError("refused")))
        result = await executor.run("t1", "s1", "w1")
        assert result.error_type == ExceptionType.AGENT_ERROR

    async def test_missing_capability_is_agent_error(self):
        executor, _, _ = _make_executor(None)
        result = await executor.run("t1", "s1", "w1")
        assert not result.ok
        assert result.error_type == ExceptionType.AGENT_ERROR

    async def test_retry_delay_grows_linearly(self, monkeypatch):
        delays = []

        async def fake_sleep(self, delay):
            delays.append(delay)
            return False

        monkeypatch.setattr(CancellationToken, "sleep", fake_sleep)
        executor, _, _ = _make_executor(ScriptedWorker(fail_times=10), max_retries=3, retry_delay=2.0)
        await executor.run("t1", "s1", "w1")
        assert delays == [2.0, 4.0, 6.0]


def test_classify_error():
    assert classify_error(TaskTimeoutError("slow")) == ExceptionType.TASK_TIMEOUT
    assert classify_error(AgentError("down")) == ExceptionType.AGENT_ERROR
    assert classify_error(ValueError("bad")) == ExceptionType.TASK_FAILURE


def test_estimate_progress():
    assert estimate_progress(0) == 0
    assert estimate_progress(1000) == 50
    assert estimate_progress(10_000) == 90


# ========================================================================
# CANCELLATION
# ========================================================================


class TestAbort:
    """Cancellation through the token."""

    async def test_abort_hanging_worker(self):
        executor, store, _ = _make_executor(ScriptedWorker(hang=True))
        token = CancellationToken()
        run = asyncio.create_task(executor.run("t1", "s1", "w1", token))
        await asyncio.sleep(0.02)

        assert executor.abort_task("s1", "Stop now")
        result = await asyncio.wait_for(run, 1.0)

        assert not result.ok
        assert result.cancelled
        assert result.error == "Stop now"
        assert executor.get_execute_state("s1").state == ExecuteState.ABORTED
        assert store.get_subtask("t1", "s1").error == "Stop now"

    async def test_abort_during_retry_wait(self):
        executor, _, _ = _make_executor(ScriptedWorker(fail_times=10), max_retries=3, retry_delay=30.0)
        token = CancellationToken()
        run = asyncio.create_task(executor.run("t1", "s1", "w1", token))
        await asyncio.sleep(0.02)
        token.cancel("Timed out")
        result = await asyncio.wait_for(run, 1.0)
        assert result.cancelled
        assert result.error == "Timed out"

    async def test_abort_unknown_run(self):
        executor, _, _ = _make_executor(ScriptedWorker())
        assert not executor.abort_task("nope")

    async def test_unknown_subtask_raises(self):
        executor, _, _ = _make_executor(ScriptedWorker())
        with pytest.raises(TaskNotFoundError, match="not found"):
            await executor.run("t1", "ghost", "w1")

"""Tests for agentcrew.scheduling.task_scheduler."""

import asyncio

import pytest

from agentcrew.event_bus import QueueEventBus
from agentcrew.interfaces.event_bus import EventFamily, SchedulerEventType
from agentcrew.orchestration.models import ExceptionType, Priority, SubTask, Task, TaskStatus
from agentcrew.orchestration.task_store import TaskStore
from agentcrew.scheduling.task_executor import ExecutorConfig, TaskExecutor
from agentcrew.scheduling.task_scheduler import SchedulerConfig, TaskScheduler
from agentcrew.workers.pool import WorkerPool

from conftest import ScriptedWorker, SharedCounter, wait_until


class Harness:
    """Scheduler wired to a store, a pool and an event subscription."""

    def __init__(self, workers, max_concurrency=3, task_timeout=5.0):
        self.store = TaskStore()
        self.pool = WorkerPool()
        for worker_id, capability in workers.items():
            self.pool.add(worker_id.title(), capability=capability, worker_id=worker_id)
        self.bus = QueueEventBus()
        self.events = self.bus.subscribe([EventFamily.SCHEDULER])
        self.executor = TaskExecutor(self.pool, self.store, self.bus, ExecutorConfig(0, 0.0, 0.0))
        self.scheduler = TaskScheduler(
            self.pool, self.store, self.executor, self.bus,
            SchedulerConfig(max_concurrency=max_concurrency, task_timeout=task_timeout, poll_interval=0.01),
        )
        self.failures = []

    def submit(self, *subtasks, task_id="t1"):
        task = Task(id=task_id, original_task="demo")
        for sub in subtasks:
            sub.task_id = task_id
        self.scheduler.submit(task, list(subtasks))
        return task

    def started_order(self):
        return [e.subtask_id for e in self.events.drain() if e.type == SchedulerEventType.TASK_STARTED]

    async def finish(self, task_id="t1", timeout=2.0):
        await wait_until(lambda: self.store.get_task(task_id).is_terminal, timeout)


def _sub(sid, **kwargs):
    return SubTask(id=sid, task_id="", title=sid, **kwargs)


# ========================================================================
# ORDERING
# ========================================================================


class TestOrdering:
    """Priority scores, sequence ties and dependencies."""

    async def test_priority_order_with_single_slot(self):
        h = Harness({"w1": ScriptedWorker()}, max_concurrency=1)
        h.submit(
            _sub("low", priority=Priority.LOW),
            _sub("high", priority=Priority.HIGH),
            _sub("medium"),
        )
        await h.finish()
        assert h.started_order() == ["high", "medium", "low"]

    async def test_equal_scores_keep_submission_order(self):
        h = Harness({"w1": ScriptedWorker()}, max_concurrency=1)
        h.submit(_sub("a"), _sub("b"), _sub("c"))
        await h.finish()
        assert h.started_order() == ["a", "b", "c"]

    def test_base_score(self):
        h = Harness({})
        assert h.scheduler.base_score(_sub("x", priority=Priority.HIGH)) == 3
        assert h.scheduler.base_score(_sub("x")) == 5
        assert h.scheduler.base_score(_sub("x", priority=Priority.LOW, dependencies=["y"])) == 8

    async def test_dependent_waits_for_completion(self):
        first = ScriptedWorker(chunks=["a"], delay=0.03)
        h = Harness({"w1": first, "w2": ScriptedWorker()})
        h.submit(_sub("a"), _sub("b", dependencies=["a"]))
        await h.finish()

        a = h.store.get_subtask("t1", "a")
        b = h.store.get_subtask("t1", "b")
        assert a.status == b.status == TaskStatus.COMPLETED
        assert b.start_time >= a.end_time
        assert h.started_order() == ["a", "b"]

    async def test_failed_dependency_blocks_forever(self):
        h = Harness({"w1": ScriptedWorker(fail_times=99)})
        h.submit(_sub("a"), _sub("b", dependencies=["a"]))
        await wait_until(lambda: h.store.get_subtask("t1", "a").status == TaskStatus.FAILED)
        await asyncio.sleep(0.05)

        assert h.store.get_subtask("t1", "b").status == TaskStatus.PENDING
        assert not h.store.get_task("t1").is_terminal
        details = h.scheduler.get_queue_details()
        assert details[0]["subtask_id"] == "b"
        assert details[0]["blocked_by"] == ["a"]
        await h.scheduler.shutdown()


# ========================================================================
# CONCURRENCY
# ========================================================================


class TestConcurrency:
    """Global bound across tasks."""

    async def test_never_exceeds_max_concurrency(self):
        counter = SharedCounter()
        workers = {f"w{i}": counter.wrap(ScriptedWorker(chunks=["x", "y"], delay=0.01)) for i in range(5)}
        h = Harness(workers, max_concurrency=2)
        h.submit(*[_sub(f"a{i}") for i in range(3)], task_id="t1")
        h.submit(*[_sub(f"b{i}") for i in range(3)], task_id="t2")
        await h.finish("t1")
        await h.finish("t2")

        assert counter.max_active == 2
        assert h.scheduler.stats["slots"]["peak"] == 2

    async def test_busy_worker_not_double_booked(self):
        worker = ScriptedWorker(delay=0.01)
        h = Harness({"w1": worker}, max_concurrency=3)
        h.submit(_sub("a"), _sub("b"), _sub("c"))
        await h.finish()
        assert worker.max_active == 1
        assert h.pool.get("w1").completed_tasks == 3

    async def test_queue_status(self):
        h = Harness({"w1": ScriptedWorker(hang=True)}, max_concurrency=1)
        h.submit(_sub("a"), _sub("b"))
        await wait_until(lambda: h.scheduler.get_queue_status()["running"] == 1)
        assert h.scheduler.get_queue_status() == {"queued": 1, "running": 1, "max_concurrency": 1}
        running = h.scheduler.get_running()
        assert [(r["subtask_id"], r["worker_id"]) for r in running] == [("a", "w1")]
        await h.scheduler.shutdown()


# ========================================================================
# FAILURE PATH
# ========================================================================


class TestFailurePath:
    """Timeouts and the failure callback."""

    async def test_timeout_reports_task_timeout(self):
        h = Harness({"w1": ScriptedWorker(hang=True)}, task_timeout=0.05)

        async def handler(failure):
            h.failures.append(failure)

        h.scheduler.set_failure_handler(handler)
        h.submit(_sub("a"))
        await h.finish()

        assert len(h.failures) == 1
        assert h.failures[0].exception_type == ExceptionType.TASK_TIMEOUT
        assert "timed out" in h.failures[0].error
        assert h.store.get_task("t1").status == TaskStatus.FAILED
        assert h.pool.get("w1").is_idle
        types = [e.type for e in h.events.drain()]
        assert SchedulerEventType.TASK_TIMEOUT in types
        assert SchedulerEventType.TASK_FAILED in types

    async def test_handler_requeue_keeps_task_open(self):
        worker = ScriptedWorker(fail_times=1)
        h = Harness({"w1": worker})

        async def handler(failure):
            h.failures.append(failure)
            assert h.scheduler.requeue(failure.task_id, failure.subtask_id, bump=1)

        h.scheduler.set_failure_handler(handler)
        h.submit(_sub("a"))
        await h.finish()

        sub = h.store.get_subtask("t1", "a")
        assert h.store.get_task("t1").status == TaskStatus.COMPLETED
        assert sub.retry_count == 1
        assert len(h.failures) == 1

    async def test_requeue_delay(self):
        h = Harness({"w1": ScriptedWorker(fail_times=1)})
        times = []

        async def handler(failure):
            times.append(asyncio.get_running_loop().time())
            h.scheduler.requeue(failure.task_id, failure.subtask_id, delay=0.1)

        h.scheduler.set_failure_handler(handler)
        h.submit(_sub("a"))
        await wait_until(lambda: len(times) == 1)
        assert h.store.get_subtask("t1", "a").status == TaskStatus.PENDING
        assert not h.store.get_task("t1").is_terminal
        await h.finish()
        assert asyncio.get_running_loop().time() - times[0] >= 0.1

    async def test_requeue_refuses_unknown_or_queued(self):
        h = Harness({"w1": ScriptedWorker(hang=True)}, max_concurrency=1)
        h.submit(_sub("a"), _sub("b"))
        await wait_until(lambda: h.scheduler.get_queue_status()["running"] == 1)
        assert not h.scheduler.requeue("t1", "ghost")
        assert not h.scheduler.requeue("t1", "b")
        assert not h.scheduler.requeue("t1", "a")
        await h.scheduler.shutdown()


# ========================================================================
# TASK CONTROL
# ========================================================================


class TestTaskControl:
    """Cancel, pause and resume."""

    async def test_cancel_aborts_everything(self):
        h = Harness({"w1": ScriptedWorker(hang=True)}, max_concurrency=1)
        h.submit(_sub("a"), _sub("b"))
        await wait_until(lambda: h.scheduler.get_queue_status()["running"] == 1)

        assert h.scheduler.cancel("t1", "Stop") == 2
        await wait_until(lambda: h.scheduler.get_queue_status()["running"] == 0)

        task = h.store.get_task("t1")
        assert task.status == TaskStatus.FAILED
        assert all(s.status == TaskStatus.FAILED for s in h.store.subtasks("t1"))
        assert h.pool.get("w1").is_idle
        assert h.scheduler.get_queue_status()["queued"] == 0

    async def test_pause_requeues_running_and_resume_finishes(self):
        worker = ScriptedWorker(chunks=["a", "b", "c"], delay=0.02)
        h = Harness({"w1": worker})
        h.submit(_sub("a"))
        await wait_until(lambda: h.scheduler.get_queue_status()["running"] == 1)

        assert h.scheduler.pause("t1") == 1
        await wait_until(lambda: h.scheduler.get_queue_status()["queued"] == 1)
        await asyncio.sleep(0.05)
        assert h.store.get_subtask("t1", "a").status == TaskStatus.PENDING
        assert h.scheduler.get_queue_details()[0]["paused"] is True

        h.scheduler.resume("t1")
        await h.finish()
        assert h.store.get_task("t1").status == TaskStatus.COMPLETED
        assert worker.stream_calls == 2

    async def test_update_config_grows_capacity(self):
        counter = SharedCounter()
        workers = {f"w{i}": counter.wrap(ScriptedWorker(delay=0.02)) for i in range(3)}
        h = Harness(workers, max_concurrency=1)
        h.submit(_sub("a"), _sub("b"), _sub("c"))
        h.scheduler.update_config(max_concurrency=3)
        await h.finish()
        assert counter.max_active == 3

    def test_update_config_rejects_unknown(self):
        h = Harness({})
        with pytest.raises(ValueError, match="Unknown scheduler setting"):
            h.scheduler.update_config(colour="blue")

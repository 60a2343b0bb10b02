"""Task scheduling for AgentCrew.

Priority + dependency queue under a global concurrency bound, streaming
sub-task execution, explicit backoff policies and dependency analysis.
"""

from agentcrew.scheduling.concurrency import ConcurrencySlot
from agentcrew.scheduling.dependency_resolver import CycleDetectedError, DependencyGraph
from agentcrew.scheduling.retry_strategies import (
    BackoffPolicy,
    RetryDecision,
    RetryReason,
    RetryTracker,
)
from agentcrew.scheduling.task_executor import (
    CancellationToken,
    ExecuteState,
    ExecutionResult,
    ExecutionState,
    ExecutorConfig,
    TaskExecutor,
)
from agentcrew.scheduling.task_scheduler import (
    QueueEntry,
    RunningEntry,
    SchedulerConfig,
    SubtaskFailure,
    TaskScheduler,
)

__all__ = [
    # Concurrency
    "ConcurrencySlot",
    # Dependency analysis
    "CycleDetectedError",
    "DependencyGraph",
    # Retry strategies
    "BackoffPolicy",
    "RetryDecision",
    "RetryReason",
    "RetryTracker",
    # Executor
    "CancellationToken",
    "ExecuteState",
    "ExecutionResult",
    "ExecutionState",
    "ExecutorConfig",
    "TaskExecutor",
    # Scheduler
    "QueueEntry",
    "RunningEntry",
    "SchedulerConfig",
    "SubtaskFailure",
    "TaskScheduler",
]

"""Interface for the typed event channel.

Every component publishes a closed family of frozen event dataclasses.
Consumers subscribe and receive events through their own bounded queue,
so a slow consumer never blocks a producer.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, Optional, Protocol, Union

from agentcrew.orchestration.models import now_ms


class EventFamily(str, Enum):
    """Which component produced an event."""
    SCHEDULER = "scheduler"
    EXECUTOR = "executor"
    COLLABORATION = "collaboration"
    EXCEPTION = "exception"
    AGGREGATION = "aggregation"


class SchedulerEventType(str, Enum):
    TASK_QUEUED = "task_queued"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_TIMEOUT = "task_timeout"
    QUEUE_UPDATED = "queue_updated"


class ExecutorEventType(str, Enum):
    TASK_START = "task_start"
    TASK_PROGRESS = "task_progress"
    TASK_STREAM = "task_stream"
    TASK_COMPLETE = "task_complete"
    TASK_FAILED = "task_failed"
    TASK_RETRY = "task_retry"


class CollaborationEventType(str, Enum):
    MESSAGE_SENT = "message_sent"
    MESSAGE_RECEIVED = "message_received"
    SESSION_CREATED = "session_created"
    SESSION_CLOSED = "session_closed"


class ExceptionEventType(str, Enum):
    EXCEPTION_OCCURRED = "exception_occurred"
    EXCEPTION_ACKNOWLEDGED = "exception_acknowledged"
    EXCEPTION_RESOLVED = "exception_resolved"
    HUMAN_INTERVENTION_REQUIRED = "human_intervention_required"
    HUMAN_INTERVENTION_RESPONDED = "human_intervention_responded"
    TASK_PAUSED = "task_paused"
    TASK_RESUMED = "task_resumed"


class AggregationEventType(str, Enum):
    AGGREGATION_STARTED = "aggregation_started"
    AGGREGATION_COMPLETED = "aggregation_completed"
    AGGREGATION_FAILED = "aggregation_failed"


# ── Event payloads ───────────────────────────────────────────────────


class _EventMixin:
    family: ClassVar[EventFamily]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)  # type: ignore[call-overload]
        data["family"] = self.family.value
        data["type"] = self.type.value  # type: ignore[attr-defined]
        return data


@dataclass(frozen=True)
class SchedulerEvent(_EventMixin):
    type: SchedulerEventType
    task_id: Optional[str] = None  # None for queue-wide updates
    subtask_id: Optional[str] = None
    worker_id: Optional[str] = None
    queued: int = 0
    running: int = 0
    error: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    family: ClassVar[EventFamily] = EventFamily.SCHEDULER


@dataclass(frozen=True)
class ExecutorEvent(_EventMixin):
    type: ExecutorEventType
    task_id: str
    subtask_id: str
    worker_id: str
    attempt: int = 1
    progress: int = 0
    content: Optional[str] = None  # stream delta or final result
    error: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    family: ClassVar[EventFamily] = EventFamily.EXECUTOR


@dataclass(frozen=True)
class CollaborationEvent(_EventMixin):
    type: CollaborationEventType
    session_id: str
    task_id: Optional[str] = None
    message_id: Optional[str] = None
    message_type: Optional[str] = None
    from_id: Optional[str] = None
    to_id: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    family: ClassVar[EventFamily] = EventFamily.COLLABORATION


@dataclass(frozen=True)
class ExceptionEvent(_EventMixin):
    type: ExceptionEventType
    task_id: str
    exception_id: Optional[str] = None
    subtask_id: Optional[str] = None
    worker_id: Optional[str] = None
    severity: Optional[str] = None
    message: str = ""
    decision: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    family: ClassVar[EventFamily] = EventFamily.EXCEPTION


@dataclass(frozen=True)
class AggregationEvent(_EventMixin):
    type: AggregationEventType
    task_id: str
    status: Optional[str] = None
    error: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    family: ClassVar[EventFamily] = EventFamily.AGGREGATION


Event = Union[SchedulerEvent, ExecutorEvent, CollaborationEvent, ExceptionEvent, AggregationEvent]


class ISubscription(Protocol):
    """A consumer's private view of the event channel."""

    async def get(self) -> Optional[Event]:
        """Wait for the next event; None once closed and empty."""
        ...

    def drain(self) -> list:
        """Return every buffered event without waiting."""
        ...

    @property
    def dropped(self) -> int:
        """Events discarded because the buffer was full."""
        ...

    def close(self) -> None:
        ...


class IEventBus(Protocol):
    """Interface for the engine's outbound event channel.

    ``publish`` never blocks: each subscriber owns a bounded buffer and
    the oldest buffered event is discarded when it overflows.  Delivery
    is ordered within one component's stream, not globally.
    """

    def publish(self, event: Event) -> None:
        """Fan an event out to every interested subscriber.

        Args:
            event: A frozen event from one of the event families
        """
        ...

    def subscribe(
        self,
        families: Optional[Iterable[EventFamily]] = None,
        maxsize: Optional[int] = None,
    ) -> ISubscription:
        """Open a subscription.

        Args:
            families: Restrict delivery to these families (default: all)
            maxsize: Buffer size (default: the bus default)

        Returns:
            The subscription handle
        """
        ...

    def unsubscribe(self, subscription: ISubscription) -> None:
        ...

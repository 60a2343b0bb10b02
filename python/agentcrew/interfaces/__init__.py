"""Protocols and event types shared across the engine."""

from agentcrew.interfaces.event_bus import (
    AggregationEvent,
    AggregationEventType,
    CollaborationEvent,
    CollaborationEventType,
    Event,
    EventFamily,
    ExceptionEvent,
    ExceptionEventType,
    ExecutorEvent,
    ExecutorEventType,
    IEventBus,
    ISubscription,
    SchedulerEvent,
    SchedulerEventType,
)
from agentcrew.interfaces.worker import ChatMessage, ITaskPlanner, IWorker, StreamChunk

__all__ = [
    # Events
    "AggregationEvent",
    "AggregationEventType",
    "CollaborationEvent",
    "CollaborationEventType",
    "Event",
    "EventFamily",
    "ExceptionEvent",
    "ExceptionEventType",
    "ExecutorEvent",
    "ExecutorEventType",
    "IEventBus",
    "ISubscription",
    "SchedulerEvent",
    "SchedulerEventType",
    # Capabilities
    "ChatMessage",
    "ITaskPlanner",
    "IWorker",
    "StreamChunk",
]

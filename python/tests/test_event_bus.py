"""Tests for the queue-backed event bus (agentcrew/event_bus.py)."""

import asyncio
import dataclasses
import logging

import pytest

from agentcrew.event_bus import QueueEventBus
from agentcrew.interfaces.event_bus import (
    AggregationEvent,
    AggregationEventType,
    EventFamily,
    SchedulerEvent,
    SchedulerEventType,
)


def _sched(n: int = 0) -> SchedulerEvent:
    return SchedulerEvent(type=SchedulerEventType.QUEUE_UPDATED, queued=n)


def _agg(task_id: str = "t1") -> AggregationEvent:
    return AggregationEvent(type=AggregationEventType.AGGREGATION_STARTED, task_id=task_id)


def test_fan_out_to_every_subscriber():
    bus = QueueEventBus()
    a = bus.subscribe()
    b = bus.subscribe()
    bus.publish(_sched())
    assert a.pending == 1
    assert b.pending == 1


def test_family_filter():
    bus = QueueEventBus()
    only_agg = bus.subscribe([EventFamily.AGGREGATION])
    bus.publish(_sched())
    bus.publish(_agg())
    events = only_agg.drain()
    assert [e.family for e in events] == [EventFamily.AGGREGATION]


def test_overflow_drops_oldest(caplog):
    bus = QueueEventBus(queue_size=2)
    sub = bus.subscribe()
    with caplog.at_level(logging.WARNING):
        for n in range(4):
            bus.publish(_sched(n))
    assert [e.queued for e in sub.drain()] == [2, 3]
    assert sub.dropped == 2
    assert "not keeping up" in caplog.text
    assert bus.stats["dropped"] == 2


def test_unsubscribe_stops_delivery():
    bus = QueueEventBus()
    sub = bus.subscribe()
    sub.close()
    bus.publish(_sched())
    assert sub.pending == 0
    assert bus.stats["subscribers"] == 0


def test_to_dict_includes_family_and_type():
    data = _agg("t9").to_dict()
    assert data["family"] == "aggregation"
    assert data["type"] == "aggregation_started"
    assert data["task_id"] == "t9"


def test_events_are_frozen():
    event = _sched()
    with pytest.raises(dataclasses.FrozenInstanceError):
        event.queued = 5  # type: ignore[misc]


async def test_async_get_and_iteration():
    bus = QueueEventBus()
    sub = bus.subscribe()

    async def produce():
        await asyncio.sleep(0)
        bus.publish(_sched(1))
        bus.publish(_sched(2))

    asyncio.create_task(produce())
    first = await asyncio.wait_for(sub.get(), 1.0)
    assert first.queued == 1

    seen = []
    sub.close()
    async for event in sub:
        seen.append(event.queued)
    assert seen == [2]


async def test_close_wakes_blocked_consumer():
    bus = QueueEventBus()
    sub = bus.subscribe()
    seen = []

    async def consume():
        async for event in sub:
            seen.append(event)

    consumer = asyncio.create_task(consume())
    waiter = asyncio.create_task(sub.get())
    await asyncio.sleep(0)
    sub.close()

    await asyncio.wait_for(consumer, 1.0)
    assert await asyncio.wait_for(waiter, 1.0) is None
    assert seen == []
    assert sub.pending == 0


async def test_close_on_full_buffer_still_wakes():
    bus = QueueEventBus(queue_size=1)
    sub = bus.subscribe()
    bus.publish(_sched(1))
    sub.close()
    assert sub.dropped == 1
    assert await asyncio.wait_for(sub.get(), 1.0) is None

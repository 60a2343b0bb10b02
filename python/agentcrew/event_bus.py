"""In-memory event channel satisfying the IEventBus protocol.

Each subscriber owns a bounded ``asyncio.Queue``.  Publishing never
awaits: when a subscriber falls behind, its oldest buffered event is
dropped and counted so the producer's control flow is never affected.
"""

import asyncio
import itertools
import logging
from typing import Dict, FrozenSet, Iterable, List, Optional

from agentcrew.interfaces.event_bus import Event, EventFamily

logger = logging.getLogger(__name__)

# Pushed on close so a consumer blocked in get() wakes up.
_CLOSED = None


class Subscription:
    """A consumer's private, bounded buffer of events."""

    def __init__(
        self,
        bus: "QueueEventBus",
        subscription_id: int,
        maxsize: int,
        families: Optional[FrozenSet[EventFamily]] = None,
    ) -> None:
        self._bus = bus
        self.id = subscription_id
        self.families = families
        self._queue: "asyncio.Queue[Optional[Event]]" = asyncio.Queue(maxsize=maxsize)
        self._dropped = 0
        self._woken = False
        self.closed = False

    def wants(self, event: Event) -> bool:
        return self.families is None or event.family in self.families

    def offer(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._dropped += 1
            if self._dropped == 1 or self._dropped % 100 == 0:
                logger.warning(
                    "Subscriber %d is not keeping up; %d events dropped",
                    self.id, self._dropped,
                )
            self._queue.put_nowait(event)

    async def get(self) -> Optional[Event]:
        """Next event, or None once the subscription is closed and empty."""
        if self.closed and self._queue.empty():
            return None
        event = await self._queue.get()
        if event is _CLOSED:
            self._queue.put_nowait(_CLOSED)
        return event

    def drain(self) -> List[Event]:
        events: List[Event] = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is _CLOSED:
                self._woken = False
            else:
                events.append(event)
        return events

    @property
    def pending(self) -> int:
        return self._queue.qsize() - int(self._woken)

    @property
    def dropped(self) -> int:
        return self._dropped

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def _wake(self) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self._dropped += 1
        self._queue.put_nowait(_CLOSED)
        self._woken = True

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class QueueEventBus:
    """Fan-out event channel for single-process use.

    Satisfies ``agentcrew.interfaces.IEventBus`` via structural subtyping.
    """

    def __init__(self, queue_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._subscribers: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._published = 0

    def publish(self, event: Event) -> None:
        self._published += 1
        for subscription in list(self._subscribers.values()):
            if subscription.wants(event):
                subscription.offer(event)

    def subscribe(
        self,
        families: Optional[Iterable[EventFamily]] = None,
        maxsize: Optional[int] = None,
    ) -> Subscription:
        subscription = Subscription(
            self,
            next(self._ids),
            maxsize or self._queue_size,
            frozenset(families) if families is not None else None,
        )
        self._subscribers[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription.closed:
            return
        subscription.closed = True
        self._subscribers.pop(subscription.id, None)
        subscription._wake()

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "subscribers": len(self._subscribers),
            "published": self._published,
            "dropped": sum(s.dropped for s in self._subscribers.values()),
        }

"""
Fan-out of progress events to live subscribers.

One writer (the JobTracker) publishes; any number of readers (open
progress streams) consume. Each subscriber owns a bounded queue, so a
slow reader only ever fills its own queue.

Lifecycle:
    subscribe(initial) -> Subscription   (initial event is queued first)
    publish(event)                       (put_nowait into every queue)
    Subscription.close() / async with    (unsubscribe)

    A subscriber whose queue is full when an event arrives is dropped
    from the subscriber set on that publish. Its stream ends after it
    drains what it already holds; the client reconnects and receives a
    fresh init snapshot.

Invariants:
    - publish() never blocks and never raises because of a subscriber
    - Each subscriber sees events in publish order
    - The first event any subscriber sees is the initial event
    - All methods are called from the event loop thread

How to change safely:
    - Never await inside publish(); the tracker calls it synchronously
    - Keep queue bounds finite, memory per subscriber must stay capped
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .events import ProgressEvent

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class Subscription:
    """A subscriber's view of the progress stream.

    Example:
        >>> async with broadcaster.subscribe(initial) as subscription:
        ...     async for event in subscription:
        ...         send(event.to_sse())
    """

    def __init__(self, broadcaster: ProgressBroadcaster, max_queue_size: int) -> None:
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=max_queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def deliver(self, event: ProgressEvent) -> bool:
        """Queue an event without waiting.

        Returns:
            False if the subscription is closed or its queue is full
            (the subscription is closed in that case)
        """
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Dropping lagging progress subscriber",
                extra={"pending": self._queue.qsize()},
            )
            self._closed = True
            return False
        return True

    async def next_event(self) -> ProgressEvent | None:
        """Wait for the next event, None once the subscription has ended."""
        if self._closed and self._queue.empty():
            return None
        event = await self._queue.get()
        if event is None:
            self._closed = True
        return event

    def close(self) -> None:
        """Unsubscribe and wake a reader blocked in next_event()."""
        if not self._closed:
            self._closed = True
            try:
                self._queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
        self._broadcaster.unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ProgressEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.close()


class ProgressBroadcaster:
    """Publishes ProgressEvents to every current subscriber.

    Attributes:
        max_queue_size: Per-subscriber queue bound

    Example:
        >>> broadcaster = ProgressBroadcaster()
        >>> subscription = broadcaster.subscribe(ProgressEvent.init(snapshot))
        >>> broadcaster.publish(ProgressEvent.for_job("backup", job))
    """

    def __init__(self, max_queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        if max_queue_size < 2:
            raise ValueError("max_queue_size must be at least 2")
        self.max_queue_size = max_queue_size
        self._subscribers: list[Subscription] = []
        self._published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, initial: ProgressEvent) -> Subscription:
        """Register a subscriber whose first event is `initial`."""
        subscription = Subscription(self, self.max_queue_size)
        subscription.deliver(initial)
        self._subscribers.append(subscription)
        logger.debug("Progress subscriber added", extra={"subscribers": len(self._subscribers)})
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
            logger.debug(
                "Progress subscriber removed", extra={"subscribers": len(self._subscribers)}
            )

    def publish(self, event: ProgressEvent) -> int:
        """Deliver an event to every subscriber, pruning dead ones.

        Returns:
            Number of subscribers the event was queued for
        """
        self._published += 1
        delivered = 0
        alive = []
        for subscription in self._subscribers:
            if subscription.deliver(event):
                delivered += 1
                alive.append(subscription)
        self._subscribers = alive
        return delivered

    def close_all(self) -> None:
        """End every subscription (used on shutdown)."""
        for subscription in list(self._subscribers):
            subscription.close()
        self._subscribers = []

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "subscribers": len(self._subscribers),
            "published": self._published,
        }

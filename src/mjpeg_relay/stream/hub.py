"""
Broadcast Hub
=============

Fan-out of extracted frames to every connected client.

This module provides:
    - Subscriber: Bounded per-client frame queue with a backlog watermark
    - BroadcastHub: Registry of subscribers and the publish operation

Design Rules:
    - publish() never awaits and never blocks on a slow subscriber
    - A full subscriber drops new frames, other subscribers are unaffected
    - The registry is copy-on-write: publish iterates a stable snapshot
    - Frames reach each subscriber in publish order
    - Once closed, the hub wakes every waiting session for good
"""

import asyncio
import logging
import threading
import uuid
from typing import Dict, Iterator, Optional

from mjpeg_relay.stream.frame import Frame


logger = logging.getLogger(__name__)


DEFAULT_QUEUE_CAPACITY = 10
DEFAULT_BACKLOG_WATERMARK = 5


class Subscriber:
    """
    Bounded frame queue owned by one client session.

    Frames are only enqueued while fewer than `backlog_watermark`
    frames are pending. The watermark sits below the queue capacity,
    so an accepted frame never finds the queue full.

    Attributes:
        id: Process-unique subscriber id
        capacity: Queue capacity
        backlog_watermark: Pending frames at which new frames are dropped
        delivered: Frames accepted into the queue
        dropped: Frames rejected because of backlog
    """

    def __init__(
        self,
        subscriber_id: str,
        capacity: int = DEFAULT_QUEUE_CAPACITY,
        backlog_watermark: int = DEFAULT_BACKLOG_WATERMARK,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if not 1 <= backlog_watermark <= capacity:
            raise ValueError("backlog_watermark must be between 1 and capacity")

        self.id = subscriber_id
        self.capacity = capacity
        self.backlog_watermark = backlog_watermark
        self._queue: asyncio.Queue[Frame] = asyncio.Queue(maxsize=capacity)
        self.delivered: int = 0
        self.dropped: int = 0

    @property
    def backlog(self) -> int:
        """Number of frames waiting to be consumed."""
        return self._queue.qsize()

    def offer(self, frame: Frame) -> bool:
        """
        Enqueue a frame unless the backlog watermark is reached.

        Check and enqueue run without yielding to the event loop,
        so the decision is atomic with respect to other tasks.

        Returns:
            True if the frame was queued, False if it was dropped.
        """
        if self._queue.qsize() >= self.backlog_watermark:
            self.dropped += 1
            return False

        self._queue.put_nowait(frame)
        self.delivered += 1
        return True

    async def get(self) -> Frame:
        """Wait for the next frame."""
        return await self._queue.get()

    def get_nowait(self) -> Optional[Frame]:
        """Return the next frame if one is pending."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> int:
        """
        Discard all pending frames.

        Returns:
            Number of frames discarded.
        """
        drained = 0
        while self.get_nowait() is not None:
            drained += 1
        return drained

    def __repr__(self) -> str:
        return (
            f"Subscriber(id={self.id}, backlog={self.backlog}, "
            f"delivered={self.delivered}, dropped={self.dropped})"
        )


class BroadcastHub:
    """
    Registry of subscribers and frame fan-out.

    Writers (register/deregister) serialize on a lock and replace the
    registry mapping wholesale. publish() reads the current mapping
    once and iterates it without locking, so it always sees a
    consistent point-in-time set of subscribers.

    Example:
        hub = BroadcastHub()

        subscriber = hub.subscribe()
        try:
            frame = await subscriber.get()
        finally:
            hub.deregister(subscriber.id)
    """

    def __init__(
        self,
        queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
        backlog_watermark: int = DEFAULT_BACKLOG_WATERMARK,
    ) -> None:
        """
        Initialize hub.

        Args:
            queue_capacity: Default capacity for subscribe()
            backlog_watermark: Default watermark for subscribe()
        """
        self.queue_capacity = queue_capacity
        self.backlog_watermark = backlog_watermark

        self._subscribers: Dict[str, Subscriber] = {}
        self._write_lock = threading.Lock()

        self._closed = asyncio.Event()

        self._frames_published: int = 0
        self._frames_dropped: int = 0

    def __len__(self) -> int:
        return len(self._subscribers)

    def __contains__(self, subscriber_id: object) -> bool:
        return subscriber_id in self._subscribers

    def __iter__(self) -> Iterator[Subscriber]:
        return iter(list(self._subscribers.values()))

    @property
    def closed(self) -> bool:
        """Whether the input stream behind this hub has gone."""
        return self._closed.is_set()

    def close(self) -> None:
        """
        Mark the stream as gone.

        Sessions waiting for a frame are released and end as fatal.
        Calling close() again has no effect.
        """
        if self._closed.is_set():
            return

        self._closed.set()
        logger.warning(f"Hub closed with {len(self._subscribers)} requesters attached")

    async def wait_closed(self) -> None:
        """Wait until close() is called."""
        await self._closed.wait()

    def subscribe(
        self,
        capacity: Optional[int] = None,
        backlog_watermark: Optional[int] = None,
    ) -> Subscriber:
        """
        Create a subscriber with a fresh random id and register it.

        Returns:
            The registered Subscriber
        """
        subscriber = Subscriber(
            str(uuid.uuid4()),
            capacity=capacity or self.queue_capacity,
            backlog_watermark=backlog_watermark or self.backlog_watermark,
        )
        self.register(subscriber.id, subscriber)
        return subscriber

    def register(self, subscriber_id: str, subscriber: Subscriber) -> None:
        """Add a subscriber under the given id."""
        with self._write_lock:
            if subscriber_id in self._subscribers:
                logger.warning(f"Subscriber id collision: {subscriber_id}")
            registry = dict(self._subscribers)
            registry[subscriber_id] = subscriber
            self._subscribers = registry

        logger.debug(f"Registered new requester id={subscriber_id}")

    def deregister(self, subscriber_id: str) -> bool:
        """
        Remove a subscriber. Unknown ids are ignored.

        Returns:
            True if a subscriber was removed.
        """
        with self._write_lock:
            if subscriber_id not in self._subscribers:
                return False
            registry = dict(self._subscribers)
            del registry[subscriber_id]
            self._subscribers = registry

        logger.debug(f"Removed requester id={subscriber_id}")
        return True

    def publish(self, frame: Frame) -> int:
        """
        Offer a frame to every current subscriber.

        Args:
            frame: Validated frame

        Returns:
            Number of subscribers that accepted the frame.
        """
        subscribers = self._subscribers
        self._frames_published += 1

        if not subscribers:
            return 0

        accepted = 0
        for subscriber in subscribers.values():
            if subscriber.offer(frame):
                accepted += 1
            else:
                self._frames_dropped += 1

        logger.debug(
            f"Sent frame {frame.sequence} to {accepted}/{len(subscribers)} requesters"
        )
        return accepted

    def metrics(self) -> dict:
        """
        Get hub metrics for observability.

        Returns:
            Dict with subscribers, frame counters and the closed flag
        """
        return {
            "subscribers": len(self._subscribers),
            "frames_published": self._frames_published,
            "frames_dropped": self._frames_dropped,
            "closed": self.closed,
        }

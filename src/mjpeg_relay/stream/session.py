"""
Client Sessions
===============

Per-connection lifecycle around one hub subscriber.

This module provides:
    - StreamingSession: multipart/x-mixed-replace feed of every frame
    - SnapshotSession: a single image/jpeg response

Both sessions talk to the client through a SessionTransport and watch
an asyncio.Event that is set as soon as the client disconnects, as well
as the hub, which is closed once the input stream has gone.

Design Rules:
    - The subscriber is deregistered exactly once on every exit path
    - A failed write abandons the rest of that frame, it is never retried
    - More than `max_write_errors` consecutive failures end the session
    - A closed hub ends every session, no frame will follow
"""

import asyncio
import logging
from enum import Enum
from typing import List, Optional, Protocol, Tuple

from mjpeg_relay.stream.errors import SessionWriteError
from mjpeg_relay.stream.frame import Frame
from mjpeg_relay.stream.hub import BroadcastHub, Subscriber


logger = logging.getLogger(__name__)


DEFAULT_BOUNDARY = "--boundary"
DEFAULT_MAX_WRITE_ERRORS = 5

NO_CACHE = "no-store, no-cache"

Headers = List[Tuple[str, str]]


class SessionTransport(Protocol):
    """Write side of a client connection."""

    async def start(self, status: int, headers: Headers) -> None: ...

    async def write(self, data: bytes) -> None: ...

    async def finish(self) -> None: ...


class SessionState(str, Enum):
    """Lifecycle states of a client session."""

    PENDING = "PENDING"
    REGISTERED = "REGISTERED"
    STREAMING = "STREAMING"
    CLIENT_CLOSED = "CLIENT_CLOSED"
    FATAL_ERROR = "FATAL_ERROR"
    COMPLETED = "COMPLETED"
    TIMED_OUT = "TIMED_OUT"
    DEREGISTERED = "DEREGISTERED"


def render_part_header(boundary: str, size: int, first: bool = False) -> bytes:
    """
    Render the delimiter and headers that precede one JPEG part.

    Args:
        boundary: Boundary token as announced in the Content-Type
        size: JPEG size in bytes
        first: Whether this is the first part of the body

    Returns:
        Bytes to write before the JPEG data
    """
    delimiter = f"--{boundary}\r\n"
    if not first:
        delimiter = "\r\n" + delimiter

    return (
        delimiter
        + f"Content-Length: {size}\r\n"
        + "Content-Type: image/jpeg\r\n"
        + "\r\n"
    ).encode("ascii")


class _Session:
    """Registration and frame waiting shared by both session kinds."""

    def __init__(
        self,
        hub: BroadcastHub,
        queue_capacity: Optional[int] = None,
        backlog_watermark: Optional[int] = None,
    ) -> None:
        self._hub = hub
        self._queue_capacity = queue_capacity
        self._backlog_watermark = backlog_watermark

        self.subscriber: Optional[Subscriber] = None
        self.state = SessionState.PENDING
        self.outcome: Optional[SessionState] = None
        self._watchers: Optional[Tuple[asyncio.Future, asyncio.Future]] = None

    @property
    def id(self) -> Optional[str]:
        """Subscriber id, once registered."""
        return self.subscriber.id if self.subscriber else None

    def _register(self) -> Subscriber:
        self.subscriber = self._hub.subscribe(
            capacity=self._queue_capacity,
            backlog_watermark=self._backlog_watermark,
        )
        self.state = SessionState.REGISTERED
        return self.subscriber

    def _deregister(self) -> None:
        self._stop_watching()

        if self.subscriber is None or self.state is SessionState.DEREGISTERED:
            return

        self._hub.deregister(self.subscriber.id)
        drained = self.subscriber.drain()
        self.state = SessionState.DEREGISTERED
        logger.debug(
            f"[{self.subscriber.id}] Session ended: outcome={self.outcome}, "
            f"delivered={self.subscriber.delivered}, "
            f"dropped={self.subscriber.dropped}, drained={drained}"
        )

    def _watch(self, disconnected: asyncio.Event) -> Tuple[asyncio.Future, asyncio.Future]:
        """Waiters for disconnect and hub close, created once per session."""
        if self._watchers is None:
            self._watchers = (
                asyncio.ensure_future(disconnected.wait()),
                asyncio.ensure_future(self._hub.wait_closed()),
            )
        return self._watchers

    def _stop_watching(self) -> None:
        if self._watchers is None:
            return
        for task in self._watchers:
            if not task.done():
                task.cancel()
        self._watchers = None

    async def _next_frame(
        self,
        disconnected: asyncio.Event,
        timeout: Optional[float] = None,
    ) -> Optional[Frame]:
        """
        Wait for the next frame, the disconnect signal or hub close.

        Returns:
            The frame, or None on disconnect, hub close or timeout.
        """
        if disconnected.is_set() or self._hub.closed:
            return None

        watchers = self._watch(disconnected)
        get_task = asyncio.ensure_future(self.subscriber.get())

        try:
            done, _ = await asyncio.wait(
                {get_task, *watchers},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not get_task.done():
                get_task.cancel()

        if get_task not in done or any(task in done for task in watchers):
            return None
        return get_task.result()


class StreamingSession(_Session):
    """
    Live multipart/x-mixed-replace feed for one client.

    State machine:
        REGISTERED -> STREAMING -> (CLIENT_CLOSED | FATAL_ERROR) -> DEREGISTERED

    Attributes:
        boundary: Multipart boundary token
        max_write_errors: Consecutive write failures tolerated
        error_count: Current consecutive write failures
        frames_sent: Parts written completely

    Example:
        session = StreamingSession(hub)
        outcome = await session.run(transport, disconnected)
    """

    def __init__(
        self,
        hub: BroadcastHub,
        boundary: str = DEFAULT_BOUNDARY,
        max_write_errors: int = DEFAULT_MAX_WRITE_ERRORS,
        queue_capacity: Optional[int] = None,
        backlog_watermark: Optional[int] = None,
    ) -> None:
        super().__init__(hub, queue_capacity, backlog_watermark)
        self.boundary = boundary
        self.max_write_errors = max_write_errors
        self.error_count: int = 0
        self.frames_sent: int = 0
        self._parts_started: int = 0

    @property
    def content_type(self) -> str:
        return f"multipart/x-mixed-replace;boundary={self.boundary}"

    def response_headers(self) -> Headers:
        """Headers that open the multipart response."""
        return [
            ("Connection", "close"),
            ("Cache-Control", NO_CACHE),
            ("Content-Type", self.content_type),
        ]

    async def run(
        self,
        transport: SessionTransport,
        disconnected: asyncio.Event,
    ) -> SessionState:
        """
        Stream frames until the client leaves or writes keep failing.

        Args:
            transport: Client connection
            disconnected: Set by the transport layer on client disconnect

        Returns:
            CLIENT_CLOSED or FATAL_ERROR
        """
        subscriber = self._register()
        logger.info(f"[{subscriber.id}] Streaming session started")

        try:
            try:
                await transport.start(200, self.response_headers())
            except SessionWriteError as e:
                logger.error(f"[{subscriber.id}] Unable to send response headers: {e}")
                self.outcome = SessionState.FATAL_ERROR
                return self.outcome

            self.state = SessionState.STREAMING

            while True:
                frame = await self._next_frame(disconnected)
                if frame is None:
                    if self._hub.closed and not disconnected.is_set():
                        logger.error(f"[{subscriber.id}] Input stream has gone, closing connection")
                        self.outcome = SessionState.FATAL_ERROR
                    else:
                        self.outcome = SessionState.CLIENT_CLOSED
                    break

                if await self._send_frame(transport, frame):
                    continue

                if self.error_count > self.max_write_errors:
                    logger.error(
                        f"[{subscriber.id}] Too many errors, killing connection"
                    )
                    self.outcome = SessionState.FATAL_ERROR
                    break

            return self.outcome
        finally:
            self._deregister()
            logger.info(
                f"[{subscriber.id}] Streaming session closed "
                f"({self.outcome.value if self.outcome else 'CANCELLED'}, "
                f"frames_sent={self.frames_sent})"
            )

    async def _send_frame(self, transport: SessionTransport, frame: Frame) -> bool:
        """
        Write one multipart part.

        Returns:
            True if the whole part was written.
        """
        header = render_part_header(
            self.boundary,
            frame.size,
            first=self._parts_started == 0,
        )

        try:
            await transport.write(header)
            self._parts_started += 1
            await transport.write(frame.data)
        except SessionWriteError as e:
            self.error_count += 1
            logger.error(
                f"[{self.id}] Unable to process image {frame.sequence}: {e} "
                f"(consecutive errors: {self.error_count})"
            )
            return False

        self.error_count = 0
        self.frames_sent += 1
        return True


class SnapshotSession(_Session):
    """
    One-shot session answering with the next published frame.

    Example:
        session = SnapshotSession(hub)
        outcome = await session.run(transport, disconnected)
    """

    def __init__(
        self,
        hub: BroadcastHub,
        timeout: Optional[float] = None,
        queue_capacity: Optional[int] = None,
        backlog_watermark: Optional[int] = None,
    ) -> None:
        super().__init__(hub, queue_capacity, backlog_watermark)
        self.timeout = timeout
        self.frame: Optional[Frame] = None

    @staticmethod
    def response_headers(frame: Frame) -> Headers:
        """Headers for a single JPEG response."""
        return [
            ("Connection", "close"),
            ("Cache-Control", NO_CACHE),
            ("Content-Type", "image/jpeg"),
            ("Content-Length", str(frame.size)),
        ]

    async def run(
        self,
        transport: SessionTransport,
        disconnected: asyncio.Event,
    ) -> SessionState:
        """
        Wait for one frame and write it as the whole response.

        Returns:
            COMPLETED, CLIENT_CLOSED, TIMED_OUT or FATAL_ERROR (also when
            the hub closes before a frame arrives)
        """
        subscriber = self._register()
        logger.debug(f"[{subscriber.id}] Snapshot requested")

        try:
            self.frame = await self._next_frame(disconnected, timeout=self.timeout)

            # Nothing else will be read from the queue
            self._deregister()

            if self.frame is None:
                if disconnected.is_set():
                    self.outcome = SessionState.CLIENT_CLOSED
                    return self.outcome

                if self._hub.closed:
                    logger.error(f"[{subscriber.id}] Input stream has gone, no snapshot to send")
                    self.outcome = SessionState.FATAL_ERROR
                    await self._send_unavailable(transport)
                    return self.outcome

                logger.warning(
                    f"[{subscriber.id}] No frame within {self.timeout}s for snapshot"
                )
                self.outcome = SessionState.TIMED_OUT
                await self._send_unavailable(transport)
                return self.outcome

            await transport.start(200, self.response_headers(self.frame))
            await transport.write(self.frame.data)
            await transport.finish()
            self.outcome = SessionState.COMPLETED
            return self.outcome
        except SessionWriteError as e:
            logger.error(f"[{subscriber.id}] Unable to send snapshot: {e}")
            self.outcome = SessionState.FATAL_ERROR
            return self.outcome
        finally:
            self._deregister()

    async def _send_unavailable(self, transport: SessionTransport) -> None:
        body = b"503 Service Unavailable: no frame available\n"
        await transport.start(503, [
            ("Connection", "close"),
            ("Cache-Control", NO_CACHE),
            ("Content-Type", "text/plain; charset=utf-8"),
            ("Content-Length", str(len(body))),
        ])
        await transport.write(body)
        await transport.finish()

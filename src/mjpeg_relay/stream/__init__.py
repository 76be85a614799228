"""
Stream Module
=============

Frame extraction and fan-out components.

This module provides the core of mjpeg_relay:
    - Frame: Immutable JPEG frame (internal representation)
    - FrameReader: Sliding-window demuxer over the encoder pipe
    - BroadcastHub: Subscriber registry with drop-on-backlog fan-out
    - StreamingSession / SnapshotSession: Per-client delivery

Example:
    from mjpeg_relay.stream import BroadcastHub, FrameReader

    hub = BroadcastHub()
    reader = FrameReader(process.stdout, hub)

    # Run reader as background task
    task = asyncio.create_task(reader.run())

    # Consume frames as a client
    subscriber = hub.subscribe()
    frame = await subscriber.get()
"""

from mjpeg_relay.stream.errors import (
    BufferExhaustedError,
    SessionWriteError,
    StreamEndedError,
    StreamError,
)
from mjpeg_relay.stream.frame import Frame
from mjpeg_relay.stream.hub import BroadcastHub, Subscriber
from mjpeg_relay.stream.reader import FrameReader, FrameReaderMetrics
from mjpeg_relay.stream.session import (
    SessionState,
    SnapshotSession,
    StreamingSession,
)


__all__ = [
    "BroadcastHub",
    "BufferExhaustedError",
    "Frame",
    "FrameReader",
    "FrameReaderMetrics",
    "SessionState",
    "SessionWriteError",
    "SnapshotSession",
    "StreamEndedError",
    "StreamError",
    "StreamingSession",
    "Subscriber",
]

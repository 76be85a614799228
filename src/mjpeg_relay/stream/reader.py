"""
Frame Reader
=============

Sliding-window demuxer for raw MJPEG elementary streams.

This module provides the FrameReader class which:
    - Reads the encoder pipe in arbitrarily sized chunks
    - Recovers JPEG frame boundaries by scanning for the EOI marker
    - Discards candidates that are not SOI...EOI delimited
    - Hands every valid frame to the BroadcastHub

Design Rules:
    - The working buffer is owned by the reader and never shared
    - Extracted frames are copied out before the buffer is compacted
    - Publishing never blocks the read loop
    - End of stream and read errors are fatal (no reconnect)
"""

import asyncio
import logging
import time
from typing import List, Optional, Protocol

from mjpeg_relay.stream.errors import BufferExhaustedError, StreamEndedError
from mjpeg_relay.stream.frame import END_OF_JPEG, Frame, is_valid_jpeg
from mjpeg_relay.stream.hub import BroadcastHub


logger = logging.getLogger(__name__)


DEFAULT_READ_SIZE = 1024
DEFAULT_MAX_BUFFER_SIZE = 8 * 1024 * 1024


class ByteSource(Protocol):
    """Minimal readable pipe interface (satisfied by asyncio.StreamReader)."""

    async def read(self, n: int = -1) -> bytes: ...

    def at_eof(self) -> bool: ...


class FrameReaderMetrics:
    """Metrics for FrameReader observability."""

    __slots__ = (
        "bytes_read",
        "frames_extracted",
        "invalid_frames",
        "last_frame_size",
        "compactions",
    )

    def __init__(self) -> None:
        self.bytes_read: int = 0
        self.frames_extracted: int = 0
        self.invalid_frames: int = 0
        self.last_frame_size: int = 0
        self.compactions: int = 0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "bytes_read": self.bytes_read,
            "frames_extracted": self.frames_extracted,
            "invalid_frames": self.invalid_frames,
            "last_frame_size": self.last_frame_size,
            "compactions": self.compactions,
        }


class FrameReader:
    """
    Reassembles JPEG frames from an unframed byte stream.

    The reader keeps a growable buffer and a cursor. Bytes before the
    cursor have been extracted or discarded, bytes from the cursor on
    are still unparsed. A single chunk may complete zero, one or many
    frames, and a frame may span any number of chunks.

    Attributes:
        read_size: Maximum bytes requested per read
        max_buffer_size: Upper bound for unparsed bytes
        metrics: Operational metrics

    Example:
        hub = BroadcastHub()
        reader = FrameReader(process.stdout, hub)

        task = asyncio.create_task(reader.run())
    """

    def __init__(
        self,
        source: Optional[ByteSource],
        hub: Optional[BroadcastHub] = None,
        read_size: int = DEFAULT_READ_SIZE,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
    ) -> None:
        """
        Initialize frame reader.

        Args:
            source: Readable pipe delivering the MJPEG byte stream
            hub: BroadcastHub receiving validated frames
            read_size: Maximum bytes per read call. Must be >= 1.
            max_buffer_size: Maximum unparsed bytes before giving up
        """
        if read_size < 1:
            raise ValueError("read_size must be >= 1")
        if max_buffer_size < len(END_OF_JPEG):
            raise ValueError("max_buffer_size is too small to hold a marker")

        self._source = source
        self._hub = hub
        self.read_size = read_size
        self.max_buffer_size = max_buffer_size

        # Stream buffer state
        self._buffer = bytearray()
        self._cursor: int = 0
        self._scan_from: int = 0
        self._sequence: int = 0

        self._running: bool = False
        self.metrics = FrameReaderMetrics()

    @property
    def running(self) -> bool:
        """Whether the read loop is active."""
        return self._running

    @property
    def pending(self) -> int:
        """Number of unparsed bytes held in the buffer."""
        return len(self._buffer) - self._cursor

    def feed(self, chunk: bytes) -> List[Frame]:
        """
        Append a chunk and extract every frame it completes.

        Args:
            chunk: Raw bytes as read from the pipe (may be empty)

        Returns:
            Validated frames in stream order

        Raises:
            BufferExhaustedError: If unparsed data exceeds max_buffer_size
        """
        if not chunk:
            return []

        # A marker may straddle the previous chunk boundary
        self._scan_from = max(self._cursor, len(self._buffer) - 1)
        self._buffer += chunk
        self.metrics.bytes_read += len(chunk)

        frames: List[Frame] = []

        while True:
            eoj = self._buffer.find(END_OF_JPEG, self._scan_from)
            if eoj == -1:
                break

            end = eoj + len(END_OF_JPEG)
            candidate = bytes(self._buffer[self._cursor:end])
            self._cursor = end
            self._scan_from = end

            if not is_valid_jpeg(candidate):
                self.metrics.invalid_frames += 1
                logger.warning(
                    f"Found invalid JPEG ({len(candidate)} bytes), skipping. "
                    f"Total invalid: {self.metrics.invalid_frames}"
                )
                continue

            self._sequence += 1
            self.metrics.frames_extracted += 1
            self.metrics.last_frame_size = len(candidate)
            frames.append(Frame(
                data=candidate,
                sequence=self._sequence,
                timestamp=time.monotonic(),
            ))

        self._compact()

        if self.pending > self.max_buffer_size:
            raise BufferExhaustedError(
                f"No frame boundary within {self.max_buffer_size} bytes "
                f"({self.pending} bytes pending)"
            )

        return frames

    def _compact(self) -> None:
        """Drop consumed bytes and move the cursor back to zero."""
        if self._cursor == 0:
            return

        del self._buffer[:self._cursor]
        self._scan_from = max(0, self._scan_from - self._cursor)
        self._cursor = 0
        self.metrics.compactions += 1

    async def run(self) -> None:
        """
        Read the pipe until it fails.

        Publishes every validated frame to the hub. Never returns
        normally: the loop ends with a fatal error or cancellation.

        Raises:
            StreamEndedError: On EOF or a failed read
            BufferExhaustedError: If a frame outgrows the buffer
        """
        if self._source is None:
            raise StreamEndedError("No input stream attached")
        if self._hub is None:
            raise ValueError("FrameReader.run requires a hub")

        self._running = True
        logger.info(
            f"FrameReader started (read_size={self.read_size}, "
            f"max_buffer_size={self.max_buffer_size})"
        )

        try:
            while True:
                try:
                    chunk = await self._source.read(self.read_size)
                except (OSError, ValueError) as e:
                    raise StreamEndedError(f"Failed to read encoder output: {e}") from e

                if not chunk:
                    if self._source.at_eof():
                        raise StreamEndedError(
                            f"Encoder output ended after {self.metrics.bytes_read} bytes"
                        )
                    # Empty read without EOF, try again
                    await asyncio.sleep(0)
                    continue

                for frame in self.feed(chunk):
                    self._hub.publish(frame)
        finally:
            self._running = False
            logger.info(
                f"FrameReader stopped: frames={self.metrics.frames_extracted}, "
                f"invalid={self.metrics.invalid_frames}"
            )

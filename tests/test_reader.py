"""
Frame Reader Tests
==================

Boundary recovery from arbitrarily chunked MJPEG byte streams.
"""

import asyncio

import pytest

from conftest import make_jpeg, split_every
from mjpeg_relay.stream import (
    BroadcastHub,
    BufferExhaustedError,
    FrameReader,
    StreamEndedError,
)


def _extract(reader: FrameReader, chunks) -> list:
    frames = []
    for chunk in chunks:
        frames.extend(reader.feed(chunk))
    return frames


class TestFeed:
    """Tests for FrameReader.feed."""

    def test_single_frame(self):
        reader = FrameReader(None)
        jpeg = make_jpeg(1)

        frames = reader.feed(jpeg)

        assert [f.data for f in frames] == [jpeg]
        assert frames[0].sequence == 1
        assert reader.pending == 0

    def test_several_frames_in_one_read(self, jpegs):
        reader = FrameReader(None)

        frames = reader.feed(b"".join(jpegs))

        assert [f.data for f in frames] == jpegs
        assert [f.sequence for f in frames] == list(range(1, len(jpegs) + 1))

    @pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, 33, 100, 4096])
    def test_any_chunking_yields_identical_frames(self, jpegs, chunk_size):
        reader = FrameReader(None)
        stream = b"".join(jpegs)

        frames = _extract(reader, split_every(stream, chunk_size))

        assert len(frames) == len(jpegs)
        assert [f.data for f in frames] == jpegs
        assert reader.metrics.invalid_frames == 0

    def test_end_marker_split_across_reads(self):
        reader = FrameReader(None)
        jpeg = make_jpeg(3)

        assert reader.feed(jpeg[:-1]) == []
        frames = reader.feed(jpeg[-1:])

        assert [f.data for f in frames] == [jpeg]

    def test_start_marker_split_across_reads(self):
        reader = FrameReader(None)
        first, second = make_jpeg(1), make_jpeg(2)
        stream = first + second
        cut = len(first) + 1  # between 0xFF and 0xD8 of the second frame

        frames = _extract(reader, [stream[:cut], stream[cut:]])

        assert [f.data for f in frames] == [first, second]

    def test_partial_frame_is_kept_until_complete(self):
        reader = FrameReader(None)
        jpeg = make_jpeg(5, size=500)

        assert reader.feed(jpeg[:200]) == []
        assert reader.pending == 200
        assert reader.feed(jpeg[200:400]) == []

        frames = reader.feed(jpeg[400:])
        assert [f.data for f in frames] == [jpeg]

    def test_invalid_frame_is_discarded(self):
        reader = FrameReader(None)
        good = make_jpeg(1)
        bad = b"\x00\x01garbage\xff\xd9"

        frames = reader.feed(bad + good)

        assert [f.data for f in frames] == [good]
        assert reader.metrics.invalid_frames == 1
        assert reader.metrics.frames_extracted == 1

    def test_frames_are_independent_copies(self):
        reader = FrameReader(None)
        jpeg = make_jpeg(1)

        frame = reader.feed(jpeg + b"\xff\xd8\x00")[0]
        reader.feed(b"\x00" * 64)

        assert frame.data == jpeg
        assert isinstance(frame.data, bytes)

    def test_buffer_is_compacted(self):
        reader = FrameReader(None)
        jpeg = make_jpeg(1)

        reader.feed(jpeg + jpeg[:10])

        assert reader.pending == 10
        assert reader.metrics.compactions == 1

    def test_empty_chunk(self):
        reader = FrameReader(None)
        assert reader.feed(b"") == []
        assert reader.metrics.bytes_read == 0

    def test_buffer_exhaustion_is_fatal(self):
        reader = FrameReader(None, max_buffer_size=128)

        with pytest.raises(BufferExhaustedError):
            reader.feed(b"\xff\xd8" + b"\x00" * 200)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            FrameReader(None, read_size=0)
        with pytest.raises(ValueError):
            FrameReader(None, max_buffer_size=1)


class _ScriptedSource:
    """Byte source returning a fixed sequence of reads."""

    def __init__(self, reads, error=None):
        self._reads = list(reads)
        self._error = error

    async def read(self, n=-1):
        if self._reads:
            return self._reads.pop(0)
        if self._error is not None:
            raise self._error
        return b""

    def at_eof(self):
        return not self._reads and self._error is None


class TestRun:
    """Tests for the FrameReader read loop."""

    def test_publishes_frames_then_fails_on_eof(self, jpegs):
        async def scenario():
            stream = asyncio.StreamReader()
            stream.feed_data(b"".join(jpegs))
            stream.feed_eof()

            hub = BroadcastHub(queue_capacity=100, backlog_watermark=100)
            subscriber = hub.subscribe()
            reader = FrameReader(stream, hub, read_size=50)

            with pytest.raises(StreamEndedError):
                await reader.run()

            assert not reader.running
            received = []
            while (frame := subscriber.get_nowait()) is not None:
                received.append(frame.data)
            return received

        assert asyncio.run(scenario()) == jpegs

    def test_zero_length_read_is_retried(self):
        jpeg = make_jpeg(7)

        async def scenario():
            hub = BroadcastHub()
            subscriber = hub.subscribe()
            source = _ScriptedSource([b"", jpeg[:10], b"", jpeg[10:]])
            reader = FrameReader(source, hub)

            with pytest.raises(StreamEndedError):
                await reader.run()
            return subscriber.get_nowait()

        frame = asyncio.run(scenario())
        assert frame is not None
        assert frame.data == jpeg

    def test_read_error_is_fatal(self):
        async def scenario():
            source = _ScriptedSource([make_jpeg(1)], error=OSError("broken pipe"))
            reader = FrameReader(source, BroadcastHub())

            with pytest.raises(StreamEndedError, match="broken pipe"):
                await reader.run()
            return reader.metrics.frames_extracted

        assert asyncio.run(scenario()) == 1

    def test_run_without_source(self):
        reader = FrameReader(None, BroadcastHub())
        with pytest.raises(StreamEndedError):
            asyncio.run(reader.run())

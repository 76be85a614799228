#!/usr/bin/env python3
"""
Stream Replay Script
====================

Standalone script to check frame extraction against a recorded stream.

This script:
    1. Feeds a raw MJPEG file (e.g. `ffmpeg ... -f image2pipe out.mjpeg`)
       through FrameReader in chunks of the configured size
    2. Attaches a number of subscribers to the BroadcastHub
    3. Reports extraction and delivery stats

Usage:
    python scripts/replay_stream.py capture.mjpeg
    python scripts/replay_stream.py capture.mjpeg --read-size 4096 --subscribers 3
"""

import argparse
import asyncio
import logging
import sys
import time

from mjpeg_relay.stream import BroadcastHub, FrameReader, StreamEndedError


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger(__name__)


class FileSource:
    """Byte source over a file that yields to the event loop on every read."""

    def __init__(self, f) -> None:
        self._file = f
        self._eof = False

    async def read(self, n: int = -1) -> bytes:
        await asyncio.sleep(0)
        chunk = self._file.read(n)
        self._eof = not chunk
        return chunk

    def at_eof(self) -> bool:
        return self._eof


async def drain(subscriber, counts: dict) -> None:
    """Consume a subscriber queue as fast as possible."""
    while True:
        await subscriber.get()
        counts[subscriber.id] += 1


async def run_replay(path: str, read_size: int, subscriber_count: int) -> dict:
    """
    Replay a recorded stream.

    Args:
        path: Raw MJPEG file
        read_size: Bytes per read
        subscriber_count: Draining subscribers to attach

    Returns:
        Final metrics dict
    """
    logger.info("=" * 60)
    logger.info(f"Replaying {path}")
    logger.info(f"Read size: {read_size}, subscribers: {subscriber_count}")
    logger.info("=" * 60)

    hub = BroadcastHub()

    counts = {}
    drainers = []
    for _ in range(subscriber_count):
        subscriber = hub.subscribe()
        counts[subscriber.id] = 0
        drainers.append(asyncio.create_task(drain(subscriber, counts)))

    start_time = time.time()
    with open(path, "rb") as f:
        reader = FrameReader(FileSource(f), hub, read_size=read_size)
        try:
            await reader.run()
        except StreamEndedError:
            pass
    elapsed = time.time() - start_time

    # Let drainers pick up the tail
    await asyncio.sleep(0.1)
    for task in drainers:
        task.cancel()
    await asyncio.gather(*drainers, return_exceptions=True)

    metrics = reader.metrics.to_dict()
    hub_metrics = hub.metrics()

    logger.info("=" * 60)
    logger.info("SUMMARY")
    logger.info("=" * 60)
    logger.info(f"Elapsed: {elapsed:.3f}s")
    logger.info(f"Frames extracted: {metrics['frames_extracted']}")
    logger.info(f"Invalid frames: {metrics['invalid_frames']}")
    logger.info(f"Bytes left unparsed: {reader.pending}")
    logger.info(f"Frames dropped for subscribers: {hub_metrics['frames_dropped']}")
    for subscriber_id, count in counts.items():
        logger.info(f"  {subscriber_id}: {count} frames")
    logger.info("=" * 60)

    return {
        "elapsed": elapsed,
        "frames_extracted": metrics["frames_extracted"],
        "invalid_frames": metrics["invalid_frames"],
        "frames_dropped": hub_metrics["frames_dropped"],
    }


def main():
    parser = argparse.ArgumentParser(
        description="Replay a raw MJPEG capture through the frame reader"
    )
    parser.add_argument("path", help="Raw MJPEG file")
    parser.add_argument(
        "--read-size",
        type=int,
        default=1024,
        help="Bytes per read (default: 1024)",
    )
    parser.add_argument(
        "--subscribers",
        type=int,
        default=1,
        help="Number of draining subscribers (default: 1)",
    )

    args = parser.parse_args()

    result = asyncio.run(run_replay(
        path=args.path,
        read_size=args.read_size,
        subscriber_count=args.subscribers,
    ))

    sys.exit(0 if result["frames_extracted"] > 0 else 1)


if __name__ == "__main__":
    main()

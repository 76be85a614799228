"""
Test Configuration
==================

Pytest fixtures and helpers for mjpeg_relay tests.
"""

import asyncio
import os
from collections import deque
from typing import Callable, List, Optional

import pytest

from mjpeg_relay.stream.errors import SessionWriteError
from mjpeg_relay.stream.frame import Frame


def make_jpeg(index: int, size: int = 64) -> bytes:
    """Build a fake JPEG: SOI, filler without 0xFF, EOI."""
    body = bytes((index + i) % 0xFE for i in range(size))
    return b"\xff\xd8" + body + b"\xff\xd9"


def make_frame(index: int, size: int = 64) -> Frame:
    return Frame(data=make_jpeg(index, size), sequence=index)


def split_every(data: bytes, size: int) -> List[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


class FakeTransport:
    """Records what a session writes; can be told to fail writes."""

    def __init__(self) -> None:
        self.status: Optional[int] = None
        self.headers: list = []
        self.chunks: List[bytes] = []
        self.finished: bool = False
        self.write_calls: int = 0
        self.fail_calls: set = set()
        self._failures: deque = deque()

    def fail_next(self, count: int) -> None:
        """Make the next `count` write calls raise."""
        self._failures.extend([True] * count)

    @property
    def body(self) -> bytes:
        return b"".join(self.chunks)

    def header(self, name: str) -> Optional[str]:
        for key, value in self.headers:
            if key.lower() == name.lower():
                return value
        return None

    async def start(self, status: int, headers: list) -> None:
        self.status = status
        self.headers = list(headers)

    async def write(self, data: bytes) -> None:
        self.write_calls += 1
        if self.write_calls in self.fail_calls:
            raise SessionWriteError("simulated write failure")
        if self._failures:
            self._failures.popleft()
            raise SessionWriteError("simulated write failure")
        self.chunks.append(data)

    async def finish(self) -> None:
        self.finished = True


@pytest.fixture
def jpegs() -> List[bytes]:
    """Provide a handful of distinct fake JPEG images."""
    return [make_jpeg(i, size=32 + 17 * i) for i in range(6)]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep MJPEG_* variables of the host out of config tests."""
    for key in list(os.environ):
        if key.startswith("MJPEG_") or key == "PORT":
            monkeypatch.delenv(key, raising=False)

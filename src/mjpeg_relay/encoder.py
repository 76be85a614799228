"""
Frame Sources
=============

Provides the raw MJPEG byte pipe the FrameReader consumes.

Two sources are supported:
    - EncoderProcess: spawns ffmpeg reading a V4L2 device, uses its stdout
    - StdinSource: reads the output of an encoder piped into this process

Design Rules:
    - Sources deliver bytes only, no framing
    - The encoder is never restarted, a dead pipe is fatal upstream
"""

import asyncio
import logging
import subprocess
import sys
from typing import List, Optional, Union

from mjpeg_relay.config import EncoderConfig


logger = logging.getLogger(__name__)


# Pipe buffer limit for the asyncio StreamReader
PIPE_LIMIT = 4 * 1024 * 1024


def build_ffmpeg_command(config: EncoderConfig) -> List[str]:
    """
    Build the ffmpeg command line for MJPEG output on stdout.

    Args:
        config: Encoder settings

    Returns:
        Argument vector, program first
    """
    return [
        config.binary,
        "-f", "video4linux2",
        "-input_format", config.input_format,
        "-s", f"{config.width}x{config.height}",
        "-r", str(config.frame_rate),
        "-i", config.device,
        "-c:v", "mjpeg",
        "-q:v", str(config.quality),
        "-boundary_tag", "ffmpeg",
        "-f", "image2pipe",
        "-",
    ]


class EncoderProcess:
    """
    ffmpeg subprocess writing concatenated JPEGs to its stdout.

    stderr is inherited so encoder diagnostics end up in our own log
    stream.

    Example:
        encoder = EncoderProcess(settings.encoder)
        stdout = await encoder.start()
        ...
        await encoder.stop()
    """

    def __init__(self, config: EncoderConfig) -> None:
        self.config = config
        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    async def start(self) -> asyncio.StreamReader:
        """
        Spawn the encoder.

        Returns:
            StreamReader over the encoder's stdout

        Raises:
            OSError: If the encoder binary cannot be started
        """
        cmd = build_ffmpeg_command(self.config)
        logger.info(f"Spawning encoder: {' '.join(cmd)}")

        self._process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=None,
            limit=PIPE_LIMIT,
        )

        logger.debug(f"Encoder spawned: PID={self._process.pid}")
        return self._process.stdout

    async def stop(self) -> None:
        """Kill the encoder and reap it."""
        if self._process is None or self._process.returncode is not None:
            return

        logger.info(f"Stopping encoder (PID={self._process.pid})")
        try:
            self._process.kill()
        except ProcessLookupError:
            return
        await self._process.wait()


class StdinSource:
    """Our own stdin as the MJPEG pipe (e.g. `ffmpeg ... - | mjpeg-relay`)."""

    def __init__(self) -> None:
        self._transport: Optional[asyncio.ReadTransport] = None

    async def start(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=PIPE_LIMIT)
        protocol = asyncio.StreamReaderProtocol(reader)

        self._transport, _ = await loop.connect_read_pipe(lambda: protocol, sys.stdin.buffer)
        logger.info("Reading MJPEG stream from stdin")
        return reader

    async def stop(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None


FrameSource = Union[EncoderProcess, StdinSource]


def create_frame_source(config: EncoderConfig) -> FrameSource:
    """
    Create the frame source selected in the config.

    Raises:
        ValueError: On an unknown source name
    """
    if config.source == "ffmpeg":
        return EncoderProcess(config)
    elif config.source == "stdin":
        return StdinSource()
    else:
        raise ValueError(f"Unknown frame source: {config.source}")

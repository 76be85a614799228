"""
mjpeg_relay
===========

Relay for raw MJPEG encoder output to any number of HTTP clients.

The relay reads concatenated JPEG images from an encoder pipe, recovers
frame boundaries, and serves the frames as a multipart/x-mixed-replace
live feed or as single snapshots.

Components:
    - stream: Frame reader, broadcast hub and client sessions
    - encoder: ffmpeg / stdin frame sources
    - http: ASGI responses driving client sessions
    - main: FastAPI application

Example:
    python -m mjpeg_relay --input /dev/video0 --listen :3000
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]

"""
mjpeg_relay Main Application
============================

FastAPI entry point for the MJPEG relay.

Pipeline:
    frame source -> FrameReader -> BroadcastHub -> client sessions

Endpoints:
    GET  /             - Service information
    GET  /health       - Liveness probe (is process alive?)
    GET  /ready        - Readiness probe (is the input stream being read?)
    GET  /metrics      - Reader and hub counters
    GET  /mjpeg        - multipart/x-mixed-replace live feed
    GET  /snapshot.jpg - Single JPEG frame

Any method other than GET on /mjpeg and /snapshot.jpg is answered
with 405 before a session is created.
"""

import asyncio
import logging
import os
import signal
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from mjpeg_relay.config import EncoderConfig, Settings, settings as default_settings
from mjpeg_relay.encoder import FrameSource, create_frame_source
from mjpeg_relay.http import SessionResponse, method_not_allowed
from mjpeg_relay.stream import (
    BroadcastHub,
    FrameReader,
    SnapshotSession,
    StreamingSession,
)


logger = logging.getLogger(__name__)


SourceFactory = Callable[[EncoderConfig], FrameSource]

# All methods routed to the stream endpoints so non-GET gets a 405 here
STREAM_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


router = APIRouter()


# =============================================================================
# Frame Reader Supervision
# =============================================================================

def _on_reader_done(app: FastAPI, task: asyncio.Task) -> None:
    """Stop the service once the frame reader dies."""
    if task.cancelled():
        return

    exc = task.exception()
    app.state.reader_failed = True
    logger.critical(f"Frame reader has gone: {exc!r}")

    # Release every session so shutdown does not wait on open clients
    app.state.hub.close()

    if app.state.settings.stream.exit_on_failure:
        logger.critical("Input stream is unrecoverable, shutting down")
        os.kill(os.getpid(), signal.SIGTERM)


# =============================================================================
# Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the frame source and reader, tear them down on shutdown."""
    cfg: Settings = app.state.settings
    app.state.startup_time = time.time()

    logger.info(f"Starting {cfg.service.name} {cfg.service.version}")

    source = app.state.source_factory(cfg.encoder)
    stdout = await source.start()

    reader = FrameReader(
        stdout,
        app.state.hub,
        read_size=cfg.stream.read_size,
        max_buffer_size=cfg.stream.max_buffer_size,
    )
    app.state.reader = reader

    reader_task = asyncio.create_task(reader.run(), name="frame_reader")
    reader_task.add_done_callback(lambda task: _on_reader_done(app, task))

    logger.info(f"Serving MJPEG on port {cfg.server.port}")

    try:
        yield
    finally:
        logger.info("Shutting down gracefully...")
        app.state.hub.close()

        reader_task.cancel()
        try:
            await reader_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Frame reader ended with: {e!r}")

        await source.stop()
        logger.info("Shutdown complete")


# =============================================================================
# HTTP Endpoints
# =============================================================================

@router.get("/")
async def root(request: Request) -> JSONResponse:
    """Service information endpoint."""
    cfg: Settings = request.app.state.settings
    return JSONResponse({
        "service": cfg.service.name,
        "version": cfg.service.version,
        "status": "running",
        "source": cfg.encoder.source,
        "stream": "/mjpeg",
        "snapshot": "/snapshot.jpg",
    })


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    """
    Liveness probe - is the process alive?

    Always returns 200 if the service is running.
    """
    started = getattr(request.app.state, "startup_time", None) or time.time()
    return JSONResponse({
        "status": "healthy",
        "uptime_seconds": round(time.time() - started, 1),
    })


@router.get("/ready")
async def ready(request: Request) -> JSONResponse:
    """
    Readiness probe - is the input stream being read?

    Returns 503 before the reader starts and after it has failed.
    """
    reader: Optional[FrameReader] = getattr(request.app.state, "reader", None)
    reading = reader is not None and reader.running
    body = {
        "status": "ready" if reading else "not_ready",
        "reader_running": reading,
        "reader_failed": request.app.state.reader_failed,
        "subscribers": len(request.app.state.hub),
    }
    return JSONResponse(body, status_code=200 if reading else 503)


@router.get("/metrics")
async def metrics(request: Request) -> JSONResponse:
    """Detailed metrics for observability."""
    reader: Optional[FrameReader] = getattr(request.app.state, "reader", None)
    started = getattr(request.app.state, "startup_time", None) or time.time()

    return JSONResponse({
        "uptime_seconds": round(time.time() - started, 1),
        "reader": reader.metrics.to_dict() if reader else {},
        "hub": request.app.state.hub.metrics(),
    })


@router.api_route("/mjpeg", methods=STREAM_METHODS)
async def mjpeg(request: Request) -> Response:
    """
    MJPEG video stream endpoint.

    Returns a multipart/x-mixed-replace response with continuous JPEG frames.
    """
    if request.method != "GET":
        return method_not_allowed()

    cfg: Settings = request.app.state.settings
    session = StreamingSession(
        request.app.state.hub,
        boundary=cfg.stream.boundary,
        max_write_errors=cfg.stream.max_write_errors,
        queue_capacity=cfg.stream.queue_capacity,
        backlog_watermark=cfg.stream.backlog_watermark,
    )
    return SessionResponse(session)


@router.api_route("/snapshot.jpg", methods=STREAM_METHODS)
async def snapshot(request: Request) -> Response:
    """Single JPEG frame: the next one extracted after the request arrives."""
    if request.method != "GET":
        return method_not_allowed()

    cfg: Settings = request.app.state.settings
    session = SnapshotSession(
        request.app.state.hub,
        timeout=cfg.stream.snapshot_timeout,
        queue_capacity=cfg.stream.queue_capacity,
        backlog_watermark=cfg.stream.backlog_watermark,
    )
    return SessionResponse(session)


# =============================================================================
# FastAPI Application
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    source_factory: SourceFactory = create_frame_source,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Configuration, defaults to the globally loaded settings
        source_factory: Creates the frame source from the encoder config

    Returns:
        FastAPI app with hub and settings attached to app.state
    """
    cfg = settings or default_settings

    app = FastAPI(
        title="mjpeg-relay",
        description="MJPEG stream fan-out over HTTP",
        version=cfg.service.version,
        lifespan=lifespan,
    )

    app.state.settings = cfg
    app.state.source_factory = source_factory
    app.state.hub = BroadcastHub(
        queue_capacity=cfg.stream.queue_capacity,
        backlog_watermark=cfg.stream.backlog_watermark,
    )
    app.state.reader = None
    app.state.reader_failed = False
    app.state.startup_time = None

    app.include_router(router)
    return app


app = create_app()


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mjpeg_relay.main:app",
        host=default_settings.server.host,
        port=default_settings.server.port,
        reload=False,
    )

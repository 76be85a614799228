"""
Session Responses
=================

ASGI responses that run a client session on the raw connection.

Starlette's StreamingResponse hides write failures and only stops the
body iterator on disconnect. The responses here hand the ASGI `send`
callable to the session instead, so every failed write is visible to
the session's error budget, and an `http.disconnect` message sets the
session's cancellation event right away.

Example:
    @router.get("/mjpeg")
    async def mjpeg(request: Request) -> Response:
        session = StreamingSession(request.app.state.hub)
        return SessionResponse(session)
"""

import asyncio
import logging
from typing import Union

from starlette.responses import PlainTextResponse, Response
from starlette.types import Receive, Scope, Send

from mjpeg_relay.stream.errors import SessionWriteError
from mjpeg_relay.stream.session import Headers, SnapshotSession, StreamingSession


logger = logging.getLogger(__name__)


class ASGITransport:
    """SessionTransport on top of an ASGI `send` callable."""

    def __init__(self, send: Send) -> None:
        self._send = send
        self.started: bool = False
        self.finished: bool = False

    async def _emit(self, message: dict) -> None:
        try:
            await self._send(message)
        except (OSError, RuntimeError) as e:
            raise SessionWriteError(str(e) or type(e).__name__) from e

    async def start(self, status: int, headers: Headers) -> None:
        """Send the status line and headers."""
        await self._emit({
            "type": "http.response.start",
            "status": status,
            "headers": [
                (name.lower().encode("latin-1"), value.encode("latin-1"))
                for name, value in headers
            ],
        })
        self.started = True

    async def write(self, data: bytes) -> None:
        """Send a chunk of the response body."""
        await self._emit({
            "type": "http.response.body",
            "body": data,
            "more_body": True,
        })

    async def finish(self) -> None:
        """Terminate the response body. Safe to call more than once."""
        if not self.started or self.finished:
            return
        self.finished = True
        await self._emit({"type": "http.response.body", "body": b"", "more_body": False})


async def listen_for_disconnect(receive: Receive, disconnected: asyncio.Event) -> None:
    """Set `disconnected` once the server reports the client is gone."""
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            disconnected.set()
            return


class SessionResponse(Response):
    """
    Response that delegates the whole exchange to a client session.

    Attributes:
        session: StreamingSession or SnapshotSession to run
    """

    def __init__(self, session: Union[StreamingSession, SnapshotSession]) -> None:
        self.session = session
        self.status_code = 200
        self.media_type = None
        self.background = None
        # Actual headers are sent by the session, this keeps `.headers` usable
        self.init_headers()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        disconnected = asyncio.Event()
        transport = ASGITransport(send)

        listener = asyncio.create_task(
            listen_for_disconnect(receive, disconnected),
            name="disconnect_listener",
        )

        try:
            await self.session.run(transport, disconnected)

            if not disconnected.is_set():
                try:
                    await transport.finish()
                except SessionWriteError as e:
                    logger.debug(f"[{self.session.id}] Unable to end response: {e}")
        finally:
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass

        if self.background is not None:
            await self.background()


def method_not_allowed() -> Response:
    """405 answer for anything but GET on the stream routes."""
    return PlainTextResponse(
        "405 Method Not Allowed",
        status_code=405,
        headers={"Allow": "GET"},
    )

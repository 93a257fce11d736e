"""Server-Sent Events output towards the client."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Mapping, Optional

from starlette.requests import ClientDisconnect
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from .errors import CLIENT_DISCONNECTED, ClientDisconnected, user_message
from .models import Delta, Done, Error, NormalizedEvent

if TYPE_CHECKING:
    from .session import SessionController

logger = logging.getLogger(__name__)

DONE_FRAME = b"event: done\ndata: {}\n\n"
CANCELLED_FRAME = b"event: cancelled\ndata: {}\n\n"


def encode_event(event: NormalizedEvent) -> bytes:
    """Serialize one event as an SSE frame.

    Error frames carry the error kind and a fixed message for that kind;
    the upstream's own error text is never included.
    """
    if isinstance(event, Delta):
        return f"data: {json.dumps({'delta': event.text})}\n\n".encode("utf-8")
    if isinstance(event, Done):
        return DONE_FRAME
    if isinstance(event, Error):
        payload = {"kind": event.kind.value, "message": user_message(event.kind)}
        return f"event: error\ndata: {json.dumps(payload)}\n\n".encode("utf-8")
    raise TypeError(f"Unsupported event type: {type(event).__name__}")


class ClientStreamWriter:
    """Writes SSE frames to an ASGI ``send`` callable.

    The response start message is sent lazily with the first frame, so a
    client that is already gone surfaces as :class:`ClientDisconnected` on the
    first write rather than as a server error.
    """

    def __init__(
        self,
        send: Send,
        *,
        status_code: int = 200,
        raw_headers: Optional[list] = None,
    ) -> None:
        self._send = send
        self._status_code = status_code
        self._raw_headers = raw_headers or []
        self._started = False
        self._closed = False
        self._disconnected = False
        self.events_written = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def mark_disconnected(self) -> None:
        self._disconnected = True

    async def write(self, event: NormalizedEvent) -> None:
        await self._write_frame(encode_event(event))

    async def write_cancelled(self) -> None:
        await self._write_frame(CANCELLED_FRAME)

    async def close(self) -> None:
        """End the response body; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._disconnected:
            return
        try:
            await self._start()
            await self._send({"type": "http.response.body", "body": b"", "more_body": False})
        except (OSError, ClientDisconnect):
            logger.debug("Client went away before the stream was closed")

    async def _write_frame(self, frame: bytes) -> None:
        if self._closed or self._disconnected:
            raise ClientDisconnected("client stream is closed")
        try:
            await self._start()
            await self._send({"type": "http.response.body", "body": frame, "more_body": True})
        except (OSError, ClientDisconnect) as exc:
            self._disconnected = True
            raise ClientDisconnected(str(exc) or exc.__class__.__name__) from exc
        self.events_written += 1

    async def _start(self) -> None:
        if self._started:
            return
        self._started = True
        await self._send(
            {
                "type": "http.response.start",
                "status": self._status_code,
                "headers": self._raw_headers,
            }
        )


class EventStreamResponse(Response):
    """Runs a relay session against the ASGI connection.

    Modelled on Starlette's ``StreamingResponse``: a side task listens for
    ``http.disconnect`` and turns it into a session cancellation.
    """

    media_type = "text/event-stream"

    def __init__(
        self,
        controller: "SessionController",
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.controller = controller
        self.status_code = 200
        self.background = None
        base_headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
        base_headers.update(headers or {})
        self.init_headers(base_headers)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        writer = ClientStreamWriter(send, status_code=self.status_code, raw_headers=self.raw_headers)
        listener = asyncio.ensure_future(self._listen_for_disconnect(receive, writer))
        try:
            await self.controller.run(writer)
        finally:
            listener.cancel()

    async def _listen_for_disconnect(self, receive: Receive, writer: ClientStreamWriter) -> None:
        while True:
            message: Any = await receive()
            if message["type"] == "http.disconnect":
                writer.mark_disconnected()
                self.controller.cancel(CLIENT_DISCONNECTED)
                break

"""
PUSH CHANNELS — push_channel.py
===============================
What this file does:
    A push channel is the one-way pipe the server uses to deliver events to a
    single connected browser.  Two flavours are provided:

        EventStreamChannel   Server-Sent Events over a long-lived HTTP response
        WebSocketChannel     JSON text frames over an aiohttp WebSocket

How sending works:
    The peer registry calls `send()` from ordinary (synchronous) code, so
    `send()` must never block.  It only drops the message into an asyncio
    queue.  The request handler that owns the channel runs `pump()`, which
    takes messages off that queue and writes them to the network.

    ┌───────────────┐ send()  ┌──────────┐  pump()   ┌────────────┐
    │ PeerRegistry  │────────►│  outbox  │──────────►│ HTTP / WS  │──► browser
    └───────────────┘         └──────────┘           └────────────┘

    When the browser goes away the write fails (or the WebSocket loop ends),
    `pump()` returns, and the handler tells the session lifecycle to detach.
"""

import asyncio
import json
import logging

from aiohttp import web

logger = logging.getLogger(__name__)

_CLOSED = object()  # outbox sentinel: stop pumping

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # stop nginx from buffering the stream
}


class PushChannel:
    """Base class: a non-blocking send surface drained by `pump()`."""

    def __init__(self):
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._failed: list[dict] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: dict) -> None:
        if self._closed:
            raise ConnectionResetError("push channel is closed")
        self._outbox.put_nowait(message)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._outbox.put_nowait(_CLOSED)

    def drain_unsent(self) -> list[dict]:
        """
        Take back every message that was accepted by `send()` but never
        written.  Only meaningful once the channel is closed.
        """
        unsent, self._failed = self._failed, []
        while not self._outbox.empty():
            item = self._outbox.get_nowait()
            if item is not _CLOSED:
                unsent.append(item)
        if self._closed:
            # pump() may still be waiting; give it its stop signal back
            self._outbox.put_nowait(_CLOSED)
        return unsent

    async def pump(self, keepalive: float | None = None) -> None:
        """
        Write queued messages until the channel is closed or the connection
        drops.  With `keepalive` set, an idle channel writes a keep-alive
        every `keepalive` seconds, which is also how a vanished SSE client
        gets noticed.
        """
        try:
            while True:
                try:
                    message = await asyncio.wait_for(self._outbox.get(), timeout=keepalive)
                except asyncio.TimeoutError:
                    await self._write_keepalive()
                    continue
                if message is _CLOSED:
                    break
                try:
                    await self._write(message)
                except ConnectionResetError:
                    # hand it back through drain_unsent()
                    self._failed.append(message)
                    raise
        except ConnectionResetError as e:
            logger.info(f"Push channel dropped: {e}")
        finally:
            self._closed = True

    async def _write(self, message: dict) -> None:
        raise NotImplementedError

    async def _write_keepalive(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Server-Sent Events
# ---------------------------------------------------------------------------
class EventStreamChannel(PushChannel):
    """Each message becomes one `data: <json>` event on a text/event-stream."""

    def __init__(self):
        super().__init__()
        self.response: web.StreamResponse | None = None

    async def prepare(self, request: web.Request) -> web.StreamResponse:
        self.response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await self.response.prepare(request)
        return self.response

    async def _write(self, message: dict) -> None:
        frame = f"data: {json.dumps(message)}\n\n"
        await self.response.write(frame.encode("utf-8"))

    async def _write_keepalive(self) -> None:
        # lines starting with ':' are comments, ignored by EventSource
        await self.response.write(b":\n\n")


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------
class WebSocketChannel(PushChannel):
    """Each message becomes one JSON text frame.  Liveness is left to the
    WebSocket heartbeat, so `pump()` is run without a keepalive."""

    def __init__(self, ws: web.WebSocketResponse):
        super().__init__()
        self.ws = ws

    async def _write(self, message: dict) -> None:
        if self.ws.closed:
            raise ConnectionResetError("WebSocket is closed")
        await self.ws.send_json(message)

"""
SIGNALING CLIENT — signaling_client.py
======================================
What this file does:
    Talks to signaling_server.py from Python, the way a browser would:

        1. connect()        — ask the server for an id + key
        2. events()         — open the SSE push channel and yield each event
        3. send_signal()    — hand an SDP/ICE payload to another peer
        4. disconnect()     — leave for good

    Useful for scripted peers (e.g. a camera sender) and for tests.

Running it directly connects, prints every event it receives and
disconnects on Ctrl-C:

    python signaling_client.py http://localhost:8080
"""

import asyncio
import json
import logging
import sys
from typing import AsyncIterator

import aiohttp

logger = logging.getLogger(__name__)

# the event stream is open-ended; only the connect phase may time out
STREAM_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_connect=10, sock_read=None)


class SignalingClientError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(f"{status}: {message}")
        self.status = status
        self.message = message


class SignalingClient:
    """
    Lifecycle:
        async with SignalingClient(url) as client:
            await client.connect()
            async for event in client.events():
                ...
    """

    def __init__(self, base_url: str, session: aiohttp.ClientSession | None = None):
        self.base_url = base_url.rstrip("/")
        self.session = session
        self._owns_session = session is None
        self.id: str | None = None
        self.key: str | None = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    def _http(self) -> aiohttp.ClientSession:
        if self.session is None:
            self.session = aiohttp.ClientSession()
        return self.session

    @property
    def credentials(self) -> dict:
        if self.id is None:
            raise RuntimeError("connect() first")
        return {"id": self.id, "key": self.key}

    # ----- requests ---------------------------------------------------------
    async def connect(self) -> str:
        async with self._http().get(f"{self.base_url}/connect") as resp:
            await _raise_for_error(resp)
            body = await resp.json()
        self.id, self.key = body["id"], body["key"]
        logger.info(f"Connected to signaling server as {self.id}")
        return self.id

    async def send_signal(self, to: str, signal) -> None:
        payload = {**self.credentials, "signal": signal}
        async with self._http().post(f"{self.base_url}/send-signal/{to}", json=payload) as resp:
            await _raise_for_error(resp)

    async def disconnect(self) -> None:
        async with self._http().get(f"{self.base_url}/disconnect", params=self.credentials) as resp:
            await _raise_for_error(resp)
        logger.info(f"Disconnected {self.id}")

    async def close(self) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None

    # ----- push channel -----------------------------------------------------
    async def events(self) -> AsyncIterator[dict]:
        """Yield each event pushed on /events until the server ends the stream."""
        async with self._http().get(
            f"{self.base_url}/events", params=self.credentials, timeout=STREAM_TIMEOUT
        ) as resp:
            await _raise_for_error(resp)
            data_lines: list[str] = []
            async for raw in resp.content:
                line = raw.decode("utf-8").rstrip("\r\n")
                if not line:
                    # blank line ends one event
                    if data_lines:
                        yield json.loads("\n".join(data_lines))
                        data_lines = []
                elif line.startswith(":"):
                    continue  # keep-alive
                elif line.startswith("data:"):
                    data_lines.append(line[5:].removeprefix(" "))


async def _raise_for_error(resp: aiohttp.ClientResponse) -> None:
    if resp.status < 400:
        return
    try:
        message = (await resp.json()).get("error", resp.reason)
    except (aiohttp.ContentTypeError, ValueError):
        message = await resp.text() or resp.reason
    raise SignalingClientError(resp.status, message)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
async def _watch(base_url: str):
    async with SignalingClient(base_url) as client:
        await client.connect()
        print(json.dumps(client.credentials))
        try:
            async for event in client.events():
                print(json.dumps(event))
        finally:
            await client.disconnect()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8080"
    try:
        asyncio.run(_watch(url))
    except KeyboardInterrupt:
        logger.info("Shutting down.")

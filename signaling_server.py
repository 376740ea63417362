"""
SIGNALING SERVER — signaling_server.py
======================================
What this file does:
    Puts the peer-session engine on the network.  Browsers get an id and key
    from /connect, keep one push channel open (/events or /ws), and hand their
    SDP offers, answers and ICE candidates to each other through
    /send-signal.  Nothing here holds state of its own; every route is a thin
    wrapper around SessionLifecycle.

Architecture role:
    Browser A ──GET /connect──────────────►  THIS SERVER   (gets its id + key)
    Browser A ──GET /events (SSE) ────────►  THIS SERVER   (long-lived push channel)
    Browser B ──POST /send-signal/<A> ────►  THIS SERVER ──push──► Browser A
                 {id, key, signal}                          {from: B, signal}

    Every peer keeps one push channel open.  Anything addressed to a peer
    whose channel is momentarily closed is queued and replayed when it comes
    back; a peer that stays away longer than `timeout` ms is dropped.

Routes:
    GET  /connect               → {id, key}
    GET  /disconnect?id&key     → 204
    GET  /events?id&key         → text/event-stream of JSON events
    GET  /ws?id&key             → the same events over a WebSocket
    POST /send-signal/<to>      → {success: true}

Events pushed to a peer:
    {"connect": [ids]}  {"disconnect": [ids]}  {"presence": [ids]}
    {"data": ...}       {"from": id, "signal": ...}

Why aiohttp?
    It supports plain HTTP, streaming responses and WebSockets in the same
    async event loop — no need for separate servers.
"""

import argparse
import asyncio
import json
import logging

import aiohttp
from aiohttp import web

from push_channel import EventStreamChannel, WebSocketChannel
from session_lifecycle import SessionLifecycle, SignalingError, ValidationFailure
from signaling_config import SignalingConfig

logger = logging.getLogger(__name__)

LIFECYCLE = web.AppKey("lifecycle", SessionLifecycle)


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------
@web.middleware
async def error_middleware(request: web.Request, handler):
    """Turn lifecycle errors into JSON responses with the matching status."""
    try:
        return await handler(request)
    except SignalingError as e:
        logger.info(f"{request.method} {request.path} → {e.status}: {e.message}")
        return web.json_response({"error": e.message}, status=e.status)


# ---------------------------------------------------------------------------
# HTTP routes
# ---------------------------------------------------------------------------
async def connect_handler(request: web.Request) -> web.Response:
    peer = request.app[LIFECYCLE].connect()
    return web.json_response({"id": peer.id, "key": peer.key})


async def disconnect_handler(request: web.Request) -> web.Response:
    request.app[LIFECYCLE].disconnect(request.query.get("id"), request.query.get("key"))
    return web.Response(status=204)


async def send_signal_handler(request: web.Request) -> web.Response:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationFailure("request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationFailure("request body must be a JSON object")

    request.app[LIFECYCLE].relay_signal(
        body.get("id"), body.get("key"), request.match_info["to"], body.get("signal")
    )
    return web.json_response({"success": True})


# ---------------------------------------------------------------------------
# Push channel routes
# ---------------------------------------------------------------------------
async def events_handler(request: web.Request) -> web.StreamResponse:
    """
    Server-Sent Events push channel.  Credentials are checked before any
    byte of the stream is sent, so a bad key still gets a normal JSON error.
    """
    lifecycle = request.app[LIFECYCLE]
    channel = EventStreamChannel()
    peer = lifecycle.attach(request.query.get("id"), request.query.get("key"), channel)

    try:
        await channel.prepare(request)
        await channel.pump(keepalive=lifecycle.config.keepalive)
    finally:
        channel.close()
        lifecycle.detach(peer.id, channel)
    return channel.response


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    """
    WebSocket push channel.  Events flow out exactly as on /events; frames
    the browser sends in are treated as {"to": <id>, "signal": ...} and
    relayed on behalf of the attached peer.
    """
    lifecycle = request.app[LIFECYCLE]
    key = request.query.get("key")
    ws = web.WebSocketResponse(heartbeat=lifecycle.config.keepalive)
    # a request that cannot upgrade must not touch the peer's current channel
    if not ws.can_prepare(request).ok:
        raise ValidationFailure("WebSocket upgrade required")

    channel = WebSocketChannel(ws)
    peer = lifecycle.attach(request.query.get("id"), key, channel)

    async def pump_then_close():
        await channel.pump()
        await ws.close()  # ends the receive loop below if we closed first

    pump_task = None
    try:
        await ws.prepare(request)
        pump_task = asyncio.ensure_future(pump_then_close())
        logger.info(f"WebSocket opened for {peer.id}")

        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                relay_ws_signal(lifecycle, peer.id, key, channel, msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"WebSocket error for {peer.id}: {ws.exception()}")
    finally:
        channel.close()
        if pump_task is not None:
            await pump_task
        lifecycle.detach(peer.id, channel)
        logger.info(f"WebSocket closed for {peer.id}")
    return ws


def relay_ws_signal(lifecycle: SessionLifecycle, peer_id: str, key: str, channel, raw: str) -> None:
    try:
        frame = json.loads(raw)
        if not isinstance(frame, dict):
            raise ValidationFailure("frame must be a JSON object")
        lifecycle.relay_signal(peer_id, key, frame.get("to"), frame.get("signal"))
    except ValueError:
        error = "frame must be JSON"
    except SignalingError as e:
        error = e.message
    else:
        return

    logger.info(f"Dropped WebSocket frame from {peer_id}: {error}")
    if not channel.closed:
        channel.send({"error": error})


# ---------------------------------------------------------------------------
# Application factory & startup
# ---------------------------------------------------------------------------
async def close_push_channels(app: web.Application):
    """On shutdown, end every open stream so handlers can return."""
    registry = app[LIFECYCLE].registry
    for channel in registry.bound_channels():
        channel.close()


async def cancel_sweeps(app: web.Application):
    app[LIFECYCLE].shutdown()


def create_app(
    config: SignalingConfig | None = None,
    prefix: str = "",
    lifecycle: SessionLifecycle | None = None,
) -> web.Application:
    """
    Build the aiohttp application.  `prefix` mounts every route below a path
    (e.g. "/signal") so the relay can share a server with other routes.
    """
    if lifecycle is None:
        lifecycle = SessionLifecycle(config or SignalingConfig.from_env())
    prefix = prefix.rstrip("/")

    app = web.Application(middlewares=[error_middleware])
    app[LIFECYCLE] = lifecycle
    app.router.add_get(f"{prefix}/connect", connect_handler)
    app.router.add_get(f"{prefix}/disconnect", disconnect_handler)
    app.router.add_get(f"{prefix}/events", events_handler)
    app.router.add_get(f"{prefix}/ws", websocket_handler)
    app.router.add_post(f"{prefix}/send-signal/{{to}}", send_signal_handler)
    app.on_shutdown.append(close_push_channels)
    app.on_cleanup.append(cancel_sweeps)
    return app


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="WebRTC signaling relay")
    # 0.0.0.0 so it's reachable on the LAN
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--prefix", default="", help="mount every route below this path")
    parser.add_argument("--id-length", type=int, help="length of issued peer ids")
    parser.add_argument("--timeout", type=int, help="reconnect grace period in ms")
    parser.add_argument(
        "--no-presence",
        dest="presence",
        action="store_const",
        const=False,
        help="do not broadcast connect/disconnect/presence events",
    )
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper())

    config = SignalingConfig.from_env().with_overrides(
        id_length=args.id_length, timeout=args.timeout, presence=args.presence
    )
    logger.info(
        f"Starting signaling server on {args.host}:{args.port}{args.prefix} "
        f"(id_length={config.id_length}, timeout={config.timeout} ms, presence={config.presence})"
    )
    web.run_app(create_app(config, prefix=args.prefix), host=args.host, port=args.port)


if __name__ == "__main__":
    main()

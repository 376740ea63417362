"""
SESSION LIFECYCLE — session_lifecycle.py
========================================
What this file does:
    Drives a peer through its life on the server:

        connect()      ──►  CONNECTING   (credentials issued, no channel yet)
        attach()       ──►  STREAMING    (push channel bound, never expires)
        detach()       ──►  GRACE        (channel closed, expires after `timeout`)
        sweep          ──►  REMOVED      (expired and unbound)

    STREAMING ↔ GRACE can repeat any number of times: a browser that reloads
    the page re-attaches with the same (id, key) and receives whatever was
    queued while it was gone.

    disconnect() is the polite exit: the peer is expired on the spot.
    relay_signal() forwards an SDP/ICE payload from one peer to another.

Errors:
    Every failure is a SignalingError subclass carrying the HTTP status the
    web layer should answer with.  Nothing here is fatal to the server.
"""

import asyncio
import logging
from typing import Any, Callable

from peer_identity import IdentityIssuer
from peer_registry import PeerRegistry, PeerSession
from push_channel import PushChannel
from signaling_config import SignalingConfig

logger = logging.getLogger(__name__)

# Sweep a little after the grace period so the peer is definitely expired.
SWEEP_MARGIN = 1.1


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------
class SignalingError(Exception):
    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PeerNotFound(SignalingError):
    status = 404


class AuthFailure(SignalingError):
    status = 401


class ValidationFailure(SignalingError):
    status = 400


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
class SessionLifecycle:
    def __init__(
        self,
        config: SignalingConfig,
        registry: PeerRegistry | None = None,
        issuer: IdentityIssuer | None = None,
        schedule: Callable[[float, Callable[[], Any]], Any] | None = None,
    ):
        self.config = config
        self.registry = registry or PeerRegistry(
            presence=config.presence, queue_limit=config.queue_limit
        )
        self.issuer = issuer or IdentityIssuer(config.secret)
        self._schedule = schedule or self._call_later
        self._pending_sweeps: set[asyncio.TimerHandle] = set()

    @property
    def presence(self) -> bool:
        return self.config.presence

    # ----- credential checks ------------------------------------------------
    def _lookup(self, peer_id) -> PeerSession | None:
        # ids arrive from query strings and JSON bodies; only strings can match
        if not isinstance(peer_id, str) or not peer_id:
            return None
        return self.registry.get(peer_id)

    def authenticate(self, peer_id: str | None, key: str | None) -> PeerSession:
        """Return the peer for (id, key) or raise PeerNotFound / AuthFailure."""
        peer = self._lookup(peer_id)
        if peer is None:
            raise PeerNotFound(f"unknown peer {peer_id!r}")
        if not self.issuer.verify_key(peer.id, key):
            logger.warning(f"Rejected key for peer {peer.id}")
            raise AuthFailure("incorrect key")
        return peer

    # ----- transitions ------------------------------------------------------
    def connect(self) -> PeerSession:
        peer_id = self.issuer.issue_id(self.config.id_length)
        peer = self.registry.add(
            PeerSession(
                id=peer_id,
                key=self.issuer.derive_key(peer_id),
                timeout_at=self.registry.now() + self.config.timeout,
            )
        )
        logger.info(f"Peer {peer_id} connected — {len(self.registry)} known")

        if self.presence:
            self.registry.broadcast_raw({"connect": [peer_id]}, exclude=peer_id)
        return peer

    def attach(self, peer_id: str | None, key: str | None, channel: PushChannel) -> PeerSession:
        """
        Bind a freshly opened push channel to a peer.

        A peer we have never heard of but whose key checks out is a browser
        that was connected before a server restart; it is re-created with an
        empty queue and announced like a new arrival.
        """
        peer = self._lookup(peer_id)
        if peer is None:
            peer = self._recover(peer_id, key)
        elif not self.issuer.verify_key(peer.id, key):
            logger.warning(f"Rejected key for peer {peer.id} on channel attach")
            raise AuthFailure("incorrect key")

        previous = self.registry.unbind(peer.id)
        if previous is not None:
            logger.info(f"Peer {peer.id} opened a second channel; closing the old one")
            previous.close()
            self.registry.requeue_front(peer.id, previous.drain_unsent())

        # replay before binding, so nothing new can overtake the backlog
        while peer.queue:
            channel.send(peer.queue.popleft())
        self.registry.bind(peer.id, channel)

        if self.presence:
            channel.send({"presence": self.registry.list_live_peers()})

        logger.info(f"Peer {peer.id} attached a push channel")
        return peer

    def _recover(self, peer_id: str | None, key: str | None) -> PeerSession:
        if not self.issuer.validate_id(peer_id, self.config.id_length):
            logger.warning(f"Refusing to recover malformed peer id {peer_id!r}")
            raise ValidationFailure(f"malformed peer id {peer_id!r}")
        if not self.issuer.verify_key(peer_id, key):
            logger.warning(f"Rejected key for unknown peer {peer_id}")
            raise AuthFailure("incorrect key")

        peer = self.registry.add(
            PeerSession(
                id=peer_id,
                key=self.issuer.derive_key(peer_id),
                timeout_at=self.registry.now() + self.config.timeout,
            )
        )
        logger.info(f"Recovered peer {peer_id} (server restarted?)")

        if self.presence:
            self.registry.broadcast_raw({"connect": [peer_id]}, exclude=peer_id)
        return peer

    def detach(self, peer_id: str, channel: PushChannel) -> bool:
        """
        Called once the transport behind `channel` has gone away.  Returns
        False for a stale channel (already replaced or disconnected).
        """
        if self.registry.unbind(peer_id, channel) is None:
            return False

        # unbind succeeded, so the peer is still registered
        self.registry.requeue_front(peer_id, channel.drain_unsent())
        peer = self.registry.get(peer_id)
        peer.timeout_at = self.registry.now() + self.config.timeout
        logger.info(f"Peer {peer_id} detached — grace period {self.config.timeout} ms")

        self._schedule(self.config.timeout * SWEEP_MARGIN / 1000, self.registry.list_live_peers)
        return True

    def disconnect(self, peer_id: str | None, key: str | None) -> None:
        peer = self.authenticate(peer_id, key)

        channel = self.registry.unbind(peer.id)
        if channel is not None:
            channel.close()
        peer.timeout_at = 0
        logger.info(f"Peer {peer.id} disconnected")

        self.registry.list_live_peers()

    def relay_signal(self, peer_id: str | None, key: str | None, to: str | None, signal) -> None:
        peer = self.authenticate(peer_id, key)
        if self._lookup(to) is None:
            raise PeerNotFound(f"unknown target {to!r}")

        logger.debug(f"Relaying signal {peer.id} → {to}")
        self.registry.send_raw(to, {"from": peer.id, "signal": signal})

    # ----- scheduled sweeps -------------------------------------------------
    def _call_later(self, delay: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        handle = None

        def run():
            self._pending_sweeps.discard(handle)
            callback()

        handle = loop.call_later(delay, run)
        self._pending_sweeps.add(handle)
        return handle

    def shutdown(self) -> None:
        """Cancel sweeps that have not fired yet."""
        for handle in self._pending_sweeps:
            handle.cancel()
        self._pending_sweeps.clear()

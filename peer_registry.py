"""
PEER REGISTRY — peer_registry.py
================================
What this file does:
    Keeps the table of every peer the server currently knows about, and
    delivers messages to them.

    - `peers`     id → PeerSession       (who exists)
    - `_bindings` id → PushChannel       (who is listening right now)

    The two tables are separate on purpose.  A peer whose browser tab briefly
    loses its connection is still "connected" for presence purposes; its
    messages pile up in `PeerSession.queue` until it re-attaches or until its
    grace period runs out and a sweep removes it.

Delivery:
    send_raw()        push now if a channel is bound, otherwise queue
    send_data()       send_raw() with the payload wrapped as {"data": ...}
    broadcast_*()     the same, for every live peer

Presence:
    list_live_peers() sweeps out expired, unbound peers and tells everyone
    left behind who disappeared ({"disconnect": [...]}).
"""

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Iterable

from push_channel import PushChannel

logger = logging.getLogger(__name__)


def now_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class PeerSession:
    id: str
    key: str
    timeout_at: float
    queue: deque = field(default_factory=deque)

    def is_expired(self, now: float) -> bool:
        return self.timeout_at < now


class PeerRegistry:
    def __init__(
        self,
        presence: bool = True,
        queue_limit: int | None = None,
        now: Callable[[], float] = now_ms,
    ):
        self.presence = presence
        self.queue_limit = queue_limit
        self.now = now
        self.peers: dict[str, PeerSession] = {}
        self._bindings: dict[str, PushChannel] = {}

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self.peers

    def __len__(self) -> int:
        return len(self.peers)

    def get(self, peer_id: str) -> PeerSession | None:
        return self.peers.get(peer_id)

    def add(self, peer: PeerSession) -> PeerSession:
        if self.queue_limit is not None:
            peer.queue = deque(peer.queue, maxlen=self.queue_limit)
        self.peers[peer.id] = peer
        return peer

    # ----- push channel binding ---------------------------------------------
    def bind(self, peer_id: str, channel: PushChannel) -> None:
        """Bind `channel` to the peer; a bound peer never expires."""
        peer = self.peers[peer_id]
        self._bindings[peer_id] = channel
        peer.timeout_at = math.inf

    def unbind(self, peer_id: str, channel: PushChannel | None = None) -> PushChannel | None:
        """
        Drop the peer's binding.  If `channel` is given, only drop it when it
        is still the bound one (a replaced channel closing late must not
        unbind its successor).
        """
        bound = self._bindings.get(peer_id)
        if bound is None or (channel is not None and bound is not channel):
            return None
        del self._bindings[peer_id]
        return bound

    def channel_for(self, peer_id: str) -> PushChannel | None:
        return self._bindings.get(peer_id)

    def is_bound(self, peer_id: str) -> bool:
        return peer_id in self._bindings

    def bound_channels(self) -> list[PushChannel]:
        return list(self._bindings.values())

    # ----- delivery ---------------------------------------------------------
    def send_raw(self, to: str, message: dict) -> None:
        peer = self.peers[to]
        channel = self._bindings.get(to)
        if channel is not None and not channel.closed:
            logger.debug(f"Pushing to {to}: {str(message)[:120]}")
            channel.send(message)
            return

        if peer.queue.maxlen is not None and len(peer.queue) == peer.queue.maxlen:
            logger.warning(f"Queue for {to} is full ({peer.queue.maxlen}); dropping oldest message")
        logger.debug(f"Queueing for {to}: {str(message)[:120]}")
        peer.queue.append(message)

    def send_data(self, to: str, data) -> None:
        self.send_raw(to, {"data": data})

    def broadcast_raw(self, message: dict, exclude: Iterable[str] = ()) -> list[str]:
        """Send `message` to every live peer not in `exclude`; returns the recipients."""
        skip = {exclude} if isinstance(exclude, str) else set(exclude)
        recipients = [peer_id for peer_id in self.list_live_peers() if peer_id not in skip]
        for peer_id in recipients:
            self.send_raw(peer_id, message)
        return recipients

    def broadcast_data(self, data, exclude: Iterable[str] = ()) -> list[str]:
        return self.broadcast_raw({"data": data}, exclude=exclude)

    def requeue_front(self, peer_id: str, messages: list[dict]) -> None:
        """Put messages that a dying channel never wrote back at the head of the queue."""
        peer = self.peers.get(peer_id)
        if peer is None or not messages:
            return
        combined = [*messages, *peer.queue]
        limit = peer.queue.maxlen
        if limit is not None and len(combined) > limit:
            dropped = len(combined) - limit
            logger.warning(f"Queue for {peer_id} is full ({limit}); dropping {dropped} oldest message(s)")
            combined = combined[dropped:]
        peer.queue.clear()
        peer.queue.extend(combined)

    # ----- presence ---------------------------------------------------------
    def list_live_peers(self) -> list[str]:
        now = self.now()
        removed = [
            peer_id
            for peer_id, peer in self.peers.items()
            if peer.is_expired(now) and peer_id not in self._bindings
        ]
        for peer_id in removed:
            del self.peers[peer_id]

        connected = list(self.peers)
        if removed:
            logger.info(f"Expired {len(removed)} peer(s): {removed} — {len(connected)} remaining")
            if self.presence:
                for peer_id in connected:
                    self.send_raw(peer_id, {"disconnect": removed})

        return connected

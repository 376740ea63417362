import pytest

from peer_identity import IdentityIssuer
from peer_registry import PeerRegistry
from push_channel import PushChannel
from session_lifecycle import SessionLifecycle
from signaling_config import SignalingConfig


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class RecordingChannel(PushChannel):
    """Push channel that keeps everything sent to it in `sent`."""

    def __init__(self):
        super().__init__()
        self.sent = []

    def send(self, message):
        if self.closed:
            raise ConnectionResetError("push channel is closed")
        self.sent.append(message)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return SignalingConfig(secret="test-secret", timeout=10_000)


@pytest.fixture
def scheduled():
    """(delay_seconds, callback) pairs the lifecycle asked to run later."""
    return []


@pytest.fixture
def make_lifecycle(clock, scheduled):
    def _make(config: SignalingConfig) -> SessionLifecycle:
        registry = PeerRegistry(presence=config.presence, queue_limit=config.queue_limit, now=clock)
        return SessionLifecycle(
            config,
            registry=registry,
            issuer=IdentityIssuer(config.secret),
            schedule=lambda delay, callback: scheduled.append((delay, callback)),
        )
    return _make


@pytest.fixture
def lifecycle(make_lifecycle, config):
    return make_lifecycle(config)


@pytest.fixture
def channel_factory():
    return RecordingChannel

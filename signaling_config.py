"""
Configuration for the signaling server.

Every option has a default and can be overridden through the environment,
which is how the server is normally deployed.  The command line in
signaling_server.py layers its own flags on top of `SignalingConfig.from_env()`.
"""

import os
from dataclasses import dataclass, replace

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
DEFAULT_ID_LENGTH = 16
DEFAULT_TIMEOUT_MS = 10_000      # grace period after a push channel closes
DEFAULT_KEEPALIVE_S = 15.0       # SSE comment interval, keeps proxies from idling us out

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class SignalingConfig:
    id_length: int = DEFAULT_ID_LENGTH
    timeout: int = DEFAULT_TIMEOUT_MS
    presence: bool = True
    secret: str | None = None
    queue_limit: int | None = None
    keepalive: float = DEFAULT_KEEPALIVE_S

    def __post_init__(self):
        if self.id_length < 1:
            raise ValueError(f"id_length must be positive, got {self.id_length}")
        if self.timeout < 0:
            raise ValueError(f"timeout must not be negative, got {self.timeout}")
        if self.queue_limit is not None and self.queue_limit < 1:
            raise ValueError(f"queue_limit must be positive, got {self.queue_limit}")
        if self.keepalive <= 0:
            raise ValueError(f"keepalive must be positive, got {self.keepalive}")

    @classmethod
    def from_env(cls, environ=None) -> "SignalingConfig":
        """Build a config from SIGNALING_* variables and SECRET."""
        env = os.environ if environ is None else environ

        queue_limit = env.get("SIGNALING_QUEUE_LIMIT")
        return cls(
            id_length=int(env.get("SIGNALING_ID_LENGTH", DEFAULT_ID_LENGTH)),
            timeout=int(env.get("SIGNALING_TIMEOUT", DEFAULT_TIMEOUT_MS)),
            presence=_parse_bool(env.get("SIGNALING_PRESENCE"), default=True),
            secret=env.get("SECRET") or None,
            queue_limit=int(queue_limit) if queue_limit else None,
            keepalive=float(env.get("SIGNALING_KEEPALIVE", DEFAULT_KEEPALIVE_S)),
        )

    def with_overrides(self, **changes) -> "SignalingConfig":
        # None means "flag not given on the command line"
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    lowered = value.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(f"Expected a boolean, got {value!r}")

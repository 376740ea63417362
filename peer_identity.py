"""
PEER IDENTITY — peer_identity.py
================================
What this file does:
    Hands out peer IDs and the matching access keys.

    An ID is a short random string.  Its key is an HMAC of the ID under a
    process-wide secret, so the server never has to store keys: whoever
    presents (id, key) can be checked by simply recomputing the HMAC.

Why a shared secret?
    If SECRET is set in the environment, keys survive a server restart and a
    browser that was connected before the restart can re-attach with the
    credentials it already holds.  Without it we fall back to a random
    secret, which means every restart invalidates every outstanding key.
"""

import base64
import hashlib
import hmac
import logging
import re
import secrets

logger = logging.getLogger(__name__)

# 64 symbols: an ID of length 16 carries 96 bits of randomness.
ID_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_$"

# Recovery only accepts the alphanumeric part of the alphabet.
_VALID_ID = re.compile(r"^[a-zA-Z0-9]+$")

RANDOM_SECRET_BYTES = 256


class IdentityIssuer:
    """Issues peer IDs and derives / verifies their keys."""

    def __init__(self, secret: str | bytes | None = None):
        if secret is None:
            logger.warning(
                "No SECRET configured — using a random secret. "
                "Peers will not be able to reconnect after a restart."
            )
            secret = secrets.token_bytes(RANDOM_SECRET_BYTES)
        elif isinstance(secret, str):
            secret = secret.encode("utf-8")
        self._secret = secret

    @staticmethod
    def issue_id(length: int = 16) -> str:
        return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))

    @staticmethod
    def validate_id(candidate: str | None, length: int = 16) -> bool:
        """True if `candidate` looks like an ID this server could have issued."""
        if not candidate or not isinstance(candidate, str):
            return False
        return bool(_VALID_ID.match(candidate)) and len(candidate) == length

    def derive_key(self, peer_id: str) -> str:
        digest = hmac.new(self._secret, peer_id.encode("utf-8"), hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def verify_key(self, peer_id: str, key: str | None) -> bool:
        if not isinstance(key, str):
            return False
        return hmac.compare_digest(
            self.derive_key(peer_id).encode("ascii"), key.encode("utf-8")
        )

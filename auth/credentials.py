"""
auth/credentials.py -- One-way password hashing and verification.

bcrypt is used directly (no passlib wrapper). It is the right choice for
low-entropy secrets because its cost factor makes brute force expensive, and
every call to gensalt() draws a fresh 128-bit salt, so hashing the same input
twice never produces the same digest.

bcrypt only reads the first 72 bytes of its input. Rather than silently
truncating, hash() rejects longer inputs with CryptoError so two passwords that
share a 72-byte prefix can never collide.

The same manager hashes refresh tokens: they are random, short enough, and
must never be stored in recoverable form.
"""

from __future__ import annotations

import logging

import bcrypt

from auth.errors import CryptoError

logger = logging.getLogger("accounts.credentials")

MAX_SECRET_BYTES = 72


class CredentialManager:
    """Adaptive, salted one-way hashing.

    Usage:
        credentials = CredentialManager(rounds=12)
        digest = credentials.hash("Passw0rd!")
        credentials.verify("Passw0rd!", digest)  # True
    """

    def __init__(self, rounds: int = 12) -> None:
        if not 4 <= rounds <= 31:
            raise ValueError("bcrypt rounds must be between 4 and 31.")
        self.rounds = rounds
        # Timing equalization digest. Verifying against it costs the same as a
        # real check, so logins for unknown emails take as long as real ones.
        self._dummy_digest = self.hash("accounts_timing_dummy")

    def hash(self, plaintext: str) -> str:
        """Return a bcrypt digest of plaintext with a fresh random salt."""
        encoded = _encode(plaintext)
        try:
            salt = bcrypt.gensalt(rounds=self.rounds)
        except (OSError, NotImplementedError) as exc:
            # os.urandom failure surfaces here.
            raise CryptoError("Random number generator unavailable.") from exc
        return bcrypt.hashpw(encoded, salt).decode("ascii")

    def verify(self, plaintext: str, digest: str) -> bool:
        """Return True if plaintext matches digest.

        Comparison runs through bcrypt.checkpw, which is constant-time with
        respect to the digest. A mismatch returns False; a digest that is not
        a bcrypt string raises CryptoError. Oversized plaintext cannot match
        anything hash() produced, so it returns False.
        """
        if not isinstance(digest, str) or not digest.startswith("$2"):
            raise CryptoError("Malformed credential digest.")
        try:
            encoded = _encode(plaintext)
        except CryptoError:
            return False
        try:
            return bcrypt.checkpw(encoded, digest.encode("ascii"))
        except (ValueError, UnicodeEncodeError) as exc:
            raise CryptoError("Malformed credential digest.") from exc

    def burn(self, plaintext: str) -> None:
        """Spend one verification's worth of CPU against the dummy digest."""
        self.verify(plaintext, self._dummy_digest)


def _encode(plaintext: str) -> bytes:
    encoded = plaintext.encode("utf-8")
    if len(encoded) > MAX_SECRET_BYTES:
        raise CryptoError(f"Secret exceeds {MAX_SECRET_BYTES} bytes.")
    return encoded

"""Password hashing backed by bcrypt."""

from __future__ import annotations

import base64
import hashlib
import logging

import bcrypt

from ..domain.errors import HashingError

logger = logging.getLogger(__name__)


def _prehash(plaintext: str) -> bytes:
    # bcrypt rejects NUL bytes and anything past 72 bytes; a fixed-size digest avoids both
    digest = hashlib.sha256(plaintext.encode("utf-8")).digest()
    return base64.b64encode(digest)


class PasswordHasher:
    """Salted one-way password hashing with a configurable bcrypt work factor."""

    def __init__(self, rounds: int = 12) -> None:
        """
        Initialise the hasher.

        Args:
            rounds: bcrypt cost factor; 12 lands around 100-250ms per hash on current hardware.
        """
        if not 4 <= rounds <= 31:
            raise ValueError("bcrypt rounds must be between 4 and 31")
        self._rounds = rounds
        # the first unknown-account login must not pay for a hash
        self._dummy_digest = self.hash("authgate-unknown-account")

    @property
    def rounds(self) -> int:
        return self._rounds

    def hash(self, plaintext: str) -> str:
        """Return a salted bcrypt digest for ``plaintext``.

        Raises:
            HashingError: when the backend fails to gather entropy or allocate resources.
        """
        try:
            salt = bcrypt.gensalt(rounds=self._rounds)
            return bcrypt.hashpw(_prehash(plaintext), salt).decode("ascii")
        except (OSError, MemoryError, RuntimeError) as exc:
            logger.error("password hashing failed: %s", exc.__class__.__name__)
            raise HashingError("password hashing failed") from exc

    def verify(self, plaintext: str, digest: str) -> bool:
        """Check ``plaintext`` against ``digest`` using bcrypt's constant-time comparison."""
        try:
            return bcrypt.checkpw(_prehash(plaintext), digest.encode("ascii"))
        except (ValueError, TypeError):
            logger.warning("stored password digest is malformed")
            return False
        except (OSError, MemoryError, RuntimeError) as exc:
            raise HashingError("password verification failed") from exc

    def dummy_verify(self, plaintext: str) -> None:
        """Spend one verification so unknown accounts cost as much as known ones."""
        self.verify(plaintext, self._dummy_digest)

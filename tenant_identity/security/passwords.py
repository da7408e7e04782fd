"""Salted, slow password hashing backed by bcrypt."""

from __future__ import annotations

import bcrypt

# bcrypt only looks at the first 72 bytes of its input.
_BCRYPT_MAX_BYTES = 72


def _encode(plain_password: str) -> bytes:
    return plain_password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


class PasswordHasher:
    """Hash and verify passwords with a configurable bcrypt cost factor."""

    def __init__(self, rounds: int = 12) -> None:
        """Store the cost factor and build the timing-equaliser hash up front."""
        self._rounds = rounds
        self._dummy_hash = bcrypt.hashpw(b"unused-password", bcrypt.gensalt(rounds=rounds))

    def hash(self, plain_password: str) -> str:
        """Return an opaque salted hash suitable for storage."""
        return bcrypt.hashpw(_encode(plain_password), bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    def verify(self, plain_password: str, hashed: str) -> bool:
        """Return ``True`` when ``plain_password`` matches the stored hash."""
        try:
            return bcrypt.checkpw(_encode(plain_password), hashed.encode("utf-8"))
        except (ValueError, TypeError):
            return False

    def verify_against_dummy(self, plain_password: str) -> bool:
        """Spend the same CPU as :meth:`verify` when there is no stored hash.

        Always returns ``False``. Used on unknown-email logins so response
        time does not reveal whether the account exists.
        """
        bcrypt.checkpw(_encode(plain_password), self._dummy_hash)
        return False

"""Password hashing primitives.

The engine only depends on the ``PasswordHasher`` shape, so the algorithm can
be swapped without touching the authenticator or the invite ledger.
"""

from __future__ import annotations

import secrets
from typing import Protocol

import bcrypt


class PasswordHasher(Protocol):
    def hash(self, password: str) -> str: ...

    def verify(self, password: str, password_hash: str) -> bool: ...


class BcryptPasswordHasher:
    """bcrypt with a configurable work factor."""

    def __init__(self, rounds: int = 10) -> None:
        self._rounds = rounds

    def hash(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self._rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def verify(self, password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            # Malformed stored hash: treat as a mismatch so the remote fallback still runs.
            return False


def generate_local_password() -> str:
    """Random password for shadow accounts that authenticate remotely until one is set."""
    return secrets.token_urlsafe(24)

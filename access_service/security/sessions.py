"""Session records and the in-memory session store."""

from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any, Protocol


@dataclass(slots=True, frozen=True)
class Session:
    """Authenticated session established by a successful login.

    ``is_admin`` is a snapshot taken at login; admin checks must re-read the
    Credential Store instead of trusting it.
    """

    session_id: str
    account_id: int
    is_admin: bool
    remote_account_id: str | None
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(**data)


def new_session(
    *, account_id: int, is_admin: bool, remote_account_id: str | None, ttl_seconds: int
) -> Session:
    now = time.time()
    return Session(
        session_id=secrets.token_urlsafe(32),
        account_id=account_id,
        is_admin=is_admin,
        remote_account_id=remote_account_id,
        created_at=now,
        expires_at=now + ttl_seconds,
    )


class SessionStore(Protocol):
    def save(self, session: Session) -> None: ...

    def get(self, session_id: str) -> Session | None: ...

    def delete(self, session_id: str) -> None: ...


class InMemorySessionStore:
    """Thread-safe process-local session store with lazy TTL eviction."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = Lock()

    def save(self, session: Session) -> None:
        with self._lock:
            self._purge(time.time())
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Session | None:
        now = time.time()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_expired(now):
                del self._sessions[session_id]
                return None
            return session

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        with self._lock:
            self._purge(time.time())
            return len(self._sessions)

    def _purge(self, now: float) -> None:
        expired = [key for key, session in self._sessions.items() if session.is_expired(now)]
        for key in expired:
            del self._sessions[key]

"""Redis-backed session store shared by every API worker."""

from __future__ import annotations

import json
import math
import time

from redis import Redis

from .sessions import Session


class RedisSessionStore:
    """Stores sessions as JSON strings whose Redis TTL matches the session expiry."""

    def __init__(self, client: Redis, *, key_prefix: str = "session") -> None:
        self._client = client
        self._key_prefix = key_prefix

    def save(self, session: Session) -> None:
        ttl = max(1, math.ceil(session.expires_at - time.time()))
        self._client.setex(self._key(session.session_id), ttl, json.dumps(session.to_dict()))

    def get(self, session_id: str) -> Session | None:
        raw = self._client.get(self._key(session_id))
        if raw is None:
            return None
        session = Session.from_dict(json.loads(raw))
        if session.is_expired(time.time()):
            self.delete(session_id)
            return None
        return session

    def delete(self, session_id: str) -> None:
        self._client.delete(self._key(session_id))

    def _key(self, session_id: str) -> str:
        return f"{self._key_prefix}:{session_id}"

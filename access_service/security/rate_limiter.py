"""In-memory sliding window rate limiter used for login and invite redemption."""

from __future__ import annotations

import time
from collections import defaultdict, deque
from threading import Lock
from typing import Protocol


class RateLimiter(Protocol):
    def allow(self, key: str) -> bool: ...

    def reset(self, key: str) -> None: ...


class SlidingWindowRateLimiter:
    """Process-local limiter; attempts older than the window stop counting."""

    def __init__(self, max_requests: int, window_seconds: int) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._attempts: defaultdict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        """Record an attempt for ``key`` unless the window is already full."""
        now = time.monotonic()
        with self._lock:
            attempts = self._attempts[key]
            cutoff = now - self._window
            while attempts and attempts[0] <= cutoff:
                attempts.popleft()
            if len(attempts) >= self._max_requests:
                return False
            attempts.append(now)
            return True

    def reset(self, key: str) -> None:
        """Forget every attempt for ``key``, e.g. after a successful login."""
        with self._lock:
            self._attempts.pop(key, None)

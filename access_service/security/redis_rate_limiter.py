"""Redis-backed sliding window rate limiter shared across API workers."""

from __future__ import annotations

import time
from typing import Final

from redis import Redis
from redis.exceptions import ResponseError, WatchError


class RedisSlidingWindowRateLimiter:
    """Distributed sliding window limiter over Redis sorted sets.

    Each attempt is a sorted-set member scored by its timestamp in
    milliseconds; members older than the window are trimmed before counting.
    """

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[1])
    local max_attempts = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])
    local member = ARGV[4]

    redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)
    if redis.call('ZCARD', key) >= max_attempts then
        return 0
    end
    redis.call('ZADD', key, now_ms, member)
    redis.call('PEXPIRE', key, window_ms)
    return 1
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "access-rate",
    ) -> None:
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._script = client.register_script(self._LUA_SCRIPT)

    def allow(self, key: str) -> bool:
        """Return ``True`` when the attempt key is still within the distributed limit."""
        now_ms = int(time.time() * 1000)
        redis_key = f"{self._key_prefix}:{key}"
        member = f"{now_ms}:{self._client.incr(f'{redis_key}:seq')}"
        self._client.pexpire(f"{redis_key}:seq", self._window_ms)
        try:
            result = self._script(
                keys=[redis_key], args=[self._window_ms, self._max_requests, now_ms, member]
            )
            return int(result) == 1
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command" in message and "eval" in message:
                return self._allow_watched(redis_key, now_ms, member)
            raise

    def _allow_watched(self, redis_key: str, now_ms: int, member: str) -> bool:
        """Optimistic WATCH/MULTI variant for servers without scripting."""
        while True:
            with self._client.pipeline() as pipe:
                try:
                    pipe.watch(redis_key)
                    window_start = now_ms - self._window_ms
                    if pipe.zcount(redis_key, f"({window_start}", "+inf") >= self._max_requests:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.zremrangebyscore(redis_key, 0, window_start)
                    pipe.zadd(redis_key, {member: now_ms})
                    pipe.pexpire(redis_key, self._window_ms)
                    pipe.execute()
                    return True
                except WatchError:
                    continue

    def reset(self, key: str) -> None:
        """Drop the attempt history for ``key``."""
        redis_key = f"{self._key_prefix}:{key}"
        self._client.delete(redis_key, f"{redis_key}:seq")

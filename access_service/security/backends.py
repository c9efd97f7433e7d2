"""Construction of the rate limiter and session store backends from settings."""

from __future__ import annotations

import logging

from ..config import Settings
from .rate_limiter import RateLimiter, SlidingWindowRateLimiter
from .sessions import InMemorySessionStore, SessionStore

logger = logging.getLogger(__name__)


def _redis_client(settings: Settings):
    import redis

    client = redis.from_url(settings.redis_url)
    # ensure connectivity early to fail fast and fall back
    client.ping()
    return client


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            from .redis_rate_limiter import RedisSlidingWindowRateLimiter

            limiter = RedisSlidingWindowRateLimiter(
                _redis_client(settings),
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
            logger.info("rate limiter configured for redis backend at %s", settings.redis_url)
            return limiter
        except Exception as exc:  # pragma: no cover - depends on a live redis
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


def build_session_store(settings: Settings) -> SessionStore:
    """Instantiate the session store; redis is required when configured so sessions survive restarts."""
    if settings.session_backend == "redis":
        if not settings.redis_url:
            raise RuntimeError("SESSION_BACKEND=redis requires REDIS_URL")
        from .redis_sessions import RedisSessionStore

        logger.info("session store configured for redis backend at %s", settings.redis_url)
        return RedisSessionStore(_redis_client(settings))

    logger.info("session store using in-memory backend")
    return InMemorySessionStore()

"""Tests for the in-memory and Redis-backed sliding window rate limiters."""

from __future__ import annotations

import time

import fakeredis
import pytest

from access_service.security.rate_limiter import SlidingWindowRateLimiter
from access_service.security.redis_rate_limiter import RedisSlidingWindowRateLimiter


@pytest.fixture()
def redis_client() -> fakeredis.FakeStrictRedis:
    client = fakeredis.FakeStrictRedis()
    client.flushall()
    return client


def test_memory_limiter_blocks_excess_per_key():
    limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60)

    assert limiter.allow("login:alice")
    assert limiter.allow("login:alice")
    assert not limiter.allow("login:alice")
    assert limiter.allow("login:bob")


def test_memory_limiter_expires_entries():
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=1)

    assert limiter.allow("redeem:10.0.0.1")
    assert not limiter.allow("redeem:10.0.0.1")
    time.sleep(1.1)
    assert limiter.allow("redeem:10.0.0.1")


def test_redis_rate_limiter_allows_within_threshold(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=3, window_seconds=1, key_prefix="test"
    )
    key = "login:alice"
    assert limiter.allow(key)
    assert limiter.allow(key)
    assert limiter.allow(key)


def test_redis_rate_limiter_blocks_excess(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=2, window_seconds=1, key_prefix="test"
    )
    key = "login:alice"
    assert limiter.allow(key)
    assert limiter.allow(key)
    assert not limiter.allow(key)


def test_redis_rate_limiter_expires_entries(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=1, window_seconds=1, key_prefix="test"
    )
    key = "redeem:10.0.0.1"
    assert limiter.allow(key)
    assert not limiter.allow(key)
    time.sleep(1.1)
    assert limiter.allow(key)


def test_memory_limiter_reset_clears_attempts():
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60)

    assert limiter.allow("login:alice")
    assert not limiter.allow("login:alice")
    limiter.reset("login:alice")
    assert limiter.allow("login:alice")


def test_redis_rate_limiter_reset_clears_attempts(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=1, window_seconds=60, key_prefix="test"
    )

    assert limiter.allow("login:alice")
    assert not limiter.allow("login:alice")
    limiter.reset("login:alice")
    assert limiter.allow("login:alice")

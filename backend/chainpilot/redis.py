# chainpilot/redis.py
"""
Redis connection for the settle idempotency cache.

Timeouts are short: a slow cache must fail the settle call fast rather than
hold a sponsored transaction behind it.
"""

import redis

from chainpilot.config import get_settings

settings = get_settings()


def get_redis_client() -> redis.Redis:
    return redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=settings.REDIS_TIMEOUT_SECONDS,
        socket_timeout=settings.REDIS_TIMEOUT_SECONDS,
    )

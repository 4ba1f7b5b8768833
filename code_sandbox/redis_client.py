from __future__ import annotations

import redis.asyncio as redis

from code_sandbox.settings import Settings


def create_redis(settings: Settings) -> redis.Redis:
    """Build the broker client; the caller owns it and must ``aclose()`` it."""
    if settings.use_fake_redis:
        try:
            import fakeredis.aioredis as fakeredis
        except ImportError as exc:  # pragma: no cover - optional
            raise RuntimeError("FAKE_REDIS is set but fakeredis is not installed") from exc
        return fakeredis.FakeRedis(decode_responses=True)
    return redis.from_url(settings.redis_url, decode_responses=True)

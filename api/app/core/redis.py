import logging

import redis
import redis.asyncio as aioredis

from app.core.config import settings

logger = logging.getLogger(__name__)

# Shared async Redis client for the API (created once, reused across requests)
_redis: aioredis.Redis | None = None
# Sync client for Celery tasks
_sync_redis: redis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


def get_sync_redis() -> redis.Redis:
    global _sync_redis
    if _sync_redis is None:
        _sync_redis = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return _sync_redis


# ─── Sync pause flag ───────────────────────────────────────────────────────────

_PAUSE_PREFIX = "sync_pause:"
_PAUSE_TTL_SECONDS = 6 * 60 * 60   # a forgotten pause expires on its own


async def request_pause(school_id: str) -> None:
    """Ask the running round (and any scheduled continuation) to stop."""
    await get_redis().setex(f"{_PAUSE_PREFIX}{school_id}", _PAUSE_TTL_SECONDS, "1")


async def clear_pause(school_id: str) -> None:
    await get_redis().delete(f"{_PAUSE_PREFIX}{school_id}")


def is_pause_requested(school_id: str) -> bool:
    """Worker-side check, called between records. Redis outages read as 'not paused'."""
    try:
        return get_sync_redis().exists(f"{_PAUSE_PREFIX}{school_id}") == 1
    except redis.RedisError as exc:
        logger.warning("Pause flag lookup failed for school %s: %s", school_id, exc)
        return False

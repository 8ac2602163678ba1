from __future__ import annotations

import asyncio

from redis.asyncio import Redis

from supportai.core.config import get_settings


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_redis() -> Redis | None:
    """Shared Redis client, or None when no Redis URL is configured."""
    global _redis_pool, _redis_loop
    settings = get_settings()
    if not settings.redis_url:
        return None
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        # Clients are loop-bound; drop the stale one.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


def reset_redis_state() -> None:
    global _redis_pool, _redis_loop
    _redis_pool = None
    _redis_loop = None

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, Mapping
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError

from supportai.core.config import get_settings
from supportai.services.redis_client import get_redis


logger = logging.getLogger(__name__)

SCOPE_TENANT = "tenant"
SCOPE_IP = "ip"

_DEFAULT_CLIENT_IP = "127.0.0.1"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    scope: str | None
    retry_after_s: int
    limit: int | None = None
    remaining: int | None = None
    degraded: bool = False


@dataclass(frozen=True)
class _WindowHit:
    allowed: bool
    remaining: int
    retry_after_ms: int
    member: str


def plan_limit(plan: str) -> int:
    settings = get_settings()
    limits = {
        "trial": settings.rl_plan_trial,
        "growth": settings.rl_plan_growth,
        "enterprise": settings.rl_plan_enterprise,
    }
    # Unknown plans get the most conservative cap.
    return limits.get((plan or "").lower(), settings.rl_plan_trial)


def client_ip_from_headers(headers: Mapping[str, str], peer: str | None = None) -> str:
    # First X-Forwarded-For hop, then X-Real-IP, then the socket peer.
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return peer or _DEFAULT_CLIENT_IP


def _retry_after_seconds(retry_after_ms: int, window_s: int) -> int:
    return max(1, min(window_s, int(math.ceil(retry_after_ms / 1000.0))))


class SlidingWindowRateLimiter:
    """Sliding-log limiter on Redis sorted sets, one window per tenant and per client IP."""

    def __init__(
        self,
        redis: Redis | None = None,
        *,
        time_provider: Callable[[], float] | None = None,
        enabled: bool | None = None,
    ) -> None:
        self._redis = redis
        # Injectable clock for deterministic tests.
        self._time_provider = time_provider or time.time
        self._enabled = get_settings().rate_limit_enabled if enabled is None else enabled

    async def _client(self) -> Redis | None:
        if self._redis is not None:
            return self._redis
        return await get_redis()

    async def _hit(self, client: Redis, key: str, *, limit: int, now_ms: int, window_ms: int) -> _WindowHit:
        member = f"{now_ms}-{uuid4().hex}"
        pipe = client.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, now_ms - window_ms)
        pipe.zadd(key, {member: now_ms})
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.pexpire(key, window_ms)
        _, _, count, oldest, _ = await pipe.execute()
        count = int(count)
        if count <= limit:
            return _WindowHit(allowed=True, remaining=limit - count, retry_after_ms=0, member=member)
        # Rejected attempts do not consume window capacity.
        await client.zrem(key, member)
        oldest_ms = int(float(oldest[0][1])) if oldest else now_ms
        retry_after_ms = max(0, oldest_ms + window_ms - now_ms)
        return _WindowHit(allowed=False, remaining=0, retry_after_ms=retry_after_ms, member=member)

    async def check(self, *, tenant_id: str, plan: str, client_ip: str | None = None) -> RateLimitDecision:
        settings = get_settings()
        if not self._enabled:
            return RateLimitDecision(allowed=True, scope=None, retry_after_s=0)

        window_s = max(1, int(settings.rl_window_seconds))
        window_ms = window_s * 1000
        now_ms = int(self._time_provider() * 1000)
        tenant_limit = plan_limit(plan)
        tenant_key = f"{settings.rl_redis_prefix}:tenant:{tenant_id}"
        ip_key = f"{settings.rl_redis_prefix}:ip:{client_ip}" if client_ip else None

        try:
            client = await self._client()
            if client is None:
                # No backing store configured: always allow.
                return RateLimitDecision(allowed=True, scope=None, retry_after_s=0, degraded=True)

            tenant_hit = await self._hit(
                client, tenant_key, limit=tenant_limit, now_ms=now_ms, window_ms=window_ms
            )
            if not tenant_hit.allowed:
                return RateLimitDecision(
                    allowed=False,
                    scope=SCOPE_TENANT,
                    retry_after_s=_retry_after_seconds(tenant_hit.retry_after_ms, window_s),
                    limit=tenant_limit,
                    remaining=0,
                )

            if ip_key is not None:
                ip_limit = int(settings.rl_ip_per_minute)
                ip_hit = await self._hit(client, ip_key, limit=ip_limit, now_ms=now_ms, window_ms=window_ms)
                if not ip_hit.allowed:
                    # Give back the tenant slot taken by a request that is not admitted.
                    await client.zrem(tenant_key, tenant_hit.member)
                    return RateLimitDecision(
                        allowed=False,
                        scope=SCOPE_IP,
                        retry_after_s=_retry_after_seconds(ip_hit.retry_after_ms, window_s),
                        limit=ip_limit,
                        remaining=0,
                    )
        except (RedisError, OSError):
            # An unreachable store never blocks tenants.
            logger.warning("rate_limit_degraded tenant_id=%s", tenant_id, exc_info=True)
            return RateLimitDecision(allowed=True, scope=None, retry_after_s=0, degraded=True)

        return RateLimitDecision(
            allowed=True,
            scope=None,
            retry_after_s=0,
            limit=tenant_limit,
            remaining=tenant_hit.remaining,
        )


_rate_limiter: SlidingWindowRateLimiter | None = None


def get_rate_limiter() -> SlidingWindowRateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = SlidingWindowRateLimiter()
    return _rate_limiter


def reset_rate_limiter_state() -> None:
    global _rate_limiter
    _rate_limiter = None

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import json
import logging
import re

from redis.asyncio import Redis
from redis.exceptions import RedisError

from supportai.core.config import get_settings
from supportai.core.errors import CacheError
from supportai.services.redis_client import get_redis


logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class CachedResponse:
    content: str
    confidence: float
    citations: list[str] = field(default_factory=list)
    cached_at: str | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "content": self.content,
                "confidence": self.confidence,
                "citations": list(self.citations),
                "cached_at": self.cached_at or datetime.now(timezone.utc).isoformat(),
            },
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str) -> "CachedResponse":
        try:
            data = json.loads(raw)
            return cls(
                content=str(data["content"]),
                confidence=float(data["confidence"]),
                citations=[str(item) for item in data.get("citations") or []],
                cached_at=data.get("cached_at"),
            )
        except (TypeError, ValueError, KeyError) as exc:
            raise CacheError("corrupt cache entry") from exc


def normalize_query(raw_query: str) -> str:
    # Lowercase, trim, collapse internal whitespace.
    return _WHITESPACE_RE.sub(" ", raw_query.strip().lower())


def tenant_prefix(tenant_id: str) -> str:
    return f"{get_settings().cache_key_prefix}:{tenant_id}:"


def cache_key(tenant_id: str, raw_query: str) -> str:
    settings = get_settings()
    digest = hashlib.sha256(f"{tenant_id}:{normalize_query(raw_query)}".encode("utf-8")).hexdigest()
    return f"{tenant_prefix(tenant_id)}{digest[: settings.cache_hash_prefix_len]}"


class SemanticCache:
    """Per-tenant cache of answered queries.

    Every backing-store failure is soft: lookups miss, stores and
    invalidations become no-ops.
    """

    def __init__(self, redis: Redis | None = None, *, enabled: bool | None = None) -> None:
        self._redis = redis
        self._enabled = get_settings().cache_enabled if enabled is None else enabled

    async def _client(self) -> Redis | None:
        if not self._enabled:
            return None
        if self._redis is not None:
            return self._redis
        return await get_redis()

    async def lookup(self, tenant_id: str, raw_query: str) -> CachedResponse | None:
        key = cache_key(tenant_id, raw_query)
        try:
            client = await self._client()
            if client is None:
                return None
            raw = await client.get(key)
            if raw is None:
                return None
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode("utf-8")
            return CachedResponse.from_json(raw)
        except CacheError:
            logger.warning("semantic_cache_corrupt tenant_id=%s key=%s", tenant_id, key)
            return None
        except (RedisError, OSError):
            logger.warning("semantic_cache_unavailable op=lookup tenant_id=%s", tenant_id, exc_info=True)
            return None

    async def store(
        self,
        tenant_id: str,
        raw_query: str,
        response: CachedResponse,
        *,
        ttl_seconds: int | None = None,
    ) -> bool:
        ttl = ttl_seconds or get_settings().cache_ttl_seconds
        try:
            client = await self._client()
            if client is None:
                return False
            await client.set(cache_key(tenant_id, raw_query), response.to_json(), ex=int(ttl))
            return True
        except (RedisError, OSError):
            logger.warning("semantic_cache_unavailable op=store tenant_id=%s", tenant_id, exc_info=True)
            return False

    async def invalidate_tenant(self, tenant_id: str) -> int:
        # Non-atomic scan-and-delete; concurrent readers may briefly see stale entries.
        settings = get_settings()
        deleted = 0
        try:
            client = await self._client()
            if client is None:
                return 0
            batch: list[str] = []
            async for key in client.scan_iter(match=f"{tenant_prefix(tenant_id)}*", count=settings.cache_scan_count):
                batch.append(key)
                if len(batch) >= settings.cache_scan_count:
                    deleted += int(await client.delete(*batch))
                    batch = []
            if batch:
                deleted += int(await client.delete(*batch))
        except (RedisError, OSError):
            logger.warning("semantic_cache_unavailable op=invalidate tenant_id=%s", tenant_id, exc_info=True)
        if deleted:
            logger.info("semantic_cache_invalidated tenant_id=%s deleted=%s", tenant_id, deleted)
        return deleted


_semantic_cache: SemanticCache | None = None


def get_semantic_cache() -> SemanticCache:
    global _semantic_cache
    if _semantic_cache is None:
        _semantic_cache = SemanticCache()
    return _semantic_cache


def reset_semantic_cache() -> None:
    global _semantic_cache
    _semantic_cache = None

"""Cache manager for fused hybrid search results.

Entries live in Redis under ``hs:<sha1>`` keys with a fixed TTL. The key is
derived from the normalized query text plus a canonical JSON encoding of every
request parameter that changes the result (filters, limit, alpha override and
fusion mode), so semantically identical requests collide and distinct ones
never do.

The cache is best-effort: every Redis failure is logged at warning level,
counted, and reported as a miss or a skipped write. Nothing raised here ever
fails a search.
"""

import hashlib
import json
import time
from typing import Any, Dict, Optional, Union

import redis.asyncio as redis
import structlog

from libs.common.metrics import MetricsCollector
from ..models import FusedResult

logger = structlog.get_logger("search_cache")

CACHE_PREFIX = "hs:"
SCAN_COUNT = 100


def normalize_query(query: Optional[str]) -> str:
    """Trim and lower-case query text."""
    return (query or "").strip().lower()


def make_cache_key(query: str, meta: Optional[Dict[str, Any]] = None, prefix: str = CACHE_PREFIX) -> str:
    """Generate a deterministic cache key for a search request."""
    payload = normalize_query(query) + json.dumps(meta or {}, sort_keys=True, separators=(",", ":"))
    return f"{prefix}{hashlib.sha1(payload.encode('utf-8')).hexdigest()}"


class SearchCacheManager:
    """Best-effort Redis cache for search results."""

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl_seconds: int = 300,
        metrics: Optional[MetricsCollector] = None,
        prefix: str = CACHE_PREFIX
    ):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.metrics = metrics
        self.prefix = prefix

    def _record_error(self, operation: str, error: Exception, **kwargs) -> None:
        logger.warning("Cache operation failed", operation=operation, error=str(error), **kwargs)
        if self.metrics:
            self.metrics.record_cache_error(operation)

    def _record_latency(self, operation: str, started: float) -> None:
        if self.metrics:
            self.metrics.record_cache_latency(operation, time.perf_counter() - started)

    async def get(self, key: str) -> Optional[bytes]:
        """Return the raw cached value, or ``None`` on miss or error."""
        started = time.perf_counter()
        try:
            value = await self.redis_client.get(key)
        except Exception as e:
            self._record_error("get", e, key=key)
            return None
        self._record_latency("get", started)

        if self.metrics:
            if value is None:
                self.metrics.record_cache_miss("search")
            else:
                self.metrics.record_cache_hit("search")
        return value

    async def set(self, key: str, value: Union[str, bytes], ttl_seconds: Optional[int] = None) -> bool:
        """Write a value with a TTL. Returns ``False`` when the write was skipped."""
        started = time.perf_counter()
        try:
            await self.redis_client.set(key, value, ex=ttl_seconds or self.ttl_seconds)
        except Exception as e:
            self._record_error("set", e, key=key)
            return False
        self._record_latency("set", started)
        return True

    async def delete(self, key: str) -> int:
        """Delete one key. Returns the number of keys removed."""
        try:
            return int(await self.redis_client.delete(key))
        except Exception as e:
            self._record_error("delete", e, key=key)
            return 0

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining TTL in seconds; ``None`` if the key is missing or on error."""
        try:
            remaining = await self.redis_client.ttl(key)
        except Exception as e:
            self._record_error("ttl", e, key=key)
            return None
        return remaining if remaining is not None and remaining >= 0 else None

    async def delete_by_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern using non-blocking SCAN."""
        deleted = 0
        batch = []
        try:
            async for key in self.redis_client.scan_iter(match=pattern, count=SCAN_COUNT):
                batch.append(key)
                if len(batch) >= SCAN_COUNT:
                    deleted += await self.redis_client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.redis_client.delete(*batch)
        except Exception as e:
            self._record_error("delete_by_pattern", e, pattern=pattern, deleted=deleted)
            return deleted

        logger.info("Cache invalidated", pattern=pattern, keys_deleted=deleted)
        return deleted

    async def flush(self) -> int:
        """Drop every search result entry owned by this cache."""
        return await self.delete_by_pattern(f"{self.prefix}*")

    async def get_result(self, key: str) -> Optional[FusedResult]:
        """Return a cached ``FusedResult``; undecodable entries count as misses."""
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return FusedResult.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            self._record_error("decode", e, key=key)
            return None

    async def set_result(self, key: str, result: FusedResult) -> bool:
        """Cache a ``FusedResult``."""
        return await self.set(key, result.to_json())

    async def health_check(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except Exception as e:
            logger.warning("Cache health check failed", error=str(e))
            return False

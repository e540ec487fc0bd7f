"""
Billing module caching layer.

In-memory TTL cache for catalog data. Plans are immutable once referenced,
so cached entries only go stale when the catalog itself writes, and those
writes invalidate explicitly.
"""

from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from cachetools import TTLCache  # noqa: PGH003

from randevu.platform.settings import settings

logger = structlog.get_logger(__name__)

Loader = Callable[[], Awaitable[Any]]


class CacheKey:
    """Cache key generator for billing entities."""

    @staticmethod
    def subscription_plan(plan_id: str) -> str:
        return f"billing:plan:{plan_id}"

    @staticmethod
    def plan_list(active_only: bool, billing_interval: str | None) -> str:
        return f"billing:plans:{'active' if active_only else 'all'}:{billing_interval or 'any'}"


class BillingCacheMetrics:
    """Hit/miss counters for the cache."""

    def __init__(self) -> None:
        self.hits = 0
        self.misses = 0
        self.invalidations = 0

    def get_hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def get_stats(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "invalidations": self.invalidations,
            "hit_rate": self.get_hit_rate(),
        }


class BillingCache:
    """TTL cache for plans and plan listings."""

    def __init__(self, maxsize: int | None = None, ttl: int | None = None) -> None:
        self.metrics = BillingCacheMetrics()
        self._cache: TTLCache[str, Any] = TTLCache(
            maxsize=maxsize or settings.billing.plan_cache_max_size,
            ttl=ttl or settings.billing.plan_cache_ttl_seconds,
        )

    async def get(self, key: str, loader: Loader | None = None) -> Any | None:
        """Return the cached value, loading and storing it on a miss."""
        if key in self._cache:
            self.metrics.hits += 1
            logger.debug("billing.cache.hit", key=key)
            return self._cache[key]

        self.metrics.misses += 1
        logger.debug("billing.cache.miss", key=key)
        if loader is None:
            return None

        value = await loader()
        if value is not None:
            self._cache[key] = value
        return value

    def set(self, key: str, value: Any) -> None:
        self._cache[key] = value

    def invalidate(self, key: str) -> None:
        if self._cache.pop(key, None) is not None:
            self.metrics.invalidations += 1

    def invalidate_prefix(self, prefix: str) -> int:
        keys = [key for key in list(self._cache.keys()) if key.startswith(prefix)]
        for key in keys:
            self._cache.pop(key, None)
        self.metrics.invalidations += len(keys)
        return len(keys)

    def clear(self) -> None:
        self._cache.clear()


_billing_cache: BillingCache | None = None


def get_billing_cache() -> BillingCache:
    """Process-wide cache instance."""
    global _billing_cache
    if _billing_cache is None:
        _billing_cache = BillingCache()
    return _billing_cache


__all__ = ["BillingCache", "BillingCacheMetrics", "CacheKey", "get_billing_cache"]

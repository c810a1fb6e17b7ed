"""
Two-tier cache for analytics results.

Provides:
- In-process fast tier with absolute expiry and LRU eviction
- Durable tier in the analytics_cache DuckDB table (survives restarts)
- Read-through with fast-tier repopulation from the durable tier
- Type-tagged entries, clearable per type
- Graceful degradation: durable failures read as absent, writes are logged

Usage:
    cache = TwoTierCache(store, config.cache)

    await cache.set(customer_key(42, "rfm"), rfm.to_dict(), ttl_hours=24, cache_type="rfm")
    data = await cache.get(customer_key(42, "rfm"))

    await cache.invalidate_customer_cache(42)
"""
import asyncio
import inspect
import json
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from crm_analytics.config import CacheConfig
from crm_analytics.events import AnalyticsEvent, EventBus
from crm_analytics.exceptions import UpstreamError
from crm_analytics.models import CacheEntry, utcnow
from crm_analytics.observability import Timer, get_logger
from crm_analytics.validators import validate_cache_type

logger = get_logger(__name__)

SEGMENTS_OVERVIEW_KEY = "segments:overview"


def customer_key(customer_id: int, kind: str) -> str:
    return f"customer:{customer_id}:{kind}"


def top_clv_key(limit: int) -> str:
    return f"top-clv:limit-{limit}"


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    hits: int = 0
    misses: int = 0
    errors: int = 0
    sets: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "sets": self.sets,
            "invalidations": self.invalidations,
            "hit_rate_percent": round(self.hit_rate, 2),
        }

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0
        self.errors = 0
        self.sets = 0
        self.invalidations = 0


class MemoryTier:
    """
    In-process tier: dict of CacheEntry with LRU eviction at ``max_entries``.

    Expired entries are dropped on read and by ``purge_expired()``.
    """

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str, now: datetime) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(now):
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry

    def set(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted {evicted} from memory tier")

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self, cache_type: Optional[str] = None) -> int:
        if cache_type is None:
            count = len(self._entries)
            self._entries.clear()
            return count
        keys = [k for k, e in self._entries.items() if e.cache_type == cache_type]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def purge_expired(self, now: datetime) -> int:
        keys = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in keys:
            del self._entries[key]
        return len(keys)


class TwoTierCache:
    """
    Fast in-process tier backed by the durable analytics_cache table.

    One instance per process, passed by reference to every service.
    Concurrent misses on the same key may both run the compute function;
    the last write wins.
    """

    def __init__(
        self,
        store,
        cache_config: CacheConfig = None,
        clock: Callable[[], datetime] = utcnow,
        bus: Optional[EventBus] = None,
    ):
        self.config = cache_config or CacheConfig()
        self._store = store
        self._clock = clock
        self._bus = bus
        self._memory = MemoryTier(self.config.memory_max_entries)
        self._stats = CacheStats()

    @property
    def memory(self) -> MemoryTier:
        return self._memory

    async def get(self, key: str) -> Optional[Any]:
        """
        Get value by key.

        Returns:
            Cached value, or None if absent, expired or unreadable
        """
        now = self._clock()
        entry = self._memory.get(key, now)
        if entry is not None:
            self._stats.hits += 1
            return entry.value

        try:
            with Timer("cache_durable_get"):
                entry = await self._store.cache_get_row(key, now)
        except UpstreamError as e:
            self._stats.errors += 1
            self._stats.misses += 1
            logger.warning(f"Durable cache read failed for {key}: {e}")
            return None

        if entry is None:
            self._stats.misses += 1
            return None

        # Same absolute expiry, so the fast tier holds it for the remaining TTL only
        self._memory.set(entry)
        self._stats.hits += 1
        return entry.value

    async def set(
        self,
        key: str,
        value: Any,
        ttl_hours: Optional[float] = None,
        cache_type: str = "general",
    ) -> bool:
        """
        Write value to both tiers.

        Returns:
            True if the durable write succeeded
        """
        cache_type = validate_cache_type(cache_type, self.config.cache_types, allow_none=False)
        ttl_hours = self.config.default_ttl_hours if ttl_hours is None else ttl_hours
        now = self._clock()

        # Normalize through JSON so both tiers return the same shape
        payload = json.loads(json.dumps(value, default=str))
        entry = CacheEntry(
            key=key,
            value=payload,
            cache_type=cache_type,
            expires_at=now + timedelta(hours=ttl_hours),
        )

        self._memory.set(entry)
        self._stats.sets += 1

        try:
            with Timer("cache_durable_set"):
                await self._store.cache_upsert_row(entry, now)
            return True
        except UpstreamError as e:
            self._stats.errors += 1
            logger.warning(f"Durable cache write failed for {key}: {e}")
            return False

    async def get_or_set(
        self,
        key: str,
        compute_fn: Callable[[], Any],
        ttl_hours: Optional[float] = None,
        cache_type: str = "general",
    ) -> Any:
        """
        Get from cache, or compute and set if missing.

        ``compute_fn`` may be a coroutine function or a plain callable.
        """
        value = await self.get(key)
        if value is not None:
            return value

        if asyncio.iscoroutinefunction(compute_fn):
            value = await compute_fn()
        else:
            value = compute_fn()
            if inspect.isawaitable(value):
                value = await value

        await self.set(key, value, ttl_hours, cache_type)
        return value

    async def delete(self, key: str) -> bool:
        """Remove one key from both tiers."""
        self._memory.delete(key)
        self._stats.invalidations += 1
        try:
            await self._store.cache_delete_rows([key])
            return True
        except UpstreamError as e:
            self._stats.errors += 1
            logger.warning(f"Durable cache delete failed for {key}: {e}")
            return False

    async def clear(self, cache_type: Optional[str] = None) -> int:
        """
        Flush both tiers, optionally only entries tagged ``cache_type``.

        Returns:
            Number of durable rows removed
        """
        cache_type = validate_cache_type(cache_type, self.config.cache_types)
        memory_count = self._memory.clear(cache_type)
        try:
            durable_count = await self._store.cache_clear_rows(cache_type)
        except UpstreamError as e:
            self._stats.errors += 1
            logger.warning(f"Durable cache clear failed: {e}")
            durable_count = 0

        self._stats.invalidations += max(memory_count, durable_count)
        logger.info(
            "Cache cleared",
            extra={"cache_type": cache_type or "all", "memory": memory_count, "durable": durable_count},
        )
        if self._bus:
            await self._bus.emit(
                AnalyticsEvent.CACHE_INVALIDATED,
                {"cache_type": cache_type or "all", "count": durable_count, "reason": "clear"},
                source="cache",
            )
        return durable_count

    async def clean_expired(self) -> int:
        """
        Drop expired entries from both tiers.

        Returns:
            Number of expired durable rows removed
        """
        now = self._clock()
        purged = self._memory.purge_expired(now)
        try:
            removed = await self._store.cache_delete_expired(now)
        except UpstreamError as e:
            self._stats.errors += 1
            logger.warning(f"Expired cache cleanup failed: {e}")
            return 0

        logger.info(f"Cleaned {removed} expired cache rows", extra={"memory_purged": purged})
        if self._bus:
            await self._bus.emit(
                AnalyticsEvent.CACHE_CLEANED,
                {"durable": removed, "memory": purged},
                source="cache",
            )
        return removed

    async def invalidate_customer_cache(self, customer_id: int) -> int:
        """Delete the per-customer keys (rfm, clv, churn, recommendations, complete)."""
        keys = [customer_key(customer_id, kind) for kind in self.config.customer_key_types]
        for key in keys:
            self._memory.delete(key)
        self._stats.invalidations += len(keys)

        try:
            removed = await self._store.cache_delete_rows(keys)
        except UpstreamError as e:
            self._stats.errors += 1
            logger.warning(f"Durable cache invalidation failed for customer {customer_id}: {e}")
            removed = 0

        logger.debug(f"Invalidated cache for customer {customer_id}")
        if self._bus:
            await self._bus.emit(
                AnalyticsEvent.CACHE_INVALIDATED,
                {"keys": keys, "reason": "customer_invalidation", "customer_id": customer_id},
                source="cache",
            )
        return removed

    async def get_stats(self) -> Dict[str, Any]:
        try:
            durable_rows = await self._store.cache_row_count()
        except UpstreamError:
            self._stats.errors += 1
            durable_rows = None

        return {
            **self._stats.to_dict(),
            "memory_entries": len(self._memory),
            "memory_max_entries": self._memory.max_entries,
            "durable_rows": durable_rows,
        }

    def reset_stats(self) -> None:
        self._stats.reset()


# ═══════════════════════════════════════════════════════════════════════════════
# EVENT HANDLERS FOR CACHE INVALIDATION
# ═══════════════════════════════════════════════════════════════════════════════


def register_cache_invalidation_handlers(bus: EventBus, cache: TwoTierCache) -> None:
    """Register handlers that invalidate derived caches on ledger changes."""

    @bus.on(AnalyticsEvent.TRANSACTION_RECORDED)
    async def invalidate_on_transaction(data: dict):
        customer_id = data.get("customer_id")
        if customer_id is not None:
            await cache.invalidate_customer_cache(customer_id)

    @bus.on(AnalyticsEvent.CUSTOMER_UPDATED)
    async def invalidate_on_customer_updated(data: dict):
        customer_id = data.get("customer_id")
        if customer_id is not None:
            await cache.invalidate_customer_cache(customer_id)

    @bus.on(AnalyticsEvent.INVENTORY_UPDATED)
    async def invalidate_on_inventory_updated(data: dict):
        # Stock changes can make cached recommendation lists stale
        await cache.clear("recommendations")

    logger.info("Cache invalidation handlers registered")

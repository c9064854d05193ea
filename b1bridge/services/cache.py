"""
CacheAside - get-or-compute reads with per-category TTLs.

Features:
- Deterministic keys: hash of (category, request parameters)
- Fixed TTL per data category
- Stale fallback: when a refresh is rate limited, the last value seen is
  returned marked stale with its age
- Backend outages turn every cache operation into a no-op
- Concurrent misses on one key share a single compute call
"""

import hashlib
import json
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Mapping, TypeVar

from loguru import logger

from b1bridge.services.deduplicator import RequestDeduplicator
from b1bridge.services.errors import CacheUnavailableError, UpstreamRateLimitError
from b1bridge.services.store import KeyValueStore
from b1bridge.utils import utcnow

T = TypeVar("T")


class CacheCategory(str, Enum):
    """Data categories with their own freshness requirement."""

    ITEMS = "items"
    BUSINESS_PARTNERS = "business_partners"
    SALES_ORDERS = "sales_orders"
    QUOTATIONS = "quotations"
    EXCHANGE_RATES = "exchange_rates"
    REPORTS = "reports"
    JOURNAL_ENTRIES = "journal_entries"
    SYSTEM_INFO = "system_info"
    INDICATORS = "indicators"
    DEFAULT = "default"


# TTL in seconds per category
CACHE_TTLS: dict[CacheCategory, int] = {
    CacheCategory.ITEMS: 300,
    CacheCategory.BUSINESS_PARTNERS: 300,
    CacheCategory.SALES_ORDERS: 60,  # documents change often
    CacheCategory.QUOTATIONS: 60,
    CacheCategory.EXCHANGE_RATES: 1800,
    CacheCategory.REPORTS: 600,
    CacheCategory.JOURNAL_ENTRIES: 180,
    CacheCategory.SYSTEM_INFO: 3600,
    CacheCategory.INDICATORS: 3600,  # upstream is strictly rate limited
    CacheCategory.DEFAULT: 300,
}


@dataclass
class CacheEntry:
    """A cached value as stored in the backend."""

    key: str
    serialized_value: str
    ttl_seconds: int
    inserted_at: datetime

    @property
    def value(self) -> Any:
        return json.loads(self.serialized_value)

    def age_seconds(self, now: datetime) -> float:
        return max(0.0, (now - self.inserted_at).total_seconds())

    def is_expired(self, now: datetime) -> bool:
        return self.age_seconds(now) >= self.ttl_seconds

    def dumps(self) -> str:
        return json.dumps(
            {
                "key": self.key,
                "value": self.serialized_value,
                "ttl": self.ttl_seconds,
                "inserted_at": self.inserted_at.isoformat(),
            }
        )

    @classmethod
    def loads(cls, raw: str) -> "CacheEntry":
        data = json.loads(raw)
        return cls(
            key=data["key"],
            serialized_value=data["value"],
            ttl_seconds=int(data["ttl"]),
            inserted_at=datetime.fromisoformat(data["inserted_at"]),
        )


@dataclass
class CacheResult(Generic[T]):
    """Result from a cache-aside read."""

    value: T
    from_cache: bool
    stale: bool = False
    age_seconds: float | None = None


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    backend_errors: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.stale_hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits + self.stale_hits) / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "backend_errors": self.backend_errors,
            "evictions": self.evictions,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class CacheAside:
    """
    Cache-aside reads over a KeyValueStore.

    Usage:
        cache = CacheAside(MemoryStore())
        result = await cache.get_or_compute(
            CacheCategory.ITEMS,
            {"path": "/b1s/v1/Items", "company_db": "SBO_TEST"},
            lambda: fetch_items(),
        )
        if result.stale:
            ...
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttls: Mapping[CacheCategory, int] | None = None,
        prefix: str = "b1bridge:cache:",
        clock: Callable[[], datetime] = utcnow,
        retain_max: int = 500,
        debug: bool = False,
    ):
        self._store = store
        self._ttls = {**CACHE_TTLS, **(ttls or {})}
        self._prefix = prefix
        self._clock = clock
        self._retain_max = retain_max
        self._debug = debug
        # copies kept past their TTL, served only as labeled stale fallback
        self._retained: OrderedDict[str, CacheEntry] = OrderedDict()
        self._deduplicator = RequestDeduplicator(debug=debug)
        self._stats = CacheStats()

    def ttl_for(self, category: CacheCategory) -> int:
        return self._ttls.get(category, self._ttls[CacheCategory.DEFAULT])

    def make_key(self, category: CacheCategory, key: Any) -> str:
        """Deterministic backend key for (category, request parameters)."""
        canonical = json.dumps(key, sort_keys=True, default=str, separators=(",", ":"))
        digest = hashlib.sha256(canonical.encode()).hexdigest()[:32]
        return f"{self._prefix}{category.value}:{digest}"

    async def get_or_compute(
        self,
        category: CacheCategory,
        key: Any,
        compute_fn: Callable[[], Awaitable[T]],
    ) -> CacheResult[T]:
        """
        Return the cached value, or compute, store and return it.

        compute_fn must return JSON-serializable data. Cached and freshly
        computed values both come back through JSON, so two reads of the
        same entry return equal data.

        Raises:
            Whatever compute_fn raises, except UpstreamRateLimitError when a
            retained copy can be served stale.
        """
        cache_key = self.make_key(category, key)

        entry = await self._read(cache_key)
        if entry is not None:
            self._stats.hits += 1
            self._retain(entry)
            self._log(f"HIT: {cache_key}")
            return CacheResult(
                value=entry.value,
                from_cache=True,
                age_seconds=entry.age_seconds(self._clock()),
            )

        self._stats.misses += 1
        self._log(f"MISS: {cache_key}")

        async def refresh() -> str:
            value = await compute_fn()
            new_entry = CacheEntry(
                key=cache_key,
                serialized_value=json.dumps(value, default=str),
                ttl_seconds=self.ttl_for(category),
                inserted_at=self._clock(),
            )
            await self._write(new_entry)
            self._retain(new_entry)
            return new_entry.serialized_value

        try:
            serialized = await self._deduplicator.dedupe(cache_key, refresh)
        except UpstreamRateLimitError:
            retained = self._retained.get(cache_key)
            if retained is None:
                raise
            age = retained.age_seconds(self._clock())
            self._stats.stale_hits += 1
            logger.warning(
                f"Rate limited refreshing {category.value}, "
                f"returning stale value ({age:.0f}s old)"
            )
            return CacheResult(value=retained.value, from_cache=True, stale=True, age_seconds=age)

        return CacheResult(value=json.loads(serialized), from_cache=False)

    async def invalidate(self, category: CacheCategory) -> int:
        """Drop every entry of a category. Returns count of removed entries."""
        prefix = f"{self._prefix}{category.value}:"
        for key in [k for k in self._retained if k.startswith(prefix)]:
            del self._retained[key]

        try:
            keys = await self._store.scan(prefix)
            for key in keys:
                await self._store.delete(key)
        except CacheUnavailableError as e:
            self._stats.backend_errors += 1
            logger.warning(f"Cache unavailable, could not invalidate {category.value}: {e}")
            return 0

        if keys:
            logger.info(f"Invalidated {len(keys)} cached {category.value} entries")
        return len(keys)

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats.to_dict(),
            "retained": len(self._retained),
            "deduplicator": self._deduplicator.get_stats(),
        }

    async def close(self) -> None:
        await self._deduplicator.cancel_all()

    async def _read(self, cache_key: str) -> CacheEntry | None:
        try:
            raw = await self._store.get(cache_key)
        except CacheUnavailableError as e:
            self._stats.backend_errors += 1
            logger.warning(f"Cache unavailable, treating as miss: {e}")
            return None
        if raw is None:
            return None

        try:
            entry = CacheEntry.loads(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry {cache_key}: {e}")
            return None

        if entry.is_expired(self._clock()):
            return None
        return entry

    async def _write(self, entry: CacheEntry) -> None:
        try:
            await self._store.set(entry.key, entry.dumps(), entry.ttl_seconds)
            self._log(f"SET: {entry.key} (TTL: {entry.ttl_seconds}s)")
        except CacheUnavailableError as e:
            self._stats.backend_errors += 1
            logger.warning(f"Cache unavailable, result not cached: {e}")

    def _retain(self, entry: CacheEntry) -> None:
        self._retained[entry.key] = entry
        self._retained.move_to_end(entry.key)
        while len(self._retained) > self._retain_max:
            self._retained.popitem(last=False)
            self._stats.evictions += 1

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[CacheAside] {message}")

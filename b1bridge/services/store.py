"""
Key-value stores behind the session manager and the cache-aside layer.

Provides:
- KeyValueStore: the capability every backend implements
- MemoryStore: in-process store with TTL and LRU eviction
- RedisStore: shared store on redis.asyncio
- FallbackStore: shared store preferred, in-process store when it is down
- KeyedLock: per-key async locks for read-modify-write sequences
- in_process_part: the MemoryStore behind a store, for sweeps
"""

import asyncio
import math
import threading
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Protocol, runtime_checkable

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import RedisError

from b1bridge.services.errors import CacheUnavailableError
from b1bridge.utils import utcnow


@runtime_checkable
class KeyValueStore(Protocol):
    """get / set / delete / exists over string values with a TTL in seconds."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def scan(self, prefix: str) -> list[str]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


@dataclass
class StoredValue:
    """A single in-process entry."""

    value: str
    inserted_at: datetime
    expires_at: datetime | None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class MemoryStore:
    """
    In-process key-value store.

    The mutex is only held for synchronous dict operations, never across an
    await, so concurrent coroutines and threads see consistent entries.

    Usage:
        store = MemoryStore(max_size=1000)
        await store.set("key", "value", ttl_seconds=60)
        value = await store.get("key")
    """

    name = "memory"

    def __init__(
        self,
        max_size: int = 10_000,
        clock: Callable[[], datetime] = utcnow,
        debug: bool = False,
    ):
        self._entries: dict[str, StoredValue] = {}
        self._max_size = max_size
        self._clock = clock
        self._debug = debug
        self._mutex = threading.Lock()
        self._evictions = 0

    async def get(self, key: str) -> str | None:
        with self._mutex:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._log(f"EXPIRED: {key[:50]}")
                return None
            return entry.value

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        with self._mutex:
            if len(self._entries) >= self._max_size and key not in self._entries:
                self._evict_oldest()
            self._entries[key] = StoredValue(value, now, expires_at)
        self._log(f"SET: {key[:50]} (TTL: {ttl_seconds}s)")

    async def delete(self, key: str) -> bool:
        with self._mutex:
            return self._entries.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def scan(self, prefix: str) -> list[str]:
        now = self._clock()
        with self._mutex:
            return [
                k
                for k, v in self._entries.items()
                if k.startswith(prefix) and not v.is_expired(now)
            ]

    def snapshot(self, prefix: str = "") -> list[tuple[str, str]]:
        """Copy of (key, value) pairs, including expired ones."""
        with self._mutex:
            return [(k, v.value) for k, v in self._entries.items() if k.startswith(prefix)]

    def delete_if_unchanged(self, key: str, expected_value: str) -> bool:
        """Atomically delete key only if it still holds expected_value."""
        with self._mutex:
            entry = self._entries.get(key)
            if entry is None or entry.value != expected_value:
                return False
            del self._entries[key]
            return True

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        now = self._clock()
        with self._mutex:
            expired = [k for k, v in self._entries.items() if v.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            self._log(f"CLEANUP: {len(expired)} expired entries removed")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._mutex:
            self._entries.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "backend": self.name,
            "size": len(self._entries),
            "max_size": self._max_size,
            "evictions": self._evictions,
        }

    def _evict_oldest(self) -> None:
        """Evict the oldest entry. Caller holds the mutex."""
        if not self._entries:
            return
        oldest_key = min(self._entries, key=lambda k: self._entries[k].inserted_at)
        del self._entries[oldest_key]
        self._evictions += 1
        self._log(f"EVICT: {oldest_key[:50]}")

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[MemoryStore] {message}")


class RedisStore:
    """
    Shared key-value store on Redis.

    Every backend failure is raised as CacheUnavailableError so callers can
    degrade instead of failing.
    """

    name = "redis"

    def __init__(self, url: str, client: redis.Redis | None = None):
        self._url = url
        self._redis = client or redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
        )

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(key)
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis GET failed: {e}", "redis") from e

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        try:
            if ttl_seconds:
                await self._redis.set(key, value, ex=max(1, math.ceil(ttl_seconds)))
            else:
                await self._redis.set(key, value)
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis SET failed: {e}", "redis") from e

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._redis.delete(key))
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis DEL failed: {e}", "redis") from e

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._redis.exists(key))
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis EXISTS failed: {e}", "redis") from e

    async def scan(self, prefix: str) -> list[str]:
        try:
            return [key async for key in self._redis.scan_iter(match=f"{prefix}*")]
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis SCAN failed: {e}", "redis") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._redis.aclose()
        logger.debug("Redis connection closed")


class FallbackStore:
    """
    Shared store preferred, in-process store while the shared one is down.

    Reads consult both so entries written during an outage stay visible.
    """

    def __init__(self, primary: KeyValueStore, fallback: MemoryStore):
        self.primary = primary
        self.fallback = fallback

    @property
    def name(self) -> str:
        return f"{getattr(self.primary, 'name', 'primary')}+memory"

    async def get(self, key: str) -> str | None:
        try:
            value = await self.primary.get(key)
            if value is not None:
                return value
        except CacheUnavailableError as e:
            logger.warning(f"Shared store unavailable on read, using memory: {e}")
        return await self.fallback.get(key)

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        try:
            await self.primary.set(key, value, ttl_seconds)
            # drop any copy written during an outage
            await self.fallback.delete(key)
        except CacheUnavailableError as e:
            logger.warning(f"Shared store unavailable on write, using memory: {e}")
            await self.fallback.set(key, value, ttl_seconds)

    async def delete(self, key: str) -> bool:
        deleted = False
        try:
            deleted = await self.primary.delete(key)
        except CacheUnavailableError as e:
            logger.warning(f"Shared store unavailable on delete: {e}")
        return await self.fallback.delete(key) or deleted

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def scan(self, prefix: str) -> list[str]:
        keys: set[str] = set()
        try:
            keys.update(await self.primary.scan(prefix))
        except CacheUnavailableError as e:
            logger.warning(f"Shared store unavailable on scan: {e}")
        keys.update(await self.fallback.scan(prefix))
        return sorted(keys)

    async def ping(self) -> bool:
        return await self.primary.ping()

    async def close(self) -> None:
        await self.primary.close()
        await self.fallback.close()


def in_process_part(store: KeyValueStore) -> MemoryStore | None:
    """The MemoryStore holding a store's local entries, if it has one."""
    if isinstance(store, FallbackStore):
        return store.fallback
    if isinstance(store, MemoryStore):
        return store
    return None


class KeyedLock:
    """
    One asyncio.Lock per key, dropped once nobody holds or waits for it.

    Usage:
        locks = KeyedLock()
        async with locks("session-id"):
            ...
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: Counter[str] = Counter()

    @asynccontextmanager
    async def __call__(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] <= 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)

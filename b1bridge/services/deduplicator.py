"""
RequestDeduplicator - concurrent callers for the same key share one call.

Used by the cache-aside layer so that a burst of misses on the same entry
reaches the upstream service once.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class RequestDeduplicator:
    """
    Deduplicates concurrent async calls by key.

    Usage:
        dedup = RequestDeduplicator()
        data = await dedup.dedupe(cache_key, lambda: fetch(url))
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._debug = debug
        self.total = 0
        self.deduplicated = 0

    async def dedupe(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        """
        Await the in-flight call for key, or start one.

        Registration happens without an await in between, so two coroutines
        can never both start a call for the same key.
        """
        task = self._in_flight.get(key)
        if task is None:
            self.total += 1
            task = asyncio.ensure_future(request_fn())
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
            self._log(f"NEW: {key[:60]}")
        else:
            self.deduplicated += 1
            self._log(f"JOIN: {key[:60]}")

        # shield: one waiter being cancelled must not cancel the shared call
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def cancel_all(self) -> int:
        """Cancel all in-flight calls."""
        tasks = list(self._in_flight.values())
        self._in_flight.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            self._log(f"CANCEL_ALL: {len(tasks)} calls cancelled")
        return len(tasks)

    def get_stats(self) -> dict[str, Any]:
        joined = self.total + self.deduplicated
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": len(self._in_flight),
            "dedup_rate": f"{(self.deduplicated / joined) if joined else 0.0:.2%}",
        }

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")

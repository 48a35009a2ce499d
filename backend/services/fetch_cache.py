"""
Keyed TTL cache with in-flight request de-duplication.

``fetch(key, producer)`` guarantees at most one running ``producer`` per key:
concurrent callers (forced or not) join the same ``asyncio.Task``.  A fresh
entry is returned without yielding to the event loop.  The in-flight marker
is removed in a ``finally`` block, so success, failure and cancellation all
leave the key fetchable again.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Hashable, Optional, TypeVar

from config import settings
from utils.clock import Clock, monotonic
from utils.logger import get_logger

logger = get_logger("fetch_cache")

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    payload: T
    written_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.written_at < self.ttl


class FetchCache:
    """Process-wide cache shared by every wallet pipeline."""

    def __init__(self, default_ttl: float = 600.0, clock: Clock = monotonic):
        if default_ttl < 0:
            raise ValueError("default_ttl must be non-negative")
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry] = {}
        self._in_flight: dict[Hashable, asyncio.Task] = {}
        self._stats = {
            "hits": 0,
            "misses": 0,
            "joins": 0,
            "producer_calls": 0,
            "producer_failures": 0,
        }

    # ==================== READS ====================

    async def fetch(
        self,
        key: Hashable,
        producer: Callable[[], Awaitable[T]],
        *,
        ttl: Optional[float] = None,
        force_refresh: bool = False,
    ) -> T:
        if not force_refresh:
            entry = self._entries.get(key)
            if entry is not None and entry.is_fresh(self._clock()):
                self._stats["hits"] += 1
                return entry.payload

        task = self._in_flight.get(key)
        if task is not None:
            self._stats["joins"] += 1
            logger.debug("Joining in-flight fetch", key=str(key), forced=force_refresh)
        else:
            self._stats["misses"] += 1
            effective_ttl = self._default_ttl if ttl is None else ttl
            task = asyncio.ensure_future(self._run(key, producer, effective_ttl))
            self._in_flight[key] = task

        # Shield so one caller being cancelled does not cancel the shared fetch
        return await asyncio.shield(task)

    def peek(self, key: Hashable) -> Optional[Any]:
        """Fresh payload for ``key`` or ``None``; never triggers a fetch."""
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._clock()):
            return None
        return entry.payload

    def is_in_flight(self, key: Hashable) -> bool:
        return key in self._in_flight

    # ==================== WRITES ====================

    def put(self, key: Hashable, payload: Any, ttl: Optional[float] = None) -> None:
        """Replace the entry for ``key`` wholesale with a new timestamp."""
        self._entries[key] = CacheEntry(
            payload=payload,
            written_at=self._clock(),
            ttl=self._default_ttl if ttl is None else ttl,
        )

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    async def _run(self, key: Hashable, producer: Callable[[], Awaitable[T]], ttl: float) -> T:
        self._stats["producer_calls"] += 1
        try:
            payload = await producer()
            self._entries[key] = CacheEntry(payload=payload, written_at=self._clock(), ttl=ttl)
            return payload
        except BaseException:
            self._stats["producer_failures"] += 1
            raise
        finally:
            self._in_flight.pop(key, None)

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "entries": len(self._entries),
            "in_flight": len(self._in_flight),
        }


# ==================== SINGLETON ====================

trade_fetch_cache = FetchCache(default_ttl=settings.TRADE_CACHE_TTL_SECONDS)

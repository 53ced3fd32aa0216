"""In-memory TTL cache with stale-while-revalidate and optional LRU bound.

Fresh entries are served directly. Expired entries are served stale while
a single background refresh replaces them; a failed refresh keeps the
stale value and is only logged. Misses block on the fetcher and store
nothing when it fails.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from request_orchestrator.clock import Clock, SystemClock
from request_orchestrator.exceptions import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


@dataclass
class CacheEntry:
    """A stored value and its freshness window."""

    value: Any
    stored_at: float
    ttl: float
    refreshing: bool = False

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl


class CacheStats(BaseModel):
    """Cumulative cache counters."""

    hits: int = Field(default=0, ge=0)
    stale_hits: int = Field(default=0, ge=0)
    misses: int = Field(default=0, ge=0)
    refreshes: int = Field(default=0, ge=0)
    refresh_failures: int = Field(default=0, ge=0)
    evictions: int = Field(default=0, ge=0)


def _check_ttl(ttl: float) -> None:
    if ttl <= 0:
        msg = f"ttl must be > 0 seconds (got {ttl!r})"
        raise ConfigurationError(msg)


class TTLCache:
    """Async read-through cache keyed by string.

    Attributes:
        capacity: Maximum number of entries, or ``None`` for unbounded.
        stats: Cumulative hit/miss/refresh counters.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        capacity: int | None = None,
    ) -> None:
        if capacity is not None and capacity < 1:
            msg = f"capacity must be >= 1 or None (got {capacity!r})"
            raise ConfigurationError(msg)
        self.capacity = capacity
        self._clock = clock or SystemClock()
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._refresh_tasks: set[asyncio.Task[None]] = set()
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def peek(self, key: str) -> CacheEntry | None:
        """Return the entry for ``key`` without touching recency or stats."""
        return self._entries.get(key)

    def set(self, key: str, value: Any, ttl: float) -> None:
        """Store ``value`` under ``key``, evicting the LRU entry if full."""
        _check_ttl(ttl)
        if key not in self._entries and self.capacity is not None:
            while len(self._entries) >= self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                self.stats.evictions += 1
                logger.debug("cache_evicted", key=evicted)
        self._entries[key] = CacheEntry(
            value=value, stored_at=self._clock.now(), ttl=ttl
        )
        self._entries.move_to_end(key)

    def invalidate(self, key: str) -> bool:
        """Drop ``key``. Returns True if an entry was removed."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """Drop every entry and return how many were removed."""
        count = len(self._entries)
        self._entries.clear()
        logger.info("cache_cleared", entries_removed=count)
        return count

    async def get_or_fetch(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: float,
    ) -> Any:
        """Return the cached value for ``key``, fetching it when needed.

        Args:
            key: Cache key.
            fetcher: Zero-argument coroutine function producing the value.
            ttl: Freshness window in seconds for a newly stored value.

        Returns:
            The fresh value, a stale value while a refresh runs in the
            background, or the freshly fetched value on a miss.

        Raises:
            ConfigurationError: If ``ttl`` is not positive.
            Exception: Whatever ``fetcher`` raises on a miss.
        """
        _check_ttl(ttl)
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)
            if not entry.is_expired(self._clock.now()):
                self.stats.hits += 1
                return entry.value
            self.stats.stale_hits += 1
            if not entry.refreshing:
                self._start_refresh(key, entry, fetcher, ttl)
            return entry.value

        self.stats.misses += 1
        value = await fetcher()
        self.set(key, value, ttl)
        return value

    def _start_refresh(
        self,
        key: str,
        entry: CacheEntry,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: float,
    ) -> None:
        entry.refreshing = True
        self.stats.refreshes += 1
        logger.debug("cache_refresh_started", key=key)
        task = asyncio.ensure_future(self._refresh(key, entry, fetcher, ttl))
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _refresh(
        self,
        key: str,
        entry: CacheEntry,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: float,
    ) -> None:
        try:
            value = await fetcher()
        except Exception as exc:
            self.stats.refresh_failures += 1
            logger.warning(
                "cache_refresh_failed",
                key=key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        else:
            if self._entries.get(key) is entry or key not in self._entries:
                self.set(key, value, ttl)
                logger.debug("cache_refreshed", key=key)
        finally:
            entry.refreshing = False

    async def wait_for_refreshes(self) -> None:
        """Wait for every in-flight background refresh to settle."""
        while self._refresh_tasks:
            await asyncio.gather(*self._refresh_tasks, return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel in-flight background refreshes."""
        tasks = list(self._refresh_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

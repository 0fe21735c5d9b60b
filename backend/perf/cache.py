from __future__ import annotations

import asyncio
import functools
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Pattern, TypeVar


T = TypeVar("T")

Clock = Callable[[], float]


def generate_key(kind: str, params: dict[str, Any]) -> str:
    """
    `kind(name:json,...)` with parameter names sorted, so logically equal queries share a key
    regardless of argument order.
    """
    parts = ",".join(
        f"{name}:{json.dumps(params[name], sort_keys=True, separators=(',', ':'), default=str)}"
        for name in sorted(params)
    )
    return f"{kind}({parts})"


@dataclass
class CacheEntry(Generic[T]):
    value: T
    timestamp: float
    ttl: float
    hits: int = 0
    last_access: float = 0.0

    def expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


@dataclass(frozen=True)
class CacheStats:
    size: int
    hit_rate: float
    average_hits: float
    oldest_entry: float | None
    newest_entry: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "hitRate": self.hit_rate,
            "averageHits": self.average_hits,
            "oldestEntry": self.oldest_entry,
            "newestEntry": self.newest_entry,
        }


class CacheService:
    """
    TTL cache with least-recently-accessed eviction.

    Expired entries are dropped by the read that finds them and by `cleanup()`, which a
    background task runs every `cleanup_interval` seconds once `start()` is called. All
    times are seconds from `clock`.
    """

    def __init__(
        self,
        *,
        default_ttl: float = 300.0,
        max_size: int = 1000,
        cleanup_interval: float = 60.0,
        clock: Clock = time.monotonic,
        logger: logging.Logger | None = None,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.default_ttl = float(default_ttl)
        self.max_size = int(max_size)
        self.cleanup_interval = float(cleanup_interval)
        self._clock = clock
        self._log = logger or logging.getLogger(__name__)
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._hits = 0
        self._misses = 0
        self._cleanup_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.expired(self._clock())

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        if len(self._entries) >= self.max_size and key not in self._entries:
            self.cleanup()
            if len(self._entries) >= self.max_size:
                self._evict_lru(len(self._entries) - self.max_size + 1)

        now = self._clock()
        entry = CacheEntry(
            value=value,
            timestamp=now,
            ttl=self.default_ttl if ttl is None else float(ttl),
            last_access=now,
        )
        self._entries[key] = entry
        self._log.debug("cache_set key=%s ttl=%s", key, entry.ttl)

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        now = self._clock()
        if entry.expired(now):
            del self._entries[key]
            self._misses += 1
            self._log.debug("cache_expired key=%s", key)
            return None

        entry.hits += 1
        entry.last_access = now
        self._hits += 1
        self._log.debug("cache_hit key=%s hits=%d", key, entry.hits)
        return entry.value

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self, pattern: str | Pattern[str] | None = None) -> int:
        """
        Drop every entry, or only those whose key matches `pattern` (regex search).
        """
        if pattern is None:
            count = len(self._entries)
            self._entries.clear()
            self._log.debug("cache_clear_all count=%d", count)
            return count

        rx = re.compile(pattern) if isinstance(pattern, str) else pattern
        doomed = [k for k in self._entries if rx.search(k)]
        for k in doomed:
            del self._entries[k]
        self._log.debug("cache_clear_pattern pattern=%s count=%d", rx.pattern, len(doomed))
        return len(doomed)

    def cleanup(self) -> int:
        """
        Drop expired entries, then least-recently-accessed ones above `max_size`.
        Returns how many entries were removed.
        """
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expired(now)]
        for k in expired:
            del self._entries[k]

        evicted = 0
        if len(self._entries) > self.max_size:
            evicted = self._evict_lru(len(self._entries) - self.max_size)

        self._log.debug(
            "cache_cleanup expired=%d evicted=%d remaining=%d",
            len(expired),
            evicted,
            len(self._entries),
        )
        return len(expired) + evicted

    def _evict_lru(self, n: int) -> int:
        victims = sorted(self._entries.items(), key=lambda kv: kv[1].last_access)[:n]
        for k, _e in victims:
            del self._entries[k]
        return len(victims)

    def get_stats(self) -> CacheStats:
        entries = list(self._entries.values())
        total_hits = sum(e.hits for e in entries)
        lookups = self._hits + self._misses
        timestamps = [e.timestamp for e in entries]
        return CacheStats(
            size=len(entries),
            hit_rate=(self._hits / lookups) if lookups else 0.0,
            average_hits=(total_hits / len(entries)) if entries else 0.0,
            oldest_entry=min(timestamps) if timestamps else None,
            newest_entry=max(timestamps) if timestamps else None,
        )

    # -----------------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------------

    def start(self) -> None:
        """
        Start periodic cleanup on the running event loop.
        """
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup()

    def dispose(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        self._entries.clear()
        self._log.debug("cache_disposed")


def cached(
    cache: CacheService,
    key_fn: Callable[..., str],
    ttl: float | None = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator memoizing a function in `cache` under `key_fn(*args, **kwargs)`.

    None results are not cached (a stored None is indistinguishable from a miss).
    """

    def decorate(fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            key = key_fn(*args, **kwargs)
            hit = cache.get(key)
            if hit is not None:
                return hit
            result = fn(*args, **kwargs)
            if result is not None:
                cache.set(key, result, ttl)
            return result

        return wrapper

    return decorate


def cached_async(
    cache: CacheService,
    key_fn: Callable[..., str],
    ttl: float | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    def decorate(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            key = key_fn(*args, **kwargs)
            hit = cache.get(key)
            if hit is not None:
                return hit
            result = await fn(*args, **kwargs)
            if result is not None:
                cache.set(key, result, ttl)
            return result

        return wrapper

    return decorate

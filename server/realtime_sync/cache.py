"""
Query Cache

Key-addressed read cache shared by every consumer. Keys are tuples, and
invalidation matches by prefix, so invalidating ("tasks",) marks
("tasks",), ("tasks", "user-1") and ("tasks", "user-1", "open") stale.

Two kinds of writer touch a key:
  - authoritative: set() / a fetch through the key's registered fetcher
  - optimistic:    patch(), a synchronous in-place update

The last write wins, and every invalidation eventually ends in an
authoritative write, so optimistic values never outlive the next refresh.

    cache = QueryCache()
    cache.register(("tasks",), fetch_tasks)
    await cache.fetch(("tasks",))
    cache.invalidate(("tasks",))    # marks stale, refetches in the background
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

CacheKey = tuple[Any, ...]
Fetcher = Callable[[], Awaitable[Any]]
Updater = Callable[[Any], Any]
Listener = Callable[[CacheKey, Any], None]
InvalidationListener = Callable[[CacheKey], None]


@dataclass
class CacheEntry:
    value: Any = None
    stale: bool = True
    optimistic: bool = False
    version: int = 0


def _matches(key: CacheKey, prefix: CacheKey) -> bool:
    return key[: len(prefix)] == prefix


class QueryCache:
    """
    In-memory cache with prefix invalidation and background refetch.

    Only one fetch per key is in flight at a time. Invalidating a key while
    its fetch is running queues exactly one follow-up fetch, so the value
    after the refresh is at least as fresh as the invalidation.
    """

    def __init__(self) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._fetchers: dict[CacheKey, Fetcher] = {}
        self._inflight: dict[CacheKey, asyncio.Task[None]] = {}
        self._refetch_again: set[CacheKey] = set()
        self._listeners: list[Listener] = []
        self._invalidation_listeners: list[InvalidationListener] = []
        self.invalidations = 0

    # ── Reads ─────────────────────────────────────────────────────────────────

    def read(self, key: CacheKey) -> Any:
        entry = self._entries.get(tuple(key))
        return entry.value if entry is not None else None

    def is_stale(self, key: CacheKey) -> bool:
        entry = self._entries.get(tuple(key))
        return entry is None or entry.stale

    def is_optimistic(self, key: CacheKey) -> bool:
        entry = self._entries.get(tuple(key))
        return entry is not None and entry.optimistic

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    # ── Writes ────────────────────────────────────────────────────────────────

    def set(self, key: CacheKey, value: Any) -> None:
        """Authoritative write: replaces the value and clears stale/optimistic flags."""
        key = tuple(key)
        entry = self._entries.setdefault(key, CacheEntry())
        entry.value = value
        entry.stale = False
        entry.optimistic = False
        entry.version += 1
        self._emit(key, value)

    def patch(self, key: CacheKey, updater: Updater) -> Any:
        """
        Optimistic write: apply *updater* to the current value synchronously.

        The updater receives None when the key has no value yet.
        """
        key = tuple(key)
        entry = self._entries.setdefault(key, CacheEntry())
        entry.value = updater(entry.value)
        entry.optimistic = True
        entry.version += 1
        self._emit(key, entry.value)
        return entry.value

    def invalidate(self, prefix: CacheKey) -> int:
        """
        Mark every entry under *prefix* stale and refetch those with a fetcher.

        Returns the number of entries marked stale.
        """
        prefix = tuple(prefix)
        self.invalidations += 1
        matched = [key for key in self._entries if _matches(key, prefix)]
        for key in matched:
            self._entries[key].stale = True

        for key in self._fetchers:
            if _matches(key, prefix):
                self._schedule_fetch(key)

        for listener in list(self._invalidation_listeners):
            try:
                listener(prefix)
            except Exception:
                logger.exception("Invalidation listener failed for prefix %s", prefix)

        logger.debug("Invalidated %d cache entr(ies) under %s", len(matched), prefix)
        return len(matched)

    # ── Fetching ──────────────────────────────────────────────────────────────

    def register(self, key: CacheKey, fetcher: Fetcher) -> None:
        """Attach the authoritative fetcher for *key*."""
        key = tuple(key)
        self._fetchers[key] = fetcher
        self._entries.setdefault(key, CacheEntry())

    async def fetch(self, key: CacheKey) -> Any:
        """Run the key's fetcher now and store the result authoritatively."""
        key = tuple(key)
        fetcher = self._fetchers.get(key)
        if fetcher is None:
            raise KeyError(f"No fetcher registered for cache key {key}")
        value = await fetcher()
        self.set(key, value)
        return value

    def _schedule_fetch(self, key: CacheKey) -> None:
        if key in self._inflight:
            self._refetch_again.add(key)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; leaving %s stale until next fetch", key)
            return
        self._inflight[key] = loop.create_task(self._refetch(key))

    async def _refetch(self, key: CacheKey) -> None:
        try:
            while True:
                self._refetch_again.discard(key)
                try:
                    await self.fetch(key)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Refetch failed for cache key %s; value left stale", key)
                if key not in self._refetch_again:
                    break
        finally:
            self._inflight.pop(key, None)
            self._refetch_again.discard(key)

    async def drain(self) -> None:
        """Wait until no fetch is in flight."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    # ── Listeners ─────────────────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener(key, value)* on every write. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def on_invalidate(self, listener: InvalidationListener) -> Callable[[], None]:
        """Call *listener(prefix)* on every invalidate(). Returns an unsubscribe callable."""
        self._invalidation_listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._invalidation_listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def _emit(self, key: CacheKey, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, value)
            except Exception:
                logger.exception("Cache listener failed for key %s", key)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def entry(self, key: CacheKey) -> Optional[CacheEntry]:
        return self._entries.get(tuple(key))

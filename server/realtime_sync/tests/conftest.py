"""
Shared fixtures for realtime_sync tests.

FakeLoop stands in for the event loop wherever the code only needs
call_later()/time(), so timer behaviour can be driven deterministically
with advance() instead of real sleeps.
"""
from __future__ import annotations

import itertools
from typing import Any, Callable

import pytest

from change_feed import InMemoryTransport
from realtime_sync.cache import QueryCache
from realtime_sync.registry import ChannelRegistry


class FakeTimerHandle:
    def __init__(self, when: float, seq: int, callback: Callable[..., Any], args: tuple) -> None:
        self.when = when
        self.seq = seq
        self._callback = callback
        self._args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def run(self) -> None:
        self._callback(*self._args)


class FakeLoop:
    """Manual clock: timers only run inside advance()."""

    def __init__(self) -> None:
        self.now = 0.0
        self._timers: list[FakeTimerHandle] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> FakeTimerHandle:
        handle = FakeTimerHandle(round(self.now + delay, 9), next(self._seq), callback, args)
        self._timers.append(handle)
        return handle

    def advance(self, seconds: float) -> None:
        """Move the clock forward, running due timers in order."""
        target = round(self.now + seconds, 9)
        while True:
            due = [t for t in self._timers if not t.cancelled and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.when, t.seq))
            self._timers.remove(timer)
            self.now = timer.when
            timer.run()
        self._timers = [t for t in self._timers if not t.cancelled]
        self.now = target

    @property
    def pending(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)


@pytest.fixture
def fake_loop() -> FakeLoop:
    return FakeLoop()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def cache() -> QueryCache:
    return QueryCache()


@pytest.fixture
def invalidated(cache: QueryCache) -> list[tuple]:
    """Records every prefix the cache is asked to invalidate."""
    seen: list[tuple] = []
    cache.on_invalidate(seen.append)
    return seen


@pytest.fixture
def registry(transport: InMemoryTransport, cache: QueryCache, fake_loop: FakeLoop) -> ChannelRegistry:
    return ChannelRegistry(transport, cache, loop=fake_loop)

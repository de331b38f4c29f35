"""
Invalidation Batcher

Per-topic leading-edge rate limiter. The first notify() while idle arms a
timer for ``window`` seconds; notify() calls while the timer is armed are
dropped (they do not reset or extend it). When the timer fires the batcher
calls ``on_fire`` once and goes idle again.

So each burst produces one invalidation, at most ``window`` seconds after
its first event, and a topic never invalidates more than once per window.

    t=0.0  notify()  -> arms timer (fires at t=2.0)
    t=0.3  notify()  -> dropped
    t=0.9  notify()  -> dropped
    t=2.0  on_fire()
    t=2.1  notify()  -> arms a new timer (fires at t=4.1)
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class InvalidationBatcher:
    """
    Args:
        topic:   Topic name, for logging.
        on_fire: Called once per fired window.
        window:  Seconds between the first event of a burst and on_fire.
        loop:    Event loop used for timers; defaults to the running loop.
    """

    __slots__ = ("_topic", "_on_fire", "_window", "_loop", "_handle", "_closed", "fired_count")

    def __init__(
        self,
        topic: str,
        on_fire: Callable[[], None],
        window: float,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        if window < 0:
            raise ValueError("window must be >= 0")
        self._topic = topic
        self._on_fire = on_fire
        self._window = window
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._closed = False
        self.fired_count = 0

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def window(self) -> float:
        return self._window

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def notify(self) -> bool:
        """
        Record one change event.

        Returns True if this call armed the timer, False if it was dropped.
        """
        if self._closed or self._handle is not None:
            return False
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(self._window, self._fire)
        logger.debug("Batcher '%s' armed for %.3fs", self._topic, self._window)
        return True

    def cancel(self) -> None:
        """Drop any armed timer and refuse further notifications. Idempotent."""
        self._closed = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            logger.debug("Batcher '%s' cancelled pending invalidation", self._topic)

    def _fire(self) -> None:
        self._handle = None
        if self._closed:
            return
        self.fired_count += 1
        logger.debug("Batcher '%s' firing invalidation #%d", self._topic, self.fired_count)
        try:
            self._on_fire()
        except Exception:
            logger.exception("Invalidation for topic '%s' failed", self._topic)

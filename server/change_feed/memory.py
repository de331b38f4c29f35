"""
In-Memory Transport

Synchronous, zero-network implementation of the Transport protocol for
local development and tests. publish() delivers an event to every open
subscription on the event's table whose filter matches, in subscription
order, before returning.

    transport = InMemoryTransport()
    handle = transport.subscribe("tasks", on_event)
    transport.publish(ChangeEvent("tasks", Operation.INSERT, {"id": 1}))
    transport.unsubscribe(handle)
"""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Optional

from .events import ChangeEvent, EventFilter
from .interface import DisconnectHandler, EventHandler

logger = logging.getLogger(__name__)


class MemorySubscription:
    """Handle for one in-memory subscription."""

    __slots__ = ("_topic", "table", "handler", "event_filter", "on_disconnect", "_closed")

    def __init__(
        self,
        topic: str,
        table: str,
        handler: EventHandler,
        event_filter: Optional[EventFilter],
        on_disconnect: Optional[DisconnectHandler],
    ) -> None:
        self._topic = topic
        self.table = table
        self.handler = handler
        self.event_filter = event_filter
        self.on_disconnect = on_disconnect
        self._closed = False

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<MemorySubscription topic={self._topic!r} {state}>"


class InMemoryTransport:
    """
    In-memory Transport with per-table subscriber lists.

    - subscribe/unsubscribe are O(1) amortised list/dict ops.
    - publish fans out synchronously to matching open subscriptions.
    - disconnect() simulates the server dropping a subscription.
    """

    def __init__(self) -> None:
        self._subs: dict[str, list[MemorySubscription]] = defaultdict(list)
        self.subscribe_calls = 0
        self.unsubscribe_calls = 0

    def subscribe(
        self,
        topic: str,
        handler: EventHandler,
        *,
        event_filter: Optional[EventFilter] = None,
        on_disconnect: Optional[DisconnectHandler] = None,
    ) -> MemorySubscription:
        table = event_filter.table if event_filter is not None else topic
        sub = MemorySubscription(topic, table, handler, event_filter, on_disconnect)
        self._subs[table].append(sub)
        self.subscribe_calls += 1
        logger.debug("InMemoryTransport subscribed topic '%s' on table '%s'", topic, table)
        return sub

    def unsubscribe(self, handle: MemorySubscription) -> None:
        if handle.closed:
            return
        handle._closed = True
        self.unsubscribe_calls += 1
        self._remove(handle)
        logger.debug("InMemoryTransport unsubscribed topic '%s'", handle.topic)

    def publish(self, event: ChangeEvent) -> int:
        """
        Deliver *event* to every matching open subscription.

        Returns the number of handlers invoked.
        """
        delivered = 0
        for sub in list(self._subs.get(event.table, ())):
            if sub.closed:
                continue
            if sub.event_filter is not None and not sub.event_filter.matches(event):
                continue
            delivered += 1
            try:
                sub.handler(event)
            except Exception:
                logger.exception("Handler for topic '%s' failed", sub.topic)
        return delivered

    def disconnect(self, handle: MemorySubscription) -> None:
        """Drop *handle* as if the server closed it, then report it."""
        if handle.closed:
            return
        handle._closed = True
        self._remove(handle)
        logger.info("InMemoryTransport dropped topic '%s'", handle.topic)
        if handle.on_disconnect is not None:
            handle.on_disconnect(handle)

    def _remove(self, handle: MemorySubscription) -> None:
        try:
            self._subs[handle.table].remove(handle)
            if not self._subs[handle.table]:
                del self._subs[handle.table]
        except (ValueError, KeyError):
            pass

    # ── Introspection (for tests) ─────────────────────────────────────────────

    def open_subscriptions(self, topic: Optional[str] = None) -> list[MemorySubscription]:
        subs = [s for bucket in self._subs.values() for s in bucket]
        if topic is not None:
            subs = [s for s in subs if s.topic == topic]
        return subs

    @property
    def subscription_count(self) -> int:
        return sum(len(subs) for subs in self._subs.values())

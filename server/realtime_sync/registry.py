"""
Channel Registry

Owns at most one live transport subscription per topic and shares it
between every consumer that wants the topic. Each acquire() returns a
Lease; the subscription is closed when the last Lease is released.

    registry = ChannelRegistry(transport, cache)
    lease = registry.acquire("tasks")     # opens the "tasks" subscription
    other = registry.acquire("tasks")     # shares it (ref_count == 2)
    registry.release(lease)
    registry.release(other)               # closes it, cancels pending timers

All bookkeeping is synchronous, so it is consistent after every call even
when the transport finishes opening later. Misuse (double release, release
of an unknown lease) is logged and counted, never raised.

A transport disconnect marks the channel stale. The registry does not
retry; the next acquire() of the topic re-opens the subscription.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Optional

from change_feed import ChangeEvent, SubscriptionHandle, Transport

from .batcher import InvalidationBatcher
from .cache import QueryCache
from .patcher import OptimisticPatcher
from .topics import TopicCatalog, TopicSpec, default_catalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lease:
    """A consumer's claim on one topic's channel."""

    topic: str
    owner_id: str
    lease_id: int


@dataclass
class RegistryStats:
    subscriptions_opened: int = 0
    subscriptions_closed: int = 0
    events_received: int = 0
    events_dropped: int = 0
    invalidations_fired: int = 0
    optimistic_patches: int = 0
    disconnects: int = 0
    misuse_count: int = 0


class Channel:
    """Shared, refcounted subscription state for one topic."""

    def __init__(
        self,
        spec: TopicSpec,
        batcher: InvalidationBatcher,
        patcher: Optional[OptimisticPatcher],
    ) -> None:
        self.spec = spec
        self.batcher = batcher
        self.patcher = patcher
        self.ref_count = 0
        self.handle: Optional[SubscriptionHandle] = None
        self.stale = False
        self.closed = False

    @property
    def topic(self) -> str:
        return self.spec.topic

    def __repr__(self) -> str:
        return (
            f"<Channel topic={self.topic!r} ref_count={self.ref_count} "
            f"open={self.handle is not None} stale={self.stale}>"
        )


class ChannelRegistry:
    """
    Args:
        transport:  Push transport used to open one subscription per topic.
        cache:      Cache invalidated (and optimistically patched) on events.
        catalog:    Topic catalog; defaults to default_catalog().
        loop:       Event loop for timers; defaults to the running loop.
        optimistic: Set False to route every event through invalidation only.
    """

    def __init__(
        self,
        transport: Transport,
        cache: QueryCache,
        catalog: Optional[TopicCatalog] = None,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        optimistic: bool = True,
    ) -> None:
        self._transport = transport
        self._cache = cache
        self._catalog = catalog or default_catalog()
        self._loop = loop
        self._optimistic = optimistic
        self._channels: dict[str, Channel] = {}
        self._leases: dict[int, Lease] = {}
        self._lease_ids = itertools.count(1)
        self.stats = RegistryStats()

    # ── Public API ────────────────────────────────────────────────────────────

    def acquire(self, topic: str, owner_id: Optional[str] = None) -> Lease:
        """
        Join (or create) the channel for *topic* and return a new Lease.

        Raises UnknownTopicError if the catalog cannot resolve *topic*.
        """
        channel = self._channels.get(topic)
        if channel is None:
            channel = self._create(self._catalog.resolve(topic))
            self._channels[topic] = channel

        if channel.handle is None or channel.stale:
            try:
                self._open(channel)
            except Exception:
                if channel.ref_count == 0:
                    self._teardown(channel)
                raise

        channel.ref_count += 1
        lease_id = next(self._lease_ids)
        lease = Lease(topic=topic, owner_id=owner_id or f"consumer-{lease_id}", lease_id=lease_id)
        self._leases[lease_id] = lease
        logger.debug(
            "Lease %d acquired on '%s' by %s (ref_count=%d)",
            lease_id,
            topic,
            lease.owner_id,
            channel.ref_count,
        )
        return lease

    def release(self, lease: Lease) -> bool:
        """
        Give back *lease*. Closes the channel when it was the last one.

        Returns False (and logs a warning) if the lease is not active.
        """
        if self._leases.get(lease.lease_id) is not lease:
            self._misuse("release of inactive lease", lease)
            return False

        channel = self._channels.get(lease.topic)
        if channel is None or channel.ref_count <= 0:
            del self._leases[lease.lease_id]
            self._misuse("release on a torn-down channel", lease)
            return False

        del self._leases[lease.lease_id]
        channel.ref_count -= 1
        logger.debug(
            "Lease %d released on '%s' by %s (ref_count=%d)",
            lease.lease_id,
            lease.topic,
            lease.owner_id,
            channel.ref_count,
        )
        if channel.ref_count == 0:
            self._teardown(channel)
        return True

    def close(self) -> None:
        """Tear down every channel and forget every lease."""
        for channel in list(self._channels.values()):
            self._teardown(channel)
        self._leases.clear()
        logger.info("ChannelRegistry closed")

    # ── Introspection ─────────────────────────────────────────────────────────

    def channel(self, topic: str) -> Optional[Channel]:
        return self._channels.get(topic)

    def ref_count(self, topic: str) -> int:
        channel = self._channels.get(topic)
        return channel.ref_count if channel is not None else 0

    def is_active(self, lease: Lease) -> bool:
        return self._leases.get(lease.lease_id) is lease

    @property
    def topics(self) -> list[str]:
        return list(self._channels)

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    # ── Channel lifecycle ─────────────────────────────────────────────────────

    def _create(self, spec: TopicSpec) -> Channel:
        channel: Channel
        batcher = InvalidationBatcher(
            spec.topic,
            lambda: self._invalidate(channel),
            spec.window,
            loop=self._loop,
        )
        channel = Channel(spec, batcher, None)
        if self._optimistic and spec.optimistic is not None:
            channel.patcher = OptimisticPatcher(
                self._cache,
                spec.optimistic,
                batcher.notify,
                loop=self._loop,
            )
        return channel

    def _open(self, channel: Channel) -> None:
        handle: Optional[SubscriptionHandle] = None

        def _on_event(event: ChangeEvent) -> None:
            self._dispatch(channel, handle, event)

        def _on_disconnect(dropped: SubscriptionHandle) -> None:
            self._disconnected(channel, dropped)

        handle = self._transport.subscribe(
            channel.topic,
            _on_event,
            event_filter=channel.spec.event_filter,
            on_disconnect=_on_disconnect,
        )
        if channel.handle is not None:
            # Stale handle left behind by a disconnect
            self._transport.unsubscribe(channel.handle)
            self.stats.subscriptions_closed += 1
        channel.handle = handle
        channel.stale = False
        self.stats.subscriptions_opened += 1
        logger.info("Opened realtime channel '%s'", channel.topic)

    def _teardown(self, channel: Channel) -> None:
        channel.closed = True
        channel.ref_count = 0
        channel.batcher.cancel()
        if channel.patcher is not None:
            channel.patcher.cancel()
        if channel.handle is not None:
            self._transport.unsubscribe(channel.handle)
            channel.handle = None
            self.stats.subscriptions_closed += 1
        if self._channels.get(channel.topic) is channel:
            del self._channels[channel.topic]
        logger.info("Closed realtime channel '%s'", channel.topic)

    # ── Event path ────────────────────────────────────────────────────────────

    def _dispatch(
        self,
        channel: Channel,
        handle: Optional[SubscriptionHandle],
        event: ChangeEvent,
    ) -> None:
        if channel.closed or handle is None or handle is not channel.handle:
            self.stats.events_dropped += 1
            logger.debug("Dropped %s event for closed channel '%s'", event.operation.value, channel.topic)
            return

        self.stats.events_received += 1
        if channel.patcher is not None and channel.patcher.apply(event):
            self.stats.optimistic_patches += 1
            return
        channel.batcher.notify()

    def _invalidate(self, channel: Channel) -> None:
        if channel.closed:
            return
        self.stats.invalidations_fired += 1
        for key in channel.spec.invalidate_keys:
            self._cache.invalidate(key)

    def _disconnected(self, channel: Channel, handle: SubscriptionHandle) -> None:
        if channel.closed or handle is not channel.handle:
            return
        channel.stale = True
        self.stats.disconnects += 1
        logger.warning(
            "Realtime channel '%s' disconnected; data may be stale until it is re-acquired",
            channel.topic,
        )

    def _misuse(self, what: str, lease: Lease) -> None:
        self.stats.misuse_count += 1
        logger.warning(
            "Ignoring %s: lease %d on '%s' (owner %s)",
            what,
            lease.lease_id,
            lease.topic,
            lease.owner_id,
        )

"""
Redis Transport

Client-side half of the change feed. Each subscribe() call returns a
RedisSubscription handle straight away and spawns one reader task that
subscribes to the table's Redis channel, decodes envelopes, applies the
row filter and hands matching events to the caller's handler.

Usage:
    transport = RedisTransport(redis_url="redis://localhost:6379/0")

    handle = transport.subscribe(
        "notifications:42",
        on_event,
        event_filter=EventFilter.parse("notifications", "user_id=eq.42"),
    )
    ...
    transport.unsubscribe(handle)
    await transport.aclose()

A broken Redis connection ends the reader task and is reported once through
the on_disconnect callback. The transport never reconnects by itself.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .events import ChangeEvent, EventFilter
from .interface import DisconnectHandler, EventHandler
from .publisher import DEFAULT_CHANNEL_PREFIX, channel_for_table
from .serializer import SerializationError, deserialize

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Raised when a transport operation cannot be performed."""


class RedisSubscription:
    """Handle for one live Redis-backed subscription."""

    def __init__(
        self,
        topic: str,
        channel: str,
        handler: EventHandler,
        event_filter: Optional[EventFilter],
        on_disconnect: Optional[DisconnectHandler],
    ) -> None:
        self._topic = topic
        self._channel = channel
        self._handler = handler
        self._filter = event_filter
        self._on_disconnect = on_disconnect
        self._closed = False
        self._task: asyncio.Task[None] | None = None
        self.opened = asyncio.Event()
        self.events_delivered = 0

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def channel(self) -> str:
        return self._channel

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: ChangeEvent) -> bool:
        """Hand *event* to the handler if it passes the filter."""
        if self._closed:
            return False
        if self._filter is not None and not self._filter.matches(event):
            return False
        self.events_delivered += 1
        try:
            self._handler(event)
        except Exception:
            logger.exception("Handler for topic '%s' failed on %s event", self._topic, event.operation.value)
        return True

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<RedisSubscription topic={self._topic!r} channel={self._channel!r} {state}>"


class RedisTransport:
    """
    Transport implementation over Redis pub/sub.

    Args:
        redis_url:      Redis connection URL.
        channel_prefix: Prefix of per-table change channels.
        poll_interval:  Seconds each reader waits on get_message() per poll.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        channel_prefix: str = DEFAULT_CHANNEL_PREFIX,
        poll_interval: float = 0.1,
    ) -> None:
        self._redis_url = redis_url
        self._channel_prefix = channel_prefix
        self._poll_interval = poll_interval
        self._redis: Redis | None = None
        self._subscriptions: set[RedisSubscription] = set()

    def _client(self) -> Redis:
        if self._redis is None:
            self._redis = Redis.from_url(self._redis_url, decode_responses=False)
        return self._redis

    # ── Transport protocol ────────────────────────────────────────────────────

    def subscribe(
        self,
        topic: str,
        handler: EventHandler,
        *,
        event_filter: Optional[EventFilter] = None,
        on_disconnect: Optional[DisconnectHandler] = None,
    ) -> RedisSubscription:
        """
        Open a subscription for *topic*. Must be called from a running loop.

        Without a filter the topic name is taken as the table name.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise TransportError("RedisTransport.subscribe() requires a running event loop") from exc

        table = event_filter.table if event_filter is not None else topic
        sub = RedisSubscription(
            topic=topic,
            channel=channel_for_table(table, self._channel_prefix),
            handler=handler,
            event_filter=event_filter,
            on_disconnect=on_disconnect,
        )
        # aclose() must see the client even if no reader has started
        client = self._client()
        sub._task = loop.create_task(self._run(sub, client), name=f"redis-transport:{topic}")
        self._subscriptions.add(sub)
        logger.debug("RedisTransport opening '%s' for topic '%s'", sub.channel, topic)
        return sub

    def unsubscribe(self, handle: RedisSubscription) -> None:
        if handle.closed:
            return
        handle._closed = True
        self._subscriptions.discard(handle)
        if handle._task is not None and not handle._task.done():
            handle._task.cancel()
        logger.debug("RedisTransport closing '%s' for topic '%s'", handle.channel, handle.topic)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        """Cancel every reader and close the Redis connection."""
        tasks = [s._task for s in self._subscriptions if s._task is not None]
        for sub in list(self._subscriptions):
            self.unsubscribe(sub)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        logger.info("RedisTransport closed")

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    # ── Reader ────────────────────────────────────────────────────────────────

    async def _run(self, sub: RedisSubscription, client: Redis) -> None:
        pubsub = client.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(sub.channel)
            sub.opened.set()
            logger.info("RedisTransport subscribed to '%s' for topic '%s'", sub.channel, sub.topic)

            while not sub.closed:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self._poll_interval,
                )
                if message is None:
                    # Yield to the event loop briefly before polling again
                    await asyncio.sleep(0)
                    continue

                if message.get("type") != "message":
                    continue

                raw = message.get("data")
                if raw is None:
                    continue

                try:
                    event = deserialize(raw)
                except SerializationError as exc:
                    logger.warning("Skipping undecodable message on '%s': %s", sub.channel, exc)
                    continue

                sub.deliver(event)

        except RedisError as exc:
            if not sub.closed:
                logger.warning(
                    "RedisTransport lost '%s' for topic '%s': %s",
                    sub.channel,
                    sub.topic,
                    exc,
                )
                sub._closed = True
                self._subscriptions.discard(sub)
                if sub._on_disconnect is not None:
                    sub._on_disconnect(sub)
        finally:
            try:
                await pubsub.unsubscribe()
                await pubsub.aclose()
            except RedisError as exc:
                logger.debug("Ignoring error while closing '%s': %s", sub.channel, exc)

"""
Change Publisher

Server-side half of the change feed: publishes ChangeEvents to the Redis
pub/sub channel for their table (``changes:<table>`` by default).

Usage:
    publisher = ChangePublisher(redis_url="redis://localhost:6379/0")
    await publisher.connect()

    await publisher.publish(ChangeEvent("tasks", Operation.UPDATE, {"id": 7}))

    await publisher.close()

Context manager usage:
    async with ChangePublisher(redis_url=...) as pub:
        await pub.publish(event)
"""
from __future__ import annotations

import logging
from typing import Iterable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .events import ChangeEvent
from .serializer import serialize

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_PREFIX = "changes:"


class PublisherError(Exception):
    """Raised when a publish operation fails."""


def channel_for_table(table: str, prefix: str = DEFAULT_CHANNEL_PREFIX) -> str:
    """Redis channel name carrying changes for *table*."""
    return f"{prefix}{table}"


class ChangePublisher:
    """Publishes ChangeEvents to per-table Redis pub/sub channels."""

    def __init__(self, redis_url: str, *, channel_prefix: str = DEFAULT_CHANNEL_PREFIX) -> None:
        self._redis_url = redis_url
        self._channel_prefix = channel_prefix
        self._redis: Redis | None = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the Redis connection."""
        self._redis = Redis.from_url(self._redis_url, decode_responses=False)
        try:
            await self._redis.ping()
            logger.info("ChangePublisher connected to Redis at %s", self._redis_url)
        except RedisError as exc:
            raise PublisherError(f"Cannot connect to Redis: {exc}") from exc

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("ChangePublisher disconnected from Redis")

    async def __aenter__(self) -> ChangePublisher:
        await self.connect()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    # ── Publish ───────────────────────────────────────────────────────────────

    async def publish(self, event: ChangeEvent) -> int:
        """
        Publish one change event to its table channel.

        Returns:
            Number of subscribers that received the message.

        Raises:
            PublisherError: If not connected or Redis returns an error.
            SerializationError: If the record cannot be serialized.
        """
        if self._redis is None:
            raise PublisherError("ChangePublisher is not connected — call connect() first")

        channel = channel_for_table(event.table, self._channel_prefix)
        payload = serialize(event)
        try:
            deliveries: int = await self._redis.publish(channel, payload)
        except RedisError as exc:
            raise PublisherError(f"Redis publish failed on channel '{channel}'") from exc

        logger.debug(
            "Published %s on '%s', reached %d subscriber(s)",
            event.operation.value,
            channel,
            deliveries,
        )
        return deliveries

    async def publish_many(self, events: Iterable[ChangeEvent]) -> int:
        """
        Publish several change events in order.

        Returns the total subscriber delivery count.
        """
        if self._redis is None:
            raise PublisherError("ChangePublisher is not connected — call connect() first")

        total = 0
        count = 0
        for event in events:
            total += await self.publish(event)
            count += 1

        logger.debug("Published %d event(s), reached %d subscriber(s) total", count, total)
        return total

"""
Realtime Sync Service Entry Point

Composition root: builds the one ChannelRegistry for the process, wires it
to the Redis change transport and the shared QueryCache, holds a live
subscription for every requested topic and logs every cache invalidation
and optimistic write.

Usage (from server/):
    python -m realtime_sync.main --topic tasks --topic notifications:42
    python -m realtime_sync.main --topic tasks --mock     # also run the mock feed
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Any

from dotenv import load_dotenv

load_dotenv(".env")

logger = logging.getLogger("realtime_sync")


async def main(topics: list[str], *, use_mock: bool = False) -> None:
    """
    1. Connects the Redis change transport
    2. Builds the cache and the channel registry
    3. Mounts one live subscription per topic
    4. Logs cache invalidations and writes until SIGINT/SIGTERM
    5. Unmounts, closes the registry and the transport
    """
    from change_feed import ChangePublisher, RedisTransport
    from realtime_sync.cache import QueryCache
    from realtime_sync.config import CHANGE_CHANNEL_PREFIX, load_settings
    from realtime_sync.lease import LiveSubscription
    from realtime_sync.mock_feed import run_mock_feed
    from realtime_sync.registry import ChannelRegistry

    settings = load_settings()
    logging.getLogger().setLevel(settings.logging.level)

    transport = RedisTransport(
        settings.redis.url,
        channel_prefix=CHANGE_CHANNEL_PREFIX,
        poll_interval=settings.redis.poll_interval,
    )
    cache = QueryCache()
    registry = ChannelRegistry(transport, cache)

    write_count = 0

    def on_cache_write(key: tuple[Any, ...], value: Any) -> None:
        nonlocal write_count
        write_count += 1
        size = len(value) if isinstance(value, list) else None
        logger.info(
            "Cache write %s%s",
            key,
            f" ({size} item(s))" if size is not None else "",
            extra={"cache_key": key, "write_count": write_count},
        )

    invalidation_count = 0

    def on_invalidate(prefix: tuple[Any, ...]) -> None:
        nonlocal invalidation_count
        invalidation_count += 1
        logger.info("Invalidated %s", prefix, extra={"invalidation_count": invalidation_count})

    cache.subscribe(on_cache_write)
    cache.on_invalidate(on_invalidate)

    subscriptions = [LiveSubscription(registry, topic, owner_id="realtime-sync-main") for topic in topics]
    for sub in subscriptions:
        sub.mount()
    logger.info("Holding %d realtime topic(s): %s", len(topics), ", ".join(topics))

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Shutdown signal received")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    mock_task: asyncio.Task[int] | None = None
    publisher: ChangePublisher | None = None
    if use_mock:
        publisher = ChangePublisher(settings.redis.url, channel_prefix=CHANGE_CHANNEL_PREFIX)
        await publisher.connect()
        user_ids = [t.partition(":")[2] for t in topics if ":" in t] or ["42"]
        mock_task = asyncio.create_task(
            run_mock_feed(publisher.publish, user_ids=user_ids, shutdown=shutdown_event)
        )

    try:
        await shutdown_event.wait()
    finally:
        logger.info("Shutting down...")

        if mock_task is not None:
            await mock_task
        if publisher is not None:
            await publisher.close()

        for sub in subscriptions:
            sub.unmount()
        registry.close()
        await cache.drain()
        await transport.aclose()

        stats = registry.stats
        logger.info(
            "Final stats",
            extra={
                "events_received": stats.events_received,
                "invalidations_fired": stats.invalidations_fired,
                "optimistic_patches": stats.optimistic_patches,
                "disconnects": stats.disconnects,
                "cache_writes": write_count,
                "cache_invalidations": invalidation_count,
            },
        )


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--topic", action="append", dest="topics", required=True,
                        help="Realtime topic to hold (repeatable)")
    parser.add_argument("--mock", action="store_true", help="Publish mock change events as well")
    args = parser.parse_args()

    asyncio.run(main(args.topics, use_mock=args.mock))

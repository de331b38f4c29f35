#!/usr/bin/env python3
"""
Realtime sync integration smoke test.

Wires one ChangePublisher, one RedisTransport and one ChannelRegistry
together, mounts three consumers on "tasks" and one on "notifications:42",
then replays the reference burst:

  t=0.0s   task UPDATE
  t=0.3s   task UPDATE
  t=0.9s   task INSERT
  t=1.0s   notification INSERT for user 42 (and the same event replayed)

Demonstrates:
  - Channel sharing: three consumers, one Redis subscription.
  - Coalescing: three task events, one "tasks" invalidation at ~2.0s.
  - Optimistic merge: the notification shows up at once, exactly once.
  - Teardown: after every consumer unmounts no subscription is left open.

Two modes:

  --fake   In-process fakeredis (no external server needed).

  Live Redis (default):
    On Fedora/Linux with podman:   podman run --rm -p 6379:6379 redis
    With Docker:                   docker run --rm -p 6379:6379 redis

Usage (from server/):
    python integration_test_realtime.py --fake
    python integration_test_realtime.py --redis-url redis://localhost:6379/0
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any
from unittest.mock import patch

from change_feed import ChangeEvent, ChangePublisher, Operation, RedisTransport
from realtime_sync.cache import QueryCache
from realtime_sync.lease import LiveSubscription
from realtime_sync.registry import ChannelRegistry


# ── Optional fakeredis support ────────────────────────────────────────────────

def _build_fake_redis_factory():
    """
    Return a class whose from_url() hands out async FakeRedis instances that
    all share one in-process FakeServer (so pub/sub messages are propagated).

    Supports fakeredis >= 2.0 (redis-py async API).
    """
    try:
        from fakeredis import FakeServer
        from fakeredis.asyncio import FakeRedis  # fakeredis >= 2.0
    except ImportError as exc:
        print(_c(RED, f"fakeredis not installed: {exc}"))
        print(_c(DIM, "  pip install fakeredis>=2.0"))
        sys.exit(1)

    server = FakeServer()

    class _Factory:
        @classmethod
        def from_url(cls, url: str, **kwargs: Any):
            return FakeRedis(server=server, **kwargs)

    return _Factory


# ── ANSI colours (degrade gracefully if terminal doesn't support them) ────────

RESET = "\033[0m"
BOLD = "\033[1m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
CYAN = "\033[36m"
RED = "\033[31m"
DIM = "\033[2m"


def _c(code: str, text: str) -> str:
    return f"{code}{text}{RESET}"


# ── Scripted burst ────────────────────────────────────────────────────────────

NOTIFICATION = ChangeEvent(
    "notifications",
    Operation.INSERT,
    {"id": "n-1", "user_id": "42", "message": "Client requested a revision", "is_read": False},
)

BURST: list[tuple[float, ChangeEvent]] = [
    (0.0, ChangeEvent("tasks", Operation.UPDATE, {"id": "t-1", "status": "review"})),
    (0.3, ChangeEvent("tasks", Operation.UPDATE, {"id": "t-2", "status": "done"})),
    (0.9, ChangeEvent("tasks", Operation.INSERT, {"id": "t-3", "status": "new"})),
    (1.0, NOTIFICATION),
    (1.0, NOTIFICATION),
]


async def _wait_open(transport: RedisTransport, registry: ChannelRegistry, topics: list[str]) -> None:
    for topic in topics:
        channel = registry.channel(topic)
        assert channel is not None and channel.handle is not None
        await asyncio.wait_for(channel.handle.opened.wait(), timeout=5.0)


# ── Main ──────────────────────────────────────────────────────────────────────

async def main(redis_url: str, fake: bool) -> bool:
    print()
    print(_c(BOLD, "=== realtime sync integration smoke test ==="))
    mode = "in-process fakeredis" if fake else redis_url
    print(_c(DIM, f"Redis: {mode}"))
    print()

    transport = RedisTransport(redis_url, poll_interval=0.02)
    cache = QueryCache()
    registry = ChannelRegistry(transport, cache)

    invalidations: list[tuple[float, tuple[Any, ...]]] = []
    loop = asyncio.get_running_loop()
    start = loop.time()
    cache.on_invalidate(lambda prefix: invalidations.append((loop.time() - start, prefix)))

    consumers = [
        LiveSubscription(registry, "tasks", owner_id="kanban-board"),
        LiveSubscription(registry, "tasks", owner_id="admin-dashboard"),
        LiveSubscription(registry, "tasks", owner_id="recent-tasks"),
        LiveSubscription(registry, "notifications:42", owner_id="notification-bell"),
    ]
    for consumer in consumers:
        consumer.mount()
    await _wait_open(transport, registry, ["tasks", "notifications:42"])

    print(_c(BOLD, "Channels:"))
    for topic in registry.topics:
        print(f"  {_c(CYAN, topic):<32} ref_count={registry.ref_count(topic)}")
    print(f"  Redis subscriptions open: {transport.subscription_count}")
    print()

    print(_c(BOLD, "Publishing:"))
    start = loop.time()
    async with ChangePublisher(redis_url=redis_url) as pub:
        for at, event in BURST:
            await asyncio.sleep(max(0.0, at - (loop.time() - start)))
            deliveries = await pub.publish(event)
            print(
                f"  t={loop.time() - start:4.2f}s  {event.table:<14} {event.operation.value:<7}"
                f" {event.record.get('id')}  → {deliveries} delivery(s)"
            )
    print()

    await asyncio.sleep(0.2)
    notifications = cache.read(("notifications", "42")) or []
    print(_c(BOLD, "Optimistic view of notifications:42 before reconciliation:"))
    for item in notifications:
        print(f"  {_c(YELLOW, item['id'])}  {item['message']}")
    print()

    # Past the 2s task window, before the 3s reconciliation delay
    await asyncio.sleep(max(0.0, 2.5 - (loop.time() - start)))

    for consumer in consumers:
        consumer.unmount()
    await asyncio.sleep(0.1)

    print(_c(BOLD, "Invalidations:"))
    for at, prefix in invalidations:
        print(f"  t={at:4.2f}s  {prefix}")
    print()

    stats = registry.stats
    print(_c(BOLD, "Registry stats:"))
    print(f"  {stats}")
    print(f"  Redis subscriptions open after unmount: {transport.subscription_count}")
    print()

    await transport.aclose()

    task_invalidations = [p for _, p in invalidations if p == ("tasks",)]
    checks = [
        ("one shared 'tasks' subscription", stats.subscriptions_opened == 2),
        ("one coalesced 'tasks' invalidation", len(task_invalidations) == 1),
        ("notification merged exactly once", [n["id"] for n in notifications] == ["n-1"]),
        ("no subscription left open", transport.subscription_count == 0 and registry.channel_count == 0),
    ]
    ok = True
    for label, passed in checks:
        ok = ok and passed
        mark = _c(GREEN, "ok  ") if passed else _c(RED, "FAIL")
        print(f"  {mark} {label}")
    print()
    print(_c(GREEN, _c(BOLD, "Done.")) if ok else _c(RED, _c(BOLD, "Failed.")))
    print()
    return ok


# ── Entry point ───────────────────────────────────────────────────────────────

async def _run(redis_url: str, fake: bool) -> bool:
    """Wrap main() with optional fakeredis patches."""
    if fake:
        factory = _build_fake_redis_factory()
        with (
            patch("change_feed.publisher.Redis", factory),
            patch("change_feed.transport.Redis", factory),
        ):
            return await main(redis_url=redis_url, fake=True)
    return await main(redis_url=redis_url, fake=False)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--redis-url",
        default="redis://localhost:6379/0",
        help="Redis connection URL (default: redis://localhost:6379/0)",
    )
    parser.add_argument(
        "--fake",
        action="store_true",
        help="Use in-process fakeredis instead of a live Redis server",
    )
    args = parser.parse_args()

    try:
        passed = asyncio.run(_run(redis_url=args.redis_url, fake=args.fake))
    except KeyboardInterrupt:
        passed = True
    except Exception as exc:
        print(_c(RED, f"\nFailed: {exc}"))
        if not args.fake:
            print(_c(DIM, "Tip: run with --fake for zero-dependency mode, or start Redis with:"))
            print(_c(DIM, "     podman run --rm -p 6379:6379 redis"))
        sys.exit(1)
    sys.exit(0 if passed else 1)

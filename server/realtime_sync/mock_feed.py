"""
Mock change feed for local runs when no database is pushing changes.

Generates realistic task, comment and notification changes and fires them
through a callback (or straight to Redis with ChangePublisher), so the
registry, batcher and optimistic path can be watched end to end.

Usage:
    python -m realtime_sync.mock_feed --user 42
    python -m realtime_sync.mock_feed --redis-url redis://localhost:6379/0 --count 50
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable

from dotenv import load_dotenv

from change_feed import ChangeEvent, ChangePublisher, Operation

from .config import load_settings

logger = logging.getLogger(__name__)

TASK_TITLES: list[str] = [
    "Edit reel for spring campaign",
    "Shoot product photos for client launch",
    "Write captions for weekly posts",
    "Review storyboard with account manager",
    "Color grade interview footage",
    "Prepare monthly performance report",
    "Design story templates",
    "Schedule photographer for Thursday shoot",
    "Apply client revision notes",
    "Export final cut in 4:5 and 9:16",
]

TASK_STATUSES = ["new", "in_progress", "review", "revision", "approved", "done"]

NOTIFICATION_MESSAGES: list[str] = [
    "A task was assigned to you",
    "Client requested a revision",
    "Your task was approved",
    "New comment on your task",
    "Schedule updated for tomorrow",
]

COMMENTS: list[str] = [
    "Looks great, one small tweak on the intro",
    "Can we use the brighter thumbnail?",
    "Approved from our side",
    "Please shorten to 30 seconds",
]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _task_event(user_ids: list[str]) -> ChangeEvent:
    operation = random.choices(
        [Operation.INSERT, Operation.UPDATE, Operation.DELETE], weights=[2, 6, 1]
    )[0]
    record = {
        "id": uuid.uuid4().hex[:12],
        "title": random.choice(TASK_TITLES),
        "status": random.choice(TASK_STATUSES),
        "assigned_to": random.choice(user_ids),
        "updated_at": _now(),
    }
    if operation is Operation.DELETE:
        return ChangeEvent("tasks", operation, {}, old_record=record)
    return ChangeEvent("tasks", operation, record)


def _notification_event(user_ids: list[str]) -> ChangeEvent:
    return ChangeEvent(
        "notifications",
        Operation.INSERT,
        {
            "id": uuid.uuid4().hex[:12],
            "user_id": random.choice(user_ids),
            "message": random.choice(NOTIFICATION_MESSAGES),
            "is_read": False,
            "created_at": _now(),
        },
    )


def _comment_event(user_ids: list[str]) -> ChangeEvent:
    return ChangeEvent(
        "comments",
        Operation.INSERT,
        {
            "id": uuid.uuid4().hex[:12],
            "user_id": random.choice(user_ids),
            "content": random.choice(COMMENTS),
            "created_at": _now(),
        },
    )


def make_event(user_ids: list[str]) -> ChangeEvent:
    """One random change, weighted towards task churn."""
    factory = random.choices(
        [_task_event, _notification_event, _comment_event], weights=[6, 3, 1]
    )[0]
    return factory(user_ids)


async def run_mock_feed(
    callback: Callable[[ChangeEvent], Awaitable[object]],
    *,
    user_ids: list[str],
    interval_range: tuple[float, float] = (0.05, 1.5),
    count: int | None = None,
    shutdown: asyncio.Event | None = None,
) -> int:
    """Fire random changes through the callback at bursty intervals. Returns events sent."""
    sent = 0
    while shutdown is None or not shutdown.is_set():
        if count is not None and sent >= count:
            break
        await callback(make_event(user_ids))
        sent += 1

        delay = random.uniform(*interval_range)
        try:
            if shutdown:
                await asyncio.wait_for(shutdown.wait(), timeout=delay)
                break
            else:
                await asyncio.sleep(delay)
        except asyncio.TimeoutError:
            pass
    return sent


async def _publish(redis_url: str, user_ids: list[str], count: int | None) -> None:
    async with ChangePublisher(redis_url) as publisher:
        sent = await run_mock_feed(publisher.publish, user_ids=user_ids, count=count)
    logger.info("Mock feed published %d change event(s)", sent)


if __name__ == "__main__":
    load_dotenv(".env")
    settings = load_settings()
    logging.basicConfig(level=settings.logging.level, format=settings.logging.format)

    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--redis-url", default=settings.redis.url)
    parser.add_argument("--user", action="append", dest="users", default=None,
                        help="User id to generate changes for (repeatable, default: 42)")
    parser.add_argument("--count", type=int, default=None, help="Stop after N events")
    args = parser.parse_args()

    try:
        asyncio.run(_publish(args.redis_url, args.users or ["42"], args.count))
    except KeyboardInterrupt:
        pass

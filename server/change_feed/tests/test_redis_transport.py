"""
Tests for change_feed.transport

All Redis I/O is replaced with AsyncMock — no live Redis required.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import RedisError

from change_feed.events import ChangeEvent, EventFilter, Operation
from change_feed.serializer import serialize
from change_feed.transport import RedisTransport, TransportError


# ── Helpers ───────────────────────────────────────────────────────────────────

def _make_message(event: ChangeEvent, channel: str = "changes:notifications") -> dict:
    """Build a mock Redis pub/sub message dict."""
    return {
        "type": "message",
        "channel": channel.encode(),
        "data": serialize(event).encode(),
    }


def _notification(item_id: str, user_id: str = "42") -> ChangeEvent:
    return ChangeEvent("notifications", Operation.INSERT, {"id": item_id, "user_id": user_id})


async def _until(predicate, timeout: float = 1.0) -> None:
    """Poll *predicate* until it is true or fail after *timeout* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_redis_and_pubsub():
    """
    Patch change_feed.transport.Redis so that:
      - Redis.from_url() returns a mock Redis instance
      - instance.pubsub() returns a mock PubSub handle whose get_message()
        pops from a shared list (items may be exceptions to raise)
    Yields (mock_redis_instance, mock_pubsub, pending_messages).
    """
    with patch("change_feed.transport.Redis") as mock_cls:
        redis_instance = AsyncMock()
        pending: list = []

        async def get_message(**_kwargs):
            if pending:
                item = pending.pop(0)
                if isinstance(item, Exception):
                    raise item
                return item
            await asyncio.sleep(0.001)
            return None

        pubsub = AsyncMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.get_message = AsyncMock(side_effect=get_message)

        # pubsub() is synchronous in the real client, returns the PubSub object
        redis_instance.pubsub = MagicMock(return_value=pubsub)

        mock_cls.from_url.return_value = redis_instance
        yield redis_instance, pubsub, pending


# ── subscribe() ───────────────────────────────────────────────────────────────

def test_subscribe_without_running_loop_raises():
    transport = RedisTransport(redis_url="redis://localhost:6379/0")
    with pytest.raises(TransportError, match="running event loop"):
        transport.subscribe("tasks", lambda e: None)


async def test_subscribe_opens_table_channel(mock_redis_and_pubsub):
    _, pubsub, _ = mock_redis_and_pubsub
    transport = RedisTransport(redis_url="redis://localhost:6379/0")

    handle = transport.subscribe(
        "notifications:42",
        lambda e: None,
        event_filter=EventFilter.parse("notifications", "user_id=eq.42"),
    )
    await asyncio.wait_for(handle.opened.wait(), timeout=1.0)

    assert handle.channel == "changes:notifications"
    assert handle.topic == "notifications:42"
    pubsub.subscribe.assert_called_once_with("changes:notifications")
    await transport.aclose()


async def test_subscribe_without_filter_uses_topic_as_table(mock_redis_and_pubsub):
    transport = RedisTransport(redis_url="redis://localhost:6379/0", channel_prefix="db:")

    handle = transport.subscribe("tasks", lambda e: None)

    assert handle.channel == "db:tasks"
    await transport.aclose()


# ── delivery ──────────────────────────────────────────────────────────────────

async def test_delivers_only_matching_events(mock_redis_and_pubsub):
    _, _, pending = mock_redis_and_pubsub
    pending.extend([
        {"type": "subscribe", "channel": b"changes:notifications", "data": 1},
        _make_message(_notification("n-2", user_id="7")),
        {"type": "message", "channel": b"changes:notifications", "data": None},
        {"type": "message", "channel": b"changes:notifications", "data": b"not json"},
        _make_message(_notification("n-1")),
    ])
    received = []
    transport = RedisTransport(redis_url="redis://localhost:6379/0")
    transport.subscribe(
        "notifications:42",
        received.append,
        event_filter=EventFilter.parse("notifications", "user_id=eq.42"),
    )

    await _until(lambda: not pending)
    await _until(lambda: len(received) == 1)

    assert received[0].record == {"id": "n-1", "user_id": "42"}
    await transport.aclose()


async def test_failing_handler_keeps_reader_alive(mock_redis_and_pubsub, caplog):
    _, _, pending = mock_redis_and_pubsub
    pending.extend([_make_message(_notification("n-1")), _make_message(_notification("n-2"))])
    seen = []

    def handler(event):
        seen.append(event.record["id"])
        if len(seen) == 1:
            raise RuntimeError("consumer bug")

    transport = RedisTransport(redis_url="redis://localhost:6379/0")
    transport.subscribe("notifications", handler)

    await _until(lambda: len(seen) == 2)

    assert seen == ["n-1", "n-2"]
    assert "failed" in caplog.text
    await transport.aclose()


# ── disconnect ────────────────────────────────────────────────────────────────

async def test_redis_error_reports_disconnect_once(mock_redis_and_pubsub):
    _, pubsub, pending = mock_redis_and_pubsub
    pending.append(RedisError("connection reset"))
    dropped = []
    transport = RedisTransport(redis_url="redis://localhost:6379/0")

    handle = transport.subscribe("tasks", lambda e: None, on_disconnect=dropped.append)
    await _until(lambda: bool(dropped))
    await asyncio.sleep(0.01)

    assert dropped == [handle]
    assert handle.closed
    assert transport.subscription_count == 0
    pubsub.aclose.assert_called_once()
    await transport.aclose()


# ── unsubscribe() / aclose() ──────────────────────────────────────────────────

async def test_unsubscribe_cancels_reader_and_closes_pubsub(mock_redis_and_pubsub):
    _, pubsub, _ = mock_redis_and_pubsub
    dropped = []
    transport = RedisTransport(redis_url="redis://localhost:6379/0")
    handle = transport.subscribe("tasks", lambda e: None, on_disconnect=dropped.append)
    await asyncio.wait_for(handle.opened.wait(), timeout=1.0)

    transport.unsubscribe(handle)
    transport.unsubscribe(handle)
    await asyncio.gather(handle._task, return_exceptions=True)

    assert handle.closed
    assert transport.subscription_count == 0
    pubsub.unsubscribe.assert_called_once()
    pubsub.aclose.assert_called_once()
    assert dropped == []
    await transport.aclose()


async def test_unsubscribe_before_open_completes(mock_redis_and_pubsub):
    """Closing a handle before its reader ran must not leave a subscription behind."""
    _, pubsub, _ = mock_redis_and_pubsub
    transport = RedisTransport(redis_url="redis://localhost:6379/0")

    handle = transport.subscribe("tasks", lambda e: None)
    transport.unsubscribe(handle)
    await asyncio.gather(handle._task, return_exceptions=True)

    assert not handle.opened.is_set()
    assert transport.subscription_count == 0


async def test_aclose_stops_everything_and_closes_redis(mock_redis_and_pubsub):
    redis_instance, _, _ = mock_redis_and_pubsub
    transport = RedisTransport(redis_url="redis://localhost:6379/0")
    first = transport.subscribe("tasks", lambda e: None)
    second = transport.subscribe("comments", lambda e: None)
    await asyncio.wait_for(first.opened.wait(), timeout=1.0)
    await asyncio.wait_for(second.opened.wait(), timeout=1.0)

    await transport.aclose()

    assert first.closed and second.closed
    assert transport.subscription_count == 0
    redis_instance.aclose.assert_called_once()


async def test_aclose_before_readers_start_still_closes_client(mock_redis_and_pubsub):
    """Readers cancelled before their first step never touch pub/sub, but the client is closed."""
    redis_instance, _, _ = mock_redis_and_pubsub
    transport = RedisTransport(redis_url="redis://localhost:6379/0")
    transport.subscribe("tasks", lambda e: None)
    transport.subscribe("comments", lambda e: None)

    await transport.aclose()

    redis_instance.pubsub.assert_not_called()
    redis_instance.aclose.assert_called_once()

"""
Tests for change_feed.memory
"""
from change_feed.events import ChangeEvent, EventFilter, Operation
from change_feed.interface import SubscriptionHandle, Transport
from change_feed.memory import InMemoryTransport


def _insert(table: str, **record) -> ChangeEvent:
    return ChangeEvent(table, Operation.INSERT, record)


def test_satisfies_transport_protocol():
    transport = InMemoryTransport()
    handle = transport.subscribe("tasks", lambda e: None)

    assert isinstance(transport, Transport)
    assert isinstance(handle, SubscriptionHandle)


def test_publish_delivers_to_table_subscribers():
    transport = InMemoryTransport()
    received = []
    transport.subscribe("tasks", received.append)

    delivered = transport.publish(_insert("tasks", id="t-1"))
    transport.publish(_insert("comments", id="c-1"))

    assert delivered == 1
    assert [e.record["id"] for e in received] == ["t-1"]


def test_filter_narrows_delivery():
    transport = InMemoryTransport()
    received = []
    transport.subscribe(
        "notifications:42",
        received.append,
        event_filter=EventFilter.parse("notifications", "user_id=eq.42"),
    )

    transport.publish(_insert("notifications", id="n-1", user_id="42"))
    transport.publish(_insert("notifications", id="n-2", user_id="7"))

    assert [e.record["id"] for e in received] == ["n-1"]


def test_unsubscribe_stops_delivery_and_is_idempotent():
    transport = InMemoryTransport()
    received = []
    handle = transport.subscribe("tasks", received.append)

    transport.unsubscribe(handle)
    transport.unsubscribe(handle)
    transport.publish(_insert("tasks", id="t-1"))

    assert handle.closed
    assert received == []
    assert transport.unsubscribe_calls == 1
    assert transport.subscription_count == 0


def test_failing_handler_does_not_block_others(caplog):
    transport = InMemoryTransport()
    received = []

    def boom(event):
        raise RuntimeError("handler blew up")

    transport.subscribe("tasks", boom)
    transport.subscribe("tasks", received.append)

    transport.publish(_insert("tasks", id="t-1"))

    assert len(received) == 1
    assert "failed" in caplog.text


def test_disconnect_reports_once_and_stops_delivery():
    transport = InMemoryTransport()
    dropped = []
    received = []
    handle = transport.subscribe("tasks", received.append, on_disconnect=dropped.append)

    transport.disconnect(handle)
    transport.disconnect(handle)
    transport.publish(_insert("tasks", id="t-1"))

    assert dropped == [handle]
    assert received == []
    assert transport.open_subscriptions() == []


def test_open_subscriptions_by_topic():
    transport = InMemoryTransport()
    transport.subscribe("tasks", lambda e: None)
    transport.subscribe("tasks:u1", lambda e: None, event_filter=EventFilter.parse("tasks", "assigned_to=eq.u1"))

    assert [s.topic for s in transport.open_subscriptions("tasks:u1")] == ["tasks:u1"]
    assert transport.subscription_count == 2

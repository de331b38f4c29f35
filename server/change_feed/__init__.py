"""
change_feed — Row-level database change transport.

Public API:
    ChangeEvent, Operation, EventFilter — event model and row filters
    Transport, SubscriptionHandle       — protocols the registry depends on
    RedisTransport                      — Redis pub/sub backed transport
    InMemoryTransport                   — synchronous dev/test transport
    ChangePublisher                     — publishes change events to Redis
    serialize / deserialize             — ChangeEvent <-> JSON envelope
"""
from .events import ChangeEvent, EventFilter, FilterError, Operation
from .interface import Transport, SubscriptionHandle
from .memory import InMemoryTransport
from .publisher import ChangePublisher, PublisherError, channel_for_table
from .serializer import SerializationError, deserialize, serialize
from .transport import RedisTransport, TransportError

__all__ = [
    "ChangeEvent",
    "ChangePublisher",
    "EventFilter",
    "FilterError",
    "InMemoryTransport",
    "Operation",
    "PublisherError",
    "RedisTransport",
    "SerializationError",
    "SubscriptionHandle",
    "Transport",
    "TransportError",
    "channel_for_table",
    "deserialize",
    "serialize",
]

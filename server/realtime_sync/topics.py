"""
Topic Catalog

Maps a topic name to everything the registry needs to run its channel:
which table rows to listen to, which cache keys to invalidate, how fast
to invalidate, and whether new rows are patched into the cache ahead of
the refresh.

Topic naming scheme:
  tasks                     every task change
  tasks:<userId>            task changes assigned to one user
  comments                  every comment change
  notifications             every notification change
  notifications:<userId>    new notifications for one user (optimistic)
  chat:<conversationId>     new messages in one conversation
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from change_feed import EventFilter, Operation

from .config import (
    HEAVY_INVALIDATION_WINDOW,
    IMMEDIATE_INVALIDATION_WINDOW,
    NOTIFICATION_LIST_CAPACITY,
    RECONCILIATION_DELAY,
)
from .core.types import UnknownTopicError, ValidationError

CacheKey = tuple[Any, ...]


@dataclass(frozen=True)
class OptimisticSpec:
    """How new rows are merged into a list-shaped cache value."""

    cache_key: CacheKey
    capacity: int
    reconcile_delay: float = RECONCILIATION_DELAY
    identity_field: str = "id"

    def __post_init__(self) -> None:
        if self.capacity <= 0:
            raise ValidationError("capacity must be positive", field="capacity", value=self.capacity)
        if self.reconcile_delay < 0:
            raise ValidationError(
                "reconcile_delay must be >= 0", field="reconcile_delay", value=self.reconcile_delay
            )


@dataclass(frozen=True)
class TopicSpec:
    """Everything the registry needs to run one topic's channel."""

    topic: str
    event_filter: EventFilter
    invalidate_keys: tuple[CacheKey, ...]
    window: float = IMMEDIATE_INVALIDATION_WINDOW
    optimistic: Optional[OptimisticSpec] = None

    def __post_init__(self) -> None:
        if self.window < 0:
            raise ValidationError("window must be >= 0", field="window", value=self.window)


TopicFactory = Callable[[str], TopicSpec]


class TopicCatalog:
    """
    Resolves topic names to TopicSpecs.

    Exact names are looked up first, then ``prefix:<param>`` factories.
    """

    def __init__(self) -> None:
        self._exact: dict[str, TopicSpec] = {}
        self._prefixes: dict[str, TopicFactory] = {}

    def register(self, spec: TopicSpec) -> None:
        self._exact[spec.topic] = spec

    def register_prefix(self, prefix: str, factory: TopicFactory) -> None:
        """Register *factory(param)* for topics named ``<prefix>:<param>``."""
        self._prefixes[prefix] = factory

    def resolve(self, topic: str) -> TopicSpec:
        spec = self._exact.get(topic)
        if spec is not None:
            return spec

        prefix, sep, param = topic.partition(":")
        factory = self._prefixes.get(prefix)
        if sep and param and factory is not None:
            return factory(param)

        raise UnknownTopicError(topic)

    def __contains__(self, topic: str) -> bool:
        try:
            self.resolve(topic)
        except UnknownTopicError:
            return False
        return True


# ── Default topics ────────────────────────────────────────────────────────────

def _tasks_for_user(user_id: str) -> TopicSpec:
    return TopicSpec(
        topic=f"tasks:{user_id}",
        event_filter=EventFilter.parse("tasks", f"assigned_to=eq.{user_id}"),
        invalidate_keys=(("tasks",),),
        window=HEAVY_INVALIDATION_WINDOW,
    )


def _notifications_for_user(user_id: str) -> TopicSpec:
    key = ("notifications", user_id)
    return TopicSpec(
        topic=f"notifications:{user_id}",
        event_filter=EventFilter.parse(
            "notifications", f"user_id=eq.{user_id}", operations=(Operation.INSERT,)
        ),
        invalidate_keys=(key,),
        optimistic=OptimisticSpec(cache_key=key, capacity=NOTIFICATION_LIST_CAPACITY),
    )


def _chat_conversation(conversation_id: str) -> TopicSpec:
    return TopicSpec(
        topic=f"chat:{conversation_id}",
        event_filter=EventFilter.parse(
            "messages", f"conversation_id=eq.{conversation_id}", operations=(Operation.INSERT,)
        ),
        invalidate_keys=(
            ("chat", "messages", conversation_id),
            ("chat", "conversations"),
            ("chat", "unread-count"),
        ),
    )


def default_catalog() -> TopicCatalog:
    """Catalog of the application's realtime topics."""
    catalog = TopicCatalog()
    catalog.register(
        TopicSpec(
            topic="tasks",
            event_filter=EventFilter(table="tasks"),
            invalidate_keys=(("tasks",),),
            window=HEAVY_INVALIDATION_WINDOW,
        )
    )
    catalog.register(
        TopicSpec(
            topic="comments",
            event_filter=EventFilter(table="comments"),
            invalidate_keys=(("comments",),),
        )
    )
    catalog.register(
        TopicSpec(
            topic="notifications",
            event_filter=EventFilter(table="notifications"),
            invalidate_keys=(("notifications",),),
        )
    )
    catalog.register_prefix("tasks", _tasks_for_user)
    catalog.register_prefix("notifications", _notifications_for_user)
    catalog.register_prefix("chat", _chat_conversation)
    return catalog

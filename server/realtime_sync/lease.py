"""
Consumer Lifecycle Glue

LiveSubscription binds one consumer's mount/unmount lifecycle to exactly
one acquire/release pair on the shared registry. It tracks locally whether
*this* consumer currently holds a lease, so a lifecycle hook that runs
twice (mount, unmount, mount in quick succession, or a duplicate mount)
never inflates the shared reference count.

    live = LiveSubscription(registry, "tasks", owner_id="kanban-board")
    live.mount()      # acquires
    live.mount()      # ignored: already held
    live.unmount()    # releases
    live.unmount()    # ignored: already idle

    with LiveSubscription(registry, "notifications:42"):
        ...
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from .registry import ChannelRegistry, Lease

logger = logging.getLogger(__name__)


class LeaseState(str, Enum):
    IDLE = "idle"
    HELD = "held"


class LiveSubscription:
    """Per-consumer idle -> held -> idle state machine around one Lease."""

    def __init__(
        self,
        registry: ChannelRegistry,
        topic: str,
        owner_id: Optional[str] = None,
    ) -> None:
        self._registry = registry
        self._topic = topic
        self._owner_id = owner_id
        self._lease: Optional[Lease] = None

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def state(self) -> LeaseState:
        return LeaseState.HELD if self._lease is not None else LeaseState.IDLE

    @property
    def lease(self) -> Optional[Lease]:
        return self._lease

    def mount(self) -> bool:
        """Acquire the topic. Returns False if this consumer already holds it."""
        if self._lease is not None:
            logger.debug("Duplicate mount ignored for '%s' (owner %s)", self._topic, self._owner_id)
            return False
        self._lease = self._registry.acquire(self._topic, owner_id=self._owner_id)
        return True

    def unmount(self) -> bool:
        """Release the topic. Returns False if this consumer holds nothing."""
        lease, self._lease = self._lease, None
        if lease is None:
            logger.debug("Unmount ignored for '%s' (owner %s): not held", self._topic, self._owner_id)
            return False
        return self._registry.release(lease)

    def retarget(self, topic: str) -> None:
        """
        Switch to *topic* (e.g. the signed-in user changed).

        A held lease moves to the new topic; an idle consumer only records it.
        """
        if topic == self._topic:
            return
        was_held = self._lease is not None
        self.unmount()
        self._topic = topic
        if was_held:
            self.mount()

    def __enter__(self) -> LiveSubscription:
        self.mount()
        return self

    def __exit__(self, *_: object) -> None:
        self.unmount()

    def __repr__(self) -> str:
        return f"<LiveSubscription topic={self._topic!r} state={self.state.value}>"

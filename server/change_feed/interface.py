"""
Transport Protocol Definitions

Abstract interfaces that both the Redis-backed transport and the in-memory
dev transport must satisfy. The channel registry depends only on these
protocols.
"""
from __future__ import annotations

from typing import Callable, Optional, Protocol, runtime_checkable

from .events import ChangeEvent, EventFilter

EventHandler = Callable[[ChangeEvent], None]


@runtime_checkable
class SubscriptionHandle(Protocol):
    """Opaque handle returned by Transport.subscribe()."""

    @property
    def topic(self) -> str:
        ...

    @property
    def closed(self) -> bool:
        ...


DisconnectHandler = Callable[[SubscriptionHandle], None]


@runtime_checkable
class Transport(Protocol):
    """Push-delivery of change events, one subscription per topic."""

    def subscribe(
        self,
        topic: str,
        handler: EventHandler,
        *,
        event_filter: Optional[EventFilter] = None,
        on_disconnect: Optional[DisconnectHandler] = None,
    ) -> SubscriptionHandle:
        """
        Start delivering events for *topic* to *handler*.

        Returns immediately; the underlying connection may finish opening
        later. Delivery continues until unsubscribe() is called or the
        transport reports a disconnect through *on_disconnect*.
        """
        ...

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Stop delivery for *handle*. Safe to call more than once."""
        ...

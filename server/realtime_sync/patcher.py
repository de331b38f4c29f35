"""
Optimistic Patcher

Merges new rows (e.g. "new notification for user X") into a list-shaped
cache value as soon as the insert event arrives, then asks for an
authoritative refresh after a fixed reconciliation delay.

The patch is purely additive: with the patcher disabled the same final
state is reached through the refresh alone, only later.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from change_feed import ChangeEvent, Operation

from .cache import QueryCache
from .topics import OptimisticSpec

logger = logging.getLogger(__name__)


def merge_optimistic(
    current: Optional[list[dict[str, Any]]],
    record: dict[str, Any],
    *,
    identity_field: str = "id",
    capacity: int,
) -> list[dict[str, Any]]:
    """
    Prepend *record* to *current* unless an entry with the same identity is
    already there, then keep at most *capacity* entries (newest first).
    """
    items = list(current or ())
    identity = record.get(identity_field)
    if not any(item.get(identity_field) == identity for item in items):
        items.insert(0, dict(record))
    return items[:capacity]


class OptimisticPatcher:
    """
    Args:
        cache:     Cache holding the list value.
        spec:      Target key, capacity, identity field and reconcile delay.
        reconcile: Called once per applied patch after spec.reconcile_delay.
        loop:      Event loop used for timers; defaults to the running loop.
    """

    def __init__(
        self,
        cache: QueryCache,
        spec: OptimisticSpec,
        reconcile: Callable[[], None],
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._cache = cache
        self._spec = spec
        self._reconcile = reconcile
        self._loop = loop
        self._handles: set[asyncio.TimerHandle] = set()
        self._closed = False
        self.applied_count = 0

    @property
    def spec(self) -> OptimisticSpec:
        return self._spec

    @property
    def pending(self) -> int:
        """Number of reconciliations scheduled but not yet run."""
        return len(self._handles)

    def qualifies(self, event: ChangeEvent) -> bool:
        return (
            event.operation is Operation.INSERT
            and event.record.get(self._spec.identity_field) is not None
        )

    def apply(self, event: ChangeEvent) -> bool:
        """Patch the cache with *event*'s record. Returns False if not applied."""
        if self._closed or not self.qualifies(event):
            return False

        spec = self._spec
        self._cache.patch(
            spec.cache_key,
            lambda current: merge_optimistic(
                current,
                event.record,
                identity_field=spec.identity_field,
                capacity=spec.capacity,
            ),
        )
        self.applied_count += 1
        logger.debug(
            "Optimistically merged %s=%s into %s",
            spec.identity_field,
            event.record.get(spec.identity_field),
            spec.cache_key,
        )
        self._schedule_reconcile()
        return True

    def cancel(self) -> None:
        """Cancel every pending reconciliation. Idempotent."""
        self._closed = True
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()

    def _schedule_reconcile(self) -> None:
        loop = self._loop or asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def _run() -> None:
            self._handles.discard(handle)
            if self._closed:
                return
            try:
                self._reconcile()
            except Exception:
                logger.exception("Reconciliation for %s failed", self._spec.cache_key)

        handle = loop.call_later(self._spec.reconcile_delay, _run)
        self._handles.add(handle)

"""
Core Type Definitions and Exceptions

Errors raised to callers of the realtime sync layer: bad topic names and
invalid topic/optimistic settings. Lifecycle misuse (double release,
release without acquire) is never raised; the registry logs and counts it.
Transport and wire errors live in change_feed.
"""
from __future__ import annotations

from typing import Any, Optional


class RealtimeSyncError(Exception):
    """
    Base class for realtime sync errors.

    *context* carries the topic, field or value involved and is appended
    to the message, e.g. ``Unknown realtime topic [field=topic, value='x']``.
    """

    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class ValidationError(RealtimeSyncError):
    """A TopicSpec or OptimisticSpec was built with an out-of-range value."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        ctx = dict(context or {})
        if field:
            ctx["field"] = field
        if value is not None:
            ctx["value"] = repr(value)[:100]
        super().__init__(message, ctx)
        self.field = field
        self.value = value


class UnknownTopicError(ValidationError):
    """The topic catalog has no exact entry or prefix factory for a topic."""

    def __init__(self, topic: str) -> None:
        super().__init__("Unknown realtime topic", field="topic", value=topic)
        self.topic = topic

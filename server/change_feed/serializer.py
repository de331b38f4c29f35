"""
Change Event Serializer

Converts between ChangeEvent objects and the JSON strings carried over
Redis pub/sub.

Wire format (envelope):
  {
    "table": "tasks",
    "operation": "UPDATE",
    "record": { ...new row... },
    "old": { ...previous row, may be empty... }
  }
"""
from __future__ import annotations

import json

from .events import ChangeEvent, Operation


class SerializationError(Exception):
    """Raised when serialization or deserialization fails."""


def serialize(event: ChangeEvent) -> str:
    """
    Encode a ChangeEvent into a JSON string for Redis.

    Raises SerializationError if encoding fails.
    """
    try:
        return json.dumps(
            {
                "table": event.table,
                "operation": event.operation.value,
                "record": event.record,
                "old": event.old_record,
            },
            default=str,
        )
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"Failed to serialize change event: {exc}") from exc


def deserialize(raw: str | bytes) -> ChangeEvent:
    """
    Decode a JSON string from Redis into a ChangeEvent.

    Raises SerializationError if decoding fails or the envelope is malformed.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        envelope = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SerializationError(f"Failed to deserialize change event: {exc}") from exc

    if not isinstance(envelope, dict) or "table" not in envelope or "operation" not in envelope:
        keys = list(envelope.keys()) if isinstance(envelope, dict) else type(envelope).__name__
        raise SerializationError(
            f"Malformed change envelope — expected {{table, operation, record}}, got: {keys}"
        )

    try:
        return ChangeEvent(
            table=envelope["table"],
            operation=Operation.from_string(envelope["operation"]),
            record=envelope.get("record") or {},
            old_record=envelope.get("old") or {},
        )
    except (TypeError, ValueError, AttributeError) as exc:
        raise SerializationError(f"Invalid change envelope: {exc}") from exc

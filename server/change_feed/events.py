"""
Change Event Models

A change event is one row-level database change pushed by the server:

    ChangeEvent(table="tasks", operation=Operation.UPDATE, record={...})

EventFilter narrows a table feed down to the rows (and operations) a
subscriber cares about. Filters use the same textual form as the database's
realtime API:

    EventFilter.parse("notifications", "user_id=eq.42", operations=("INSERT",))
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional


class FilterError(ValueError):
    """Raised when a filter expression cannot be parsed."""


class Operation(str, Enum):
    """Row-level change kind."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @classmethod
    def from_string(cls, value: str) -> "Operation":
        """Case-insensitive lookup. Raises ValueError for unknown kinds."""
        try:
            return cls(value.upper())
        except ValueError:
            raise ValueError(f"Unknown change operation: {value!r}") from None


@dataclass(frozen=True)
class ChangeEvent:
    """One change delivered by the transport."""

    table: str
    operation: Operation
    record: dict[str, Any] = field(default_factory=dict)
    old_record: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.table:
            raise ValueError("ChangeEvent.table must be non-empty")

    @property
    def row(self) -> dict[str, Any]:
        """The row the event is about: the new record, or the old one for deletes."""
        if self.operation is Operation.DELETE and not self.record:
            return self.old_record
        return self.record


@dataclass(frozen=True)
class EventFilter:
    """
    Row-level filter for one table feed.

    Args:
        table:      Table whose changes are wanted.
        operations: Operations to deliver. Empty means every operation.
        column:     Optional column for an equality match.
        value:      Value the column must equal (compared as strings).
    """

    table: str
    operations: frozenset[Operation] = frozenset()
    column: Optional[str] = None
    value: Optional[str] = None

    @classmethod
    def parse(
        cls,
        table: str,
        expression: Optional[str] = None,
        operations: Iterable[str | Operation] = (),
    ) -> "EventFilter":
        """
        Build a filter from a ``column=eq.value`` expression.

        Raises FilterError if the expression is malformed or uses an
        operator other than ``eq``.
        """
        ops = frozenset(
            op if isinstance(op, Operation) else Operation.from_string(op)
            for op in operations
            if op != "*"
        )
        if not expression:
            return cls(table=table, operations=ops)

        column, sep, rest = expression.partition("=")
        operator, dot, value = rest.partition(".")
        if not sep or not dot or not column or not value:
            raise FilterError(f"Malformed filter expression: {expression!r}")
        if operator != "eq":
            raise FilterError(f"Unsupported filter operator {operator!r} in {expression!r}")
        return cls(table=table, operations=ops, column=column, value=value)

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if self.operations and event.operation not in self.operations:
            return False
        if self.column is None:
            return True
        actual = event.row.get(self.column)
        return actual is not None and str(actual) == self.value

    @property
    def expression(self) -> Optional[str]:
        if self.column is None:
            return None
        return f"{self.column}=eq.{self.value}"

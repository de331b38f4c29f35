"""
Tests for change_feed.events
"""
import pytest

from change_feed.events import ChangeEvent, EventFilter, FilterError, Operation


def test_operation_from_string_is_case_insensitive():
    assert Operation.from_string("insert") is Operation.INSERT
    assert Operation.from_string("Delete") is Operation.DELETE


def test_operation_from_string_unknown_raises():
    with pytest.raises(ValueError, match="Unknown change operation"):
        Operation.from_string("upsert")


def test_change_event_requires_table():
    with pytest.raises(ValueError, match="non-empty"):
        ChangeEvent("", Operation.INSERT, {})


def test_row_prefers_old_record_for_deletes():
    event = ChangeEvent("tasks", Operation.DELETE, {}, old_record={"id": "t-1"})
    assert event.row == {"id": "t-1"}

    update = ChangeEvent("tasks", Operation.UPDATE, {"id": "t-1", "status": "done"}, {"id": "t-1"})
    assert update.row == {"id": "t-1", "status": "done"}


# ── EventFilter.parse() ───────────────────────────────────────────────────────

def test_parse_without_expression_matches_whole_table():
    f = EventFilter.parse("tasks")

    assert f.column is None
    assert f.expression is None
    assert f.matches(ChangeEvent("tasks", Operation.UPDATE, {"id": 1}))
    assert not f.matches(ChangeEvent("comments", Operation.UPDATE, {"id": 1}))


def test_parse_equality_expression():
    f = EventFilter.parse("notifications", "user_id=eq.42", operations=("INSERT",))

    assert f.column == "user_id"
    assert f.value == "42"
    assert f.operations == frozenset({Operation.INSERT})
    assert f.expression == "user_id=eq.42"


def test_parse_star_means_every_operation():
    f = EventFilter.parse("tasks", operations=("*",))
    assert f.operations == frozenset()


@pytest.mark.parametrize("expression", ["user_id", "user_id=eq", "=eq.42", "user_id=eq."])
def test_parse_malformed_expression_raises(expression):
    with pytest.raises(FilterError, match="Malformed"):
        EventFilter.parse("notifications", expression)


def test_parse_unsupported_operator_raises():
    with pytest.raises(FilterError, match="Unsupported filter operator"):
        EventFilter.parse("notifications", "user_id=gt.42")


# ── EventFilter.matches() ─────────────────────────────────────────────────────

def test_matches_compares_values_as_strings():
    f = EventFilter.parse("notifications", "user_id=eq.42")

    assert f.matches(ChangeEvent("notifications", Operation.INSERT, {"user_id": 42}))
    assert f.matches(ChangeEvent("notifications", Operation.INSERT, {"user_id": "42"}))
    assert not f.matches(ChangeEvent("notifications", Operation.INSERT, {"user_id": "7"}))
    assert not f.matches(ChangeEvent("notifications", Operation.INSERT, {}))


def test_matches_respects_operations():
    f = EventFilter.parse("notifications", "user_id=eq.42", operations=(Operation.INSERT,))

    assert not f.matches(ChangeEvent("notifications", Operation.UPDATE, {"user_id": "42"}))


def test_matches_deleted_row_by_old_record():
    f = EventFilter.parse("tasks", "assigned_to=eq.u1")
    event = ChangeEvent("tasks", Operation.DELETE, {}, old_record={"id": "t-1", "assigned_to": "u1"})

    assert f.matches(event)

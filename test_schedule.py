"""
Tests for cron parsing and due-time evaluation.
"""

from datetime import datetime, timedelta, timezone

import pytest

from singleschedule.registry import Task
from singleschedule.schedule import (
    InvalidRecurrenceError,
    build_index,
    consumed_through,
    due_occurrence,
    is_due,
    next_occurrence,
    parse_recurrence,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize("expr", [
    "* * * * * *",
    "0 0 * * * *",
    "*/5 * * * * *",
    "0 9-17 * * * MON-FRI *",
    "0 0 12 ? * *",
    "0 30 2 1 jan * 2030",
])
def test_valid_expressions(expr):
    parse_recurrence(expr)


@pytest.mark.parametrize("expr", [
    "invalid",
    "* * * *",
    "60 * * * * *",
    "* * * * *",
    "",
    "* * * * * * * *",
])
def test_invalid_expressions(expr):
    with pytest.raises(InvalidRecurrenceError):
        parse_recurrence(expr)


def test_invalid_recurrence_is_value_error():
    with pytest.raises(ValueError):
        parse_recurrence("0 0 25 * * *")


SATURDAY_NOON = utc(2024, 5, 4, 12, 0, 0)


@pytest.mark.parametrize("day_of_week, expected", [
    ("1", utc(2024, 5, 5, 9, 0, 0)),
    ("sun", utc(2024, 5, 5, 9, 0, 0)),
    ("7", utc(2024, 5, 11, 9, 0, 0)),
    ("2-6", utc(2024, 5, 6, 9, 0, 0)),
    ("4,6", utc(2024, 5, 8, 9, 0, 0)),
    ("*/2", utc(2024, 5, 5, 9, 0, 0)),
    ("3/2", utc(2024, 5, 7, 9, 0, 0)),
])
def test_numeric_day_of_week_starts_on_sunday(day_of_week, expected):
    rule = parse_recurrence(f"0 0 9 * * {day_of_week}")

    assert next_occurrence(rule, SATURDAY_NOON) == expected


def test_weekday_range_skips_weekend():
    rule = parse_recurrence("0 0 9 * * 2-6")
    friday_noon = utc(2024, 5, 10, 12, 0, 0)

    assert next_occurrence(rule, friday_noon) == utc(2024, 5, 13, 9, 0, 0)


@pytest.mark.parametrize("day_of_week", ["0", "8", "6-2", "*/0", "1-9"])
def test_invalid_numeric_day_of_week(day_of_week):
    with pytest.raises(InvalidRecurrenceError):
        parse_recurrence(f"0 0 9 * * {day_of_week}")


def test_next_occurrence_is_strictly_after():
    rule = parse_recurrence("0 0 * * * *")
    at = utc(2024, 5, 1, 12, 0, 0)

    assert next_occurrence(rule, at) == utc(2024, 5, 1, 13, 0, 0)
    assert next_occurrence(rule, at - timedelta(seconds=1)) == at


def test_due_after_missed_occurrence():
    rule = parse_recurrence("*/30 * * * * *")
    now = utc(2024, 5, 1, 12, 0, 10)

    assert is_due(rule, now - timedelta(minutes=2), now)


def test_not_due_before_next_minute():
    rule = parse_recurrence("0 * * * * *")
    now = utc(2024, 5, 1, 12, 0, 15)

    assert not is_due(rule, now - timedelta(seconds=10), now)


def test_due_within_tolerance():
    rule = parse_recurrence("0 * * * * *")
    now = utc(2024, 5, 1, 12, 0, 40)
    last_run = utc(2024, 5, 1, 12, 0, 0)

    assert due_occurrence(rule, last_run, now) == utc(2024, 5, 1, 12, 1, 0)
    assert due_occurrence(rule, last_run, now, tolerance=10) is None


def test_never_run_task_is_due():
    rule = parse_recurrence("0 0 3 * * *")

    assert is_due(rule, None, utc(2024, 5, 1, 12, 0, 0))


def test_evaluation_is_pure():
    rule = parse_recurrence("0 */5 * * * *")
    now = utc(2024, 5, 1, 12, 3, 0)
    last_run = utc(2024, 5, 1, 11, 59, 0)

    first = due_occurrence(rule, last_run, now)
    assert first == due_occurrence(rule, last_run, now)
    assert first == utc(2024, 5, 1, 12, 0, 0)


def test_exhausted_rule_is_never_due():
    rule = parse_recurrence("0 0 0 1 1 * 2000")
    last_run = utc(2000, 1, 1, 0, 0, 0)

    assert next_occurrence(rule, last_run) is None
    assert not is_due(rule, last_run, utc(2024, 5, 1, 12, 0, 0))


def test_recorded_occurrence_does_not_fire_twice():
    rule = parse_recurrence("0 0 * * * *")
    now = utc(2024, 5, 1, 12, 59, 45)

    occurrence = due_occurrence(rule, utc(2024, 5, 1, 12, 0, 0), now)
    assert occurrence == utc(2024, 5, 1, 13, 0, 0)

    last_run = consumed_through(rule, occurrence, now)
    assert last_run == occurrence
    for later in (now, now + timedelta(seconds=10), now + timedelta(seconds=20), now + timedelta(seconds=30)):
        assert not is_due(rule, last_run, later)


def test_catch_up_consumes_occurrences_inside_tolerance():
    rule = parse_recurrence("*/30 * * * * *")
    now = utc(2024, 5, 1, 12, 0, 15)

    occurrence = due_occurrence(rule, now - timedelta(minutes=2), now)
    last_run = consumed_through(rule, occurrence, now)

    assert last_run == utc(2024, 5, 1, 12, 0, 30)
    assert last_run >= now
    assert not is_due(rule, last_run, now)


def test_consumed_through_without_look_ahead():
    rule = parse_recurrence("0 0 * * * *")
    now = utc(2024, 5, 1, 12, 0, 15)

    assert consumed_through(rule, utc(2024, 5, 1, 12, 0, 0), now) == now


def test_build_index_skips_bad_rules():
    tasks = [
        Task(slug="good", recurrence="0 * * * * *", command="true"),
        Task(slug="bad", recurrence="not a cron", command="true"),
        Task(slug="also-good", recurrence="*/5 * * * * *", command="true", active=False),
    ]

    index = build_index(tasks)

    assert sorted(index) == ["also-good", "good"]

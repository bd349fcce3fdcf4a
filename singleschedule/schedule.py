"""
Recurrence rules and due-time evaluation.

Cron expressions carry a leading seconds field:

    second minute hour day-of-month month day-of-week [year]

Day-of-week accepts names (mon-fri) or numbers from 1 (Sunday) to 7
(Saturday).

Parsing and next-occurrence arithmetic are delegated to APScheduler's
CronTrigger; this module only maps the expression onto trigger fields
and decides whether a task is due.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Iterable

from apscheduler.triggers.cron import CronTrigger

from singleschedule.config import TOLERANCE_SECONDS

logger = logging.getLogger(__name__)

# Baseline for tasks that have never run, so their first evaluation is due.
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_FIELDS = ('second', 'minute', 'hour', 'day', 'month', 'day_of_week', 'year')

# Numeric day-of-week: 1 = Sunday through 7 = Saturday
_WEEKDAYS = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat')


class InvalidRecurrenceError(ValueError):
    """Raised when a cron expression cannot be parsed."""
    pass


def _translate_day_of_week(value: str) -> str:
    """
    Rewrite numeric day-of-week items as weekday names.

    APScheduler numbers weekdays from Monday = 0, so numbers, ranges and
    steps are expanded into explicit name lists. Items already written
    with names are left for CronTrigger to validate.
    """
    items = []
    for item in value.split(','):
        base, slash, step = item.partition('/')
        first, _, last = base.partition('-')

        if base == '*':
            if not slash:
                items.append(item)
                continue
            start, end = 1, 7
        elif first.isdigit() and (not last or last.isdigit()):
            start = int(first)
            end = int(last) if last else (7 if slash else start)
        else:
            items.append(item)
            continue

        if slash and not (step.isdigit() and int(step) > 0):
            raise InvalidRecurrenceError(f"Invalid day-of-week step: '{item}'")
        if not 1 <= start <= end <= 7:
            raise InvalidRecurrenceError(f"Invalid day-of-week '{item}' (expected 1-7, 1 = Sunday)")

        days = range(start, end + 1, int(step) if slash else 1)
        items.append(','.join(_WEEKDAYS[day - 1] for day in days))

    return ','.join(items)


def parse_recurrence(expr: str) -> CronTrigger:
    """
    Parse a cron expression into a trigger evaluated in UTC.

    Args:
        expr: Cron expression (e.g., "0 */5 * * * *")

    Returns:
        CronTrigger for the expression

    Raises:
        InvalidRecurrenceError: If the expression is malformed
    """
    if not isinstance(expr, str):
        raise InvalidRecurrenceError(f"Invalid cron expression: {expr!r}")

    parts = expr.lower().split()
    if len(parts) not in (6, 7):
        raise InvalidRecurrenceError(
            f"Invalid cron expression: '{expr}' (expected 6 or 7 fields, got {len(parts)})"
        )

    # '?' means "no specific value" in the day fields
    fields = {
        name: ('*' if value == '?' else value)
        for name, value in zip(_FIELDS, parts)
    }
    fields['day_of_week'] = _translate_day_of_week(fields['day_of_week'])

    try:
        return CronTrigger(timezone='UTC', **fields)
    except ValueError as e:
        raise InvalidRecurrenceError(f"Invalid cron expression: '{expr}': {e}") from e


def next_occurrence(rule: CronTrigger, after: datetime) -> Optional[datetime]:
    """First occurrence of the rule strictly after `after`, or None if exhausted."""
    return rule.get_next_fire_time(after, after)


def due_occurrence(
    rule: CronTrigger,
    last_run: Optional[datetime],
    now: datetime,
    tolerance: float = TOLERANCE_SECONDS
) -> Optional[datetime]:
    """
    Return the occurrence that makes a task due, or None if it is not due.

    The first occurrence after last_run (or the epoch) is due when it falls
    at or before now + tolerance. Any number of occurrences missed while
    the daemon was down collapse into this single one.
    """
    baseline = last_run if last_run is not None else EPOCH
    occurrence = next_occurrence(rule, baseline)
    if occurrence is None:
        return None
    if occurrence <= now + timedelta(seconds=tolerance):
        return occurrence
    return None


def is_due(
    rule: CronTrigger,
    last_run: Optional[datetime],
    now: datetime,
    tolerance: float = TOLERANCE_SECONDS
) -> bool:
    """Whether a task with this rule and last run time is due at `now`."""
    return due_occurrence(rule, last_run, now, tolerance) is not None


def consumed_through(
    rule: CronTrigger,
    occurrence: datetime,
    now: datetime,
    tolerance: float = TOLERANCE_SECONDS
) -> datetime:
    """
    Last-run time to record after running for `occurrence` at `now`.

    Every occurrence up to now + tolerance is covered by the run, so the
    result is the latest of those (and never earlier than now).
    """
    horizon = now + timedelta(seconds=tolerance)
    latest = max(occurrence, now)
    while True:
        following = next_occurrence(rule, latest)
        if following is None or following > horizon:
            return latest
        latest = following


def build_index(tasks: Iterable) -> Dict[str, CronTrigger]:
    """
    Map slug to parsed rule for every task whose expression parses.

    Tasks with a bad expression are logged and left out; they stay in the
    registry and are picked up again once the expression is fixed.
    """
    index = {}
    for task in tasks:
        try:
            index[task.slug] = parse_recurrence(task.recurrence)
        except InvalidRecurrenceError as e:
            logger.error(f"Failed to parse cron expression for task '{task.slug}': {e}")
    return index

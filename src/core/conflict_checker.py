"""
Bonsai Assistant — Event Conflict Checker.

Detects overlaps between a proposed event and the user's existing calendar
events, and finds the next free slot for events the user marked as flexible
("whenever I'm free"). To-dos never block a slot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from src.core.time_utils import parse_iso
from src.data.models import TaskItem

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRIES = 10
DEFAULT_BUFFER_MINUTES = 15


@dataclass
class Slot:
    """A free interval suggested in place of a conflicting one."""

    start: datetime
    end: datetime


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _busy_intervals(tasks: list[TaskItem]) -> list[tuple[datetime, datetime, TaskItem]]:
    """(start, end, item) for every timed calendar event, sorted by start."""
    intervals = []
    for task in tasks:
        if task.is_task:
            continue
        start, end = parse_iso(task.start_time), parse_iso(task.end_time)
        if start is None or end is None:
            logger.debug("Skipping event '%s' with unparseable times", task.title)
            continue
        intervals.append((_aware(start), _aware(end), task))
    intervals.sort(key=lambda iv: iv[0])
    return intervals


def _overlaps(start: datetime, end: datetime, busy_start: datetime, busy_end: datetime) -> bool:
    return (
        (busy_start <= start < busy_end)
        or (busy_start < end <= busy_end)
        or (start <= busy_start and end >= busy_end)
    )


def find_conflict(start: datetime, end: datetime, tasks: list[TaskItem]) -> TaskItem | None:
    """Return the first existing event overlapping [start, end), or None."""
    start, end = _aware(start), _aware(end)
    for busy_start, busy_end, item in _busy_intervals(tasks):
        if _overlaps(start, end, busy_start, busy_end):
            return item
    return None


def find_next_available_slot(
    start: datetime,
    duration_minutes: int,
    tasks: list[TaskItem],
    max_tries: int = DEFAULT_MAX_TRIES,
    buffer_minutes: int = DEFAULT_BUFFER_MINUTES,
) -> Slot | None:
    """Walk forward past conflicting events until a slot of the given length fits.

    Each conflict moves the candidate to the end of the blocking event plus
    buffer_minutes. Returns None after max_tries conflicts.
    """
    duration = timedelta(minutes=duration_minutes)
    buffer = timedelta(minutes=buffer_minutes)
    intervals = _busy_intervals(tasks)
    candidate = _aware(start)

    for _ in range(max_tries):
        candidate_end = candidate + duration
        blocking = next(
            (
                (busy_start, busy_end) for busy_start, busy_end, _item in intervals
                if _overlaps(candidate, candidate_end, busy_start, busy_end)
            ),
            None,
        )
        if blocking is None:
            return Slot(start=candidate, end=candidate_end)
        candidate = blocking[1] + buffer

    logger.info(
        "No free %d-minute slot found after %d attempt(s) from %s",
        duration_minutes, max_tries, start.isoformat(),
    )
    return None

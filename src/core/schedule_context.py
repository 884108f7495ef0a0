"""
Bonsai Assistant — Schedule Context Formatter.

Turns the user's task list into the compact JSON block embedded in the chat
system prompt. Every timestamp is given twice: the raw ISO string and a
human-readable rendering in the user's timezone, so the model never has to
convert UTC itself.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from src.core.time_utils import (
    format_clock,
    format_date,
    local_tz,
    parse_iso,
    to_local,
)
from src.data.models import TaskItem

logger = logging.getLogger(__name__)

NO_ITEMS_TEXT = "You have no upcoming events or tasks scheduled."


def _format_local(iso_value: str, tz_name: str) -> dict:
    dt = parse_iso(iso_value)
    if dt is None:
        return {"iso": iso_value, "readable": {"date": "", "time": "", "full": ""}}
    local = to_local(dt, tz_name)
    date_text = format_date(local)
    time_text = format_clock(local)
    return {
        "iso": iso_value,
        "readable": {
            "date": date_text,
            "time": time_text,
            "full": f"{date_text} {time_text}",
        },
    }


def _day_flags(iso_value: str, today, tz_name: str) -> dict:
    dt = parse_iso(iso_value)
    if dt is None:
        return {"isToday": False, "isTomorrow": False}
    local_date = to_local(dt, tz_name).date()
    return {
        "isToday": local_date == today,
        "isTomorrow": local_date == today + timedelta(days=1),
    }


def _sort_key(task: TaskItem, tz_name: str) -> float:
    dt = parse_iso(task.start_time)
    if dt is None:
        return float("inf")
    return to_local(dt, tz_name).timestamp()


def format_schedule_context(
    tasks: list[TaskItem],
    now: datetime | None = None,
    tz_name: str | None = None,
) -> str:
    """Serialize tasks and events for the LLM prompt.

    Returns NO_ITEMS_TEXT for an empty list, otherwise pretty-printed JSON
    with separate "events" and "tasks" arrays sorted by start time.
    """
    if not tasks:
        return NO_ITEMS_TEXT

    if tz_name is None:
        from src.config import settings
        tz_name = settings.TIMEZONE

    if now is None:
        now = datetime.now(local_tz(tz_name))
    today = to_local(now, tz_name).date()

    sorted_tasks = sorted(tasks, key=lambda t: _sort_key(t, tz_name))
    events = [t for t in sorted_tasks if not t.is_task]
    todos = [t for t in sorted_tasks if t.is_task]

    context = {
        "timeZone": tz_name,
        "events": [
            {
                "title": e.title,
                "description": e.description or "",
                "location": e.location or "",
                "startTime": _format_local(e.start_time, tz_name),
                "endTime": _format_local(e.end_time, tz_name),
                **_day_flags(e.start_time, today, tz_name),
                "priority": e.priority,
            }
            for e in events
        ],
        "tasks": [
            {
                "title": t.title,
                "description": t.description or "",
                "dueDate": _format_local(t.end_time, tz_name),
                **_day_flags(t.end_time, today, tz_name),
                "priority": t.priority,
            }
            for t in todos
        ],
    }
    logger.debug("Schedule context: %d event(s), %d task(s)", len(events), len(todos))
    return json.dumps(context, indent=2)

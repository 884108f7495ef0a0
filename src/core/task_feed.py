"""
Bonsai Assistant — Task Feed.

The user's current schedule as seen by the chat: upcoming events from their
default calendar plus open Google Tasks, each with a 1-10 priority. The chat
service reads `tasks` for prompt context; reconciliation calls `refresh()`
after a confirmation batch.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from src.core.time_utils import local_tz, parse_iso
from src.data.models import TaskItem
from src.ports.calendar_port import CalendarError

if TYPE_CHECKING:
    from src.data.db import UserDB
    from src.data.models import UserProfile
    from src.ports.calendar_port import CalendarPort

logger = logging.getLogger(__name__)

_IMPORTANT_KEYWORDS = ("urgent", "important", "deadline", "due", "exam", "meeting", "interview")


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def calculate_priority(item: dict, now: datetime | None = None) -> int:
    """Score a calendar event 1-10 from urgency, title keywords and length."""
    now = now or datetime.now(timezone.utc)
    priority = 5

    start = parse_iso(item.get("start", {}).get("dateTime"))
    end = parse_iso(item.get("end", {}).get("dateTime"))
    if start is None:
        return priority
    start = _aware(start)

    hours_until = (start - now).total_seconds() / 3600
    if hours_until <= 2:
        priority += 3
    elif hours_until <= 24:
        priority += 2
    elif hours_until <= 48:
        priority += 1

    title = (item.get("summary") or "").lower()
    if any(keyword in title for keyword in _IMPORTANT_KEYWORDS):
        priority += 1

    if end is not None and (_aware(end) - start) <= timedelta(minutes=30):
        priority += 1

    return max(1, min(10, priority))


def _event_to_item(item: dict, now: datetime) -> TaskItem:
    return TaskItem(
        id=item.get("id", ""),
        title=item.get("summary", "(no title)"),
        description=item.get("description", ""),
        location=item.get("location", ""),
        start_time=item["start"]["dateTime"],
        end_time=item.get("end", {}).get("dateTime", item["start"]["dateTime"]),
        priority=calculate_priority(item, now),
    )


def _task_to_item(task: dict, now: datetime, tz_name: str) -> TaskItem:
    """Google Tasks due dates are date-only; the item spans 09:00-23:59 local that day."""
    tz = local_tz(tz_name)
    priority = 5
    due = task.get("due")
    if due:
        day = datetime.fromisoformat(due.split("T")[0]).date()
        start = datetime(day.year, day.month, day.day, 9, 0, tzinfo=tz)
        end = datetime(day.year, day.month, day.day, 23, 59, 59, tzinfo=tz)
        hours_until = (end - now).total_seconds() / 3600
        if hours_until <= 24:
            priority += 2
        elif hours_until <= 48:
            priority += 1
    else:
        start = now.astimezone(tz).replace(microsecond=0)
        end = start + timedelta(hours=1)
    return TaskItem(
        id=task.get("id", ""),
        title=task.get("title", ""),
        description=task.get("notes", ""),
        start_time=start.isoformat(),
        end_time=end.isoformat(),
        priority=priority,
        is_task=True,
    )


class TaskFeed:
    """Cached task list for one user, refreshed from Google on demand."""

    def __init__(
        self,
        calendar: CalendarPort,
        user: UserProfile,
        max_events: int = 10,
        tz_name: str | None = None,
    ) -> None:
        if tz_name is None:
            from src.config import settings
            tz_name = settings.TIMEZONE
        self._calendar = calendar
        self._user = user
        self._max_events = max_events
        self._tz_name = tz_name
        self._tasks: list[TaskItem] = []

    @property
    def tasks(self) -> list[TaskItem]:
        return list(self._tasks)

    async def refresh(self) -> None:
        """Reload events and to-dos. On failure the previous list is kept."""
        if self._user.calendar_auth is None:
            logger.debug("User %d has no calendar linked; task list stays empty", self._user.user_id)
            return

        now = datetime.now(timezone.utc)
        start_of_day = datetime.now(local_tz(self._tz_name)).replace(
            hour=0, minute=0, second=0, microsecond=0,
        )
        calendar_id = self._user.default_calendar_id or "primary"

        try:
            raw_events = await self._calendar.list_events(
                self._user.calendar_auth, calendar_id, start_of_day.isoformat(), self._max_events,
            )
            raw_tasks = await self._calendar.list_tasks(self._user.calendar_auth)
        except CalendarError as exc:
            logger.error("Failed to refresh tasks for user %d: %s", self._user.user_id, exc)
            return

        # All-day items carry "date" instead of "dateTime" and are skipped.
        items = [
            _event_to_item(e, now) for e in raw_events
            if e.get("start", {}).get("dateTime")
        ]
        items.extend(_task_to_item(t, now, self._tz_name) for t in raw_tasks)
        items.sort(key=lambda t: t.priority, reverse=True)

        self._tasks = items
        logger.info(
            "Task list refreshed for user %d: %d item(s)", self._user.user_id, len(items),
        )


async def ensure_default_calendar(
    calendar: CalendarPort, user_db: UserDB, user: UserProfile,
) -> str | None:
    """Find or create the app's own calendar and remember it as the user's default."""
    if user.default_calendar_id:
        return user.default_calendar_id
    if user.calendar_auth is None:
        return None

    from src.config import settings

    try:
        calendar_id = await calendar.find_or_create_calendar(
            user.calendar_auth, settings.DEFAULT_CALENDAR_NAME, settings.TIMEZONE,
        )
    except CalendarError as exc:
        logger.error("Could not set up default calendar for user %d: %s", user.user_id, exc)
        return None

    user_db.set_default_calendar(user.user_id, calendar_id)
    user.default_calendar_id = calendar_id
    return calendar_id

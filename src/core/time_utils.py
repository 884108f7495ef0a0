"""Timestamp helpers shared by the schedule formatter and the calendar writer.

Model output carries ISO 8601 strings that may or may not include an offset;
everything here tolerates both and never guesses beyond the configured
timezone.
"""

from __future__ import annotations

import logging
from datetime import datetime
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)


def local_tz(tz_name: str | None = None) -> ZoneInfo:
    """Return the configured (or given) IANA timezone."""
    if tz_name is None:
        from src.config import settings
        tz_name = settings.TIMEZONE
    return ZoneInfo(tz_name)


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 string (a trailing 'Z' is accepted). None if unparseable."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable timestamp: %r", value)
        return None


def to_local(dt: datetime, tz_name: str | None = None) -> datetime:
    """Convert to the local timezone; naive values are taken as local already."""
    tz = local_tz(tz_name)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def ensure_offset(value: str, tz_name: str | None = None) -> str:
    """Return the timestamp re-serialized with an explicit UTC offset.

    Offset-less input is interpreted as local time in the configured timezone.
    Unparseable input is returned unchanged.
    """
    dt = parse_iso(value)
    if dt is None:
        logger.warning("Cannot normalize timestamp %r; sending as-is", value)
        return value
    return to_local(dt, tz_name).isoformat()


def ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        return f"{day}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


def format_date(dt: datetime) -> str:
    """e.g. "February 14, 2026"."""
    return f"{dt:%B} {dt.day}, {dt.year}"


def format_date_ordinal(dt: datetime) -> str:
    """e.g. "February 14th, 2026"."""
    return f"{dt:%B} {ordinal(dt.day)}, {dt.year}"


def format_clock(dt: datetime) -> str:
    """12-hour clock, e.g. "4:05 PM"."""
    hour = dt.hour % 12 or 12
    return f"{hour}:{dt:%M} {'AM' if dt.hour < 12 else 'PM'}"


def format_short(dt: datetime) -> str:
    """e.g. "Feb 14, 4:05 PM"."""
    return f"{dt:%b} {dt.day}, {format_clock(dt)}"

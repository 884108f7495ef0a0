"""Google Calendar adapter — implements CalendarPort for the Google Calendar API.

All Google-specific logic lives here. Core modules never import this directly;
they depend on the CalendarPort protocol.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from googleapiclient.errors import HttpError

from src.core.parser import EventDraft
from src.core.time_utils import ensure_offset, parse_iso
from src.data.models import CalendarAuth
from src.integrations.google_auth import get_calendar_service, get_tasks_service
from src.ports.calendar_port import CalendarAuthError, CalendarError

logger = logging.getLogger(__name__)

# A 403 only means a bad token for these reasons; rate limits and
# forbidden calendars are ordinary failures.
_AUTH_REASONS_403 = {"authError", "insufficientPermissions", "ACCESS_TOKEN_SCOPE_INSUFFICIENT"}


def build_event_body(
    draft: EventDraft, summary: str | None = None, tz_name: str | None = None,
) -> dict:
    """Construct a Google Calendar API event body from an EventDraft.

    start/end always carry an explicit UTC offset. An inverted range is
    swapped rather than sent to the API as-is.
    """
    if tz_name is None:
        from src.config import settings
        tz_name = settings.TIMEZONE

    start = ensure_offset(draft.start_time, tz_name)
    end = ensure_offset(draft.end_time or draft.start_time, tz_name)

    start_dt, end_dt = parse_iso(start), parse_iso(end)
    if start_dt and end_dt:
        if end_dt < start_dt:
            logger.warning(
                "Event '%s' ends before it starts (%s > %s); swapping",
                draft.title, start, end,
            )
            start, end = end, start
        elif end_dt == start_dt:
            end = (start_dt + timedelta(hours=1)).isoformat()

    private = {
        "isTaskPlanEvent": "true" if draft.is_task_plan_event else "false",
        "priority": str(draft.priority),
    }
    if draft.assigned_to:
        private["assignedTo"] = draft.assigned_to

    return {
        "summary": summary or draft.title,
        "description": draft.description,
        "location": draft.location,
        "start": {"dateTime": start, "timeZone": tz_name},
        "end": {"dateTime": end, "timeZone": tz_name},
        "extendedProperties": {"private": private},
    }


def _check_auth(auth: CalendarAuth | None) -> CalendarAuth:
    if auth is None or not auth.access_token:
        raise CalendarAuthError("Google Calendar is not connected")
    if auth.is_expired():
        raise CalendarAuthError("Google Calendar access token has expired")
    return auth


def _error_reasons(exc: HttpError) -> set[str]:
    details = exc.error_details
    if not isinstance(details, list):
        return set()
    return {d["reason"] for d in details if isinstance(d, dict) and isinstance(d.get("reason"), str)}


def _is_auth_failure(exc: Exception) -> bool:
    if not isinstance(exc, HttpError):
        return False
    status = exc.resp.status
    if status == 401:
        return True
    return status == 403 and bool(_error_reasons(exc) & _AUTH_REASONS_403)


def _raise_for(exc: Exception, action: str) -> None:
    status = getattr(getattr(exc, "resp", None), "status", None)
    if _is_auth_failure(exc):
        logger.warning("Google Calendar rejected the token while trying to %s (%s)", action, status)
        raise CalendarAuthError(f"Calendar authorization failed ({status})") from exc
    logger.error("Google Calendar API error while trying to %s: %s", action, exc)
    raise CalendarError(f"Failed to {action}: {exc}") from exc


class GoogleCalendarAdapter:
    """Google Calendar implementation of CalendarPort."""

    def __init__(self, tz_name: str | None = None) -> None:
        self._tz_name = tz_name

    async def insert_event(
        self,
        auth: CalendarAuth | None,
        calendar_id: str,
        draft: EventDraft,
        summary: str | None = None,
    ) -> dict:
        auth = _check_auth(auth)
        body = build_event_body(draft, summary=summary, tz_name=self._tz_name)
        try:
            service = get_calendar_service(auth)
            created = (
                service.events()
                .insert(calendarId=calendar_id, body=body)
                .execute()
            )
        except Exception as exc:
            _raise_for(exc, "create event")
        logger.info(
            "Event created in %s: '%s' at %s (%s)",
            calendar_id,
            body.get("summary", ""),
            body.get("start", {}).get("dateTime", ""),
            created.get("htmlLink", ""),
        )
        return created

    async def list_events(
        self,
        auth: CalendarAuth | None,
        calendar_id: str,
        time_min: str,
        max_results: int = 10,
    ) -> list[dict]:
        auth = _check_auth(auth)
        try:
            service = get_calendar_service(auth)
            result = (
                service.events()
                .list(
                    calendarId=calendar_id,
                    timeMin=time_min,
                    maxResults=max_results,
                    singleEvents=True,
                    orderBy="startTime",
                )
                .execute()
            )
        except Exception as exc:
            _raise_for(exc, "list events")
        items = result.get("items", [])
        logger.info("Found %d event(s) in %s from %s", len(items), calendar_id, time_min)
        return items

    async def list_tasks(self, auth: CalendarAuth | None) -> list[dict]:
        """Open to-dos from the user's first Google Tasks list."""
        auth = _check_auth(auth)
        try:
            service = get_tasks_service(auth)
            lists = service.tasklists().list().execute().get("items", [])
            if not lists:
                return []
            result = (
                service.tasks()
                .list(tasklist=lists[0]["id"], showCompleted=False, showHidden=False)
                .execute()
            )
        except Exception as exc:
            _raise_for(exc, "list tasks")
        return result.get("items", [])

    async def find_or_create_calendar(
        self, auth: CalendarAuth | None, name: str, time_zone: str
    ) -> str:
        """Return the id of the calendar called `name`, creating it if missing."""
        auth = _check_auth(auth)
        try:
            service = get_calendar_service(auth)
            entries = service.calendarList().list().execute().get("items", [])
            for entry in entries:
                if entry.get("summary") == name:
                    return entry["id"]

            created = (
                service.calendars()
                .insert(body={
                    "summary": name,
                    "timeZone": time_zone,
                    "description": f"Calendar generated by {name}",
                })
                .execute()
            )
            # Make it visible in the user's calendar list
            service.calendarList().insert(body={"id": created["id"]}).execute()
        except Exception as exc:
            _raise_for(exc, "set up calendar")
        logger.info("Created calendar '%s' (%s)", name, created["id"])
        return created["id"]

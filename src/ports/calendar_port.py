"""Calendar port — abstract interface for calendar operations.

Core modules depend on this protocol, never on a specific provider.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from src.data.models import CalendarAuth

if TYPE_CHECKING:
    from src.core.parser import EventDraft


class CalendarError(Exception):
    """Raised when any calendar provider operation fails."""


class CalendarAuthError(CalendarError):
    """Raised when the calendar token is missing, expired or rejected."""


class CalendarPort(Protocol):
    """Abstract calendar interface used by core modules."""

    async def insert_event(
        self,
        auth: CalendarAuth | None,
        calendar_id: str,
        draft: EventDraft,
        summary: str | None = None,
    ) -> dict: ...

    async def list_events(
        self,
        auth: CalendarAuth | None,
        calendar_id: str,
        time_min: str,
        max_results: int = 10,
    ) -> list[dict]: ...

    async def list_tasks(self, auth: CalendarAuth | None) -> list[dict]: ...

    async def find_or_create_calendar(
        self, auth: CalendarAuth | None, name: str, time_zone: str
    ) -> str: ...

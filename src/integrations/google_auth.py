"""
Bonsai Assistant — Google API service builders.

The sign-in flow lives outside this project; it hands over an access token
with an expiry (see CalendarAuth). Services here are built from that token
as-is: no refresh, no consent flow. An expired token must reach the user as
a "please sign in again" message rather than be silently renewed.
"""

from __future__ import annotations

import logging

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from src.data.models import CalendarAuth

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/tasks.readonly",
]


def _credentials(auth: CalendarAuth) -> Credentials:
    return Credentials(token=auth.access_token, scopes=SCOPES)


def get_calendar_service(auth: CalendarAuth):
    """Build a Google Calendar API v3 service from a user's access token."""
    service = build("calendar", "v3", credentials=_credentials(auth), cache_discovery=False)
    logger.debug("Google Calendar service built")
    return service


def get_tasks_service(auth: CalendarAuth):
    """Build a Google Tasks API v1 service from a user's access token."""
    service = build("tasks", "v1", credentials=_credentials(auth), cache_discovery=False)
    logger.debug("Google Tasks service built")
    return service

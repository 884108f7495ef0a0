"""
Bonsai Assistant — Data Models.

Persistent records owned by the storage layer (messages, summaries, users,
projects) plus the task items shown to the model as schedule context.
LLM-derived drafts live in src.core.parser.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

PERSONAL = "personal"
PROJECT = "project"

BOT_SENDER = "bot"


@dataclass(frozen=True)
class ThreadKey:
    """Identity of a chat thread and of its model session."""

    scope: str       # "personal" | "project"
    thread_id: str

    def __post_init__(self) -> None:
        if self.scope not in (PERSONAL, PROJECT):
            raise ValueError(f"Unknown thread scope: {self.scope!r}")

    @property
    def is_project(self) -> bool:
        return self.scope == PROJECT

    @classmethod
    def parse(cls, value: str) -> ThreadKey:
        """Build a key from its string form, e.g. "project_abc123"."""
        scope, sep, thread_id = value.partition("_")
        if not sep or not thread_id:
            raise ValueError(f"Malformed thread key: {value!r}")
        return cls(scope=scope, thread_id=thread_id)

    def __str__(self) -> str:
        return f"{self.scope}_{self.thread_id}"


@dataclass
class Message:
    """A single chat message. Ordered by timestamp within its thread."""

    text: str
    sender: str                        # "bot" or the user's email
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sender_name: str | None = None     # display name, None for the bot
    id: str = ""                       # assigned by the store

    @property
    def is_bot(self) -> bool:
        return self.sender == BOT_SENDER


@dataclass
class ConversationSummary:
    """Running summary of a thread.

    Covers every message up to and including last_summarized_message_id.
    """

    thread: ThreadKey
    text: str
    last_summarized_message_id: str
    updated_at: str = ""


@dataclass
class CalendarAuth:
    """Google Calendar OAuth token as handed over by the sign-in flow."""

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now >= expires_at


@dataclass
class UserProfile:
    """A registered user and their calendar linkage."""

    user_id: int
    username: str
    email: str = ""
    calendar_auth: CalendarAuth | None = None
    default_calendar_id: str | None = None
    created_at: str = ""

    def matches(self, identifier: str | None) -> bool:
        """Case-insensitive match against username or email."""
        if not identifier:
            return False
        wanted = identifier.strip().lower()
        return wanted in {
            self.username.strip().lower(),
            self.email.strip().lower(),
        } - {""}


@dataclass
class Project:
    """A shared project with its own chat thread and optional calendar."""

    id: str
    name: str
    creator_email: str
    members: list[str] = field(default_factory=list)   # member emails
    shared_calendar_id: str | None = None
    created_at: str = ""

    @property
    def thread(self) -> ThreadKey:
        return ThreadKey(scope=PROJECT, thread_id=self.id)

    def has_member(self, email: str) -> bool:
        return email.strip().lower() in {m.lower() for m in self.members}


@dataclass
class TaskItem:
    """A calendar event or to-do shown to the model as schedule context."""

    id: str
    title: str
    start_time: str                    # ISO 8601
    end_time: str                      # ISO 8601
    description: str = ""
    location: str = ""
    priority: int = 5                  # 1-10, 10 highest
    is_task: bool = False

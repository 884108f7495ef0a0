"""
Bonsai Assistant — Event Reconciliation.

Walks the user through the event drafts proposed by the model, one at a time.
Each draft is either confirmed (possibly written to a calendar, depending on
who it is assigned to and whether the project has a shared calendar) or
cancelled. Either way exactly one bot message is appended to the thread and
the queue moves on; once the last draft is handled the task list is refreshed.

Calendar failures never stall the queue: they become a chat message and the
next draft is offered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from src.core.parser import EventDraft, SubtaskDraft, TaskPlan
from src.core.time_utils import format_clock, format_date_ordinal, parse_iso, to_local
from src.data.models import BOT_SENDER, Message
from src.ports.calendar_port import CalendarAuthError, CalendarError

if TYPE_CHECKING:
    from src.data.models import Project, ThreadKey, UserProfile
    from src.ports.calendar_port import CalendarPort
    from src.ports.message_port import MessageStore
    from src.ports.task_port import TaskSource

logger = logging.getLogger(__name__)

PRIMARY_CALENDAR = "primary"

IDLE = "idle"
AWAITING_CONFIRMATION = "awaiting_confirmation"
AWAITING_PLAN_CONFIRMATION = "awaiting_plan_confirmation"

TASK_PLAN_CANCELLED_TEXT = "I've cancelled adding the task plan to your calendar."

# Wording keys for the confirmation message
_ADDED = "added"
_ADDED_PROJECT = "added_project"
_ADDED_PRIMARY = "added_primary"
_ASSIGNED_SHARED = "assigned_shared"
_ASSIGNED = "assigned"
_NOTED = "noted"

_MESSAGES = {
    _ADDED: 'I\'ve added "{title}" to your calendar on {date} at {time}.',
    _ADDED_PROJECT: 'I\'ve added "{title}" to the project calendar on {date} at {time}.',
    _ADDED_PRIMARY: 'I\'ve added "{title}" to your primary calendar on {date} at {time}.',
    _ASSIGNED_SHARED: (
        '"{title}" is assigned to {assignee} and is on the project calendar '
        "for {date} at {time}."
    ),
    _ASSIGNED: '"{title}" on {date} at {time} is assigned to {assignee}.',
    _NOTED: 'I\'ve noted "{title}" on {date} at {time} in the project plan.',
}

_REAUTH_TEXT = (
    'I couldn\'t add "{title}" because your Google Calendar access has expired. '
    "Please sign in with Google again."
)
_FAILURE_TEXT = 'I couldn\'t add "{title}" to your calendar: {error}'
_CANCELLED_TEXT = 'I\'ve cancelled adding "{title}" to your calendar.'


# ---------------------------------------------------------------------------
# Context and routing
# ---------------------------------------------------------------------------


@dataclass
class ReconciliationContext:
    """Who is confirming, in which thread, and the project behind it if any."""

    user: UserProfile
    thread: ThreadKey
    project: Project | None = None

    @property
    def is_project(self) -> bool:
        return self.thread.is_project

    @property
    def shared_calendar_id(self) -> str | None:
        if self.is_project and self.project is not None:
            return self.project.shared_calendar_id or None
        return None


@dataclass(frozen=True)
class CalendarRoute:
    """Where a confirmed draft goes. calendar_id None means no calendar write."""

    calendar_id: str | None
    summary: str
    wording: str
    assignee: str | None = None


def route_event(draft: EventDraft, context: ReconciliationContext) -> CalendarRoute:
    """Decide the target calendar and message wording for one draft."""
    assignee = draft.assigned_to
    shared = context.shared_calendar_id
    annotated = f"{draft.title} (Assigned: {assignee})" if assignee else draft.title

    if assignee and not context.user.matches(assignee):
        # Someone else's item: only the project calendar may receive it.
        if shared:
            return CalendarRoute(shared, annotated, _ASSIGNED_SHARED, assignee)
        return CalendarRoute(None, draft.title, _ASSIGNED, assignee)

    if not context.is_project:
        return CalendarRoute(PRIMARY_CALENDAR, draft.title, _ADDED, assignee)

    if shared:
        return CalendarRoute(shared, annotated, _ADDED_PROJECT, assignee)
    if assignee:
        return CalendarRoute(PRIMARY_CALENDAR, draft.title, _ADDED_PRIMARY, assignee)
    return CalendarRoute(None, draft.title, _NOTED)


def _describe_start(draft: EventDraft, tz_name: str | None) -> tuple[str, str]:
    start = parse_iso(draft.start_time)
    if start is None:
        return draft.start_time or "an unspecified date", "an unspecified time"
    local = to_local(start, tz_name)
    return format_date_ordinal(local), format_clock(local)


def draft_from_subtask(subtask: SubtaskDraft, plan: TaskPlan) -> EventDraft:
    """Turn one task-plan step into an event draft tagged as a plan event."""
    return EventDraft(
        title=subtask.title,
        description=f"{subtask.description}\n\nPart of task plan: {plan.title}",
        start_time=subtask.start_time,
        end_time=subtask.end_time,
        priority=subtask.priority,
        assigned_to=subtask.assigned_to,
        is_task_plan_event=True,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass
class ConfirmationQueue:
    drafts: list[EventDraft] = field(default_factory=list)
    index: int = 0

    @property
    def current(self) -> EventDraft | None:
        if 0 <= self.index < len(self.drafts):
            return self.drafts[self.index]
        return None


class ReconciliationEngine:
    """Per-thread confirmation state machine."""

    def __init__(
        self,
        calendar: CalendarPort,
        message_store: MessageStore,
        task_source: TaskSource,
        context: ReconciliationContext,
        tz_name: str | None = None,
    ) -> None:
        self._calendar = calendar
        self._store = message_store
        self._task_source = task_source
        self._context = context
        self._tz_name = tz_name
        self._queue = ConfirmationQueue()
        self._plan: TaskPlan | None = None
        self._busy = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> str:
        if self._queue.current is not None:
            return AWAITING_CONFIRMATION
        if self._plan is not None:
            return AWAITING_PLAN_CONFIRMATION
        return IDLE

    @property
    def current(self) -> EventDraft | None:
        return self._queue.current

    @property
    def pending(self) -> list[EventDraft]:
        return list(self._queue.drafts)

    @property
    def index(self) -> int:
        return self._queue.index

    @property
    def plan(self) -> TaskPlan | None:
        return self._plan

    @property
    def is_busy(self) -> bool:
        return self._busy

    def begin(self, drafts: list[EventDraft]) -> None:
        """Start confirming a fresh batch, discarding any unfinished one."""
        if self._queue.current is not None:
            logger.info(
                "%s: replacing %d unconfirmed draft(s)",
                self._context.thread, len(self._queue.drafts) - self._queue.index,
            )
        self._queue = ConfirmationQueue(drafts=list(drafts))
        logger.info("%s: %d event draft(s) awaiting confirmation", self._context.thread, len(drafts))

    def clear(self) -> None:
        self._queue = ConfirmationQueue()
        self._plan = None

    # ------------------------------------------------------------------
    # Event confirmation
    # ------------------------------------------------------------------

    async def confirm_current(self) -> str | None:
        """Confirm the current draft. Returns the bot message, or None if ignored."""
        draft = self._queue.current
        if self._busy or draft is None:
            return None

        self._busy = True
        try:
            text = await self._write(draft)
            self._post(text)
            await self._advance()
        finally:
            self._busy = False
        return text

    async def cancel_current(self) -> str | None:
        """Skip the current draft without touching any calendar."""
        draft = self._queue.current
        if self._busy or draft is None:
            return None

        self._busy = True
        try:
            text = _CANCELLED_TEXT.format(title=draft.title)
            self._post(text)
            await self._advance()
        finally:
            self._busy = False
        return text

    async def _write(self, draft: EventDraft) -> str:
        route = route_event(draft, self._context)
        date, time = _describe_start(draft, self._tz_name)
        text = _MESSAGES[route.wording].format(
            title=draft.title, date=date, time=time, assignee=route.assignee,
        )

        if route.calendar_id is None:
            logger.info(
                "%s: '%s' recorded without a calendar write (%s)",
                self._context.thread, draft.title, route.wording,
            )
            return text

        user = self._context.user
        calendar_id = route.calendar_id
        if calendar_id == PRIMARY_CALENDAR and user.default_calendar_id:
            calendar_id = user.default_calendar_id

        try:
            await self._calendar.insert_event(
                user.calendar_auth, calendar_id, draft, summary=route.summary,
            )
        except CalendarAuthError as exc:
            logger.warning("Calendar auth failed for user %d: %s", user.user_id, exc)
            return _REAUTH_TEXT.format(title=draft.title)
        except CalendarError as exc:
            logger.error("Failed to add '%s' for user %d: %s", draft.title, user.user_id, exc)
            return _FAILURE_TEXT.format(title=draft.title, error=exc)
        return text

    def _post(self, text: str) -> None:
        self._store.send_message(self._context.thread, Message(text=text, sender=BOT_SENDER))

    async def _advance(self) -> None:
        if self._queue.index + 1 < len(self._queue.drafts):
            self._queue.index += 1
            return
        self._queue = ConfirmationQueue()
        logger.debug("%s: confirmation batch finished; refreshing tasks", self._context.thread)
        await self._task_source.refresh()

    # ------------------------------------------------------------------
    # Task plans
    # ------------------------------------------------------------------

    def offer_task_plan(self, plan: TaskPlan) -> None:
        self._plan = plan

    def confirm_task_plan(self) -> int:
        """Queue the offered plan's subtasks as event drafts. Returns how many."""
        plan = self._plan
        if plan is None:
            return 0
        self._plan = None
        self.begin([draft_from_subtask(s, plan) for s in plan.subtasks])
        return len(plan.subtasks)

    async def cancel_task_plan(self) -> str | None:
        if self._plan is None:
            return None
        self._plan = None
        self._post(TASK_PLAN_CANCELLED_TEXT)
        return TASK_PLAN_CANCELLED_TEXT

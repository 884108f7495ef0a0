"""
Bonsai Assistant — Chat Service.

One conversation thread as seen by a front end: stores the user's message,
asks the model, turns the parsed intent into bot messages or pending
confirmations, and forwards confirm/cancel actions to the reconciliation
engine. Front ends (the Telegram bot, tests) only talk to this class.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, assert_never

from src.core.conflict_checker import find_conflict, find_next_available_slot
from src.core.llm import ConfigurationError
from src.core.parser import (
    EventDraft,
    EventsIntent,
    ParseResult,
    TaskPlan,
    TaskPlanIntent,
    TextIntent,
    Unrecognized,
    build_system_prompt,
    parse_response,
)
from src.core.reconciliation import ReconciliationContext, ReconciliationEngine
from src.core.schedule_context import format_schedule_context
from src.core.session_manager import SessionNotFoundError
from src.core.time_utils import format_short, parse_iso, to_local
from src.data.models import BOT_SENDER, Message

if TYPE_CHECKING:
    from src.core.session_manager import SessionManager
    from src.ports.calendar_port import CalendarPort
    from src.ports.message_port import MessageStore
    from src.ports.task_port import TaskSource

logger = logging.getLogger(__name__)

GENERIC_ERROR_TEXT = "Sorry, I encountered an error processing your request."
FALLBACK_TEXT = "I don't know how to respond to that."
NO_VALID_EVENTS_TEXT = (
    "I couldn't find any events I could add in that request. "
    "Could you give me the title and time again?"
)

_DEFAULT_DURATION_MINUTES = 60


@dataclass
class ChatReply:
    """What a front end should show after one user action."""

    messages: list[str] = field(default_factory=list)
    pending_event: EventDraft | None = None
    pending_plan: TaskPlan | None = None


def format_plan_summary(plan: TaskPlan, tz_name: str | None = None) -> str:
    lines = [f'I\'ve created a plan for "{plan.title}":', ""]
    for number, subtask in enumerate(plan.subtasks, start=1):
        start = parse_iso(subtask.start_time)
        when = format_short(to_local(start, tz_name)) if start else subtask.start_time
        lines.append(f"{number}. {subtask.title} ({when})")
    lines.append("")
    lines.append("Would you like me to add these items to your calendar?")
    return "\n".join(lines)


class ChatService:
    """Chat front for a single thread and user."""

    def __init__(
        self,
        sessions: SessionManager,
        message_store: MessageStore,
        calendar: CalendarPort,
        task_source: TaskSource,
        context: ReconciliationContext,
        tz_name: str | None = None,
    ) -> None:
        if tz_name is None:
            from src.config import settings
            tz_name = settings.TIMEZONE
        self._sessions = sessions
        self._store = message_store
        self._task_source = task_source
        self._context = context
        self._tz_name = tz_name
        self._engine = ReconciliationEngine(
            calendar, message_store, task_source, context, tz_name=tz_name,
        )
        self._planning_context: str | None = None

    @property
    def engine(self) -> ReconciliationEngine:
        return self._engine

    @property
    def is_planning(self) -> bool:
        return self._planning_context is not None

    # ------------------------------------------------------------------
    # Model round trip
    # ------------------------------------------------------------------

    def build_system_prompt(self) -> str:
        schedule = format_schedule_context(self._task_source.tasks, tz_name=self._tz_name)
        return build_system_prompt(
            schedule, is_project=self._context.is_project, tz_name=self._tz_name,
        )

    async def _ensure_session(self) -> None:
        thread = self._context.thread
        if not self._sessions.is_active(thread):
            await self._sessions.start(thread, self.build_system_prompt())

    async def analyze(self, text: str) -> ParseResult:
        """Send text to the thread's model session and parse the reply.

        Configuration and missing-session errors propagate; any other failure
        of the model call becomes GENERIC_ERROR_TEXT.
        """
        await self._ensure_session()
        try:
            raw = await self._sessions.send(self._context.thread, text)
        except (ConfigurationError, SessionNotFoundError):
            raise
        except Exception as exc:
            logger.error("Model call failed for %s: %s", self._context.thread, exc)
            return ParseResult(text_response=GENERIC_ERROR_TEXT)
        return parse_response(raw)

    # ------------------------------------------------------------------
    # User messages
    # ------------------------------------------------------------------

    async def handle_user_message(self, text: str) -> ChatReply:
        text = text.strip()
        if not text:
            return ChatReply()

        # Start (and seed) the session before storing, so the new message
        # is not loaded into history and then sent a second time.
        await self._ensure_session()

        user = self._context.user
        self._store.send_message(
            self._context.thread,
            Message(text=text, sender=user.email or str(user.user_id), sender_name=user.username),
        )

        prompt = text
        if self._planning_context:
            prompt = f"[Task Planning Context: {self._planning_context}] User response: {text}"

        result = await self.analyze(prompt)
        intent = result.intent()

        if isinstance(intent, EventsIntent):
            return self._on_events(intent.drafts)
        if isinstance(intent, TaskPlanIntent):
            return self._on_task_plan(intent.plan)
        if isinstance(intent, TextIntent):
            if intent.needs_more_info:
                self._planning_context = intent.text
            return ChatReply(messages=[self._post(intent.text)])
        if isinstance(intent, Unrecognized):
            return ChatReply(messages=[self._post(FALLBACK_TEXT)])
        assert_never(intent)

    def _on_events(self, drafts: list[EventDraft]) -> ChatReply:
        if not drafts:
            return ChatReply(messages=[self._post(NO_VALID_EVENTS_TEXT)])
        self._engine.begin([self._reschedule_if_flexible(d) for d in drafts])
        return ChatReply(pending_event=self._engine.current)

    def _on_task_plan(self, plan: TaskPlan) -> ChatReply:
        self._planning_context = None
        if not plan.subtasks:
            logger.warning("%s: task plan '%s' has no subtasks", self._context.thread, plan.title)
            return ChatReply(messages=[self._post(NO_VALID_EVENTS_TEXT)])
        self._engine.offer_task_plan(plan)
        summary = format_plan_summary(plan, self._tz_name)
        return ChatReply(messages=[self._post(summary)], pending_plan=plan)

    def _reschedule_if_flexible(self, draft: EventDraft) -> EventDraft:
        """Move a flexible draft that clashes with the schedule to the next free slot."""
        if not draft.allow_reschedule:
            return draft
        start, end = parse_iso(draft.start_time), parse_iso(draft.end_time)
        if start is None:
            return draft
        start = to_local(start, self._tz_name)
        end = to_local(end, self._tz_name) if end else start + timedelta(minutes=_DEFAULT_DURATION_MINUTES)
        if end < start:
            start, end = end, start

        tasks = self._task_source.tasks
        if find_conflict(start, end, tasks) is None:
            return draft

        duration = max(int((end - start).total_seconds() // 60), 0) or _DEFAULT_DURATION_MINUTES
        slot = find_next_available_slot(start, duration, tasks)
        if slot is None:
            return draft

        new_start = to_local(slot.start, self._tz_name).isoformat()
        new_end = to_local(slot.end, self._tz_name).isoformat()
        logger.info("Rescheduled '%s' from %s to %s", draft.title, draft.start_time, new_start)
        return draft.model_copy(update={"start_time": new_start, "end_time": new_end})

    def _post(self, text: str) -> str:
        self._store.send_message(self._context.thread, Message(text=text, sender=BOT_SENDER))
        return text

    # ------------------------------------------------------------------
    # Confirmation actions
    # ------------------------------------------------------------------

    async def confirm_event(self) -> ChatReply:
        text = await self._engine.confirm_current()
        return ChatReply(messages=[text] if text else [], pending_event=self._engine.current)

    async def cancel_event(self) -> ChatReply:
        text = await self._engine.cancel_current()
        return ChatReply(messages=[text] if text else [], pending_event=self._engine.current)

    def confirm_task_plan(self) -> ChatReply:
        self._engine.confirm_task_plan()
        return ChatReply(pending_event=self._engine.current)

    async def cancel_task_plan(self) -> ChatReply:
        text = await self._engine.cancel_task_plan()
        return ChatReply(messages=[text] if text else [])

    def close(self) -> None:
        """Leave the thread: drop its model session and any pending confirmations."""
        self._sessions.reset(self._context.thread)
        self._engine.clear()
        self._planning_context = None

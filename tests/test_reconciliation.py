"""Tests for src.core.reconciliation — the event confirmation flow."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.core.parser import EventDraft, SubtaskDraft, TaskPlan
from src.core.reconciliation import (
    AWAITING_CONFIRMATION,
    AWAITING_PLAN_CONFIRMATION,
    IDLE,
    TASK_PLAN_CANCELLED_TEXT,
    ReconciliationContext,
    ReconciliationEngine,
    route_event,
)
from src.data.models import PERSONAL, PROJECT, Project, ThreadKey
from src.ports.calendar_port import CalendarAuthError, CalendarError

PERSONAL_THREAD = ThreadKey(scope=PERSONAL, thread_id="12345")
PROJECT_THREAD = ThreadKey(scope=PROJECT, thread_id="p1")


def _draft(title="Dentist", assigned_to=None, start="2026-02-14T16:00:00+00:00"):
    return EventDraft(
        title=title,
        start_time=start,
        end_time="2026-02-14T17:00:00+00:00",
        assigned_to=assigned_to,
    )


def _project(shared="shared-cal"):
    return Project(
        id="p1", name="Thesis", creator_email="dana@example.com",
        members=["dana@example.com", "noa@example.com"], shared_calendar_id=shared,
    )


def _context(user, project=None):
    thread = PROJECT_THREAD if project is not None else PERSONAL_THREAD
    return ReconciliationContext(user=user, thread=thread, project=project)


@pytest.fixture
def calendar():
    cal = MagicMock()
    cal.insert_event = AsyncMock(return_value={"id": "evt-1"})
    return cal


@pytest.fixture
def task_source():
    source = MagicMock()
    source.tasks = []
    source.refresh = AsyncMock()
    return source


def _engine(calendar, chat_db, task_source, context):
    return ReconciliationEngine(calendar, chat_db, task_source, context, tz_name="UTC")


def _bot_texts(chat_db, thread):
    return [m.text for m in chat_db.get_messages(thread) if m.is_bot]


# ---------------------------------------------------------------------------
# Routing decision table
# ---------------------------------------------------------------------------


class TestRouteEvent:
    def test_self_personal(self, user):
        route = route_event(_draft(assigned_to="dana"), _context(user))
        assert route.calendar_id == "primary"
        assert route.summary == "Dentist"

    def test_self_project_shared(self, user):
        route = route_event(_draft(assigned_to="Dana@Example.com"), _context(user, _project()))
        assert route.calendar_id == "shared-cal"
        assert route.summary == "Dentist (Assigned: Dana@Example.com)"

    def test_self_project_no_shared(self, user):
        route = route_event(_draft(assigned_to="dana"), _context(user, _project(shared=None)))
        assert route.calendar_id == "primary"

    def test_other_project_shared(self, user):
        route = route_event(_draft(assigned_to="noa"), _context(user, _project()))
        assert route.calendar_id == "shared-cal"
        assert route.summary == "Dentist (Assigned: noa)"

    def test_other_project_no_shared(self, user):
        assert route_event(_draft(assigned_to="noa"), _context(user, _project(shared=None))).calendar_id is None

    def test_other_personal(self, user):
        assert route_event(_draft(assigned_to="noa"), _context(user)).calendar_id is None

    def test_unassigned_personal(self, user):
        assert route_event(_draft(), _context(user)).calendar_id == "primary"

    def test_unassigned_project_shared(self, user):
        route = route_event(_draft(), _context(user, _project()))
        assert route.calendar_id == "shared-cal"
        assert route.summary == "Dentist"

    def test_unassigned_project_no_shared(self, user):
        assert route_event(_draft(), _context(user, _project(shared=None))).calendar_id is None


# ---------------------------------------------------------------------------
# Confirm / cancel
# ---------------------------------------------------------------------------


class TestConfirm:
    @pytest.mark.asyncio
    async def test_personal_confirm_writes_primary(self, calendar, chat_db, task_source, user):
        engine = _engine(calendar, chat_db, task_source, _context(user))
        engine.begin([_draft()])
        text = await engine.confirm_current()

        calendar.insert_event.assert_awaited_once()
        auth, calendar_id, draft = calendar.insert_event.call_args.args
        assert auth is user.calendar_auth
        assert calendar_id == "primary"
        assert draft.title == "Dentist"
        assert text == 'I\'ve added "Dentist" to your calendar on February 14th, 2026 at 4:00 PM.'
        assert _bot_texts(chat_db, PERSONAL_THREAD) == [text]
        assert engine.state == IDLE

    @pytest.mark.asyncio
    async def test_primary_redirected_to_default_calendar(self, calendar, chat_db, task_source, user):
        user.default_calendar_id = "bonsai-cal"
        engine = _engine(calendar, chat_db, task_source, _context(user))
        engine.begin([_draft()])
        await engine.confirm_current()
        assert calendar.insert_event.call_args.args[1] == "bonsai-cal"

    @pytest.mark.asyncio
    async def test_self_in_project_with_shared_calendar(self, calendar, chat_db, task_source, user):
        engine = _engine(calendar, chat_db, task_source, _context(user, _project()))
        engine.begin([_draft(assigned_to="dana")])
        text = await engine.confirm_current()

        assert calendar.insert_event.await_count == 1
        call = calendar.insert_event.call_args
        assert call.args[1] == "shared-cal"
        assert call.kwargs["summary"] == "Dentist (Assigned: dana)"
        assert "project calendar" in text

    @pytest.mark.asyncio
    async def test_self_in_project_without_shared_calendar(self, calendar, chat_db, task_source, user):
        engine = _engine(calendar, chat_db, task_source, _context(user, _project(shared=None)))
        engine.begin([_draft(assigned_to="dana")])
        text = await engine.confirm_current()
        assert calendar.insert_event.call_args.args[1] == "primary"
        assert "your primary calendar" in text

    @pytest.mark.asyncio
    async def test_other_user_in_personal_thread_no_write(self, calendar, chat_db, task_source, user):
        engine = _engine(calendar, chat_db, task_source, _context(user))
        engine.begin([_draft(assigned_to="noa")])
        text = await engine.confirm_current()
        calendar.insert_event.assert_not_called()
        assert "assigned to noa" in text

    @pytest.mark.asyncio
    async def test_other_user_with_shared_calendar(self, calendar, chat_db, task_source, user):
        engine = _engine(calendar, chat_db, task_source, _context(user, _project()))
        engine.begin([_draft(assigned_to="noa")])
        text = await engine.confirm_current()
        assert calendar.insert_event.call_args.args[1] == "shared-cal"
        assert "assigned to noa" in text
        assert "your calendar" not in text

    @pytest.mark.asyncio
    async def test_unassigned_project_without_shared_is_noted(self, calendar, chat_db, task_source, user):
        engine = _engine(calendar, chat_db, task_source, _context(user, _project(shared=None)))
        engine.begin([_draft()])
        text = await engine.confirm_current()
        calendar.insert_event.assert_not_called()
        assert "noted" in text
        assert "project plan" in text

    @pytest.mark.asyncio
    async def test_auth_error_suggests_sign_in_and_advances(self, calendar, chat_db, task_source, user):
        calendar.insert_event.side_effect = CalendarAuthError("expired")
        engine = _engine(calendar, chat_db, task_source, _context(user))
        engine.begin([_draft("One"), _draft("Two")])

        text = await engine.confirm_current()
        assert "sign in with Google again" in text
        assert engine.current.title == "Two"

    @pytest.mark.asyncio
    async def test_other_error_includes_message(self, calendar, chat_db, task_source, user):
        calendar.insert_event.side_effect = CalendarError("quota exceeded")
        engine = _engine(calendar, chat_db, task_source, _context(user))
        engine.begin([_draft()])
        text = await engine.confirm_current()
        assert "quota exceeded" in text
        assert engine.state == IDLE
        task_source.refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_confirm_when_idle_returns_none(self, calendar, chat_db, task_source, user):
        engine = _engine(calendar, chat_db, task_source, _context(user))
        assert await engine.confirm_current() is None
        assert await engine.cancel_current() is None
        task_source.refresh.assert_not_awaited()


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_never_calls_calendar(self, calendar, chat_db, task_source, user):
        engine = _engine(calendar, chat_db, task_source, _context(user))
        engine.begin([_draft()])
        text = await engine.cancel_current()
        assert text == 'I\'ve cancelled adding "Dentist" to your calendar.'
        calendar.insert_event.assert_not_called()
        task_source.refresh.assert_awaited_once()


class TestQueueScenario:
    @pytest.mark.asyncio
    async def test_cancel_confirm_confirm(self, calendar, chat_db, task_source, user):
        engine = _engine(calendar, chat_db, task_source, _context(user))
        engine.begin([_draft("One"), _draft("Two"), _draft("Three")])
        assert engine.state == AWAITING_CONFIRMATION

        await engine.cancel_current()
        assert engine.index == 1
        await engine.confirm_current()
        assert engine.index == 2
        task_source.refresh.assert_not_awaited()
        await engine.confirm_current()

        assert calendar.insert_event.await_count == 2
        titles = [c.args[2].title for c in calendar.insert_event.call_args_list]
        assert titles == ["Two", "Three"]

        texts = _bot_texts(chat_db, PERSONAL_THREAD)
        assert len(texts) == 3
        assert "cancelled" in texts[0] and '"One"' in texts[0]
        assert '"Two"' in texts[1]
        assert '"Three"' in texts[2]

        assert engine.pending == []
        assert engine.index == 0
        assert engine.state == IDLE
        task_source.refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reentrant_confirm_is_ignored(self, calendar, chat_db, task_source, user):
        release = asyncio.Event()

        async def _slow_insert(*args, **kwargs):
            await release.wait()
            return {}

        calendar.insert_event = AsyncMock(side_effect=_slow_insert)
        engine = _engine(calendar, chat_db, task_source, _context(user))
        engine.begin([_draft("One"), _draft("Two")])

        first = asyncio.create_task(engine.confirm_current())
        await asyncio.sleep(0)
        assert engine.is_busy
        assert await engine.confirm_current() is None
        assert await engine.cancel_current() is None

        release.set()
        await first
        assert calendar.insert_event.await_count == 1
        assert engine.current.title == "Two"

    def test_clear(self, calendar, chat_db, task_source, user):
        engine = _engine(calendar, chat_db, task_source, _context(user))
        engine.begin([_draft()])
        engine.offer_task_plan(TaskPlan(title="x"))
        engine.clear()
        assert engine.state == IDLE
        assert engine.plan is None


# ---------------------------------------------------------------------------
# Task plans
# ---------------------------------------------------------------------------


def _plan():
    return TaskPlan(
        title="Thesis",
        subtasks=[
            SubtaskDraft(title="Outline", description="Sketch chapters", start_time="2026-02-14T09:00:00Z",
                         end_time="2026-02-14T10:00:00Z", priority=7),
            SubtaskDraft(title="Draft", start_time="2026-02-15T09:00:00Z", end_time="2026-02-15T12:00:00Z",
                         assigned_to="noa"),
        ],
    )


class TestTaskPlan:
    @pytest.mark.asyncio
    async def test_confirm_plan_queues_tagged_drafts(self, calendar, chat_db, task_source, user):
        engine = _engine(calendar, chat_db, task_source, _context(user))
        engine.offer_task_plan(_plan())
        assert engine.state == AWAITING_PLAN_CONFIRMATION

        assert engine.confirm_task_plan() == 2
        assert engine.state == AWAITING_CONFIRMATION
        first, second = engine.pending
        assert first.is_task_plan_event and second.is_task_plan_event
        assert first.description == "Sketch chapters\n\nPart of task plan: Thesis"
        assert first.priority == 7
        assert second.assigned_to == "noa"

        await engine.confirm_current()
        assert calendar.insert_event.call_args.args[2].is_task_plan_event is True

    @pytest.mark.asyncio
    async def test_cancel_plan(self, calendar, chat_db, task_source, user):
        engine = _engine(calendar, chat_db, task_source, _context(user))
        engine.offer_task_plan(_plan())
        assert await engine.cancel_task_plan() == TASK_PLAN_CANCELLED_TEXT
        assert engine.state == IDLE
        assert _bot_texts(chat_db, PERSONAL_THREAD) == [TASK_PLAN_CANCELLED_TEXT]
        calendar.insert_event.assert_not_called()

    @pytest.mark.asyncio
    async def test_nothing_offered(self, calendar, chat_db, task_source, user):
        engine = _engine(calendar, chat_db, task_source, _context(user))
        assert engine.confirm_task_plan() == 0
        assert await engine.cancel_task_plan() is None

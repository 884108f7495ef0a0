"""Tests for src.bot.telegram_bot — Telegram bot handlers.

Tests authorization, the text and callback handlers and thread switching.
ChatService, the calendar and Telegram itself are mocked.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.bot.telegram_bot import (
    _confirm_keyboard,
    _describe_event,
    _open_chat,
    cmd_calendar,
    cmd_email,
    cmd_invite,
    cmd_newproject,
    cmd_project,
    cmd_projects,
    cmd_reset,
    cmd_sharedcalendar,
    handle_event_callback,
    handle_plan_callback,
    handle_text,
)
from src.core.chat_service import GENERIC_ERROR_TEXT, ChatReply
from src.core.llm import ConfigurationError
from src.core.parser import EventDraft
from src.data.models import PERSONAL, PROJECT, ThreadKey


def _make_update(text="", user_id=12345, username="dana"):
    """Create a mock Update with a text message from an authorized user."""
    update = MagicMock()
    update.message.text = text
    update.message.reply_text = AsyncMock()
    update.effective_user.id = user_id
    update.effective_user.username = username
    update.effective_user.first_name = "Dana"
    return update


def _make_callback(data, user_id=12345):
    update = MagicMock()
    update.effective_user.id = user_id
    update.callback_query.data = data
    update.callback_query.answer = AsyncMock()
    update.callback_query.edit_message_text = AsyncMock()
    update.callback_query.message.reply_text = AsyncMock()
    return update


def _make_context(user_db=None, chat_db=None, project_db=None, args=None):
    context = MagicMock()
    context.user_data = {}
    context.args = args or []
    calendar = MagicMock()
    calendar.list_events = AsyncMock(return_value=[])
    calendar.list_tasks = AsyncMock(return_value=[])
    calendar.find_or_create_calendar = AsyncMock(return_value="bonsai-cal")
    context.bot_data = {
        "user_db": user_db,
        "chat_db": chat_db,
        "project_db": project_db,
        "calendar": calendar,
        "sessions": MagicMock(),
    }
    return context


def _fake_chat(reply=None):
    chat = MagicMock()
    chat.handle_user_message = AsyncMock(return_value=reply or ChatReply())
    chat.confirm_event = AsyncMock(return_value=ChatReply(messages=["Added."]))
    chat.cancel_event = AsyncMock(return_value=ChatReply(messages=["Cancelled."]))
    chat.cancel_task_plan = AsyncMock(return_value=ChatReply(messages=["Plan cancelled."]))
    chat.confirm_task_plan = MagicMock(return_value=ChatReply())
    return chat


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_stranger_ignored(self):
        update = _make_update("hello", user_id=999)
        context = _make_context()
        with patch("src.bot.telegram_bot._open_chat", new=AsyncMock()) as mock_open:
            await handle_text(update, context)
        mock_open.assert_not_called()
        update.message.reply_text.assert_not_called()


# ---------------------------------------------------------------------------
# Text messages
# ---------------------------------------------------------------------------


class TestHandleText:
    @pytest.mark.asyncio
    async def test_replies_with_messages_and_pending_event(self):
        draft = EventDraft(title="Dentist", start_time="2026-02-14T16:00:00+00:00")
        chat = _fake_chat(ChatReply(messages=["Sure."], pending_event=draft))
        update = _make_update("dentist friday 4pm")
        with patch("src.bot.telegram_bot._open_chat", new=AsyncMock(return_value=chat)):
            await handle_text(update, _make_context())

        chat.handle_user_message.assert_awaited_once_with("dentist friday 4pm")
        calls = update.message.reply_text.call_args_list
        assert calls[0].args[0] == "Sure."
        assert "*Dentist*" in calls[1].args[0]
        assert calls[1].kwargs["reply_markup"] is not None

    @pytest.mark.asyncio
    async def test_plan_offer_gets_plan_keyboard(self):
        from src.core.parser import TaskPlan
        chat = _fake_chat(ChatReply(messages=["Plan:"], pending_plan=TaskPlan(title="Thesis")))
        update = _make_update("plan my thesis")
        with patch("src.bot.telegram_bot._open_chat", new=AsyncMock(return_value=chat)):
            await handle_text(update, _make_context())
        markup = update.message.reply_text.call_args.kwargs["reply_markup"]
        assert markup.inline_keyboard[0][0].callback_data == "plan:confirm"

    @pytest.mark.asyncio
    async def test_configuration_error_gives_generic_reply(self):
        update = _make_update("hello")
        with patch("src.bot.telegram_bot._open_chat", new=AsyncMock(side_effect=ConfigurationError("no key"))):
            await handle_text(update, _make_context())
        update.message.reply_text.assert_awaited_once_with(GENERIC_ERROR_TEXT)


# ---------------------------------------------------------------------------
# Callbacks
# ---------------------------------------------------------------------------


class TestEventCallback:
    @pytest.mark.asyncio
    async def test_confirm(self):
        chat = _fake_chat()
        chat.engine.current = EventDraft(title="Dentist")
        context = _make_context()
        context.user_data["chat"] = chat
        update = _make_callback("event:confirm")

        await handle_event_callback(update, context)

        chat.confirm_event.assert_awaited_once()
        chat.cancel_event.assert_not_called()
        update.callback_query.edit_message_text.assert_awaited_once_with("Dentist: confirmed")
        update.callback_query.message.reply_text.assert_awaited_once_with("Added.")

    @pytest.mark.asyncio
    async def test_cancel(self):
        chat = _fake_chat()
        chat.engine.current = EventDraft(title="Gym")
        context = _make_context()
        context.user_data["chat"] = chat
        await handle_event_callback(_make_callback("event:cancel"), context)
        chat.cancel_event.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ignored_tap_leaves_message_alone(self):
        chat = _fake_chat()
        chat.engine.current = EventDraft(title="Dentist")
        chat.confirm_event = AsyncMock(return_value=ChatReply(pending_event=chat.engine.current))
        context = _make_context()
        context.user_data["chat"] = chat
        update = _make_callback("event:confirm")

        await handle_event_callback(update, context)

        update.callback_query.edit_message_text.assert_not_called()
        update.callback_query.message.reply_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_nothing_pending(self):
        update = _make_callback("event:confirm")
        await handle_event_callback(update, _make_context())
        update.callback_query.edit_message_text.assert_awaited_once_with("No pending event found.")


class TestPlanCallback:
    @pytest.mark.asyncio
    async def test_confirm_starts_walkthrough(self):
        chat = _fake_chat()
        chat.engine.plan = MagicMock()
        context = _make_context()
        context.user_data["chat"] = chat
        await handle_plan_callback(_make_callback("plan:confirm"), context)
        chat.confirm_task_plan.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancel(self):
        chat = _fake_chat()
        chat.engine.plan = MagicMock()
        context = _make_context()
        context.user_data["chat"] = chat
        update = _make_callback("plan:cancel")
        await handle_plan_callback(update, context)
        chat.cancel_task_plan.assert_awaited_once()
        update.callback_query.message.reply_text.assert_awaited_once_with("Plan cancelled.")


# ---------------------------------------------------------------------------
# Threads and commands
# ---------------------------------------------------------------------------


class TestOpenChat:
    @pytest.mark.asyncio
    async def test_builds_personal_chat_and_reuses_it(self, user_db, chat_db, project_db):
        context = _make_context(user_db, chat_db, project_db)
        update = _make_update()

        chat = await _open_chat(update, context)
        assert context.user_data["thread"] == ThreadKey(scope=PERSONAL, thread_id="12345")
        assert user_db.get_user(12345).username == "dana"
        assert await _open_chat(update, context) is chat

    @pytest.mark.asyncio
    async def test_switching_thread_closes_previous(self, user_db, chat_db, project_db):
        project = project_db.create_project("Thesis", "dana@example.com")
        context = _make_context(user_db, chat_db, project_db)
        update = _make_update()

        first = await _open_chat(update, context)
        with patch.object(first, "close") as mock_close:
            second = await _open_chat(update, context, thread=project.thread)
        mock_close.assert_called_once()
        assert second is not first
        assert context.user_data["thread"].scope == PROJECT


class TestCommands:
    @pytest.mark.asyncio
    async def test_email_sets_address(self, user_db):
        context = _make_context(user_db=user_db, args=["dana@example.com"])
        update = _make_update()
        await cmd_email(update, context)
        assert user_db.get_user(12345).email == "dana@example.com"

    @pytest.mark.asyncio
    async def test_email_usage(self, user_db):
        update = _make_update()
        await cmd_email(update, _make_context(user_db=user_db, args=["nope"]))
        update.message.reply_text.assert_awaited_once_with("Usage: /email you@example.com")

    @pytest.mark.asyncio
    async def test_project_requires_membership(self, user_db, chat_db, project_db):
        project = project_db.create_project("Thesis", "someone@example.com")
        context = _make_context(user_db, chat_db, project_db, args=[project.id])
        update = _make_update()
        with patch("src.bot.telegram_bot._open_chat", new=AsyncMock()) as mock_open:
            await cmd_project(update, context)
        mock_open.assert_not_called()
        update.message.reply_text.assert_awaited_once_with("I couldn't find that project among yours.")

    @pytest.mark.asyncio
    async def test_reset_closes_chat(self):
        chat = _fake_chat()
        context = _make_context()
        context.user_data["chat"] = chat
        await cmd_reset(_make_update(), context)
        chat.close.assert_called_once()
        assert "chat" not in context.user_data


class TestCalendarCommand:
    @pytest.mark.asyncio
    async def test_stores_token_and_rebuilds_chat(self, user_db):
        chat = _fake_chat()
        context = _make_context(user_db=user_db, args=["ya29.token", "1800"])
        context.user_data["chat"] = chat
        update = _make_update()

        before = datetime.now(timezone.utc)
        await cmd_calendar(update, context)

        auth = user_db.get_user(12345).calendar_auth
        assert auth.access_token == "ya29.token"
        assert timedelta(minutes=29) < auth.expires_at - before <= timedelta(minutes=31)
        chat.close.assert_called_once()
        assert "chat" not in context.user_data
        update.message.reply_text.assert_awaited_once_with("Google Calendar linked.")

    @pytest.mark.asyncio
    async def test_default_lifetime_is_one_hour(self, user_db):
        context = _make_context(user_db=user_db, args=["tok"])
        await cmd_calendar(_make_update(), context)
        auth = user_db.get_user(12345).calendar_auth
        assert not auth.is_expired()
        assert auth.is_expired(datetime.now(timezone.utc) + timedelta(hours=1, minutes=1))

    @pytest.mark.asyncio
    async def test_bad_expiry(self, user_db):
        update = _make_update()
        await cmd_calendar(update, _make_context(user_db=user_db, args=["tok", "soon"]))
        assert user_db.get_user(12345) is None or user_db.get_user(12345).calendar_auth is None
        update.message.reply_text.assert_awaited_once_with("The expiry must be a number of seconds.")


class TestProjectCommands:
    @pytest.mark.asyncio
    async def test_newproject_requires_email(self, user_db, project_db):
        update = _make_update()
        await cmd_newproject(update, _make_context(user_db=user_db, project_db=project_db, args=["Thesis"]))
        update.message.reply_text.assert_awaited_once_with("Set your email first with /email you@example.com")

    @pytest.mark.asyncio
    async def test_newproject_then_project_switch(self, user_db, chat_db, project_db):
        user_db.add_user(12345, "dana", "dana@example.com")
        context = _make_context(user_db, chat_db, project_db, args=["Thesis", "group"])
        await cmd_newproject(_make_update(), context)

        [project] = project_db.list_for_member("dana@example.com")
        assert project.name == "Thesis group"

        context.args = [project.id]
        update = _make_update()
        await cmd_project(update, context)
        assert context.user_data["thread"] == project.thread
        assert context.user_data["chat"].engine is not None

    @pytest.mark.asyncio
    async def test_projects_lists_membership(self, user_db, project_db):
        user_db.add_user(12345, "dana", "dana@example.com")
        project = project_db.create_project("Thesis", "dana@example.com")
        update = _make_update()
        await cmd_projects(update, _make_context(user_db=user_db, project_db=project_db))
        update.message.reply_text.assert_awaited_once_with(f"Your projects:\nThesis ({project.id})")

    @pytest.mark.asyncio
    async def test_invite_adds_member(self, user_db, project_db):
        user_db.add_user(12345, "dana", "dana@example.com")
        project = project_db.create_project("Thesis", "dana@example.com")
        context = _make_context(user_db=user_db, project_db=project_db, args=[project.id, "noa@example.com"])
        await cmd_invite(_make_update(), context)
        assert project_db.get_project(project.id).has_member("noa@example.com")

    @pytest.mark.asyncio
    async def test_invite_needs_membership(self, user_db, project_db):
        user_db.add_user(12345, "dana", "dana@example.com")
        project = project_db.create_project("Thesis", "someone@example.com")
        context = _make_context(user_db=user_db, project_db=project_db, args=[project.id, "noa@example.com"])
        update = _make_update()
        await cmd_invite(update, context)
        assert not project_db.get_project(project.id).has_member("noa@example.com")
        update.message.reply_text.assert_awaited_once_with("I couldn't find that project among yours.")

    @pytest.mark.asyncio
    async def test_sharedcalendar_set_and_clear(self, user_db, project_db):
        user_db.add_user(12345, "dana", "dana@example.com")
        project = project_db.create_project("Thesis", "dana@example.com")
        chat = _fake_chat()
        context = _make_context(user_db=user_db, project_db=project_db, args=[project.id, "team@group.calendar"])
        context.user_data["chat"] = chat
        context.user_data["thread"] = project.thread

        await cmd_sharedcalendar(_make_update(), context)
        assert project_db.get_project(project.id).shared_calendar_id == "team@group.calendar"
        chat.close.assert_called_once()

        context.args = [project.id, "off"]
        await cmd_sharedcalendar(_make_update(), context)
        assert project_db.get_project(project.id).shared_calendar_id is None


class TestFormatting:
    def test_describe_event(self):
        draft = EventDraft(title="Dentist", start_time="2026-02-14T16:00:00+00:00",
                           location="Main St", assigned_to="noa")
        text = _describe_event(draft)
        assert text.splitlines()[:4] == ["*Dentist*", "Feb 14, 4:00 PM", "Main St", "Assigned to: noa"]

    def test_confirm_keyboard(self):
        row = _confirm_keyboard("event").inline_keyboard[0]
        assert [b.callback_data for b in row] == ["event:confirm", "event:cancel"]

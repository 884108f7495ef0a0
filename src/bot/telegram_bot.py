"""
Bonsai Assistant — Telegram Bot.

A thin front end over ChatService: every text message goes to the user's
current thread (their personal chat, or a project chat after /project), and
pending events and task plans are offered with inline Confirm/Cancel buttons.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from src.config import settings
from src.core.chat_service import GENERIC_ERROR_TEXT, ChatReply, ChatService
from src.core.llm import ConfigurationError
from src.core.reconciliation import ReconciliationContext
from src.core.session_manager import SessionNotFoundError
from src.core.task_feed import TaskFeed, ensure_default_calendar
from src.core.time_utils import format_short, parse_iso, to_local
from src.data.models import PERSONAL, CalendarAuth, ThreadKey

if TYPE_CHECKING:
    from src.core.parser import EventDraft
    from src.core.session_manager import SessionManager
    from src.data.db import ChatDB, ProjectDB, UserDB
    from src.data.models import Project, UserProfile
    from src.ports.calendar_port import CalendarPort

logger = logging.getLogger(__name__)

# Google access tokens live for an hour unless the sign-in page says otherwise
_DEFAULT_TOKEN_LIFETIME = 3600
_MAX_TOKEN_LIFETIME = 7 * 24 * 3600


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores updates from unauthorized users."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Per-user chat wiring
# ---------------------------------------------------------------------------


def _get_profile(update: Update, context: ContextTypes.DEFAULT_TYPE) -> UserProfile:
    user_db: UserDB = context.bot_data["user_db"]
    tg_user = update.effective_user
    profile = user_db.get_user(tg_user.id)
    if profile is None:
        profile = user_db.add_user(tg_user.id, tg_user.username or tg_user.first_name or str(tg_user.id))
    return profile


async def _open_chat(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    thread: ThreadKey | None = None,
) -> ChatService:
    """Return the user's ChatService, (re)building it when the thread changes."""
    current: ChatService | None = context.user_data.get("chat")
    wanted = thread or context.user_data.get("thread")
    profile = _get_profile(update, context)
    if wanted is None:
        wanted = ThreadKey(scope=PERSONAL, thread_id=str(profile.user_id))

    if current is not None and context.user_data.get("thread") == wanted:
        return current
    if current is not None:
        current.close()

    chat_db: ChatDB = context.bot_data["chat_db"]
    project_db: ProjectDB = context.bot_data["project_db"]
    calendar: CalendarPort = context.bot_data["calendar"]

    project = project_db.get_project(wanted.thread_id) if wanted.is_project else None
    chat_db.create_thread(wanted, profile.email or str(profile.user_id))

    await ensure_default_calendar(calendar, context.bot_data["user_db"], profile)
    feed = TaskFeed(calendar, profile)
    await feed.refresh()

    chat = ChatService(
        sessions=context.bot_data["sessions"],
        message_store=chat_db,
        calendar=calendar,
        task_source=feed,
        context=ReconciliationContext(user=profile, thread=wanted, project=project),
    )
    context.user_data["chat"] = chat
    context.user_data["thread"] = wanted
    return chat


def _describe_event(draft: EventDraft) -> str:
    start = parse_iso(draft.start_time)
    when = format_short(to_local(start)) if start else draft.start_time
    lines = [f"*{draft.title}*", when]
    if draft.location:
        lines.append(draft.location)
    if draft.assigned_to:
        lines.append(f"Assigned to: {draft.assigned_to}")
    lines.append("")
    lines.append("Add this to your calendar?")
    return "\n".join(lines)


def _confirm_keyboard(prefix: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[
        InlineKeyboardButton("Confirm", callback_data=f"{prefix}:confirm"),
        InlineKeyboardButton("Cancel", callback_data=f"{prefix}:cancel"),
    ]])


async def _send_reply(message: Any, reply: ChatReply) -> None:
    for text in reply.messages:
        await message.reply_text(text)
    if reply.pending_plan is not None:
        await message.reply_text(
            "Add this plan to your calendar?", reply_markup=_confirm_keyboard("plan"),
        )
    elif reply.pending_event is not None:
        await message.reply_text(
            _describe_event(reply.pending_event),
            parse_mode="Markdown",
            reply_markup=_confirm_keyboard("event"),
        )


# ---------------------------------------------------------------------------
# Text messages
# ---------------------------------------------------------------------------


@authorized_only
async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle plain text messages: one chat turn on the current thread."""
    try:
        chat = await _open_chat(update, context)
        reply = await chat.handle_user_message(update.message.text)
    except (ConfigurationError, SessionNotFoundError) as exc:
        logger.error("Chat unavailable for user %d: %s", update.effective_user.id, exc)
        await update.message.reply_text(GENERIC_ERROR_TEXT)
        return
    await _send_reply(update.message, reply)


# ---------------------------------------------------------------------------
# Confirmation callbacks
# ---------------------------------------------------------------------------


@authorized_only
async def handle_event_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle Confirm/Cancel taps on a pending event."""
    query = update.callback_query
    await query.answer()

    chat: ChatService | None = context.user_data.get("chat")
    if chat is None or chat.engine.current is None:
        await query.edit_message_text("No pending event found.")
        return

    action = query.data.split(":")[1]
    title = chat.engine.current.title
    reply = await (chat.confirm_event() if action == "confirm" else chat.cancel_event())
    if not reply.messages:
        # The tap landed while another confirmation was still being written.
        return
    await query.edit_message_text(f"{title}: {'confirmed' if action == 'confirm' else 'cancelled'}")
    await _send_reply(query.message, reply)


@authorized_only
async def handle_plan_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle Confirm/Cancel taps on a pending task plan."""
    query = update.callback_query
    await query.answer()

    chat: ChatService | None = context.user_data.get("chat")
    if chat is None or chat.engine.plan is None:
        await query.edit_message_text("No pending task plan found.")
        return

    if query.data.split(":")[1] == "confirm":
        reply = chat.confirm_task_plan()
        await query.edit_message_text("Task plan accepted. Let's go through each item.")
    else:
        reply = await chat.cancel_task_plan()
        await query.edit_message_text("Task plan discarded.")
    await _send_reply(query.message, reply)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — welcome message."""
    _get_profile(update, context)
    await update.message.reply_text(
        "Welcome to *Bonsai*!\n\n"
        "Tell me about your plans and I'll put them on your calendar:\n"
        "• \"Dentist Friday at 4pm\"\n"
        "• \"Help me plan my thesis over the next two weeks\"\n"
        "• \"What do I have tomorrow?\"\n\n"
        "Type /help for the full command list.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "*Available commands:*\n"
        "/calendar <token> [seconds] — Link Google Calendar with a sign-in token\n"
        "/email <address> — Set the email used for project membership\n"
        "/newproject <name> — Create a project\n"
        "/projects — List your projects\n"
        "/invite <id> <email> — Add a member to a project\n"
        "/sharedcalendar <id> <calendar id | off> — Set a project's shared calendar\n"
        "/project <id> — Switch to a project chat\n"
        "/personal — Switch back to your personal chat\n"
        "/reset — Start the current conversation fresh\n"
        "/help — Show this message",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_email(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /email <address>."""
    if not context.args or "@" not in context.args[0]:
        await update.message.reply_text("Usage: /email you@example.com")
        return
    profile = _get_profile(update, context)
    user_db: UserDB = context.bot_data["user_db"]
    user_db.set_email(profile.user_id, context.args[0])
    await update.message.reply_text(f"Email set to {context.args[0].strip()}.")


@authorized_only
async def cmd_project(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /project <id> — switch to a project thread."""
    if not context.args:
        await update.message.reply_text("Usage: /project <project id>")
        return

    project = await _member_project(update, context, context.args[0])
    if project is None:
        return

    await _open_chat(update, context, thread=project.thread)
    await update.message.reply_text(f"Now chatting in project *{project.name}*.", parse_mode="Markdown")


@authorized_only
async def cmd_personal(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /personal — switch back to the personal thread."""
    profile = _get_profile(update, context)
    await _open_chat(update, context, thread=ThreadKey(scope=PERSONAL, thread_id=str(profile.user_id)))
    await update.message.reply_text("Back to your personal chat.")


@authorized_only
async def cmd_reset(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /reset — drop the model session and pending confirmations."""
    _drop_chat(context)
    await update.message.reply_text("Conversation reset. Your message history is kept.")


def _drop_chat(context: ContextTypes.DEFAULT_TYPE) -> None:
    """Close the cached ChatService; the next message rebuilds it from the stores."""
    chat: ChatService | None = context.user_data.pop("chat", None)
    if chat is not None:
        chat.close()


# ---------------------------------------------------------------------------
# Calendar linking and project commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_calendar(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /calendar <access token> [expires in seconds] from the Google sign-in page."""
    if not context.args:
        await update.message.reply_text("Usage: /calendar <access token> [expires in seconds]")
        return

    lifetime = _DEFAULT_TOKEN_LIFETIME
    if len(context.args) > 1:
        if not context.args[1].isdigit():
            await update.message.reply_text("The expiry must be a number of seconds.")
            return
        lifetime = min(int(context.args[1]), _MAX_TOKEN_LIFETIME)

    profile = _get_profile(update, context)
    auth = CalendarAuth(
        access_token=context.args[0],
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=lifetime),
    )
    user_db: UserDB = context.bot_data["user_db"]
    user_db.set_calendar_auth(profile.user_id, auth)
    _drop_chat(context)
    await update.message.reply_text("Google Calendar linked.")


async def _member_project(
    update: Update, context: ContextTypes.DEFAULT_TYPE, project_id: str,
) -> Project | None:
    """The project if the caller belongs to it; otherwise reply and return None."""
    project_db: ProjectDB = context.bot_data["project_db"]
    project = project_db.get_project(project_id)
    profile = _get_profile(update, context)
    if project is None or not profile.email or not project.has_member(profile.email):
        await update.message.reply_text("I couldn't find that project among yours.")
        return None
    return project


def _drop_chat_for(context: ContextTypes.DEFAULT_TYPE, project: Project) -> None:
    if context.user_data.get("thread") == project.thread:
        _drop_chat(context)


@authorized_only
async def cmd_newproject(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /newproject <name>."""
    name = " ".join(context.args or []).strip()
    if not name:
        await update.message.reply_text("Usage: /newproject <name>")
        return
    profile = _get_profile(update, context)
    if not profile.email:
        await update.message.reply_text("Set your email first with /email you@example.com")
        return

    project_db: ProjectDB = context.bot_data["project_db"]
    project = project_db.create_project(name, profile.email)
    await update.message.reply_text(
        f"Project *{project.name}* created. Its id is `{project.id}`; "
        f"use /project {project.id} to chat in it.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_projects(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /projects — list the caller's projects."""
    profile = _get_profile(update, context)
    project_db: ProjectDB = context.bot_data["project_db"]
    projects = project_db.list_for_member(profile.email) if profile.email else []
    if not projects:
        await update.message.reply_text("You are not in any project yet.")
        return
    lines = [f"{p.name} ({p.id})" for p in projects]
    await update.message.reply_text("Your projects:\n" + "\n".join(lines))


@authorized_only
async def cmd_invite(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /invite <project id> <email>."""
    if not context.args or len(context.args) < 2 or "@" not in context.args[1]:
        await update.message.reply_text("Usage: /invite <project id> <email>")
        return
    project = await _member_project(update, context, context.args[0])
    if project is None:
        return

    project_db: ProjectDB = context.bot_data["project_db"]
    project_db.add_member(project.id, context.args[1])
    _drop_chat_for(context, project)
    await update.message.reply_text(f"{context.args[1].strip()} added to {project.name}.")


@authorized_only
async def cmd_sharedcalendar(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /sharedcalendar <project id> <calendar id | off>."""
    if not context.args or len(context.args) < 2:
        await update.message.reply_text("Usage: /sharedcalendar <project id> <calendar id | off>")
        return
    project = await _member_project(update, context, context.args[0])
    if project is None:
        return

    calendar_id = None if context.args[1].lower() == "off" else context.args[1]
    project_db: ProjectDB = context.bot_data["project_db"]
    project_db.set_shared_calendar(project.id, calendar_id)
    _drop_chat_for(context, project)
    if calendar_id is None:
        await update.message.reply_text(f"{project.name} no longer has a shared calendar.")
    else:
        await update.message.reply_text(f"{project.name} now writes to calendar {calendar_id}.")


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


async def _drain_sessions(app: Application) -> None:
    """Let in-flight summary updates finish before the loop closes."""
    sessions: SessionManager = app.bot_data["sessions"]
    await sessions.drain()


def build_app(
    sessions: SessionManager,
    chat_db: ChatDB,
    user_db: UserDB,
    project_db: ProjectDB,
    calendar: CalendarPort | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        sessions: The process-wide session manager.
        chat_db: Message store for every thread.
        user_db: User profiles and calendar tokens.
        project_db: Projects and their members.
        calendar: Calendar port implementation. Defaults to GoogleCalendarAdapter.
    """
    app = (
        ApplicationBuilder()
        .token(settings.TELEGRAM_BOT_TOKEN)
        .post_shutdown(_drain_sessions)
        .build()
    )

    if calendar is None:
        from src.adapters.google_calendar import GoogleCalendarAdapter
        calendar = GoogleCalendarAdapter()

    # Store services in bot_data for handler access
    app.bot_data["sessions"] = sessions
    app.bot_data["chat_db"] = chat_db
    app.bot_data["user_db"] = user_db
    app.bot_data["project_db"] = project_db
    app.bot_data["calendar"] = calendar

    # Commands
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("email", cmd_email))
    app.add_handler(CommandHandler("project", cmd_project))
    app.add_handler(CommandHandler("personal", cmd_personal))
    app.add_handler(CommandHandler("reset", cmd_reset))
    app.add_handler(CommandHandler("calendar", cmd_calendar))
    app.add_handler(CommandHandler("newproject", cmd_newproject))
    app.add_handler(CommandHandler("projects", cmd_projects))
    app.add_handler(CommandHandler("invite", cmd_invite))
    app.add_handler(CommandHandler("sharedcalendar", cmd_sharedcalendar))
    app.add_handler(CallbackQueryHandler(handle_event_callback, pattern=r"^event:(confirm|cancel)$"))
    app.add_handler(CallbackQueryHandler(handle_plan_callback, pattern=r"^plan:(confirm|cancel)$"))

    # Text messages (non-command)
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app

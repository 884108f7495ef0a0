"""
Bonsai Assistant — SQLite storage.

The message store behind every chat thread (messages plus the running
summary), and the user/project records the reconciliation engine consults.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path

from src.data.models import (
    CalendarAuth,
    ConversationSummary,
    Message,
    Project,
    ThreadKey,
    UserProfile,
)

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _SQLiteStore:
    """Shared connection handling for the SQLite-backed stores."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        # An in-memory database lives only as long as its connection, so one
        # connection is held for the store's lifetime.
        self._shared_conn: sqlite3.Connection | None = None
        if db_path == ":memory:":
            self._shared_conn = self._open()
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _connect(self) -> sqlite3.Connection:
        if self._shared_conn is not None:
            return self._shared_conn
        return self._open()

    def _init_db(self) -> None:
        raise NotImplementedError


class ChatDB(_SQLiteStore):
    """SQLite-backed message store: threads, ordered messages and summaries."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS threads (
                    thread_key   TEXT PRIMARY KEY,
                    created_by   TEXT NOT NULL,
                    created_at   TEXT NOT NULL,
                    last_updated TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    seq          INTEGER PRIMARY KEY AUTOINCREMENT,
                    id           TEXT    NOT NULL UNIQUE,
                    thread_key   TEXT    NOT NULL,
                    text         TEXT    NOT NULL,
                    sender       TEXT    NOT NULL,
                    sender_name  TEXT,
                    timestamp    TEXT    NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_thread "
                "ON messages (thread_key, timestamp, seq)"
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS summaries (
                    thread_key                 TEXT PRIMARY KEY,
                    text                       TEXT NOT NULL,
                    last_summarized_message_id TEXT NOT NULL,
                    updated_at                 TEXT NOT NULL
                )
            """)
        logger.debug("Chat tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            text=row["text"],
            sender=row["sender"],
            sender_name=row["sender_name"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    def create_thread(self, thread: ThreadKey, created_by: str) -> ThreadKey:
        """Register a thread. Creating an existing thread is a no-op."""
        now = _now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO threads (thread_key, created_by, created_at, last_updated)
                VALUES (?, ?, ?, ?)
                """,
                (str(thread), created_by, now, now),
            )
        logger.info("Thread %s ready (created by %s)", thread, created_by)
        return thread

    def send_message(self, thread: ThreadKey, message: Message) -> Message:
        """Append a message to a thread; assigns and returns its id."""
        message.id = message.id or uuid.uuid4().hex
        ts = message.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        stored_ts = ts.astimezone(timezone.utc).isoformat(timespec="microseconds")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO messages (id, thread_key, text, sender, sender_name, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id, str(thread), message.text, message.sender,
                    message.sender_name, stored_ts,
                ),
            )
            conn.execute(
                "UPDATE threads SET last_updated = ? WHERE thread_key = ?",
                (_now_iso(), str(thread)),
            )
        logger.debug("Message %s stored in %s", message.id, thread)
        return message

    def get_messages(self, thread: ThreadKey) -> list[Message]:
        """All messages of a thread in arrival order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE thread_key = ? ORDER BY timestamp, seq",
                (str(thread),),
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    def delete_message(self, message_id: str) -> bool:
        """Permanently delete a message by ID."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Message %s deleted", message_id)
        return deleted

    def get_summary(self, thread: ThreadKey) -> ConversationSummary | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM summaries WHERE thread_key = ?", (str(thread),),
            ).fetchone()
        if row is None:
            return None
        return ConversationSummary(
            thread=thread,
            text=row["text"],
            last_summarized_message_id=row["last_summarized_message_id"],
            updated_at=row["updated_at"],
        )

    def save_summary(
        self, thread: ThreadKey, text: str, last_message_id: str,
    ) -> ConversationSummary:
        """Upsert the single summary record of a thread."""
        now = _now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO summaries (thread_key, text, last_summarized_message_id, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(thread_key) DO UPDATE SET
                    text = excluded.text,
                    last_summarized_message_id = excluded.last_summarized_message_id,
                    updated_at = excluded.updated_at
                """,
                (str(thread), text, last_message_id, now),
            )
        logger.info("Summary for %s saved up to message %s", thread, last_message_id)
        return ConversationSummary(
            thread=thread,
            text=text,
            last_summarized_message_id=last_message_id,
            updated_at=now,
        )


class UserDB(_SQLiteStore):
    """SQLite-backed storage for registered users."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id              INTEGER PRIMARY KEY,
                    username             TEXT NOT NULL,
                    email                TEXT NOT NULL DEFAULT '',
                    calendar_auth_json   TEXT,
                    default_calendar_id  TEXT,
                    created_at           TEXT NOT NULL
                )
            """)
        logger.debug("Users table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> UserProfile:
        auth = None
        if row["calendar_auth_json"]:
            data = json.loads(row["calendar_auth_json"])
            auth = CalendarAuth(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token"),
                expires_at=datetime.fromisoformat(data["expires_at"]),
            )
        return UserProfile(
            user_id=row["user_id"],
            username=row["username"],
            email=row["email"],
            calendar_auth=auth,
            default_calendar_id=row["default_calendar_id"],
            created_at=row["created_at"],
        )

    def add_user(self, user_id: int, username: str, email: str = "") -> UserProfile:
        """Register a new user."""
        now = _now_iso()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO users (user_id, username, email, created_at) VALUES (?, ?, ?, ?)",
                (user_id, username, email, now),
            )
        logger.info("User registered: %d '%s'", user_id, username)
        return UserProfile(user_id=user_id, username=username, email=email, created_at=now)

    def get_user(self, user_id: int) -> UserProfile | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE user_id = ?", (user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def set_email(self, user_id: int, email: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET email = ? WHERE user_id = ?", (email.strip(), user_id),
            )
        logger.info("Email set for user %d", user_id)

    def set_calendar_auth(self, user_id: int, auth: CalendarAuth) -> None:
        """Store the calendar token handed over by the sign-in flow."""
        payload = json.dumps({
            "access_token": auth.access_token,
            "refresh_token": auth.refresh_token,
            "expires_at": auth.expires_at.isoformat(),
        })
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET calendar_auth_json = ? WHERE user_id = ?",
                (payload, user_id),
            )
        logger.info("Calendar auth set for user %d", user_id)

    def set_default_calendar(self, user_id: int, calendar_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET default_calendar_id = ? WHERE user_id = ?",
                (calendar_id, user_id),
            )
        logger.info("Default calendar for user %d set to %s", user_id, calendar_id)


class ProjectDB(_SQLiteStore):
    """SQLite-backed storage for projects and their members."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id                  TEXT PRIMARY KEY,
                    name                TEXT NOT NULL,
                    creator_email       TEXT NOT NULL,
                    shared_calendar_id  TEXT,
                    created_at          TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS project_members (
                    project_id  TEXT NOT NULL,
                    email       TEXT NOT NULL,
                    PRIMARY KEY (project_id, email)
                )
            """)
        logger.debug("Project tables initialized at %s", self._db_path)

    def _row_to_project(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Project:
        members = [
            r["email"] for r in conn.execute(
                "SELECT email FROM project_members WHERE project_id = ? ORDER BY email",
                (row["id"],),
            ).fetchall()
        ]
        return Project(
            id=row["id"],
            name=row["name"],
            creator_email=row["creator_email"],
            members=members,
            shared_calendar_id=row["shared_calendar_id"],
            created_at=row["created_at"],
        )

    def create_project(
        self, name: str, creator_email: str, shared_calendar_id: str | None = None,
    ) -> Project:
        """Create a project; the creator is its first member."""
        project_id = uuid.uuid4().hex[:12]
        now = _now_iso()
        creator = creator_email.strip().lower()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO projects (id, name, creator_email, shared_calendar_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (project_id, name.strip(), creator, shared_calendar_id, now),
            )
            conn.execute(
                "INSERT INTO project_members (project_id, email) VALUES (?, ?)",
                (project_id, creator),
            )
        logger.info("Project created: %s '%s'", project_id, name)
        return Project(
            id=project_id,
            name=name.strip(),
            creator_email=creator,
            members=[creator],
            shared_calendar_id=shared_calendar_id,
            created_at=now,
        )

    def get_project(self, project_id: str) -> Project | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE id = ?", (project_id,),
            ).fetchone()
            if row is None:
                return None
            return self._row_to_project(conn, row)

    def add_member(self, project_id: str, email: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO project_members (project_id, email) VALUES (?, ?)",
                (project_id, email.strip().lower()),
            )
        logger.info("Member %s added to project %s", email, project_id)

    def set_shared_calendar(self, project_id: str, calendar_id: str | None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE projects SET shared_calendar_id = ? WHERE id = ?",
                (calendar_id, project_id),
            )
        logger.info("Shared calendar of project %s set to %s", project_id, calendar_id)

    def list_for_member(self, email: str) -> list[Project]:
        """Projects the given email belongs to, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM projects p
                JOIN project_members m ON m.project_id = p.id
                WHERE m.email = ?
                ORDER BY p.created_at
                """,
                (email.strip().lower(),),
            ).fetchall()
            return [self._row_to_project(conn, r) for r in rows]

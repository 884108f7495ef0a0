"""Shared test fixtures and configuration.

Sets up fake environment variables before src.config is imported, and
provides temp-file SQLite stores plus a few model factories.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("LLM_API_KEY", "fake-llm-key-for-tests")
os.environ.setdefault("LLM_PROVIDER", "gemini")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ["TIMEZONE"] = "UTC"

from datetime import datetime, timedelta, timezone

import pytest


@pytest.fixture
def chat_db(tmp_path):
    """Return a ChatDB instance backed by a temp file."""
    from src.data.db import ChatDB
    return ChatDB(db_path=str(tmp_path / "test_chat.db"))


@pytest.fixture
def user_db(tmp_path):
    """Return a UserDB instance backed by a temp file."""
    from src.data.db import UserDB
    return UserDB(db_path=str(tmp_path / "test_users.db"))


@pytest.fixture
def project_db(tmp_path):
    """Return a ProjectDB instance backed by a temp file."""
    from src.data.db import ProjectDB
    return ProjectDB(db_path=str(tmp_path / "test_projects.db"))


@pytest.fixture
def valid_auth():
    from src.data.models import CalendarAuth
    return CalendarAuth(
        access_token="token-abc",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )


@pytest.fixture
def user(valid_auth):
    from src.data.models import UserProfile
    return UserProfile(
        user_id=12345,
        username="Dana",
        email="dana@example.com",
        calendar_auth=valid_auth,
    )

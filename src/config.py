"""
Bonsai Assistant — Centralized configuration.

Loads all settings from .env. Only the LLM and Telegram credentials matter at
runtime; a missing LLM key surfaces when the first chat session starts, a
missing bot token when main.py starts polling.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str = ""

    # LLM: provider-agnostic (gemini, anthropic, openai, cohere)
    LLM_PROVIDER: str = "gemini"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str = ""
    LLM_TEMPERATURE: float = 0.2
    LLM_MAX_OUTPUT_TOKENS: int = 2048

    # SQLite (messages, summaries, users, projects)
    DATABASE_PATH: str = "data/bonsai.db"

    # Security
    ALLOWED_USER_IDS: list[int] = []

    # Calendar
    TIMEZONE: str = "UTC"
    DEFAULT_CALENDAR_NAME: str = "Bonsai"

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("LLM_TEMPERATURE", mode="before")
    @classmethod
    def parse_temperature(cls, v: str | float) -> float:
        return float(v)

    @field_validator("LLM_MAX_OUTPUT_TOKENS", mode="before")
    @classmethod
    def parse_max_tokens(cls, v: str | int) -> int:
        return int(v)


def _load_settings() -> Settings:
    """Load settings from environment."""
    return Settings(
        TELEGRAM_BOT_TOKEN=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "gemini"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=os.getenv("LLM_API_KEY", ""),
        LLM_TEMPERATURE=os.getenv("LLM_TEMPERATURE", "0.2"),
        LLM_MAX_OUTPUT_TOKENS=os.getenv("LLM_MAX_OUTPUT_TOKENS", "2048"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/bonsai.db"),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        DEFAULT_CALENDAR_NAME=os.getenv("DEFAULT_CALENDAR_NAME", "Bonsai"),
    )


# Singleton, imported by all other modules as:
#   from src.config import settings
settings = _load_settings()

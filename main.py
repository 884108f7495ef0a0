"""
Bonsai Assistant — Entry Point.

Single entry point: `python main.py` wires the stores and the session manager
once and starts the Telegram bot.
"""

import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from src.bot.telegram_bot import build_app
from src.config import settings
from src.core.session_manager import SessionManager
from src.core.summarizer import SummaryController
from src.data.db import ChatDB, ProjectDB, UserDB

logger = logging.getLogger(__name__)


def main() -> None:
    """Build the services, then the app, and start polling."""
    if not settings.TELEGRAM_BOT_TOKEN:
        print("ERROR: TELEGRAM_BOT_TOKEN is not set. Add it to your .env file.", file=sys.stderr)
        sys.exit(1)

    chat_db = ChatDB()
    sessions = SessionManager(chat_db, SummaryController(chat_db))

    logger.info("Starting Bonsai Assistant bot...")
    app = build_app(sessions, chat_db, UserDB(), ProjectDB())
    app.run_polling()


if __name__ == "__main__":
    main()

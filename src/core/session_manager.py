"""
Bonsai Assistant — Conversation Session Manager.

Owns the live model sessions, one per chat thread. A session is created
lazily on the first message of a thread, seeded with the stored history
(compacted by the summary controller first) and kept in memory until reset.

Constructed once in main.py and handed to whatever drives the chat; nothing
reaches it through a global.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from src.core.llm import MODEL, USER, GenerationConfig, ModelSession, Turn, get_provider

if TYPE_CHECKING:
    from src.core.llm import Provider
    from src.core.summarizer import SummaryController
    from src.data.models import Message, ThreadKey
    from src.ports.message_port import MessageStore

logger = logging.getLogger(__name__)

_SUMMARY_TURN = "Summary of our earlier conversation: {summary}"
_SUMMARY_ACK = "Understood. I'll keep that context in mind."


class SessionNotFoundError(Exception):
    """Raised when sending on a thread whose session was never started."""


@dataclass
class ConversationSession:
    key: ThreadKey
    system_prompt: str
    model_session: ModelSession

    @property
    def history(self) -> list[Turn]:
        return self.model_session.history


def _message_to_turn(message: Message, is_project: bool) -> Turn:
    if message.is_bot:
        return Turn(MODEL, message.text)
    if is_project:
        # Several people share a project thread; the model needs to know who spoke.
        return Turn(USER, f"{message.sender_name or message.sender}: {message.text}")
    return Turn(USER, message.text)


class SessionManager:
    """Process-local registry of model sessions keyed by thread."""

    def __init__(
        self,
        store: MessageStore,
        summaries: SummaryController,
        provider_factory: Callable[[], Provider] = get_provider,
        config: GenerationConfig | None = None,
    ) -> None:
        self._store = store
        self._summaries = summaries
        self._provider_factory = provider_factory
        if config is None:
            from src.config import settings
            config = GenerationConfig(
                temperature=settings.LLM_TEMPERATURE,
                max_output_tokens=settings.LLM_MAX_OUTPUT_TOKENS,
            )
        self._config = config
        self._sessions: dict[ThreadKey, ConversationSession] = {}
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def is_active(self, key: ThreadKey) -> bool:
        return key in self._sessions

    def active_sessions(self) -> list[ThreadKey]:
        return list(self._sessions)

    def get(self, key: ThreadKey) -> ConversationSession | None:
        return self._sessions.get(key)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, key: ThreadKey, system_prompt: str) -> ConversationSession:
        """Create (or re-create) the session for a thread.

        Raises ConfigurationError if the model provider cannot be configured.
        """
        provider = self._provider_factory()

        await self._summaries.update(key)
        history = self._load_history(key)

        session = ConversationSession(
            key=key,
            system_prompt=system_prompt,
            model_session=ModelSession(
                system=system_prompt,
                history=history,
                config=self._config,
                provider=provider,
            ),
        )
        if key in self._sessions:
            logger.info("Replacing existing session for %s", key)
        self._sessions[key] = session
        logger.info("Session started for %s with %d history turn(s)", key, len(history))
        return session

    def _load_history(self, key: ThreadKey) -> list[Turn]:
        messages = self._store.get_messages(key)
        summary = self._store.get_summary(key)

        history: list[Turn] = []
        if summary is not None:
            ids = [m.id for m in messages]
            if summary.last_summarized_message_id in ids:
                messages = messages[ids.index(summary.last_summarized_message_id) + 1:]
            history.append(Turn(USER, _SUMMARY_TURN.format(summary=summary.text)))
            history.append(Turn(MODEL, _SUMMARY_ACK))

        history.extend(_message_to_turn(m, key.is_project) for m in messages)
        return history

    def reset(self, key: ThreadKey | None = None) -> None:
        """Drop one session, or all of them. Stored messages are untouched."""
        if key is None:
            count = len(self._sessions)
            self._sessions.clear()
            logger.info("All %d session(s) reset", count)
            return
        if self._sessions.pop(key, None) is not None:
            logger.info("Session reset for %s", key)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send(self, key: ThreadKey, text: str) -> str:
        """Send a user turn on an active session and return the reply text."""
        session = self._sessions.get(key)
        if session is None:
            raise SessionNotFoundError(f"Chat session {key} not initialized")

        reply = await session.model_session.send(text)
        self._spawn_summary_update(key)
        return reply

    def _spawn_summary_update(self, key: ThreadKey) -> None:
        task = asyncio.create_task(self._summaries.update(key), name=f"summary:{key}")
        self._background.add(task)
        task.add_done_callback(self._on_summary_done)

    def _on_summary_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background summary update %s failed: %s", task.get_name(), exc)

    async def drain(self) -> None:
        """Wait for in-flight background summary updates."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

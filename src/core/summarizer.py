"""
Bonsai Assistant — Conversation Summarizer.

Keeps the prompt bounded: once a thread accumulates enough messages, the
older part is folded into a running summary stored next to the messages.
The newest MESSAGES_TO_KEEP messages are never summarized so the model always
sees the latest exchange verbatim.

Summarization is best-effort. A failed model call yields SUMMARY_FALLBACK
and nothing is written, so the stored cursor never claims coverage it
doesn't have.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.core.llm import complete

if TYPE_CHECKING:
    from src.data.models import ConversationSummary, Message, ThreadKey
    from src.ports.message_port import MessageStore

logger = logging.getLogger(__name__)

SUMMARY_TRIGGER_COUNT = 20
MESSAGES_TO_KEEP = 10

SUMMARY_FALLBACK = "Summary unavailable."

_SUMMARY_MAX_TOKENS = 512
_SUMMARY_TEMPERATURE = 0.1

_SUMMARY_SYSTEM_PROMPT = """\
You produce a concise summary of a chat between a user (or project members) \
and a scheduling assistant.
Keep: decisions made, events and tasks discussed with their dates and times, \
who is responsible for what, open questions and stated preferences.
Drop: greetings, small talk and anything superseded later in the conversation.
If a previous summary is given, fold it in so the result covers everything.
Write plain prose, at most 200 words. No markdown, no preamble.
"""


# ---------------------------------------------------------------------------
# Summarization call
# ---------------------------------------------------------------------------


def _format_transcript(messages: list[Message], previous_summary: str | None) -> str:
    lines: list[str] = []
    if previous_summary:
        lines.append(f"Previous summary: {previous_summary}")
        lines.append("")
    for msg in messages:
        speaker = "Assistant" if msg.is_bot else (msg.sender_name or msg.sender)
        lines.append(f"{speaker}: {msg.text}")
    return "\n".join(lines)


async def summarize_messages(
    messages: list[Message], previous_summary: str | None = None,
) -> str:
    """Summarize messages (optionally on top of a previous summary).

    Returns SUMMARY_FALLBACK on any failure.
    """
    transcript = _format_transcript(messages, previous_summary)
    try:
        summary = await complete(
            system=_SUMMARY_SYSTEM_PROMPT,
            user_message=transcript,
            max_tokens=_SUMMARY_MAX_TOKENS,
            temperature=_SUMMARY_TEMPERATURE,
        )
    except Exception as exc:
        logger.error("Summarization failed for %d message(s): %s", len(messages), exc)
        return SUMMARY_FALLBACK

    summary = (summary or "").strip()
    if not summary:
        logger.warning("Summarization returned empty text")
        return SUMMARY_FALLBACK
    return summary


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class SummaryController:
    """Decides when a thread's history is compacted, and compacts it."""

    def __init__(
        self,
        store: MessageStore,
        trigger_count: int = SUMMARY_TRIGGER_COUNT,
        keep_count: int = MESSAGES_TO_KEEP,
    ) -> None:
        self._store = store
        self._trigger_count = trigger_count
        self._keep_count = keep_count

    async def update(self, thread: ThreadKey) -> ConversationSummary | None:
        """Summarize the thread if enough unsummarized messages piled up.

        Returns the saved summary, or None when nothing was written.
        """
        messages = self._store.get_messages(thread)
        existing = self._store.get_summary(thread)

        if existing is None:
            return await self._create(thread, messages)
        return await self._extend(thread, messages, existing)

    async def _create(
        self, thread: ThreadKey, messages: list[Message],
    ) -> ConversationSummary | None:
        if len(messages) < self._trigger_count:
            logger.debug(
                "%s: %d message(s), below trigger of %d",
                thread, len(messages), self._trigger_count,
            )
            return None

        span = messages[: len(messages) - self._keep_count]
        return await self._save(thread, span, previous=None)

    async def _extend(
        self,
        thread: ThreadKey,
        messages: list[Message],
        existing: ConversationSummary,
    ) -> ConversationSummary | None:
        cursor_index = next(
            (
                i for i, m in enumerate(messages)
                if m.id == existing.last_summarized_message_id
            ),
            None,
        )
        if cursor_index is None:
            logger.warning(
                "%s: summarized message %s no longer in thread; skipping summary update",
                thread, existing.last_summarized_message_id,
            )
            return None

        new_count = len(messages) - (cursor_index + 1)
        if new_count < self._trigger_count:
            logger.debug(
                "%s: %d new message(s) since summary, below trigger of %d",
                thread, new_count, self._trigger_count,
            )
            return None

        span = messages[cursor_index + 1 : len(messages) - self._keep_count]
        return await self._save(thread, span, previous=existing.text)

    async def _save(
        self, thread: ThreadKey, span: list[Message], previous: str | None,
    ) -> ConversationSummary | None:
        if not span:
            logger.debug("%s: nothing to summarize", thread)
            return None

        text = await summarize_messages(span, previous_summary=previous)
        if text == SUMMARY_FALLBACK:
            logger.warning("%s: summary not updated, summarization failed", thread)
            return None

        summary = self._store.save_summary(thread, text, span[-1].id)
        logger.info(
            "%s: summarized %d message(s) up to %s", thread, len(span), span[-1].id,
        )
        return summary

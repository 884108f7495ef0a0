"""Message port — abstract interface for the chat message store.

The store owns message identity and ordering; the session manager and the
summary controller only read and append through this protocol.
"""

from __future__ import annotations

from typing import Protocol

from src.data.models import ConversationSummary, Message, ThreadKey


class MessageStore(Protocol):
    """Abstract message store used by core modules."""

    def create_thread(self, thread: ThreadKey, created_by: str) -> ThreadKey: ...

    def send_message(self, thread: ThreadKey, message: Message) -> Message: ...

    def get_messages(self, thread: ThreadKey) -> list[Message]: ...

    def get_summary(self, thread: ThreadKey) -> ConversationSummary | None: ...

    def save_summary(
        self, thread: ThreadKey, text: str, last_message_id: str
    ) -> ConversationSummary: ...

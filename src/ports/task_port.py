"""Task port — read access to the user's current tasks and events."""

from __future__ import annotations

from typing import Protocol

from src.data.models import TaskItem


class TaskSource(Protocol):
    """Abstract task list used by the chat service and reconciliation."""

    @property
    def tasks(self) -> list[TaskItem]: ...

    async def refresh(self) -> None: ...

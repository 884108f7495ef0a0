"""
Bonsai Assistant — Response Parser.

Converts the chat model's loosely formatted reply into exactly one intent:
a list of calendar event drafts, a multi-step task plan, or plain text.

The model is asked for JSON but nothing guarantees it: replies may be wrapped
in markdown fences, carry the legacy [AI_RESPONSE] marker, use an older bare
array shape, or not be JSON at all. parse_response() never raises; anything
it cannot use becomes a fixed user-facing text.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.core.time_utils import local_tz, parse_iso

logger = logging.getLogger(__name__)

PARSE_ERROR_TEXT = (
    "I'm having trouble understanding the structure of that response. "
    "Could you try again?"
)
UNRECOGNIZED_TEXT = (
    "I got a structured reply I don't know how to handle yet. "
    "Could you try rephrasing your request?"
)

_LEGACY_MARKER = "[AI_RESPONSE]"
_CODE_BLOCK_RE = re.compile(r"```(?:\w+)?\s*([\s\S]*?)\s*```")
_FENCE_RE = re.compile(r"```(?:\w+)?")

# ---------------------------------------------------------------------------
# Shared JSON contract: produced by the chat model, consumed by reconciliation
# ---------------------------------------------------------------------------


class _Draft(BaseModel):
    """Fields shared by event drafts and task-plan subtasks."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    description: str = ""
    start_time: str = Field("", alias="startTime")
    end_time: str = Field("", alias="endTime")
    priority: int = 5
    assigned_to: str | None = Field(None, alias="assignedTo")

    @field_validator("description", "start_time", "end_time", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else v

    @field_validator("assigned_to", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("priority", mode="before")
    @classmethod
    def _lenient_priority(cls, v):
        try:
            return int(v)
        except (TypeError, ValueError, OverflowError):
            return 5


class EventDraft(_Draft):
    """A calendar event proposed by the model, awaiting confirmation.

    JSON example:
    {
        "title": "Dentist",
        "description": "",
        "location": "Main St clinic",
        "startTime": "2026-02-14T16:00:00-05:00",
        "endTime": "2026-02-14T17:00:00-05:00",
        "allowReschedule": false,
        "assignedTo": "dana"
    }

    start <= end is not enforced here.
    """

    title: str = "Untitled Event"
    location: str = ""
    is_task_plan_event: bool = Field(False, alias="isTaskPlanEvent")
    allow_reschedule: bool = Field(False, alias="allowReschedule")

    @field_validator("title", mode="before")
    @classmethod
    def _default_title(cls, v):
        return v if isinstance(v, str) and v.strip() else "Untitled Event"

    @field_validator("location", mode="before")
    @classmethod
    def _no_location(cls, v):
        return "" if v is None else v


class SubtaskDraft(_Draft):
    """One step of a task plan."""

    title: str = "Untitled Task"

    @field_validator("title", mode="before")
    @classmethod
    def _default_title(cls, v):
        return v if isinstance(v, str) and v.strip() else "Untitled Task"


class TaskPlan(BaseModel):
    """A multi-step plan: title, description and ordered subtasks."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = ""
    description: str = ""
    subtasks: list[SubtaskDraft] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Parsed intents: tagged union, matched exhaustively by consumers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventsIntent:
    drafts: list[EventDraft]


@dataclass(frozen=True)
class TaskPlanIntent:
    plan: TaskPlan


@dataclass(frozen=True)
class TextIntent:
    text: str
    needs_more_info: bool = False


@dataclass(frozen=True)
class Unrecognized:
    pass


ParsedIntent = EventsIntent | TaskPlanIntent | TextIntent | Unrecognized


@dataclass
class ParseResult:
    """Parser output. At most one of the three fields is populated."""

    text_response: str | None = None
    events: list[EventDraft] | None = None
    task_plan: TaskPlan | None = None
    needs_more_info: bool = False

    def intent(self) -> ParsedIntent:
        if self.events is not None:
            return EventsIntent(self.events)
        if self.task_plan is not None:
            return TaskPlanIntent(self.task_plan)
        if self.text_response is not None:
            return TextIntent(self.text_response, self.needs_more_info)
        return Unrecognized()


# ---------------------------------------------------------------------------
# System prompt for the chat model
# ---------------------------------------------------------------------------

_PROJECT_PREFIX = """\
This is a PROJECT CHAT with multiple users. Focus on collaboration, team \
coordination, and project management. When creating tasks or events, you MUST \
determine the most appropriate user from the conversation context and assign \
it to them using the "assignedTo" field (use their username if known, \
otherwise email). If no specific user is appropriate or mentioned, omit the \
"assignedTo" field.
"""

_SYSTEM_PROMPT = """\
{project_prefix}You are a helpful assistant that can add events to a calendar, plan tasks and answer general questions.

USER'S CURRENT SCHEDULE:
{schedule_context}

TIMEZONE:
- The user's timezone is {timezone}.
- Schedule items carry both an ISO timestamp and a "readable" rendering already in the user's timezone. Always quote the readable times; never show UTC times.
- Today is {today} in {timezone}.

TASK PLANNING:
If the user wants to plan out a task ("help me plan", "break down this project", "create a schedule for"), respond with:
{{"taskPlan": {{"title": "Main task title", "description": "Overall description", "subtasks": [{{"title": "Subtask", "description": "Details", "startTime": "ISO with offset", "endTime": "ISO with offset", "priority": 1-10, "assignedTo": "username_or_email"}}]}}}}
If essential information is missing (what the task is, its deadline, hard constraints), respond instead with:
{{"needsMoreInfo": true, "followUpQuestion": "your question"}}

CALENDAR EVENTS:
If the user asks to add one or more events, respond with:
{{"events": [{{"title": "Event title", "description": "Event description", "location": "Event location or empty string", "startTime": "ISO with offset", "endTime": "ISO with offset", "allowReschedule": boolean, "assignedTo": "username_or_email"}}]}}
- Set "allowReschedule" to true only when the user is flexible about timing ("whenever I'm free", "find a time").
- Keep the title about the activity, not the location.
- Include every event mentioned in the message.

EVERYTHING ELSE:
Answer helpfully using the schedule above and respond with:
{{"response": "your answer"}}

Always reply with exactly one JSON object and nothing else. Do not wrap it in backticks.
"""


def build_system_prompt(
    schedule_context: str,
    is_project: bool = False,
    tz_name: str | None = None,
    today: str | None = None,
) -> str:
    """Render the chat system instruction."""
    if tz_name is None:
        from src.config import settings
        tz_name = settings.TIMEZONE
    if today is None:
        today = datetime.now(local_tz(tz_name)).strftime("%A, %B %d, %Y")
    return _SYSTEM_PROMPT.format(
        project_prefix=_PROJECT_PREFIX if is_project else "",
        schedule_context=schedule_context,
        timezone=tz_name,
        today=today,
    )


# ---------------------------------------------------------------------------
# Response cleaning functions
# ---------------------------------------------------------------------------


def _extract_candidate(text: str) -> str:
    """Fenced block content if present, else the text without legacy markers."""
    match = _CODE_BLOCK_RE.search(text)
    if match and match.group(1):
        return match.group(1).strip()
    return text.replace(_LEGACY_MARKER, "").strip()


def _strip_markup(text: str) -> str:
    """Remove legacy markers and code fences, keeping the prose."""
    return _FENCE_RE.sub("", text.replace(_LEGACY_MARKER, "")).strip()


# ---------------------------------------------------------------------------
# Error handling functions
# ---------------------------------------------------------------------------


def _handle_json_decode_error(exc: Exception, raw_text: str) -> None:
    logger.error("Failed to parse model response as JSON: %s (raw: '%.500s')", exc, raw_text)


def _handle_unrecognized_shape(data: object) -> None:
    keys = sorted(data) if isinstance(data, dict) else type(data).__name__
    logger.warning("Model returned JSON with an unrecognized shape: %s", keys)


# ---------------------------------------------------------------------------
# Draft construction
# ---------------------------------------------------------------------------


def _unwrap_legacy_task(task: dict) -> dict:
    """Convert an old {"task": {...}} item into an event payload.

    A missing start or end is filled one hour from the other; both missing
    means "now for one hour".
    """
    start = task.get("startTime")
    end = task.get("dueDate") or task.get("endTime")
    start_dt, end_dt = parse_iso(start), parse_iso(end)

    if end_dt and not start_dt:
        start = (end_dt - timedelta(hours=1)).isoformat()
    elif start_dt and not end_dt:
        end = (start_dt + timedelta(hours=1)).isoformat()
    elif not start_dt and not end_dt:
        logger.warning("Legacy task item has neither start nor end time")
        now = datetime.now(timezone.utc)
        start = now.isoformat()
        end = (now + timedelta(hours=1)).isoformat()

    return {
        "title": task.get("title") or "Untitled Task",
        "description": task.get("description") or "",
        "location": task.get("location") or "",
        "startTime": start,
        "endTime": end,
        "priority": task.get("priority") or 5,
        "assignedTo": task.get("assignedTo"),
    }


def _build_events(items: list) -> list[EventDraft]:
    drafts: list[EventDraft] = []
    for item in items:
        if not isinstance(item, dict):
            logger.warning("Skipping non-dict event item: %r", item)
            continue
        if isinstance(item.get("task"), dict):
            item = _unwrap_legacy_task(item["task"])
        try:
            drafts.append(EventDraft.model_validate(item))
        except ValidationError as exc:
            logger.warning("Skipping invalid event item %r: %s", item, exc)
    return drafts


def _build_plan(title: object, description: object, subtasks: list) -> TaskPlan:
    steps: list[SubtaskDraft] = []
    for item in subtasks:
        if not isinstance(item, dict):
            logger.warning("Skipping non-dict subtask: %r", item)
            continue
        try:
            steps.append(SubtaskDraft.model_validate(item))
        except ValidationError as exc:
            logger.warning("Skipping invalid subtask %r: %s", item, exc)
    return TaskPlan(
        title=title if isinstance(title, str) else "",
        description=description if isinstance(description, str) else "",
        subtasks=steps,
    )


def _parse_structured(candidate: str) -> ParseResult:
    try:
        data = json.loads(candidate)
    except (json.JSONDecodeError, RecursionError) as exc:
        _handle_json_decode_error(exc, candidate)
        return ParseResult(text_response=PARSE_ERROR_TEXT)

    if isinstance(data, list):
        # Older response shape: a bare array of events.
        return ParseResult(events=_build_events(data))

    if not isinstance(data, dict):
        _handle_unrecognized_shape(data)
        return ParseResult(text_response=UNRECOGNIZED_TEXT)

    events = data.get("events")
    if isinstance(events, list):
        return ParseResult(events=_build_events(events))

    plan = data.get("taskPlan")
    if isinstance(plan, list):
        return ParseResult(
            task_plan=_build_plan(data.get("title"), data.get("description"), plan)
        )
    if isinstance(plan, dict) and isinstance(plan.get("subtasks"), list):
        return ParseResult(
            task_plan=_build_plan(plan.get("title"), plan.get("description"), plan["subtasks"])
        )

    if isinstance(data.get("eventDetails"), dict):
        return ParseResult(events=_build_events([data["eventDetails"]]))

    question = data.get("followUpQuestion")
    if data.get("needsMoreInfo") and isinstance(question, str) and question.strip():
        return ParseResult(text_response=question.strip(), needs_more_info=True)

    response = data.get("response")
    if isinstance(response, str) and response.strip():
        return ParseResult(text_response=response.strip())

    _handle_unrecognized_shape(data)
    return ParseResult(text_response=UNRECOGNIZED_TEXT)


# ---------------------------------------------------------------------------
# Parser function
# ---------------------------------------------------------------------------


def parse_response(raw: str | None) -> ParseResult:
    """Parse a raw model reply into a ParseResult. Never raises."""
    if not raw or not raw.strip():
        return ParseResult()

    text = raw.strip()
    candidate = _extract_candidate(text)
    logger.debug("Parser candidate: %s", candidate)

    if candidate.startswith(("{", "[")):
        return _parse_structured(candidate)

    plain = _strip_markup(text)
    if not plain:
        return ParseResult()
    return ParseResult(text_response=plain)

"""
Pydantic models and shared field rules for the Jarvis Board API.

Request models validate incoming JSON bodies; the helper functions apply the
same defaults and merge rules for both datastore backends so SQLite and
PostgreSQL rows always look identical to callers.
"""

import math
import re
from datetime import datetime, timezone, date
from enum import Enum
from typing import Optional, List, Dict, Any, Union

from pydantic import BaseModel, Field, field_validator


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    URGENT = "Urgent"


class TaskStatus(str, Enum):
    TODO = "todo"
    DOING = "doing"
    REVIEW = "review"
    ON_HOLD = "on_hold"
    DONE = "done"


# Board sort order: lower ordinal sorts first
PRIORITY_ORDINALS: Dict[str, int] = {
    Priority.URGENT.value: 0,
    Priority.HIGH.value: 1,
    Priority.MEDIUM.value: 2,
    Priority.LOW.value: 3,
}

CATEGORIES = ["Inbox", "Learnings", "Polymarket", "Side Projects", "Stravix", "Coding", "Workflow"]

ACTIVITY_ACTIONS = [
    "task.create",
    "task.update",
    "task.status_change",
    "task.delete",
    "file.write",
    "browser.navigate",
    "message.send",
]

ENTITY_TYPES = ["task", "file", "browser", "message"]

TASK_DEFAULTS: Dict[str, Any] = {
    "description": "",
    "category": "Inbox",
    "priority": Priority.MEDIUM.value,
    "status": TaskStatus.TODO.value,
    "source": "",
    "due_date": None,
    "estimated_hours": None,
    "actual_hours": None,
}

# Columns a caller may write; id and timestamps are server-owned
TASK_WRITABLE_FIELDS = ("title",) + tuple(TASK_DEFAULTS.keys())

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def current_timestamp() -> str:
    """UTC timestamp in the ``YYYY-MM-DD HH:MM:SS`` form stored in both backends."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def parse_iso_date(value: str) -> date:
    """Parse a strict ``YYYY-MM-DD`` string, raising ValueError otherwise."""
    if not isinstance(value, str) or not _DATE_RE.match(value):
        raise ValueError(f"Invalid date '{value}', expected YYYY-MM-DD")
    return date.fromisoformat(value)


def date_bound(value: Optional[str], end: bool = False) -> Optional[str]:
    """
    Turn an activity filter bound into a timestamp string comparable with created_at.

    A bare ``YYYY-MM-DD`` end bound covers the whole day.
    """
    if not value:
        return None
    if _DATE_RE.match(value):
        return f"{value} 23:59:59" if end else f"{value} 00:00:00"

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"Invalid date '{value}', expected YYYY-MM-DD or an ISO timestamp")
    # Stored timestamps are naive UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed.strftime("%Y-%m-%d %H:%M:%S")


def _check_choice(field_name: str, value: Any, choices: List[str]) -> str:
    if isinstance(value, Enum):
        value = value.value
    if value not in choices:
        raise ValueError(f"{field_name} must be one of: {choices}")
    return value


def _check_hours(field_name: str, value: Any) -> Optional[float]:
    """None, or a finite number of hours that is zero or more."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be a non-negative number")
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field_name} must be a non-negative number")
    if not math.isfinite(hours) or hours < 0:
        raise ValueError(f"{field_name} must be a non-negative number")
    return hours


def normalize_new_task(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply creation defaults to a task payload.

    Missing or empty optional fields fall back to TASK_DEFAULTS. Unknown keys
    are dropped.

    Raises:
        ValueError: If the title is missing/blank or another field is invalid
    """
    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValueError("Title is required")

    task = {"title": title.strip()}
    for key, default in TASK_DEFAULTS.items():
        value = data.get(key)
        if isinstance(value, Enum):
            value = value.value
        if value is None or value == "":
            value = default
        task[key] = value

    task["priority"] = _check_choice("priority", task["priority"], list(PRIORITY_ORDINALS))
    task["status"] = _check_choice("status", task["status"], [s.value for s in TaskStatus])
    for key in ("estimated_hours", "actual_hours"):
        task[key] = _check_hours(key, task[key])
    if task["due_date"] is not None:
        parse_iso_date(task["due_date"])
    return task


def merge_task_update(existing: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge a partial update onto an existing task row.

    Only writable fields are taken from ``changes``; ``id`` and ``created_at``
    are always kept from ``existing``.

    Raises:
        ValueError: If a merged value violates the task field rules
    """
    merged = dict(existing)
    for key in TASK_WRITABLE_FIELDS:
        if key not in changes:
            continue
        value = changes[key]
        if isinstance(value, Enum):
            value = value.value
        merged[key] = value

    if not isinstance(merged.get("title"), str) or not merged["title"].strip():
        raise ValueError("Title cannot be empty")
    merged["title"] = merged["title"].strip()
    if merged.get("description") is None:
        merged["description"] = ""
    if merged.get("source") is None:
        merged["source"] = ""
    if not merged.get("category"):
        merged["category"] = TASK_DEFAULTS["category"]
    merged["priority"] = _check_choice("priority", merged.get("priority"), list(PRIORITY_ORDINALS))
    merged["status"] = _check_choice("status", merged.get("status"), [s.value for s in TaskStatus])
    for key in ("estimated_hours", "actual_hours"):
        merged[key] = _check_hours(key, merged.get(key))
    if merged.get("due_date") is not None:
        parse_iso_date(merged["due_date"])
    return merged


def _validate_due_date(v: Optional[str]) -> Optional[str]:
    if v is None or v == "":
        return None
    parse_iso_date(v)
    return v


class TaskCreate(BaseModel):
    """Request body for POST /api/tasks. Title presence is checked by the route."""

    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = Field(None, max_length=100)
    priority: Optional[Priority] = None
    status: Optional[TaskStatus] = None
    source: Optional[str] = None
    due_date: Optional[str] = Field(None, description="Due date as YYYY-MM-DD")
    estimated_hours: Optional[float] = Field(None, ge=0)
    actual_hours: Optional[float] = Field(None, ge=0)

    @field_validator("due_date")
    @classmethod
    def validate_due_date(cls, v):
        return _validate_due_date(v)


class TaskUpdate(BaseModel):
    """Request body for PATCH /api/tasks/{id}; only fields sent are applied."""

    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = Field(None, max_length=100)
    priority: Optional[Priority] = None
    status: Optional[TaskStatus] = None
    source: Optional[str] = None
    due_date: Optional[str] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    actual_hours: Optional[float] = Field(None, ge=0)

    @field_validator("title", "category", "priority", "status")
    @classmethod
    def reject_null(cls, v, info):
        """Required columns may be changed but never cleared."""
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        if isinstance(v, str) and not v.strip():
            raise ValueError(f"{info.field_name} cannot be empty")
        return v

    @field_validator("due_date")
    @classmethod
    def validate_due_date(cls, v):
        return _validate_due_date(v)

    def changes(self) -> Dict[str, Any]:
        """Fields explicitly present in the request body, JSON-ready."""
        return self.model_dump(mode="json", exclude_unset=True)


class ActivityCreate(BaseModel):
    """Request body for POST /api/activities."""

    action: str = Field(min_length=1, max_length=100)
    entity_type: Optional[str] = Field(None, max_length=50)
    entity_id: Optional[Union[str, int]] = None
    details: Optional[Dict[str, Any]] = None
    session_id: Optional[str] = Field(None, max_length=200)
    tokens_used: Optional[int] = Field(None, ge=0)

    @field_validator("action")
    @classmethod
    def validate_action(cls, v):
        if not v.strip():
            raise ValueError("Action is required")
        return v.strip()

    @field_validator("entity_id")
    @classmethod
    def stringify_entity_id(cls, v):
        return None if v is None else str(v)


class LoginRequest(BaseModel):
    password: str = ""


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    database_connected: bool
    backend: str
    timestamp: str


class ActivityStats(BaseModel):
    total_activities: int
    total_tokens: int
    by_action: Dict[str, int]
    by_entity_type: Dict[str, int]
    recent_24h: int


class SearchResponse(BaseModel):
    query: str
    results: List[Dict[str, Any]]
    count: int


class CalendarResponse(BaseModel):
    success: bool = True
    data: List[Dict[str, Any]]


# Utility function to create consistent error responses
def create_error_response(
    message: str, code: Optional[int] = None, details: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Create a standardized error response dictionary."""
    response = {"success": False, "error": message}
    if code is not None:
        response["code"] = code
    if details:
        response["details"] = details
    return response

"""
Activity records for task mutations.

Each API-level task change appends one entry to the activity log so the
activity feed shows what happened to which task and from which session.
"""

import logging
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)

TASK_ENTITY = "task"

# Fields compared when describing a task.update
_TRACKED_FIELDS = (
    "title", "description", "category", "priority", "status", "source",
    "due_date", "estimated_hours", "actual_hours",
)


def changed_fields(before: Dict[str, Any], after: Dict[str, Any]) -> List[str]:
    """Names of tracked fields whose values differ between two task rows."""
    return [name for name in _TRACKED_FIELDS if before.get(name) != after.get(name)]


def classify_update(before: Dict[str, Any], changes: Dict[str, Any]) -> str:
    """
    Pick the activity action for a task update.

    ``task.status_change`` iff the request carries a status different from the
    stored one; every other update is ``task.update``.
    """
    if "status" in changes and changes["status"] != before.get("status"):
        return "task.status_change"
    return "task.update"


def record_task_created(db, task: Dict[str, Any], session_id: Optional[str] = None) -> Dict[str, Any]:
    return db.create_activity({
        "action": "task.create",
        "entity_type": TASK_ENTITY,
        "entity_id": str(task["id"]),
        "details": {
            "title": task["title"],
            "category": task["category"],
            "priority": task["priority"],
        },
        "session_id": session_id,
    })


def record_task_updated(
    db,
    before: Dict[str, Any],
    after: Dict[str, Any],
    changes: Dict[str, Any],
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Append a task.status_change or task.update entry for an applied update.

    Args:
        db: Database backend
        before: Task row prior to the update
        after: Task row returned by the update
        changes: Fields the caller asked to change
        session_id: Optional client session identifier
    """
    action = classify_update(before, changes)
    if action == "task.status_change":
        details = {"from": before.get("status"), "to": after.get("status"), "title": after["title"]}
    else:
        details = {"fields": changed_fields(before, after), "title": after["title"]}

    return db.create_activity({
        "action": action,
        "entity_type": TASK_ENTITY,
        "entity_id": str(after["id"]),
        "details": details,
        "session_id": session_id,
    })


def record_task_deleted(db, task: Dict[str, Any], session_id: Optional[str] = None) -> Dict[str, Any]:
    return db.create_activity({
        "action": "task.delete",
        "entity_type": TASK_ENTITY,
        "entity_id": str(task["id"]),
        "details": {"title": task["title"]},
        "session_id": session_id,
    })

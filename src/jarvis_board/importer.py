"""
YAML Task Importer with UPSERT Logic

Seeds or refreshes the board from a YAML file. Tasks are matched by title:
existing tasks get the fields present in the file, new titles are created.

Example file::

    tasks:
      - title: Write weekly review
        category: Workflow
        priority: High
        due_date: 2026-11-02
      - title: Read FTS5 docs
        category: Learnings
"""

import logging
from typing import Dict, Any

import yaml

from .activity import record_task_created, record_task_updated
from .models import TASK_WRITABLE_FIELDS

logger = logging.getLogger(__name__)

IMPORT_SESSION = "import"


def import_tasks(db, yaml_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Import tasks from parsed YAML.

    Args:
        db: Database backend (SQLite or PostgreSQL)
        yaml_data: Parsed YAML document with a ``tasks`` list

    Returns:
        Dict with ``tasks_created``, ``tasks_updated`` and per-item ``errors``

    Raises:
        ValueError: If ``tasks`` is not a list
    """
    stats = {"tasks_created": 0, "tasks_updated": 0, "errors": []}

    tasks = yaml_data.get("tasks", [])
    if not isinstance(tasks, list):
        raise ValueError("YAML 'tasks' must be a list")

    for index, task_data in enumerate(tasks):
        try:
            created = _import_task(db, task_data)
            if created:
                stats["tasks_created"] += 1
            else:
                stats["tasks_updated"] += 1
        except Exception as e:
            # Individual task failures don't stop the import
            title = task_data.get("title", "untitled") if isinstance(task_data, dict) else f"#{index + 1}"
            stats["errors"].append(f"Failed to import task '{title}': {e}")

    logger.info(
        f"Import finished: {stats['tasks_created']} created, "
        f"{stats['tasks_updated']} updated, {len(stats['errors'])} errors"
    )
    return stats


def _import_task(db, task_data: Dict[str, Any]) -> bool:
    """Upsert one task by title. Returns True if it was created."""
    if not isinstance(task_data, dict):
        raise ValueError("Task data must be a dictionary")

    title = task_data.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValueError("Task must have a 'title' field")

    fields = {key: _yaml_value(task_data[key]) for key in TASK_WRITABLE_FIELDS if key in task_data}
    fields["title"] = title.strip()

    with db.transaction():
        existing = db.find_task_by_title(fields["title"])
        if existing is None:
            task = db.create_task(fields)
            record_task_created(db, task, IMPORT_SESSION)
            return True

        changes = {key: value for key, value in fields.items() if key != "title"}
        updated = db.update_task(existing["id"], changes)
        record_task_updated(db, existing, updated, changes, IMPORT_SESSION)
        return False


def _yaml_value(value: Any) -> Any:
    # YAML parses unquoted 2026-11-02 as a date object
    if hasattr(value, "isoformat") and not isinstance(value, str):
        return value.isoformat()
    return value


def import_tasks_from_file(db, yaml_file_path: str) -> Dict[str, Any]:
    """
    Import tasks from a YAML file with error handling.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: For invalid YAML or a malformed document
    """
    try:
        with open(yaml_file_path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"YAML file not found: {yaml_file_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format: {e}")

    if not isinstance(yaml_data, dict):
        raise ValueError("YAML file must contain a dictionary at root level")

    return import_tasks(db, yaml_data)

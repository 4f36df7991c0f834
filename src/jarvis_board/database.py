"""
Board Database Layer (SQLite)

Provides SQLite-based storage for tasks and the activity log, with WAL mode
for concurrent readers and an FTS5 index kept in sync by triggers for the
command palette search.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List

from .models import (
    current_timestamp,
    date_bound,
    merge_task_update,
    normalize_new_task,
)
from .search import tokenize, to_fts5_query, clamp_limit, DEFAULT_SEARCH_LIMIT

logger = logging.getLogger(__name__)

# Shared by both backends; plain SQL CASE works in SQLite and PostgreSQL
PRIORITY_ORDER_SQL = (
    "CASE priority WHEN 'Urgent' THEN 0 WHEN 'High' THEN 1 "
    "WHEN 'Medium' THEN 2 WHEN 'Low' THEN 3 ELSE 4 END"
)

TASK_COLUMNS = (
    "id", "title", "description", "category", "priority", "status", "source",
    "due_date", "estimated_hours", "actual_hours", "created_at", "updated_at",
)


def _parse_details(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (ValueError, TypeError):
        # Keep unreadable payloads visible rather than dropping them
        return {"_raw": raw, "_parse_error": True}


def activity_row_to_dict(row: Dict[str, Any]) -> Dict[str, Any]:
    """Decode the serialized details column of an activity row."""
    activity = dict(row)
    activity["details"] = _parse_details(activity.get("details"))
    return activity


def recent_cutoff(hours: int = 24) -> str:
    """Timestamp string ``hours`` ago, comparable with stored created_at values."""
    cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
    return cutoff.strftime("%Y-%m-%d %H:%M:%S")


class BoardDatabase:
    """
    SQLite database for the Jarvis task board.

    Features:
    - WAL mode for concurrent read access from the API and CLI
    - Single shared connection guarded by an RLock
    - FTS5 external-content index over title/description/category
    - Append-only activity log with aggregate statistics
    """

    backend = "sqlite"

    def __init__(self, db_path: str):
        """
        Initialize BoardDatabase and create the schema if needed.

        Args:
            db_path: Path to SQLite database file (``:memory:`` is accepted)
        """
        self.db_path = db_path
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

    def _initialize_database(self) -> None:
        """Open the connection, configure pragmas and create the schema."""
        try:
            # Autocommit mode; multi-statement writes use transaction()
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False,
            )
            self._connection.create_function("casefold", 1, _casefold, deterministic=True)
            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")
            self._create_schema()
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}") from e

    def _create_schema(self) -> None:
        """Create tables, indexes, the FTS5 index and its sync triggers."""
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT DEFAULT '',
                category TEXT DEFAULT 'Inbox',
                priority TEXT DEFAULT 'Medium',
                status TEXT DEFAULT 'todo',
                source TEXT DEFAULT '',
                due_date TEXT,
                estimated_hours REAL,
                actual_hours REAL,
                created_at TEXT DEFAULT (datetime('now')),
                updated_at TEXT DEFAULT (datetime('now'))
            )
        """)
        self._migrate_columns(cursor)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS activities (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                action TEXT NOT NULL,
                entity_type TEXT,
                entity_id TEXT,
                details TEXT,
                session_id TEXT,
                tokens_used INTEGER,
                created_at TEXT DEFAULT (datetime('now')),
                CONSTRAINT json_valid_details CHECK (details IS NULL OR json_valid(details))
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks (status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_category ON tasks (category)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_due_date ON tasks (due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_activities_action ON activities (action)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_activities_created ON activities (created_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_activities_entity ON activities (entity_type, entity_id)")

        cursor.execute("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'tasks_fts'")
        fts_exists = cursor.fetchone() is not None

        cursor.execute("""
            CREATE VIRTUAL TABLE IF NOT EXISTS tasks_fts USING fts5(
                title,
                description,
                category,
                content='tasks',
                content_rowid='id'
            )
        """)

        cursor.execute("""
            CREATE TRIGGER IF NOT EXISTS tasks_ai AFTER INSERT ON tasks BEGIN
                INSERT INTO tasks_fts(rowid, title, description, category)
                VALUES (new.id, new.title, new.description, new.category);
            END
        """)
        cursor.execute("""
            CREATE TRIGGER IF NOT EXISTS tasks_ad AFTER DELETE ON tasks BEGIN
                INSERT INTO tasks_fts(tasks_fts, rowid, title, description, category)
                VALUES ('delete', old.id, old.title, old.description, old.category);
            END
        """)
        cursor.execute("""
            CREATE TRIGGER IF NOT EXISTS tasks_au AFTER UPDATE ON tasks BEGIN
                INSERT INTO tasks_fts(tasks_fts, rowid, title, description, category)
                VALUES ('delete', old.id, old.title, old.description, old.category);
                INSERT INTO tasks_fts(rowid, title, description, category)
                VALUES (new.id, new.title, new.description, new.category);
            END
        """)

        if not fts_exists:
            # Index rows that predate the FTS table
            cursor.execute("INSERT INTO tasks_fts(tasks_fts) VALUES ('rebuild')")

        # Activities are append-only
        cursor.execute("""
            CREATE TRIGGER IF NOT EXISTS activities_no_update BEFORE UPDATE ON activities BEGIN
                SELECT RAISE(ABORT, 'activities are append-only');
            END
        """)
        cursor.execute("""
            CREATE TRIGGER IF NOT EXISTS activities_no_delete BEFORE DELETE ON activities BEGIN
                SELECT RAISE(ABORT, 'activities are append-only');
            END
        """)

    def _migrate_columns(self, cursor: sqlite3.Cursor) -> None:
        """Add columns introduced after the first release to existing databases."""
        cursor.execute("PRAGMA table_info(tasks)")
        existing = {row[1] for row in cursor.fetchall()}
        new_columns = [
            ("due_date", "TEXT"),
            ("estimated_hours", "REAL"),
            ("actual_hours", "REAL"),
        ]
        for col_name, col_type in new_columns:
            if col_name not in existing:
                cursor.execute(f"ALTER TABLE tasks ADD COLUMN {col_name} {col_type}")
                logger.info(f"Migrated tasks table: added column {col_name}")

    @contextmanager
    def transaction(self):
        """Context manager for explicit transaction control. Nested use joins the outer transaction."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            if self._connection.in_transaction:
                yield cursor
                return
            try:
                cursor.execute("BEGIN")
                yield cursor
                cursor.execute("COMMIT")
            except Exception:
                cursor.execute("ROLLBACK")
                raise

    @staticmethod
    def _rows_to_dicts(cursor: sqlite3.Cursor, rows) -> List[Dict[str, Any]]:
        columns = [col[0] for col in cursor.description]
        return [dict(zip(columns, row)) for row in rows]

    def _fetch_all(self, query: str, params=()) -> List[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            return self._rows_to_dicts(cursor, cursor.fetchall())

    def _fetch_one(self, query: str, params=()) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            row = cursor.fetchone()
            if row is None:
                return None
            return self._rows_to_dicts(cursor, [row])[0]

    # Tasks

    def list_tasks(
        self,
        status: Optional[str] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        List tasks with optional filters in board order.

        Args:
            status: Exact status filter
            category: Exact category filter
            search: Case-insensitive substring matched against title or description

        Returns:
            Tasks ordered Urgent → High → Medium → Low, then most recently updated first
        """
        query = "SELECT * FROM tasks WHERE 1=1"
        params: List[Any] = []

        if status:
            query += " AND status = ?"
            params.append(status)
        if category:
            query += " AND category = ?"
            params.append(category)
        if search:
            # LIKE only folds ASCII case
            query += " AND (instr(casefold(title), ?) > 0 OR instr(casefold(description), ?) > 0)"
            needle = search.casefold()
            params.extend([needle, needle])

        query += f" ORDER BY {PRIORITY_ORDER_SQL}, updated_at DESC, id DESC"
        return self._fetch_all(query, params)

    def get_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM tasks WHERE id = ?", (task_id,))

    def create_task(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a task, applying defaults for missing optional fields.

        Raises:
            ValueError: If the title is missing or a field value is invalid
        """
        task = normalize_new_task(data)
        now = current_timestamp()

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO tasks (title, description, category, priority, status, source,
                                   due_date, estimated_hours, actual_hours, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                task["title"], task["description"], task["category"], task["priority"],
                task["status"], task["source"], task["due_date"], task["estimated_hours"],
                task["actual_hours"], now, now,
            ))
            task_id = cursor.lastrowid

        logger.info(f"Task {task_id} created: {task['title']!r}")
        return self.get_task(task_id)

    def update_task(self, task_id: int, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Merge a partial update onto an existing task.

        Returns:
            The updated task, or None if no task has this id

        Raises:
            ValueError: If the merged row violates the task field rules
        """
        with self._connection_lock:
            existing = self.get_task(task_id)
            if existing is None:
                return None

            updated = merge_task_update(existing, data)
            updated["updated_at"] = current_timestamp()

            cursor = self._connection.cursor()
            cursor.execute("""
                UPDATE tasks SET title = ?, description = ?, category = ?, priority = ?,
                    status = ?, source = ?, due_date = ?, estimated_hours = ?,
                    actual_hours = ?, updated_at = ?
                WHERE id = ?
            """, (
                updated["title"], updated["description"], updated["category"],
                updated["priority"], updated["status"], updated["source"],
                updated["due_date"], updated["estimated_hours"], updated["actual_hours"],
                updated["updated_at"], task_id,
            ))
            return self.get_task(task_id)

    def delete_task(self, task_id: int) -> bool:
        """Delete a task. Returns True iff a row was removed."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Task {task_id} deleted")
        return deleted

    def get_tasks_by_date_range(self, start_date: str, end_date: str) -> List[Dict[str, Any]]:
        """Tasks due within [start_date, end_date], soonest first, then by priority."""
        return self._fetch_all(f"""
            SELECT * FROM tasks
            WHERE due_date IS NOT NULL
              AND due_date >= ?
              AND due_date <= ?
            ORDER BY due_date ASC, {PRIORITY_ORDER_SQL}, id ASC
        """, (start_date, end_date))

    def find_task_by_title(self, title: str) -> Optional[Dict[str, Any]]:
        """Oldest task with exactly this title, used by the YAML importer."""
        return self._fetch_one(
            "SELECT * FROM tasks WHERE title = ? ORDER BY id ASC LIMIT 1", (title,)
        )

    # Activities

    def create_activity(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Append an activity log entry.

        Raises:
            ValueError: If action is missing
        """
        action = (data.get("action") or "").strip()
        if not action:
            raise ValueError("Action is required")

        details = data.get("details")
        details_json = None if details is None else json.dumps(details)
        entity_id = data.get("entity_id")

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO activities (action, entity_type, entity_id, details,
                                        session_id, tokens_used, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                action,
                data.get("entity_type") or None,
                None if entity_id in (None, "") else str(entity_id),
                details_json,
                data.get("session_id") or None,
                data.get("tokens_used"),
                current_timestamp(),
            ))
            activity_id = cursor.lastrowid
            row = self._fetch_one("SELECT * FROM activities WHERE id = ?", (activity_id,))

        return activity_row_to_dict(row)

    def get_activities(
        self,
        action: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        List activities newest-first with optional filters and pagination.

        Date bounds are inclusive; a bare YYYY-MM-DD end_date covers that whole day.
        """
        query = "SELECT * FROM activities WHERE 1=1"
        params: List[Any] = []

        if action:
            query += " AND action = ?"
            params.append(action)
        if entity_type:
            query += " AND entity_type = ?"
            params.append(entity_type)
        if entity_id:
            query += " AND entity_id = ?"
            params.append(str(entity_id))
        if start_date:
            query += " AND created_at >= ?"
            params.append(date_bound(start_date))
        if end_date:
            query += " AND created_at <= ?"
            params.append(date_bound(end_date, end=True))

        query += " ORDER BY created_at DESC, id DESC"

        if limit:
            query += " LIMIT ?"
            params.append(limit)
        elif offset:
            query += " LIMIT -1"
        if offset:
            query += " OFFSET ?"
            params.append(offset)

        return [activity_row_to_dict(row) for row in self._fetch_all(query, params)]

    def get_activity_stats(self) -> Dict[str, Any]:
        """Aggregate counts over the whole activity log."""
        with self._connection_lock:
            cursor = self._connection.cursor()

            cursor.execute("SELECT COUNT(*) FROM activities")
            total = cursor.fetchone()[0]

            cursor.execute("SELECT SUM(tokens_used) FROM activities WHERE tokens_used IS NOT NULL")
            total_tokens = cursor.fetchone()[0] or 0

            cursor.execute("SELECT action, COUNT(*) FROM activities GROUP BY action")
            by_action = {row[0]: row[1] for row in cursor.fetchall()}

            cursor.execute("""
                SELECT entity_type, COUNT(*) FROM activities
                WHERE entity_type IS NOT NULL GROUP BY entity_type
            """)
            by_entity_type = {row[0]: row[1] for row in cursor.fetchall()}

            cursor.execute("SELECT COUNT(*) FROM activities WHERE created_at >= ?", (recent_cutoff(),))
            recent_24h = cursor.fetchone()[0]

        return {
            "total_activities": total,
            "total_tokens": int(total_tokens),
            "by_action": by_action,
            "by_entity_type": by_entity_type,
            "recent_24h": recent_24h,
        }

    # Search

    def search_tasks(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[Dict[str, Any]]:
        """
        Full-text search over title, description and category.

        Returns:
            Matching tasks with an added ``rank`` (bm25; lower is better), best first
        """
        tokens = tokenize(query)
        if not tokens:
            return []

        return self._fetch_all("""
            SELECT tasks.*, tasks_fts.rank AS rank
            FROM tasks_fts
            JOIN tasks ON tasks.id = tasks_fts.rowid
            WHERE tasks_fts MATCH ?
            ORDER BY tasks_fts.rank
            LIMIT ?
        """, (to_fts5_query(tokens), clamp_limit(limit)))

    def rebuild_search_index(self) -> int:
        """Rebuild the FTS index from the tasks table. Returns the number of indexed tasks."""
        with self.transaction() as cursor:
            cursor.execute("INSERT INTO tasks_fts(tasks_fts) VALUES ('rebuild')")
            cursor.execute("SELECT COUNT(*) FROM tasks")
            count = cursor.fetchone()[0]
        logger.info(f"Search index rebuilt for {count} tasks")
        return count

    # Lifecycle

    def ping(self) -> bool:
        with self._connection_lock:
            self._connection.execute("SELECT 1").fetchone()
        return True

    def close(self):
        """Close database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _casefold(value):
    return value.casefold() if isinstance(value, str) else value

"""
Board Database Layer (PostgreSQL)

Client/server alternative to the SQLite backend with the same repository
interface. Search uses a ``tsvector`` column maintained by a trigger and a GIN
index; connections come from a psycopg2 ThreadedConnectionPool.
"""

import json
import logging
import threading
from contextlib import contextmanager
from typing import Optional, Dict, Any, List

import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor

from .database import (
    PRIORITY_ORDER_SQL,
    TASK_COLUMNS,
    activity_row_to_dict,
    recent_cutoff,
)
from .models import current_timestamp, date_bound, merge_task_update, normalize_new_task
from .search import tokenize, to_tsquery, clamp_limit, DEFAULT_SEARCH_LIMIT

logger = logging.getLogger(__name__)

_TASK_SELECT = ", ".join(TASK_COLUMNS)

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id BIGSERIAL PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT DEFAULT '',
        category TEXT DEFAULT 'Inbox',
        priority TEXT DEFAULT 'Medium',
        status TEXT DEFAULT 'todo',
        source TEXT DEFAULT '',
        due_date TEXT,
        estimated_hours DOUBLE PRECISION,
        actual_hours DOUBLE PRECISION,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        search_vector TSVECTOR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activities (
        id BIGSERIAL PRIMARY KEY,
        action TEXT NOT NULL,
        entity_type TEXT,
        entity_id TEXT,
        details JSONB,
        session_id TEXT,
        tokens_used INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks (status)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_category ON tasks (category)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_due_date ON tasks (due_date)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_search ON tasks USING GIN (search_vector)",
    "CREATE INDEX IF NOT EXISTS idx_activities_action ON activities (action)",
    "CREATE INDEX IF NOT EXISTS idx_activities_created ON activities (created_at)",
    "CREATE INDEX IF NOT EXISTS idx_activities_entity ON activities (entity_type, entity_id)",
    """
    CREATE OR REPLACE FUNCTION tasks_search_vector_update() RETURNS trigger AS $$
    BEGIN
        NEW.search_vector :=
            setweight(to_tsvector('simple', coalesce(NEW.title, '')), 'A') ||
            setweight(to_tsvector('simple', coalesce(NEW.category, '')), 'B') ||
            setweight(to_tsvector('simple', coalesce(NEW.description, '')), 'C');
        RETURN NEW;
    END
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS tasks_search_vector_trigger ON tasks",
    """
    CREATE TRIGGER tasks_search_vector_trigger
    BEFORE INSERT OR UPDATE ON tasks
    FOR EACH ROW EXECUTE FUNCTION tasks_search_vector_update()
    """,
    """
    CREATE OR REPLACE FUNCTION activities_append_only() RETURNS trigger AS $$
    BEGIN
        RAISE EXCEPTION 'activities are append-only';
    END
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS activities_append_only_trigger ON activities",
    """
    CREATE TRIGGER activities_append_only_trigger
    BEFORE UPDATE OR DELETE ON activities
    FOR EACH ROW EXECUTE FUNCTION activities_append_only()
    """,
]


class PostgresBoardDatabase:
    """
    PostgreSQL database for the Jarvis task board.

    Same public methods and row shapes as BoardDatabase. ``rank`` in search
    results is the negated ts_rank so that, as with FTS5 bm25, lower is better.
    """

    backend = "postgresql"

    def __init__(self, dsn: str, min_connections: int = 1, max_connections: int = 10):
        """
        Open a connection pool and create the schema if needed.

        Args:
            dsn: libpq connection string or postgresql:// URL
        """
        self.dsn = dsn
        self._local = threading.local()
        try:
            self._pool: Optional[pool.ThreadedConnectionPool] = pool.ThreadedConnectionPool(
                minconn=min_connections, maxconn=max_connections, dsn=dsn
            )
        except psycopg2.Error as e:
            raise RuntimeError(f"Failed to connect to PostgreSQL: {e}") from e
        self._create_schema()

    @contextmanager
    def transaction(self):
        """
        Run several repository calls on one pooled connection as a single transaction.

        Calls made inside the block on the same thread reuse the pinned
        connection; everything commits at the end or rolls back on error.
        """
        if getattr(self._local, "conn", None) is not None:
            with self._local.conn.cursor(cursor_factory=RealDictCursor) as cursor:
                yield cursor
            return

        conn = self._pool.getconn()
        self._local.conn = conn
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._local.conn = None
            self._pool.putconn(conn)

    @contextmanager
    def _cursor(self):
        """Borrow a pooled connection for one unit of work; commit on success."""
        with self.transaction() as cursor:
            yield cursor

    def _create_schema(self) -> None:
        with self._cursor() as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)

    def _fetch_all(self, query: str, params=None) -> List[Dict[str, Any]]:
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def _fetch_one(self, query: str, params=None) -> Optional[Dict[str, Any]]:
        with self._cursor() as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
            return dict(row) if row is not None else None

    # Tasks

    def list_tasks(
        self,
        status: Optional[str] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = f"SELECT {_TASK_SELECT} FROM tasks WHERE 1=1"
        params: List[Any] = []

        if status:
            query += " AND status = %s"
            params.append(status)
        if category:
            query += " AND category = %s"
            params.append(category)
        if search:
            query += " AND (title ILIKE %s OR description ILIKE %s)"
            pattern = "%" + _escape_like(search) + "%"
            params.extend([pattern, pattern])

        query += f" ORDER BY {PRIORITY_ORDER_SQL}, updated_at DESC, id DESC"
        return self._fetch_all(query, params)

    def get_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        return self._fetch_one(f"SELECT {_TASK_SELECT} FROM tasks WHERE id = %s", (task_id,))

    def create_task(self, data: Dict[str, Any]) -> Dict[str, Any]:
        task = normalize_new_task(data)
        now = current_timestamp()
        row = self._fetch_one(f"""
            INSERT INTO tasks (title, description, category, priority, status, source,
                               due_date, estimated_hours, actual_hours, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_TASK_SELECT}
        """, (
            task["title"], task["description"], task["category"], task["priority"],
            task["status"], task["source"], task["due_date"], task["estimated_hours"],
            task["actual_hours"], now, now,
        ))
        logger.info(f"Task {row['id']} created: {task['title']!r}")
        return row

    def update_task(self, task_id: int, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT {_TASK_SELECT} FROM tasks WHERE id = %s FOR UPDATE", (task_id,)
            )
            existing = cursor.fetchone()
            if existing is None:
                return None

            updated = merge_task_update(dict(existing), data)
            cursor.execute(f"""
                UPDATE tasks SET title = %s, description = %s, category = %s, priority = %s,
                    status = %s, source = %s, due_date = %s, estimated_hours = %s,
                    actual_hours = %s, updated_at = %s
                WHERE id = %s
                RETURNING {_TASK_SELECT}
            """, (
                updated["title"], updated["description"], updated["category"],
                updated["priority"], updated["status"], updated["source"],
                updated["due_date"], updated["estimated_hours"], updated["actual_hours"],
                current_timestamp(), task_id,
            ))
            return dict(cursor.fetchone())

    def delete_task(self, task_id: int) -> bool:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM tasks WHERE id = %s", (task_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Task {task_id} deleted")
        return deleted

    def get_tasks_by_date_range(self, start_date: str, end_date: str) -> List[Dict[str, Any]]:
        return self._fetch_all(f"""
            SELECT {_TASK_SELECT} FROM tasks
            WHERE due_date IS NOT NULL
              AND due_date >= %s
              AND due_date <= %s
            ORDER BY due_date ASC, {PRIORITY_ORDER_SQL}, id ASC
        """, (start_date, end_date))

    def find_task_by_title(self, title: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one(
            f"SELECT {_TASK_SELECT} FROM tasks WHERE title = %s ORDER BY id ASC LIMIT 1",
            (title,),
        )

    # Activities

    def create_activity(self, data: Dict[str, Any]) -> Dict[str, Any]:
        action = (data.get("action") or "").strip()
        if not action:
            raise ValueError("Action is required")

        details = data.get("details")
        entity_id = data.get("entity_id")
        row = self._fetch_one("""
            INSERT INTO activities (action, entity_type, entity_id, details,
                                    session_id, tokens_used, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING id, action, entity_type, entity_id, details::text AS details,
                      session_id, tokens_used, created_at
        """, (
            action,
            data.get("entity_type") or None,
            None if entity_id in (None, "") else str(entity_id),
            None if details is None else json.dumps(details),
            data.get("session_id") or None,
            data.get("tokens_used"),
            current_timestamp(),
        ))
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
        query = """
            SELECT id, action, entity_type, entity_id, details::text AS details,
                   session_id, tokens_used, created_at
            FROM activities WHERE 1=1
        """
        params: List[Any] = []

        if action:
            query += " AND action = %s"
            params.append(action)
        if entity_type:
            query += " AND entity_type = %s"
            params.append(entity_type)
        if entity_id:
            query += " AND entity_id = %s"
            params.append(str(entity_id))
        if start_date:
            query += " AND created_at >= %s"
            params.append(date_bound(start_date))
        if end_date:
            query += " AND created_at <= %s"
            params.append(date_bound(end_date, end=True))

        query += " ORDER BY created_at DESC, id DESC"

        if limit:
            query += " LIMIT %s"
            params.append(limit)
        if offset:
            query += " OFFSET %s"
            params.append(offset)

        return [activity_row_to_dict(row) for row in self._fetch_all(query, params)]

    def get_activity_stats(self) -> Dict[str, Any]:
        with self._cursor() as cursor:
            cursor.execute("""
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(tokens_used), 0) AS total_tokens,
                       COUNT(*) FILTER (WHERE created_at >= %s) AS recent_24h
                FROM activities
            """, (recent_cutoff(),))
            totals = cursor.fetchone()

            cursor.execute("SELECT action, COUNT(*) AS count FROM activities GROUP BY action")
            by_action = {row["action"]: int(row["count"]) for row in cursor.fetchall()}

            cursor.execute("""
                SELECT entity_type, COUNT(*) AS count FROM activities
                WHERE entity_type IS NOT NULL GROUP BY entity_type
            """)
            by_entity_type = {row["entity_type"]: int(row["count"]) for row in cursor.fetchall()}

        return {
            "total_activities": int(totals["total"]),
            "total_tokens": int(totals["total_tokens"]),
            "by_action": by_action,
            "by_entity_type": by_entity_type,
            "recent_24h": int(totals["recent_24h"]),
        }

    # Search

    def search_tasks(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[Dict[str, Any]]:
        tokens = tokenize(query)
        if not tokens:
            return []

        return self._fetch_all(f"""
            SELECT {_TASK_SELECT}, -ts_rank(search_vector, q) AS rank
            FROM tasks, to_tsquery('simple', %s) AS q
            WHERE search_vector @@ q
            ORDER BY rank ASC, id DESC
            LIMIT %s
        """, (to_tsquery(tokens), clamp_limit(limit)))

    def rebuild_search_index(self) -> int:
        with self._cursor() as cursor:
            # Touching every row makes the trigger recompute search_vector
            cursor.execute("UPDATE tasks SET title = title")
            count = cursor.rowcount
        logger.info(f"Search index rebuilt for {count} tasks")
        return count

    # Lifecycle

    def ping(self) -> bool:
        self._fetch_one("SELECT 1 AS ok")
        return True

    def close(self):
        if self._pool:
            self._pool.closeall()
            self._pool = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

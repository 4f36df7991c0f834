"""
Test suite for the SQLite BoardDatabase.

Tests cover:
- Database initialization, schema and migrations
- Task CRUD, defaults and board ordering
- Calendar range queries
- Activity log filters, pagination and statistics
"""

import sqlite3
from pathlib import Path

import pytest

from jarvis_board.database import BoardDatabase, recent_cutoff
from conftest import set_updated_at, insert_activity_at


class TestDatabaseInitialization:

    def test_wal_mode_and_pragmas(self, db):
        cursor = db._connection.cursor()
        cursor.execute("PRAGMA journal_mode")
        assert cursor.fetchone()[0].upper() == "WAL"
        cursor.execute("PRAGMA busy_timeout")
        assert cursor.fetchone()[0] == 5000

    def test_schema_creation(self, db):
        cursor = db._connection.cursor()
        cursor.execute("""
            SELECT name FROM sqlite_master
            WHERE type='table' AND name IN ('tasks', 'activities', 'tasks_fts')
            ORDER BY name
        """)
        assert [row[0] for row in cursor.fetchall()] == ["activities", "tasks", "tasks_fts"]

        cursor.execute("SELECT name FROM sqlite_master WHERE type='trigger' ORDER BY name")
        triggers = {row[0] for row in cursor.fetchall()}
        assert {"tasks_ai", "tasks_au", "tasks_ad"} <= triggers

    def test_directory_creation(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "board.db"
        assert not db_path.parent.exists()

        database = BoardDatabase(str(db_path))
        assert db_path.exists()
        database.close()

    def test_migrates_legacy_tasks_table(self, tmp_path):
        db_path = tmp_path / "legacy.db"
        conn = sqlite3.connect(str(db_path))
        conn.execute("""
            CREATE TABLE tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT DEFAULT '',
                category TEXT DEFAULT 'Inbox',
                priority TEXT DEFAULT 'Medium',
                status TEXT DEFAULT 'todo',
                source TEXT DEFAULT '',
                created_at TEXT DEFAULT (datetime('now')),
                updated_at TEXT DEFAULT (datetime('now'))
            )
        """)
        conn.execute("INSERT INTO tasks (title) VALUES ('Old task')")
        conn.commit()
        conn.close()

        database = BoardDatabase(str(db_path))
        task = database.get_task(1)
        assert task["title"] == "Old task"
        assert "due_date" in task and task["due_date"] is None
        assert [t["id"] for t in database.search_tasks("old")] == [1]

        updated = database.update_task(1, {"due_date": "2026-11-01", "estimated_hours": 2})
        assert updated["due_date"] == "2026-11-01"
        database.close()

    def test_context_manager_closes(self, tmp_path):
        with BoardDatabase(str(tmp_path / "ctx.db")) as database:
            assert database.ping() is True
        assert database._connection is None


class TestTaskOperations:

    def test_create_with_only_title_applies_defaults(self, db):
        task = db.create_task({"title": "Write weekly review"})

        assert isinstance(task["id"], int)
        assert task["title"] == "Write weekly review"
        assert task["category"] == "Inbox"
        assert task["priority"] == "Medium"
        assert task["status"] == "todo"
        assert task["description"] == ""
        assert task["source"] == ""
        assert task["due_date"] is None
        assert task["estimated_hours"] is None
        assert task["created_at"] == task["updated_at"]

    def test_create_trims_title_and_keeps_fields(self, db):
        task = db.create_task({
            "title": "  Ship release  ",
            "description": "**notes**",
            "category": "Coding",
            "priority": "Urgent",
            "status": "doing",
            "source": "https://example.com/issue/1",
            "due_date": "2026-10-30",
            "estimated_hours": 3.5,
            "actual_hours": 0,
        })
        assert task["title"] == "Ship release"
        assert task["category"] == "Coding"
        assert task["priority"] == "Urgent"
        assert task["status"] == "doing"
        assert task["source"] == "https://example.com/issue/1"
        assert task["due_date"] == "2026-10-30"
        assert task["estimated_hours"] == 3.5
        assert task["actual_hours"] == 0

    @pytest.mark.parametrize("payload", [{}, {"title": ""}, {"title": "   "}, {"title": None}])
    def test_create_requires_title(self, db, payload):
        with pytest.raises(ValueError, match="Title is required"):
            db.create_task(payload)

    def test_create_rejects_invalid_priority(self, db):
        with pytest.raises(ValueError, match="priority"):
            db.create_task({"title": "x", "priority": "Critical"})

    def test_get_missing_task_returns_none(self, db):
        assert db.get_task(999) is None

    def test_list_orders_by_priority_ordinal(self, db):
        low = db.create_task({"title": "low", "priority": "Low"})
        urgent = db.create_task({"title": "urgent", "priority": "Urgent"})
        medium = db.create_task({"title": "medium", "priority": "Medium"})
        high = db.create_task({"title": "high", "priority": "High"})
        for task in (low, urgent, medium, high):
            set_updated_at(db, task["id"], "2026-10-01 12:00:00")

        titles = [t["title"] for t in db.list_tasks()]
        assert titles == ["urgent", "high", "medium", "low"]

    def test_list_orders_same_priority_by_updated_at_desc(self, db):
        older = db.create_task({"title": "older"})
        newer = db.create_task({"title": "newer"})
        set_updated_at(db, older["id"], "2026-10-01 09:00:00")
        set_updated_at(db, newer["id"], "2026-10-02 09:00:00")

        assert [t["title"] for t in db.list_tasks()] == ["newer", "older"]

    def test_list_filters(self, db):
        db.create_task({"title": "Read paper", "category": "Learnings", "status": "doing"})
        db.create_task({"title": "Fix bug", "category": "Coding", "description": "null pointer in parser"})
        db.create_task({"title": "Refactor parser", "category": "Coding", "status": "done"})

        assert [t["title"] for t in db.list_tasks(status="doing")] == ["Read paper"]
        assert {t["title"] for t in db.list_tasks(category="Coding")} == {"Fix bug", "Refactor parser"}
        assert {t["title"] for t in db.list_tasks(search="PARSER")} == {"Fix bug", "Refactor parser"}
        assert [t["title"] for t in db.list_tasks(category="Coding", status="done")] == ["Refactor parser"]

    def test_list_search_treats_wildcards_literally(self, db):
        db.create_task({"title": "100% done"})
        db.create_task({"title": "1000 things"})

        assert [t["title"] for t in db.list_tasks(search="0%")] == ["100% done"]

    def test_list_search_folds_non_ascii_case(self, db):
        db.create_task({"title": "Über refactor"})
        db.create_task({"title": "Plain task", "description": "STRASSE notes"})

        assert [t["title"] for t in db.list_tasks(search="über")] == ["Über refactor"]
        assert [t["title"] for t in db.list_tasks(search="ÜBER")] == ["Über refactor"]
        assert [t["title"] for t in db.list_tasks(search="straße")] == ["Plain task"]

    @pytest.mark.parametrize("field,value", [
        ("estimated_hours", -3),
        ("actual_hours", "lots"),
        ("estimated_hours", float("nan")),
        ("actual_hours", True),
    ])
    def test_create_rejects_invalid_hours(self, db, field, value):
        with pytest.raises(ValueError, match=field):
            db.create_task({"title": "Hours", field: value})
        assert db.list_tasks() == []

    def test_hours_are_stored_as_floats(self, db):
        task = db.create_task({"title": "Hours", "estimated_hours": "2.5", "actual_hours": 0})
        assert task["estimated_hours"] == 2.5
        assert task["actual_hours"] == 0.0

    def test_update_rejects_invalid_hours(self, db):
        task = db.create_task({"title": "Hours", "estimated_hours": 1})
        with pytest.raises(ValueError, match="actual_hours"):
            db.update_task(task["id"], {"actual_hours": -0.5})
        assert db.get_task(task["id"])["actual_hours"] is None

    def test_transaction_rolls_back_task_and_activity(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction():
                task = db.create_task({"title": "Never lands"})
                db.create_activity({"action": "task.create", "entity_type": "task", "entity_id": task["id"]})
                raise RuntimeError("abort")

        assert db.list_tasks() == []
        assert db.get_activities() == []

    def test_nested_transaction_joins_outer(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction():
                with db.transaction():
                    db.create_task({"title": "Inner"})
                raise RuntimeError("abort")

        assert db.list_tasks() == []

    def test_update_merges_partial_fields(self, db):
        task = db.create_task({"title": "Draft", "category": "Workflow", "priority": "Low"})
        set_updated_at(db, task["id"], "2000-01-01 00:00:00")

        updated = db.update_task(task["id"], {"priority": "High"})

        assert updated["priority"] == "High"
        assert updated["category"] == "Workflow"
        assert updated["title"] == "Draft"
        assert updated["updated_at"] != "2000-01-01 00:00:00"
        assert updated["created_at"] == task["created_at"]

    def test_update_ignores_id_and_timestamps(self, db):
        task = db.create_task({"title": "Keep id"})
        updated = db.update_task(task["id"], {"id": 42, "created_at": "1999-01-01 00:00:00", "title": "Renamed"})

        assert updated["id"] == task["id"]
        assert updated["created_at"] == task["created_at"]
        assert db.get_task(42) is None

    def test_update_can_clear_due_date(self, db):
        task = db.create_task({"title": "Dated", "due_date": "2026-10-20"})
        updated = db.update_task(task["id"], {"due_date": None})
        assert updated["due_date"] is None

    def test_update_missing_task_returns_none(self, db):
        assert db.update_task(12345, {"title": "nope"}) is None

    def test_update_rejects_blank_title(self, db):
        task = db.create_task({"title": "Named"})
        with pytest.raises(ValueError):
            db.update_task(task["id"], {"title": "  "})
        assert db.get_task(task["id"])["title"] == "Named"

    def test_delete_reports_removal(self, db):
        task = db.create_task({"title": "Disposable"})
        assert db.delete_task(task["id"]) is True
        assert db.get_task(task["id"]) is None
        assert db.delete_task(task["id"]) is False

    def test_ids_are_not_reused(self, db):
        first = db.create_task({"title": "first"})
        db.delete_task(first["id"])
        second = db.create_task({"title": "second"})
        assert second["id"] > first["id"]


class TestCalendarRange:

    def test_range_is_inclusive_and_sorted(self, db):
        db.create_task({"title": "before", "due_date": "2026-10-18"})
        db.create_task({"title": "start low", "due_date": "2026-10-19", "priority": "Low"})
        db.create_task({"title": "start urgent", "due_date": "2026-10-19", "priority": "Urgent"})
        db.create_task({"title": "end", "due_date": "2026-10-25"})
        db.create_task({"title": "after", "due_date": "2026-10-26"})
        db.create_task({"title": "undated"})

        titles = [t["title"] for t in db.get_tasks_by_date_range("2026-10-19", "2026-10-25")]
        assert titles == ["start urgent", "start low", "end"]

    def test_empty_range(self, db):
        db.create_task({"title": "dated", "due_date": "2026-10-19"})
        assert db.get_tasks_by_date_range("2027-01-01", "2027-01-31") == []


class TestActivityLog:

    def test_create_activity_round_trip(self, db):
        activity = db.create_activity({
            "action": "file.write",
            "entity_type": "file",
            "entity_id": "/tmp/notes.md",
            "details": {"bytes": 120, "path": "/tmp/notes.md"},
            "session_id": "sess-1",
            "tokens_used": 450,
        })

        assert activity["id"] > 0
        assert activity["action"] == "file.write"
        assert activity["details"] == {"bytes": 120, "path": "/tmp/notes.md"}
        assert activity["session_id"] == "sess-1"
        assert activity["tokens_used"] == 450
        assert activity["created_at"]

    def test_create_activity_stringifies_entity_id(self, db):
        activity = db.create_activity({"action": "task.update", "entity_type": "task", "entity_id": 7})
        assert activity["entity_id"] == "7"
        assert activity["details"] is None

    def test_create_activity_requires_action(self, db):
        with pytest.raises(ValueError, match="Action is required"):
            db.create_activity({"action": " "})

    def test_activities_are_append_only(self, db):
        activity = db.create_activity({"action": "message.send"})
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            db._connection.execute("UPDATE activities SET action = 'x' WHERE id = ?", (activity["id"],))
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            db._connection.execute("DELETE FROM activities WHERE id = ?", (activity["id"],))

    def test_filters_and_newest_first(self, db):
        insert_activity_at(db, "task.create", "2026-10-01 08:00:00", "task")
        insert_activity_at(db, "task.update", "2026-10-02 08:00:00", "task")
        insert_activity_at(db, "file.write", "2026-10-03 08:00:00", "file")

        actions = [a["action"] for a in db.get_activities()]
        assert actions == ["file.write", "task.update", "task.create"]

        assert [a["action"] for a in db.get_activities(entity_type="task")] == ["task.update", "task.create"]
        assert [a["action"] for a in db.get_activities(action="file.write")] == ["file.write"]

    def test_date_window_is_inclusive(self, db):
        insert_activity_at(db, "a", "2026-10-01 23:30:00")
        insert_activity_at(db, "b", "2026-10-02 10:00:00")
        insert_activity_at(db, "c", "2026-10-03 00:00:01")

        window = db.get_activities(start_date="2026-10-02", end_date="2026-10-02")
        assert [a["action"] for a in window] == ["b"]

        since = db.get_activities(start_date="2026-10-02")
        assert [a["action"] for a in since] == ["c", "b"]

    def test_timestamp_bounds_with_timezone_are_inclusive(self, db):
        insert_activity_at(db, "before", "2026-10-02 09:59:59")
        insert_activity_at(db, "exact", "2026-10-02 10:00:00")
        insert_activity_at(db, "after", "2026-10-02 10:00:01")

        window = db.get_activities(start_date="2026-10-02T10:00:00Z", end_date="2026-10-02T10:00:00Z")
        assert [a["action"] for a in window] == ["exact"]

        shifted = db.get_activities(start_date="2026-10-02T12:00:00+02:00", end_date="2026-10-02T12:00:01+02:00")
        assert [a["action"] for a in shifted] == ["after", "exact"]

    def test_invalid_date_bound_raises(self, db):
        with pytest.raises(ValueError):
            db.get_activities(start_date="last tuesday")

    def test_pagination(self, db):
        for day in range(1, 6):
            insert_activity_at(db, f"act{day}", f"2026-10-0{day} 12:00:00")

        page1 = db.get_activities(limit=2)
        page2 = db.get_activities(limit=2, offset=2)
        rest = db.get_activities(offset=4)

        assert [a["action"] for a in page1] == ["act5", "act4"]
        assert [a["action"] for a in page2] == ["act3", "act2"]
        assert [a["action"] for a in rest] == ["act1"]

    def test_entity_filter(self, db):
        db.create_activity({"action": "task.update", "entity_type": "task", "entity_id": "1"})
        db.create_activity({"action": "task.update", "entity_type": "task", "entity_id": "2"})

        rows = db.get_activities(entity_type="task", entity_id="2")
        assert len(rows) == 1 and rows[0]["entity_id"] == "2"

    def test_stats(self, db):
        db.create_activity({"action": "task.create", "entity_type": "task", "tokens_used": 100})
        db.create_activity({"action": "task.create", "entity_type": "task", "tokens_used": 50})
        db.create_activity({"action": "message.send", "entity_type": "message"})
        db.create_activity({"action": "browser.navigate"})
        insert_activity_at(db, "file.write", "2000-01-01 00:00:00", "file", tokens_used=25)

        stats = db.get_activity_stats()

        assert stats["total_activities"] == 5
        assert stats["total_tokens"] == 175
        assert stats["by_action"] == {
            "task.create": 2, "message.send": 1, "browser.navigate": 1, "file.write": 1,
        }
        assert stats["by_entity_type"] == {"task": 2, "message": 1, "file": 1}
        assert stats["recent_24h"] == 4

    def test_stats_on_empty_log(self, db):
        assert db.get_activity_stats() == {
            "total_activities": 0,
            "total_tokens": 0,
            "by_action": {},
            "by_entity_type": {},
            "recent_24h": 0,
        }

    def test_recent_cutoff_format(self):
        cutoff = recent_cutoff()
        assert len(cutoff) == 19 and cutoff[10] == " "

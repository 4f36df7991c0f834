"""
Shared fixtures for the Jarvis Board test suite.

Provides an isolated SQLite database per test and FastAPI TestClients wired
to a temporary database with known credentials.
"""

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

project_root = Path(__file__).parent.parent.parent / "src"
sys.path.insert(0, str(project_root))

from jarvis_board.api import app as fastapi_app
from jarvis_board.config import Settings
from jarvis_board.database import BoardDatabase

TEST_TOKEN = "test-token"
TEST_PASSWORD = "letmein"


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database in a temporary directory."""
    database = BoardDatabase(str(tmp_path / "board.db"))
    yield database
    database.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_path=str(tmp_path / "api.db"),
        api_tokens=[TEST_TOKEN, "second-token"],
        auth_pass=TEST_PASSWORD,
        session_secret="test-session-secret",
    )


def _make_client(settings):
    fastapi_app.state.settings = settings
    return TestClient(fastapi_app)


@pytest.fixture
def anon_client(settings):
    """Client without credentials; lifespan opens the temporary database."""
    with _make_client(settings) as client:
        yield client
    del fastapi_app.state.settings


@pytest.fixture
def client(settings):
    """Client authenticated with a bearer token from the allow-list."""
    with _make_client(settings) as client:
        client.headers["Authorization"] = f"Bearer {TEST_TOKEN}"
        yield client
    del fastapi_app.state.settings


@pytest.fixture
def app_db(client):
    """The database instance the API client is talking to."""
    return fastapi_app.state.db


def set_updated_at(database, task_id, value):
    """Force a task's updated_at for ordering tests."""
    database._connection.execute("UPDATE tasks SET updated_at = ? WHERE id = ?", (value, task_id))


def insert_activity_at(database, action, created_at, entity_type=None, tokens_used=None):
    """Insert an activity with an explicit timestamp (append-only, so INSERT is allowed)."""
    database._connection.execute(
        "INSERT INTO activities (action, entity_type, tokens_used, created_at) VALUES (?, ?, ?, ?)",
        (action, entity_type, tokens_used, created_at),
    )

"""
Runtime settings for Jarvis Board.

All configuration comes from environment variables so the same build can run
against a local SQLite file or a PostgreSQL server without code changes.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


DEFAULT_DB_PATH = str(Path("data") / "jarvis.db")


def _env(*names: str, default: str = "") -> str:
    """Return the first non-empty environment value among ``names``."""
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip() != "":
            return value.strip()
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _split_tokens(raw: str) -> List[str]:
    return [token.strip() for token in raw.split(",") if token.strip()]


@dataclass(frozen=True)
class Settings:
    """Application settings resolved once at startup."""

    database_path: str = DEFAULT_DB_PATH
    database_url: Optional[str] = None
    api_tokens: List[str] = field(default_factory=list)
    auth_pass: str = ""
    session_secret: str = ""
    environment: str = "development"
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 3000

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def uses_postgres(self) -> bool:
        return bool(self.database_url) and self.database_url.startswith(("postgres://", "postgresql://"))

    @property
    def backend_name(self) -> str:
        return "postgresql" if self.uses_postgres else "sqlite"


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    return Settings(
        database_path=_env("DATABASE_PATH", "DB_PATH", default=DEFAULT_DB_PATH),
        database_url=_env("DATABASE_URL") or None,
        api_tokens=_split_tokens(_env("API_TOKENS")),
        auth_pass=_env("AUTH_PASS"),
        session_secret=_env("SESSION_SECRET"),
        environment=_env("JARVIS_ENV", "NODE_ENV", default="development"),
        log_level=_env("LOG_LEVEL", default="INFO").upper(),
        host=_env("HOST", default="127.0.0.1"),
        port=_env_int("PORT", 3000),
    )


def create_database(settings: Settings):
    """
    Open the datastore selected by ``settings``.

    Returns a BoardDatabase (SQLite) or PostgresBoardDatabase; both expose the
    same repository interface.
    """
    if settings.uses_postgres:
        from .pg_database import PostgresBoardDatabase
        return PostgresBoardDatabase(settings.database_url)

    from .database import BoardDatabase
    return BoardDatabase(settings.database_path)

"""
Command line interface for Jarvis Board.

    jarvis-board serve --port 3000
    jarvis-board init-db --db data/jarvis.db
    jarvis-board import tasks.yaml
    jarvis-board search "weekly review"
    jarvis-board reindex
"""

import dataclasses
import logging
import socket
import sys
from typing import Optional

import click

from .config import Settings, load_settings, create_database
from .importer import import_tasks_from_file

logger = logging.getLogger(__name__)


def check_port_available(host: str, port: int) -> bool:
    """Return True if ``port`` can be bound on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
            return True
        except OSError:
            return False


def _resolve_settings(db_path: Optional[str]) -> Settings:
    settings = load_settings()
    if db_path:
        # An explicit --db always means the SQLite file, even if DATABASE_URL is set
        settings = dataclasses.replace(settings, database_path=db_path, database_url=None)
    return settings


def print_startup_banner(settings: Settings, host: str, port: int) -> None:
    target = "postgresql" if settings.uses_postgres else settings.database_path
    click.echo("=" * 50)
    click.echo("  Jarvis Board")
    click.echo("=" * 50)
    click.echo(f"  URL:      http://{host}:{port}")
    click.echo(f"  Backend:  {settings.backend_name}")
    click.echo(f"  Database: {target}")
    click.echo(f"  Bearer tokens configured: {len(settings.api_tokens)}")
    click.echo(f"  Browser login: {'enabled' if settings.auth_pass else 'disabled'}")
    click.echo("=" * 50)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """Jarvis Board task tracker."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@main.command()
@click.option("--host", default=None, help="Bind address (default: HOST or 127.0.0.1)")
@click.option("--port", type=int, default=None, help="Port (default: PORT or 3000)")
@click.option("--db", "db_path", default=None, help="SQLite database path")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes (development)")
def serve(host: Optional[str], port: Optional[int], db_path: Optional[str], reload: bool):
    """Run the API server."""
    import uvicorn
    from .api import app

    settings = _resolve_settings(db_path)
    host = host or settings.host
    port = port or settings.port

    if not check_port_available(host, port):
        raise click.ClickException(f"Port {port} is already in use on {host}")

    print_startup_banner(settings, host, port)

    if reload:
        # The reloader imports the app by path, so settings travel through the environment
        uvicorn.run("jarvis_board.api:app", host=host, port=port, reload=True,
                    log_level=settings.log_level.lower())
        return

    app.state.settings = settings
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


@main.command("init-db")
@click.option("--db", "db_path", default=None, help="SQLite database path")
def init_db(db_path: Optional[str]):
    """Create the database schema."""
    settings = _resolve_settings(db_path)
    db = create_database(settings)
    db.close()
    target = "postgresql" if settings.uses_postgres else settings.database_path
    click.echo(f"Database ready: {target}")


@main.command("import")
@click.argument("yaml_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--db", "db_path", default=None, help="SQLite database path")
def import_command(yaml_file: str, db_path: Optional[str]):
    """Create or update tasks from a YAML file."""
    settings = _resolve_settings(db_path)
    with create_database(settings) as db:
        try:
            result = import_tasks_from_file(db, yaml_file)
        except (FileNotFoundError, ValueError) as e:
            raise click.ClickException(str(e))

    click.echo(f"Created: {result['tasks_created']}  Updated: {result['tasks_updated']}")
    for error in result["errors"]:
        click.echo(f"  ! {error}", err=True)
    if result["errors"]:
        sys.exit(1)


@main.command()
@click.argument("query")
@click.option("--limit", type=int, default=10, show_default=True)
@click.option("--db", "db_path", default=None, help="SQLite database path")
def search(query: str, limit: int, db_path: Optional[str]):
    """Full-text search over tasks."""
    settings = _resolve_settings(db_path)
    with create_database(settings) as db:
        results = db.search_tasks(query, limit)

    if not results:
        click.echo("No matches")
        return
    for task in results:
        click.echo(f"#{task['id']:<5} [{task['status']}] {task['priority']:<7} {task['title']}")


@main.command()
@click.option("--db", "db_path", default=None, help="SQLite database path")
def reindex(db_path: Optional[str]):
    """Rebuild the full-text search index from the tasks table."""
    settings = _resolve_settings(db_path)
    with create_database(settings) as db:
        count = db.rebuild_search_index()
    click.echo(f"Reindexed {count} tasks")


if __name__ == "__main__":
    main()

"""
FastAPI Backend for Jarvis Board

Provides REST endpoints for tasks, the calendar view, the activity feed and
the command palette search. Every task mutation is mirrored into the activity
log. Requests pass through the access gate before reaching a route.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, HTMLResponse, FileResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .activity import record_task_created, record_task_updated, record_task_deleted
from .auth import (
    AccessGateMiddleware,
    SESSION_COOKIE,
    SESSION_MAX_AGE,
    check_password,
    session_token,
)
from .config import load_settings, create_database
from .models import (
    ActivityCreate,
    ActivityStats,
    CalendarResponse,
    HealthResponse,
    LoginRequest,
    SearchResponse,
    TaskCreate,
    TaskUpdate,
    create_error_response,
    parse_iso_date,
)
from .search import DEFAULT_SEARCH_LIMIT, clamp_limit

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_ACTIVITY_LIMIT = 50
MAX_ACTIVITY_LIMIT = 500

SESSION_HEADER = "X-Session-Id"


def get_database(request: Request):
    """
    FastAPI dependency to provide the database backend.

    Raises:
        HTTPException: 503 if the database is not available
    """
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db


def get_session_id(request: Request) -> Optional[str]:
    """Client session id used to attribute activity entries, if the client sent one."""
    value = request.headers.get(SESSION_HEADER, "").strip()
    return value or None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context manager for startup/shutdown operations.

    Settings already placed on ``app.state.settings`` (tests, the CLI) win over
    the environment.
    """
    settings = getattr(app.state, "settings", None) or load_settings()
    app.state.settings = settings
    logging.getLogger().setLevel(settings.log_level)

    try:
        app.state.db = create_database(settings)
        target = settings.database_path if not settings.uses_postgres else "postgresql"
        logger.info(f"Database initialized ({settings.backend_name}): {target}")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    if not settings.api_tokens:
        logger.warning("API_TOKENS is empty; bearer authentication is disabled")
    if not settings.auth_pass:
        logger.warning("AUTH_PASS is empty; browser login is disabled")

    yield

    db = getattr(app.state, "db", None)
    if db is not None:
        db.close()
        app.state.db = None
        logger.info("Database connection closed")


app = FastAPI(
    title="Jarvis Board API",
    description="Personal task board with activity log and full-text search",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(AccessGateMiddleware)

static_dir = Path(__file__).parent / "static"
if static_dir.exists():
    app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")
    logger.info(f"Static files served from: {static_dir}")


def _parse_task_id(raw: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid ID")


# Error handlers

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(str(exc.detail), code=exc.status_code),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report body and query validation failures as 400 with the first problem as the message."""
    problems = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query"))
        msg = str(error.get("msg", "Invalid value")).removeprefix("Value error, ")
        problems.append({"field": loc, "message": msg})

    first = problems[0] if problems else {"field": "", "message": "Invalid request"}
    message = f"{first['field']}: {first['message']}" if first["field"] else first["message"]
    return JSONResponse(
        status_code=400,
        content=create_error_response(message, code=400, details={"errors": problems}),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content=create_error_response("Internal server error", code=500))


# Health and UI

@app.get("/healthz", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check for monitoring; reports whether the datastore answers."""
    db = getattr(request.app.state, "db", None)
    database_connected = False
    if db is not None:
        try:
            database_connected = db.ping()
        except Exception as e:
            logger.error(f"Database health check failed: {e}")

    settings = request.app.state.settings
    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        database_connected=database_connected,
        backend=settings.backend_name,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


LOGIN_PAGE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>Jarvis Board - Login</title></head>
<body>
  <form id="login">
    <h1>Jarvis Board</h1>
    <input type="password" name="password" placeholder="Password" autofocus>
    <button type="submit">Sign in</button>
    <p id="error"></p>
  </form>
  <script>
    document.getElementById('login').addEventListener('submit', async (e) => {
      e.preventDefault();
      const res = await fetch('/api/auth/login', {
        method: 'POST',
        headers: {'Content-Type': 'application/json'},
        body: JSON.stringify({password: e.target.password.value}),
      });
      if (res.ok) {
        const from = new URLSearchParams(location.search).get('from') || '/';
        location.href = from.startsWith('/') ? from : '/';
      } else {
        document.getElementById('error').textContent = 'Invalid password';
      }
    });
  </script>
</body>
</html>
"""


@app.get("/login", response_class=HTMLResponse)
async def login_page():
    return HTMLResponse(LOGIN_PAGE)


@app.post("/api/auth/login")
async def login(body: LoginRequest, request: Request):
    """Exchange the board password for a session cookie."""
    settings = request.app.state.settings
    if not check_password(body.password, settings):
        logger.warning("Failed login attempt")
        raise HTTPException(status_code=401, detail="Invalid password")

    response = JSONResponse(content={"success": True})
    response.set_cookie(
        SESSION_COOKIE,
        session_token(settings),
        max_age=SESSION_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
    )
    logger.info("Session login succeeded")
    return response


@app.post("/api/auth/logout")
async def logout():
    response = JSONResponse(content={"success": True})
    response.delete_cookie(SESSION_COOKIE)
    return response


@app.get("/")
async def dashboard():
    """Serve the board UI when it is bundled, otherwise a short API index."""
    dashboard_file = static_dir / "index.html"
    if dashboard_file.exists():
        return FileResponse(dashboard_file)
    return {
        "message": "Jarvis Board API",
        "endpoints": [
            "/api/tasks", "/api/tasks/calendar", "/api/activities",
            "/api/activities/stats", "/api/search",
        ],
    }


# Tasks

@app.get("/api/tasks")
async def list_tasks(
    status: Optional[str] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    db=Depends(get_database),
):
    """
    List tasks for the board.

    Query params filter by exact status/category and by a title/description
    substring. Results are ordered by priority (Urgent first), then most
    recently updated.
    """
    try:
        tasks = db.list_tasks(status=status or None, category=category or None, search=search or None)
        logger.debug(f"REST API: Retrieved {len(tasks)} tasks")
        return tasks
    except Exception as e:
        logger.error(f"Failed to list tasks: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve tasks")


@app.post("/api/tasks", status_code=201)
async def create_task(
    body: TaskCreate,
    db=Depends(get_database),
    session_id: Optional[str] = Depends(get_session_id),
):
    """Create a task; omitted fields take the board defaults."""
    if not body.title or not body.title.strip():
        raise HTTPException(status_code=400, detail="Title is required")

    try:
        with db.transaction():
            task = db.create_task(body.model_dump(mode="json"))
            record_task_created(db, task, session_id)
        return JSONResponse(status_code=201, content=task)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to create task: {e}")
        raise HTTPException(status_code=500, detail="Failed to create task")


@app.get("/api/tasks/calendar", response_model=CalendarResponse)
async def calendar_tasks(
    start: Optional[str] = None,
    end: Optional[str] = None,
    db=Depends(get_database),
):
    """Tasks due between ``start`` and ``end`` (inclusive, YYYY-MM-DD)."""
    if not start or not end:
        raise HTTPException(status_code=400, detail="start and end query parameters are required")
    try:
        start_date = parse_iso_date(start)
        end_date = parse_iso_date(end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if start_date > end_date:
        raise HTTPException(status_code=400, detail="start must not be after end")

    try:
        tasks = db.get_tasks_by_date_range(start, end)
        return CalendarResponse(success=True, data=tasks)
    except Exception as e:
        logger.error(f"Failed to load calendar tasks {start}..{end}: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve calendar tasks")


@app.get("/api/tasks/{task_id}")
async def get_task(task_id: str, db=Depends(get_database)):
    task = db.get_task(_parse_task_id(task_id))
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@app.patch("/api/tasks/{task_id}")
async def update_task(
    task_id: str,
    body: TaskUpdate,
    db=Depends(get_database),
    session_id: Optional[str] = Depends(get_session_id),
):
    """
    Partially update a task.

    Writes a ``task.status_change`` activity when the status actually changes,
    otherwise ``task.update``. Unknown ids return 404 and log nothing.
    """
    task_id = _parse_task_id(task_id)
    changes = body.changes()

    try:
        with db.transaction():
            existing = db.get_task(task_id)
            if existing is None:
                raise HTTPException(status_code=404, detail="Task not found")

            updated = db.update_task(task_id, changes)
            if updated is None:
                raise HTTPException(status_code=404, detail="Task not found")

            activity = record_task_updated(db, existing, updated, changes, session_id)
        logger.info(f"Task {task_id} updated ({activity['action']})")
        return updated
    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to update task {task_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update task")


@app.delete("/api/tasks/{task_id}")
async def delete_task(
    task_id: str,
    db=Depends(get_database),
    session_id: Optional[str] = Depends(get_session_id),
):
    """Delete a task. Unknown ids return 404 and log nothing."""
    task_id = _parse_task_id(task_id)

    try:
        with db.transaction():
            existing = db.get_task(task_id)
            if existing is None or not db.delete_task(task_id):
                raise HTTPException(status_code=404, detail="Task not found")

            record_task_deleted(db, existing, session_id)
        return {"success": True}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to delete task {task_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete task")


# Activities

@app.get("/api/activities")
async def list_activities(
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    limit: Optional[int] = DEFAULT_ACTIVITY_LIMIT,
    offset: Optional[int] = None,
    db=Depends(get_database),
):
    """Activity feed, newest first, filtered and paginated."""
    if limit is not None and not 1 <= limit <= MAX_ACTIVITY_LIMIT:
        raise HTTPException(status_code=400, detail=f"Limit must be between 1 and {MAX_ACTIVITY_LIMIT}")
    if offset is not None and offset < 0:
        raise HTTPException(status_code=400, detail="Offset must be a non-negative integer")

    try:
        return db.get_activities(
            action=action or None,
            entity_type=entity_type or None,
            entity_id=entity_id or None,
            start_date=start_date or None,
            end_date=end_date or None,
            limit=limit,
            offset=offset,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to list activities: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve activities")


@app.post("/api/activities", status_code=201)
async def create_activity(body: ActivityCreate, db=Depends(get_database)):
    """Append an activity reported by an external agent (file writes, browsing, messages)."""
    try:
        activity = db.create_activity(body.model_dump())
        return JSONResponse(status_code=201, content=activity)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to record activity {body.action}: {e}")
        raise HTTPException(status_code=500, detail="Failed to record activity")


@app.get("/api/activities/stats", response_model=ActivityStats)
async def activity_stats(db=Depends(get_database)):
    try:
        return db.get_activity_stats()
    except Exception as e:
        logger.error(f"Failed to compute activity stats: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve activity stats")


# Search

@app.get("/api/search", response_model=SearchResponse)
async def search(q: str = "", limit: int = DEFAULT_SEARCH_LIMIT, db=Depends(get_database)):
    """Command palette search over task title, description and category."""
    try:
        results = db.search_tasks(q, clamp_limit(limit)) if q.strip() else []
        return SearchResponse(query=q, results=results, count=len(results))
    except Exception as e:
        logger.error(f"Search failed for {q!r}: {e}")
        raise HTTPException(status_code=500, detail="Search failed")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("jarvis_board.api:app", host="127.0.0.1", port=3000, log_level="info")

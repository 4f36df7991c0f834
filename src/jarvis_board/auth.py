"""
Access gate for the board.

API routes accept a bearer token from the configured allow-list or the
browser session cookie; UI routes require the session cookie and otherwise
redirect to the login page. Missing configuration never opens the gate.
"""

import hashlib
import hmac
import logging
from typing import Optional
from urllib.parse import quote

from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .config import Settings

logger = logging.getLogger(__name__)

SESSION_COOKIE = "jarvis_session"
SESSION_MAX_AGE = 60 * 60 * 24 * 30  # 30 days

PUBLIC_ROUTES = ("/login", "/api/auth/login", "/api/auth/logout", "/healthz")
STATIC_PREFIXES = ("/static/", "/favicon")


def is_public_path(path: str) -> bool:
    if path in PUBLIC_ROUTES:
        return True
    return path.startswith(STATIC_PREFIXES)


def session_token(settings: Settings) -> Optional[str]:
    """
    Derive the session cookie value from the configured secret.

    Returns None when neither SESSION_SECRET nor AUTH_PASS is set, in which
    case no cookie is ever valid.
    """
    secret = settings.session_secret or settings.auth_pass
    if not secret:
        return None
    return hmac.new(secret.encode("utf-8"), SESSION_COOKIE.encode("utf-8"), hashlib.sha256).hexdigest()


def is_valid_session(cookie_value: Optional[str], settings: Settings) -> bool:
    expected = session_token(settings)
    if not cookie_value or expected is None:
        return False
    return hmac.compare_digest(cookie_value, expected)


def is_valid_bearer(authorization: Optional[str], settings: Settings) -> bool:
    """True iff the header is ``Bearer <token>`` with a token from the allow-list."""
    if not authorization or not authorization.startswith("Bearer "):
        return False
    token = authorization[len("Bearer "):].strip()
    if not token:
        return False
    # Compare against every entry so timing does not reveal which one matched
    matched = False
    for allowed in settings.api_tokens:
        if hmac.compare_digest(token.encode("utf-8"), allowed.encode("utf-8")):
            matched = True
    return matched


def check_password(password: Optional[str], settings: Settings) -> bool:
    if not settings.auth_pass or not password:
        return False
    return hmac.compare_digest(password.encode("utf-8"), settings.auth_pass.encode("utf-8"))


class AccessGateMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests before they reach a route."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if is_public_path(path):
            return await call_next(request)

        settings: Settings = request.app.state.settings
        has_session = is_valid_session(request.cookies.get(SESSION_COOKIE), settings)

        if path.startswith("/api/"):
            if has_session or is_valid_bearer(request.headers.get("authorization"), settings):
                return await call_next(request)
            logger.warning(f"Rejected unauthenticated API request: {request.method} {path}")
            return JSONResponse(status_code=401, content={"success": False, "error": "Unauthorized"})

        if not has_session:
            return RedirectResponse(url=f"/login?from={quote(path)}", status_code=307)

        return await call_next(request)

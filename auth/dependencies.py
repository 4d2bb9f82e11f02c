"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Token sources are checked in priority order:
  1. "access_token" cookie -- set by the sign-in routes.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on AuthEngine.get_session(), which verifies the signature and
re-fetches the user. A "session_token" cookie (database strategy) is checked
last via AuthEngine.get_database_session().

try_get_session() is the soft variant (returns None on failure).
get_current_session() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. It holds no auth logic of its own.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.engine import AuthEngine
from auth.models import AuthSession

ACCESS_TOKEN_COOKIE = "access_token"
SESSION_TOKEN_COOKIE = "session_token"


def get_engine(request: Request) -> AuthEngine:
    return request.app.state.auth_engine


def extract_token(request: Request) -> str | None:
    """Return the signed token from the cookie or the Bearer header."""
    token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


async def try_get_session(request: Request) -> AuthSession | None:
    """Authenticate the request. Never raises for bad credentials."""
    engine = get_engine(request)

    token = extract_token(request)
    if token:
        session = await engine.get_session(token)
        if session is not None:
            return session

    session_token = request.cookies.get(SESSION_TOKEN_COOKIE)
    if session_token:
        return await engine.get_database_session(session_token)
    return None


async def get_current_session(request: Request) -> AuthSession:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: AuthSession = Depends(get_current_session)): ...
    """
    session = await try_get_session(request)
    if session is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return session

"""
auth/dependencies.py -- FastAPI Depends() helpers and auth error mapping.

Three auth methods are checked in priority order:
  1. Session cookie ("dispatch_session") -- set after API key or OAuth login.
     A valid session inside its 24h refresh window is rolled forward and the
     cookie re-issued on the same response.
  2. Authorization: Bearer <token> header -- legacy JWTs (terminal key, SSH).
  3. X-API-Key header -- CI/CD and scripts using long-lived API keys.

All three methods converge on a User object after successful verification.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

install_exception_handlers() maps every AuthError to its status code with
the envelope {"error": {"code": ..., "message": ...}}.

All dependencies are sync def so FastAPI runs them in its threadpool -- the
X-API-Key path does bcrypt work and must not run on the event loop.

Layer rule: no imports from core/. This module is the only part of auth/
that imports fastapi.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from auth.errors import AuthError, InvalidCredential, InvalidToken, SessionNotFound
from auth.login import AuthService
from auth.models import SessionProvider, User
from auth.sessions import SESSION_COOKIE_NAME, clear_session_cookie, set_session_cookie

logger = logging.getLogger("dispatch.auth.dependencies")


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def try_get_current_user(request: Request, response: Response) -> User | None:
    """Attempt to authenticate the request via session cookie, Bearer, or API key.

    Returns the authenticated User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    auth = get_auth_service(request)

    # 1. Session cookie (browser)
    session_id = request.cookies.get(SESSION_COOKIE_NAME)
    if session_id:
        result = auth.sessions.validate(session_id)
        if result is not None and result.user is not None:
            if result.needs_refresh:
                try:
                    auth.sessions.refresh(session_id)
                except SessionNotFound:
                    # Logged out or swept between validate and refresh.
                    clear_session_cookie(response)
                    return None
                set_session_cookie(response, session_id, auth.secure_cookies)
            return result.user
        clear_session_cookie(response)

    # 2. Authorization: Bearer header (legacy JWTs)
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        try:
            return auth.authenticate_token(auth_header[7:])
        except (InvalidToken, InvalidCredential) as exc:
            logger.debug("Bearer token rejected: %s", exc.code)

    # 3. X-API-Key header (CI/CD, scripts)
    raw_key = request.headers.get("X-API-Key", "")
    if raw_key:
        api_key = auth.credentials.verify(raw_key)
        if api_key is not None:
            return auth.identities.ensure_user(api_key.user_id, SessionProvider.API_KEY.value)

    return None


def get_current_user(request: Request, response: Response) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request, response)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_admin(request: Request, response: Response) -> User:
    """Require admin. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request, response)
    if not user.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def install_exception_handlers(app: FastAPI) -> None:
    """Register structured JSON handlers for AuthError and HTTPException."""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Auth error on %s: %s", request.url.path, exc.code)
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(
                exclude_none=True
            ),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """detail is already a {"code", "message"} dict when raised by this module."""
        if isinstance(exc.detail, dict):
            return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))
            ).model_dump(exclude_none=True),
        )

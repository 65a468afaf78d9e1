"""
auth/sessions.py -- Browser session lifecycle and the session cookie contract.

Lifecycle:
  create()   -- new row, expires_at = now + 30 days.
  validate() -- None for unknown or expired ids (expired rows are deleted on
                the spot, so nothing past its expiry is ever returned even if
                the sweep has not run). Otherwise stamps last_active_at and
                reports needs_refresh when 24h or less remain.
  refresh()  -- expires_at = now + 30 days, unconditionally. This is a
                rolling window: an active session never expires, one idle
                for 30 days does.
  cleanup_expired() -- the sweep, run hourly by a background thread.

Refresh vs sweep:
  Both the sweep and the lazy expiry in validate() delete with the expiry
  condition inside the same DELETE statement
  (DELETE ... WHERE expires_at < :now). A refresh that commits first moves
  expires_at forward and the row no longer matches; the delete is never
  decided from an earlier snapshot read.

Timer lifecycle:
  The cleanup thread starts at construction (autostart=True) and must be
  stopped with destroy() on shutdown. SessionManager is also a context
  manager for scoped use in scripts and tests.

Cookie contract:
  The HTTP layer owns Set-Cookie; this module only defines the attributes
  (dispatch_session, httpOnly, SameSite=Lax, max-age 30 days, path=/, secure
  in production) and writes them onto a Starlette-style response.

Layer rule: no imports from core/ or the HTTP layer.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import select

from auth.errors import SessionExpired, SessionNotFound, ValidationError
from auth.models import Session, SessionProvider, SessionValidation, User
from auth.store import AuthDatabase, auth_sessions, from_millis, to_millis, users, utcnow

logger = logging.getLogger("dispatch.auth.sessions")

SESSION_TTL = timedelta(days=30)
REFRESH_WINDOW = timedelta(hours=24)
CLEANUP_INTERVAL_SECONDS = 60 * 60
SESSION_ID_BYTES = 32  # 256 bits

SESSION_COOKIE_NAME = "dispatch_session"


def parse_provider(value: str | SessionProvider) -> SessionProvider:
    """Map a provider string onto the closed SessionProvider enum."""
    try:
        return SessionProvider(value)
    except ValueError:
        allowed = ", ".join(p.value for p in SessionProvider)
        raise ValidationError(f"Invalid session provider: {value!r}. Must be one of: {allowed}") from None


class SessionManager:
    """Creates, validates, refreshes and garbage-collects browser sessions.

    Usage:
        sessions = SessionManager(db)
        session = sessions.create(user.id, "api_key")
        result = sessions.validate(session.id)
        if result and result.needs_refresh:
            sessions.refresh(session.id)
        sessions.destroy()
    """

    def __init__(
        self,
        db: AuthDatabase,
        clock: Callable[[], datetime] = utcnow,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
        autostart: bool = True,
    ) -> None:
        self._db = db
        self._clock = clock
        self._cleanup_interval = cleanup_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        if autostart:
            self.start()

    def _now(self) -> datetime:
        # Millisecond precision, matching what the store round-trips.
        return from_millis(to_millis(self._clock()))

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    def create(self, user_id: str, provider: str | SessionProvider) -> Session:
        """Create a session. Raises ValidationError for an unknown provider."""
        provider = parse_provider(provider)
        now = self._now()
        session = Session(
            id=secrets.token_urlsafe(SESSION_ID_BYTES),
            user_id=user_id,
            provider=provider,
            created_at=now,
            last_active_at=now,
            expires_at=now + SESSION_TTL,
        )
        with self._db.engine.connect() as conn:
            conn.execute(
                auth_sessions.insert().values(
                    id=session.id,
                    user_id=user_id,
                    provider=provider.value,
                    expires_at=to_millis(session.expires_at),
                    created_at=to_millis(now),
                    last_active_at=to_millis(now),
                )
            )
            conn.commit()
        logger.info(
            "Created session for user %s (provider: %s, expires: %s)",
            user_id,
            provider.value,
            session.expires_at.isoformat(),
        )
        return session

    def validate(self, session_id: str | None) -> SessionValidation | None:
        """Return (session, user, needs_refresh), or None. Never raises for bad input."""
        result, _reason = self._validate(session_id)
        return result

    def require(self, session_id: str | None) -> SessionValidation:
        """Strict variant of validate() for callers that want a typed error."""
        result, reason = self._validate(session_id)
        if result is not None:
            return result
        if reason == "expired":
            raise SessionExpired("Session has expired")
        raise SessionNotFound("Session not found")

    def _validate(self, session_id: str | None) -> tuple[SessionValidation | None, str]:
        if not session_id or not isinstance(session_id, str):
            return None, "missing"

        now = self._now()
        now_ms = to_millis(now)
        query = (
            select(
                auth_sessions,
                users.c.username.label("user_username"),
                users.c.email.label("user_email"),
                users.c.is_admin.label("user_is_admin"),
                users.c.auth_methods.label("user_auth_methods"),
            )
            .select_from(auth_sessions.outerjoin(users, auth_sessions.c.user_id == users.c.id))
            .where(auth_sessions.c.id == session_id)
        )
        with self._db.engine.connect() as conn:
            row = conn.execute(query).fetchone()
            if row is None:
                logger.debug("Session not found")
                return None, "missing"

            if row.expires_at < now_ms:
                conn.execute(
                    auth_sessions.delete().where(
                        (auth_sessions.c.id == session_id) & (auth_sessions.c.expires_at < now_ms)
                    )
                )
                conn.commit()
                logger.info("Session for user %s expired at %s", row.user_id, from_millis(row.expires_at).isoformat())
                return None, "expired"

            conn.execute(auth_sessions.update().where(auth_sessions.c.id == session_id).values(last_active_at=now_ms))
            conn.commit()

        session = _row_to_session(row)
        session.last_active_at = now
        remaining = session.expires_at - now
        # Inclusive: exactly 24h remaining already counts as inside the window.
        needs_refresh = remaining <= REFRESH_WINDOW
        if needs_refresh:
            logger.debug("Session within refresh window (%.1fh remaining)", remaining.total_seconds() / 3600)
        return SessionValidation(session=session, user=_row_to_session_user(row), needs_refresh=needs_refresh), ""

    def refresh(self, session_id: str) -> datetime:
        """Roll the expiry forward to now + 30 days. Raises SessionNotFound if the row is gone."""
        now = self._now()
        expires_at = now + SESSION_TTL
        with self._db.engine.connect() as conn:
            result = conn.execute(
                auth_sessions.update()
                .where(auth_sessions.c.id == session_id)
                .values(expires_at=to_millis(expires_at), last_active_at=to_millis(now))
            )
            conn.commit()
        if result.rowcount == 0:
            logger.warning("Failed to refresh session: not found")
            raise SessionNotFound("Session not found")
        logger.info("Refreshed session (new expiry: %s)", expires_at.isoformat())
        return expires_at

    def invalidate(self, session_id: str) -> bool:
        """Delete a session (logout). Returns False if there was nothing to delete."""
        if not session_id:
            return False
        with self._db.engine.connect() as conn:
            result = conn.execute(auth_sessions.delete().where(auth_sessions.c.id == session_id))
            conn.commit()
        if result.rowcount > 0:
            logger.info("Invalidated session")
            return True
        return False

    def list_user_sessions(self, user_id: str) -> list[Session]:
        """All sessions for a user, newest first. Includes expired rows the sweep has not reached."""
        with self._db.engine.connect() as conn:
            rows = conn.execute(
                auth_sessions.select()
                .where(auth_sessions.c.user_id == user_id)
                .order_by(auth_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def cleanup_expired(self) -> int:
        """Delete every session whose expiry has passed. Returns the number removed."""
        with self._db.engine.connect() as conn:
            result = conn.execute(auth_sessions.delete().where(auth_sessions.c.expires_at < to_millis(self._now())))
            conn.commit()
        if result.rowcount > 0:
            logger.info("Cleaned up %d expired session(s)", result.rowcount)
        else:
            logger.debug("No expired sessions to clean up")
        return result.rowcount

    # ------------------------------------------------------------------
    # Cleanup timer
    # ------------------------------------------------------------------

    @property
    def cleanup_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the periodic cleanup thread. No-op if it is already running."""
        if self.cleanup_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._cleanup_loop, name="session-cleanup", daemon=True)
        self._thread.start()
        logger.info("Session cleanup scheduled every %ss", self._cleanup_interval)

    def _cleanup_loop(self) -> None:
        while not self._stop.wait(self._cleanup_interval):
            try:
                self.cleanup_expired()
            except Exception:
                logger.exception("Failed to run periodic session cleanup")

    def destroy(self) -> None:
        """Stop the cleanup thread. Must be called on shutdown."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
            logger.info("Session cleanup timer stopped")

    def __enter__(self) -> SessionManager:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.destroy()


# ---------------------------------------------------------------------------
# Cookie contract
# ---------------------------------------------------------------------------


def session_cookie_attributes(secure: bool) -> dict:
    return {
        "httponly": True,
        "secure": secure,
        "samesite": "lax",
        "max_age": int(SESSION_TTL.total_seconds()),
        "path": "/",
    }


def set_session_cookie(response, session_id: str, secure: bool = False) -> None:
    """Write the session id cookie onto a Starlette/FastAPI response.

    secure should be Settings.secure_cookies (true in production) so the
    cookie is only sent over HTTPS there.
    """
    response.set_cookie(SESSION_COOKIE_NAME, value=session_id, **session_cookie_attributes(secure))


def clear_session_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        provider=SessionProvider(row.provider),
        created_at=from_millis(row.created_at),
        last_active_at=from_millis(row.last_active_at),
        expires_at=from_millis(row.expires_at),
    )


def _row_to_session_user(row) -> User | None:
    if row.user_username is None:
        return None
    return User(
        id=row.user_id,
        username=row.user_username,
        email=row.user_email,
        is_admin=bool(row.user_is_admin),
        auth_methods=set(json.loads(row.user_auth_methods or "[]")),
    )

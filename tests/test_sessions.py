"""Unit tests for auth/sessions.py -- session lifecycle and cookie contract.

Covers:
- create() validates the provider and sets expires_at = now + 30 days
- validate() returns None for unknown ids and for expired ids before any sweep
- validate() stamps last_active_at and flags needs_refresh inside the last 24h
- refresh() always sets expires_at = now + 30 days; SessionNotFound when gone
- cleanup_expired() removes only expired rows
- require() raises SessionNotFound / SessionExpired
- the cleanup thread starts, sweeps, and stops on destroy()
- cookie attributes: dispatch_session, httpOnly, SameSite=Lax, 30 days, path=/
- the create -> 29 days -> refresh -> 31 days scenario
"""

from __future__ import annotations

import time
from datetime import timedelta

import pytest
from starlette.responses import Response

from auth.errors import SessionExpired, SessionNotFound, ValidationError
from auth.identity import IdentityRegistry
from auth.models import SessionProvider
from auth.sessions import (
    SESSION_COOKIE_NAME,
    SESSION_TTL,
    SessionManager,
    clear_session_cookie,
    set_session_cookie,
)
from auth.store import AuthDatabase, auth_sessions


class TestCreate:
    def test_expires_in_thirty_days(self, sessions: SessionManager, clock) -> None:
        session = sessions.create("u1", "api_key")
        assert session.expires_at == clock() + timedelta(days=30)
        assert session.provider is SessionProvider.API_KEY
        assert session.created_at == session.last_active_at == clock()

    def test_ids_are_long_and_unique(self, sessions: SessionManager) -> None:
        ids = {sessions.create("u1", "api_key").id for _ in range(10)}
        assert len(ids) == 10
        assert all(len(i) >= 43 for i in ids), "32 random bytes encode to at least 43 chars"

    @pytest.mark.parametrize("provider", ["oauth_github", "oauth_google", SessionProvider.API_KEY])
    def test_all_enum_providers_accepted(self, sessions: SessionManager, provider) -> None:
        assert sessions.create("u1", provider).provider == SessionProvider(provider)

    @pytest.mark.parametrize("provider", ["password", "", "OAUTH_GITHUB"])
    def test_unknown_provider_rejected(self, sessions: SessionManager, provider: str) -> None:
        with pytest.raises(ValidationError):
            sessions.create("u1", provider)


class TestValidate:
    def test_unknown_id_returns_none(self, sessions: SessionManager) -> None:
        assert sessions.validate("never-created") is None

    @pytest.mark.parametrize("bad", [None, "", 42])
    def test_bad_input_returns_none(self, sessions: SessionManager, bad) -> None:
        assert sessions.validate(bad) is None

    def test_valid_session_returns_user(
        self, sessions: SessionManager, registry: IdentityRegistry, clock
    ) -> None:
        user = registry.create_user("alice", "alice@example.com", user_id="u1")
        session = sessions.create(user.id, "api_key")
        clock.advance(hours=1)
        result = sessions.validate(session.id)
        assert result is not None
        assert result.user is not None and result.user.username == "alice"
        assert result.user.is_admin is True
        assert result.session.last_active_at == clock()
        assert result.needs_refresh is False

    def test_missing_user_yields_none_user(self, sessions: SessionManager) -> None:
        session = sessions.create("ghost", "api_key")
        result = sessions.validate(session.id)
        assert result is not None
        assert result.user is None

    def test_last_active_persisted(self, sessions: SessionManager, clock) -> None:
        session = sessions.create("u1", "api_key")
        clock.advance(minutes=10)
        sessions.validate(session.id)
        (stored,) = sessions.list_user_sessions("u1")
        assert stored.last_active_at == clock()

    def test_expired_returns_none_and_row_deleted(self, sessions: SessionManager, db, clock) -> None:
        session = sessions.create("u1", "api_key")
        clock.advance(days=30, seconds=1)
        assert sessions.validate(session.id) is None
        with db.engine.connect() as conn:
            row = conn.execute(auth_sessions.select().where(auth_sessions.c.id == session.id)).fetchone()
        assert row is None, "Lazy expiry must delete the row"

    def test_exactly_at_expiry_is_still_valid(self, sessions: SessionManager, clock) -> None:
        session = sessions.create("u1", "api_key")
        clock.advance(days=30)
        result = sessions.validate(session.id)
        assert result is not None
        assert result.needs_refresh is True

    def test_needs_refresh_boundary(self, sessions: SessionManager, clock) -> None:
        session = sessions.create("u1", "api_key")
        clock.advance(days=28, hours=23, minutes=59)
        assert sessions.validate(session.id).needs_refresh is False
        clock.advance(minutes=1)
        assert sessions.validate(session.id).needs_refresh is True


class TestRequire:
    def test_returns_validation(self, sessions: SessionManager) -> None:
        session = sessions.create("u1", "api_key")
        assert sessions.require(session.id).session.id == session.id

    def test_unknown_raises_not_found(self, sessions: SessionManager) -> None:
        with pytest.raises(SessionNotFound):
            sessions.require("nope")

    def test_expired_raises_expired(self, sessions: SessionManager, clock) -> None:
        session = sessions.create("u1", "api_key")
        clock.advance(days=31)
        with pytest.raises(SessionExpired):
            sessions.require(session.id)


class TestRefresh:
    def test_sets_exactly_now_plus_thirty_days(self, sessions: SessionManager, clock) -> None:
        session = sessions.create("u1", "api_key")
        for days in (1, 15, 29):
            clock.advance(days=days)
            new_expiry = sessions.refresh(session.id)
            assert new_expiry == clock() + SESSION_TTL
            assert sessions.validate(session.id).session.expires_at == new_expiry

    def test_missing_session_raises(self, sessions: SessionManager) -> None:
        with pytest.raises(SessionNotFound):
            sessions.refresh("gone")


class TestInvalidateAndList:
    def test_invalidate(self, sessions: SessionManager) -> None:
        session = sessions.create("u1", "api_key")
        assert sessions.invalidate(session.id) is True
        assert sessions.validate(session.id) is None
        assert sessions.invalidate(session.id) is False

    def test_list_user_sessions_newest_first(self, sessions: SessionManager, clock) -> None:
        first = sessions.create("u1", "api_key")
        clock.advance(minutes=1)
        second = sessions.create("u1", "oauth_github")
        sessions.create("u2", "api_key")
        assert [s.id for s in sessions.list_user_sessions("u1")] == [second.id, first.id]


class TestCleanup:
    def test_removes_only_expired(self, sessions: SessionManager, clock) -> None:
        old = sessions.create("u1", "api_key")
        clock.advance(days=20)
        fresh = sessions.create("u1", "api_key")
        clock.advance(days=11)
        assert sessions.cleanup_expired() == 1
        remaining = [s.id for s in sessions.list_user_sessions("u1")]
        assert remaining == [fresh.id]
        assert old.id not in remaining

    def test_refreshed_session_survives_sweep(self, sessions: SessionManager, clock) -> None:
        session = sessions.create("u1", "api_key")
        clock.advance(days=29)
        sessions.refresh(session.id)
        clock.advance(days=2)
        assert sessions.cleanup_expired() == 0
        assert sessions.validate(session.id) is not None

    def test_nothing_to_clean(self, sessions: SessionManager) -> None:
        assert sessions.cleanup_expired() == 0


class TestCleanupTimer:
    def test_autostart_and_destroy(self, db, clock) -> None:
        manager = SessionManager(db, clock=clock, cleanup_interval=3600)
        try:
            assert manager.cleanup_running is True
        finally:
            manager.destroy()
        assert manager.cleanup_running is False

    def test_timer_sweeps_expired_sessions(self, tmp_path, clock) -> None:
        """File-backed store so the cleanup thread gets its own connection."""
        db = AuthDatabase(f"sqlite:///{tmp_path / 'auth.db'}")
        with SessionManager(db, clock=clock, cleanup_interval=0.05) as manager:
            manager.create("u1", "api_key")
            clock.advance(days=31)
            deadline = time.monotonic() + 5
            while manager.list_user_sessions("u1") and time.monotonic() < deadline:
                time.sleep(0.05)
            assert manager.list_user_sessions("u1") == []
        assert manager.cleanup_running is False
        db.close()

    def test_start_is_idempotent(self, sessions: SessionManager) -> None:
        sessions.start()
        thread = sessions._thread
        sessions.start()
        assert sessions._thread is thread
        sessions.destroy()

    def test_destroy_twice_is_safe(self, sessions: SessionManager) -> None:
        sessions.destroy()
        sessions.destroy()


class TestCookie:
    def test_set_cookie_attributes(self) -> None:
        response = Response()
        set_session_cookie(response, "abc123", secure=True)
        header = response.headers["set-cookie"]
        assert header.startswith(f"{SESSION_COOKIE_NAME}=abc123")
        assert "HttpOnly" in header
        assert "Secure" in header
        assert "samesite=lax" in header.lower()
        assert f"Max-Age={30 * 24 * 3600}" in header
        assert "Path=/" in header

    def test_insecure_in_development(self) -> None:
        response = Response()
        set_session_cookie(response, "abc123", secure=False)
        assert "Secure" not in response.headers["set-cookie"]

    def test_clear_cookie(self) -> None:
        response = Response()
        clear_session_cookie(response)
        header = response.headers["set-cookie"]
        assert header.startswith(f"{SESSION_COOKIE_NAME}=")
        assert "Max-Age=0" in header


class TestRollingWindowScenario:
    def test_refresh_then_idle_expiry(self, sessions: SessionManager, clock) -> None:
        session = sessions.create("u1", "api_key")
        assert session.expires_at == clock() + timedelta(days=30)

        clock.advance(days=29)
        result = sessions.validate(session.id)
        assert result is not None
        assert result.needs_refresh is True

        new_expiry = sessions.refresh(session.id)
        assert new_expiry == clock() + timedelta(days=30)

        clock.advance(days=31)
        assert sessions.validate(session.id) is None

"""
tests/conftest.py -- Shared test fixtures for the auth core.

This module provides:
  - FrozenClock / clock: an injectable clock tests can advance explicitly
  - db: an in-memory AuthDatabase (StaticPool, shared across threads)
  - registry, credentials, sessions, coordinator: managers wired to db + clock
  - settings / auth_service: the full AuthService graph built from Settings
  - http_response: factory for real requests.Response objects, used with
    patch.object(requests.Session, "request", ...) to fake provider traffic

bcrypt runs at cost 4 in tests. The cost is a parameter of CredentialStore;
the production default (12) is covered by test_config.py.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import json as jsonlib
import os
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
import requests

from auth.credentials import CredentialStore
from auth.identity import IdentityRegistry
from auth.login import AuthService
from auth.oauth import OAuthCoordinator
from auth.sessions import SessionManager
from auth.store import AuthDatabase
from core.config import Settings
from core.encryption import FernetCipher

TEST_BCRYPT_ROUNDS = 4
START = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when advance() is called."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def db() -> Generator[AuthDatabase, None, None]:
    database = AuthDatabase("sqlite:///:memory:")
    yield database
    database.close()


@pytest.fixture
def registry(db: AuthDatabase, clock: FrozenClock) -> IdentityRegistry:
    return IdentityRegistry(db, clock)


@pytest.fixture
def credentials(db: AuthDatabase, clock: FrozenClock) -> Generator[CredentialStore, None, None]:
    store = CredentialStore(db, rounds=TEST_BCRYPT_ROUNDS, clock=clock)
    yield store
    store.close()


@pytest.fixture
def sessions(db: AuthDatabase, clock: FrozenClock) -> Generator[SessionManager, None, None]:
    manager = SessionManager(db, clock=clock, autostart=False)
    yield manager
    manager.destroy()


@pytest.fixture
def cipher() -> FernetCipher:
    return FernetCipher("test-encryption-key-not-for-production")


@pytest.fixture
def coordinator(
    db: AuthDatabase, registry: IdentityRegistry, cipher: FernetCipher, clock: FrozenClock
) -> OAuthCoordinator:
    return OAuthCoordinator(db, registry=registry, cipher=cipher, clock=clock, http_timeout=5.0)


@pytest.fixture
def http_response():
    """Return a factory building real requests.Response objects.

    Usage:
        resp = http_response(200, {"access_token": "gho_x"})
        resp = http_response(401, text="Bad credentials")
    """

    def _make(status: int, body=None, text: str | None = None, url: str = "https://example.test/") -> requests.Response:
        resp = requests.Response()
        resp.status_code = status
        resp.url = url
        resp.reason = "OK" if status < 400 else "Error"
        if body is not None:
            resp._content = jsonlib.dumps(body).encode("utf-8")
            resp.headers["Content-Type"] = "application/json"
        else:
            resp._content = (text or "").encode("utf-8")
            resp.headers["Content-Type"] = "text/plain"
        resp.encoding = "utf-8"
        return resp

    return _make


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        database_url="sqlite:///:memory:",
        terminal_key="terminal-secret",
        api_key_bcrypt_rounds=TEST_BCRYPT_ROUNDS,
        encryption_key="test-encryption-key-not-for-production",
    )


@pytest.fixture
def auth_service(settings: Settings, clock: FrozenClock) -> Generator[AuthService, None, None]:
    """A fully wired AuthService on an in-memory database, cleanup thread off."""
    service = AuthService.from_settings(settings, autostart_cleanup=False, clock=clock)
    yield service
    service.close()

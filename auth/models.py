"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores own persistence,
managers own behaviour; these types only carry shape between them.

All timestamps are timezone-aware UTC datetimes. The store persists them as
integer epoch milliseconds (see auth/store.py).

Layer rule: no imports from core/ or the HTTP layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SessionProvider(str, Enum):
    """Closed set of login methods a browser session can originate from."""

    API_KEY = "api_key"
    OAUTH_GITHUB = "oauth_github"
    OAUTH_GOOGLE = "oauth_google"


@dataclass
class User:
    """A local identity.

    auth_methods records every method this user has logged in with
    ("api_key", "oauth_github", "ssh_key", "legacy_key", ...). The first user
    ever created is admin; see IdentityRegistry for the bootstrap rule.

    last_login_at is only populated by IdentityRegistry.get_all_users(), which
    derives it from session history.
    """

    id: str
    username: str
    email: str | None = None
    is_admin: bool = False
    auth_methods: set[str] = field(default_factory=set)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login_at: datetime | None = None


@dataclass
class ApiKey:
    """API key metadata. Deliberately has no hash field -- the hash never
    leaves auth/credentials.py."""

    id: str
    user_id: str
    label: str
    created_at: datetime
    last_used_at: datetime | None = None
    disabled: bool = False


@dataclass
class GeneratedApiKey:
    """Returned exactly once by CredentialStore.generate(). `key` is the only
    copy of the plaintext secret that will ever exist."""

    id: str
    key: str
    label: str

    def __repr__(self) -> str:
        return f"GeneratedApiKey(id={self.id!r}, label={self.label!r}, key=<redacted>)"


@dataclass
class Session:
    id: str
    user_id: str
    provider: SessionProvider
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime


@dataclass
class SessionValidation:
    """Result of SessionManager.validate(). The caller decides whether to
    refresh when needs_refresh is set."""

    session: Session
    user: User | None
    needs_refresh: bool


@dataclass
class SSHKey:
    id: str
    user_id: str
    public_key: str
    fingerprint: str
    name: str | None = None
    created_at: datetime | None = None


@dataclass
class OAuthProviderConfig:
    """Persisted provider configuration.

    client_secret is the decrypted value when returned by
    OAuthCoordinator.get_provider(); it is server-side only and must never be
    serialized to a client. secret_encrypted records how it was stored.
    """

    provider: str
    client_id: str
    client_secret: str | None
    redirect_uri: str
    enabled: bool = True
    secret_encrypted: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class StateToken:
    """Single-use CSRF token binding an authorization request to its callback."""

    state: str
    provider: str
    created_at: datetime
    expires_at: datetime
    redirect_uri: str | None = None


@dataclass
class AuthorizationRequest:
    url: str
    state: str


@dataclass
class OAuthIdentity:
    """Provider profile normalized into a common shape.

    user_id is "<provider>_<provider profile id>" so repeated logins by the
    same external identity always produce the same value. user is the local
    User after reconciliation (None until then).
    """

    user_id: str
    email: str | None
    name: str
    provider: str  # "oauth_github" / "oauth_google"
    raw_profile: dict[str, Any] = field(default_factory=dict)
    user: User | None = None


@dataclass
class LoginResult:
    user: User
    session: Session
    identity: OAuthIdentity | None = None

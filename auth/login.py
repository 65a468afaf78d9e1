"""
auth/login.py -- Login entry strategies and the composition root.

AuthService wires the managers together and exposes the ways a caller can
log in:

  login_with_api_key(key)            -> LoginResult (session, provider api_key)
  login_with_oauth(code, state, p)   -> LoginResult (session, provider oauth_<p>)
  login_with_legacy_key(key)         -> JWT string (shared TERMINAL_KEY)
  login_with_ssh_key(public_key)     -> JWT string

Sessions are only created by the first two. The legacy and SSH paths issue
JWTs via JWTSigner and never touch auth_sessions.

Failures:
  Bad credentials raise InvalidCredential. OAuth flow failures propagate as
  the specific error raised by OAuthCoordinator. Every failure is logged at
  WARNING without the offending secret.

Layer rule: no imports from the HTTP layer. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from auth.credentials import CredentialStore
from auth.errors import InvalidCredential
from auth.identity import IdentityRegistry
from auth.models import LoginResult, SessionProvider, User
from auth.oauth import OAuthCoordinator
from auth.sessions import SessionManager
from auth.state_tokens import InMemoryStateTokenStore, SqlStateTokenStore
from auth.store import AuthDatabase, utcnow
from auth.tokens import JWTSigner, check_legacy_key
from core.config import Settings, get_settings
from core.encryption import build_cipher

logger = logging.getLogger("dispatch.auth.login")

LEGACY_USERNAME = "admin"


class AuthService:
    """Facade over the auth managers.

    Usage:
        auth = AuthService.from_settings()
        result = auth.login_with_api_key(raw_key)
        set_session_cookie(response, result.session.id, settings.secure_cookies)
        ...
        auth.close()
    """

    def __init__(
        self,
        db: AuthDatabase,
        credentials: CredentialStore,
        sessions: SessionManager,
        identities: IdentityRegistry,
        oauth: OAuthCoordinator,
        signer: JWTSigner,
        terminal_key: str = "",
        secure_cookies: bool = False,
    ) -> None:
        self.db = db
        self.credentials = credentials
        self.sessions = sessions
        self.identities = identities
        self.oauth = oauth
        self.signer = signer
        self._terminal_key = terminal_key
        self.secure_cookies = secure_cookies

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        shared_state: bool = False,
        autostart_cleanup: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> AuthService:
        """Build the whole graph from Settings.

        shared_state=True keeps OAuth state tokens in the database, for
        deployments running more than one instance against the same store.
        """
        settings = settings or get_settings()
        db = AuthDatabase(settings.database_url)
        identities = IdentityRegistry(db, clock)
        oauth = OAuthCoordinator(
            db,
            registry=identities,
            state_store=SqlStateTokenStore(db) if shared_state else InMemoryStateTokenStore(),
            cipher=build_cipher(settings),
            allow_plaintext_secrets=settings.debug,
            base_url=settings.base_url,
            http_timeout=settings.oauth_http_timeout,
            clock=clock,
        )
        return cls(
            db=db,
            credentials=CredentialStore(db, rounds=settings.api_key_bcrypt_rounds, clock=clock),
            sessions=SessionManager(
                db,
                clock=clock,
                cleanup_interval=settings.session_cleanup_interval_seconds,
                autostart=autostart_cleanup,
            ),
            identities=identities,
            oauth=oauth,
            signer=JWTSigner.from_settings(settings),
            terminal_key=settings.terminal_key,
            secure_cookies=settings.secure_cookies,
        )

    # ------------------------------------------------------------------
    # Session-issuing logins
    # ------------------------------------------------------------------

    def login_with_api_key(self, key: str) -> LoginResult:
        """Verify an API key and open a session for its owner."""
        api_key = self.credentials.verify(key)
        if api_key is None:
            logger.warning("API key login failed: no matching key")
            raise InvalidCredential("Invalid API key")
        user = self.identities.ensure_user(api_key.user_id, SessionProvider.API_KEY.value)
        session = self.sessions.create(user.id, SessionProvider.API_KEY)
        logger.info("User %s logged in with API key %s", user.id, api_key.id)
        return LoginResult(user=user, session=session)

    def login_with_oauth(self, code: str, state: str, provider: str) -> LoginResult:
        """Complete an OAuth callback and open a session for the reconciled user."""
        identity = self.oauth.handle_callback(code, state, provider)
        session = self.sessions.create(identity.user.id, identity.provider)
        logger.info("User %s logged in with %s", identity.user.id, identity.provider)
        return LoginResult(user=identity.user, session=session, identity=identity)

    # ------------------------------------------------------------------
    # Token-issuing logins
    # ------------------------------------------------------------------

    def login_with_legacy_key(self, key: str) -> str:
        """Check the shared TERMINAL_KEY and return a JWT for the admin user."""
        if not check_legacy_key(key, self._terminal_key):
            logger.warning("Legacy key login failed")
            raise InvalidCredential("Invalid terminal key")
        user = self.identities.ensure_named_user(LEGACY_USERNAME, "legacy_key")
        logger.info("User %s logged in with the legacy terminal key", user.id)
        return self._issue_token(user, "legacy_key")

    def login_with_ssh_key(self, public_key: str) -> str:
        user = self.identities.authenticate_ssh_key(public_key)
        if user is None:
            logger.warning("SSH key login failed: key not registered")
            raise InvalidCredential("Unknown SSH key")
        logger.info("User %s logged in with an SSH key", user.id)
        return self._issue_token(user, "ssh_key")

    def _issue_token(self, user: User, method: str) -> str:
        return self.signer.sign({"sub": user.id, "username": user.username, "method": method})

    def authenticate_token(self, token: str) -> User:
        """Resolve a legacy JWT to its user. Raises InvalidToken or InvalidCredential."""
        claims = self.signer.verify(token)
        user = self.identities.get_user(claims.get("sub", ""))
        if user is None:
            raise InvalidCredential("Token subject no longer exists")
        return user

    # ------------------------------------------------------------------
    # Logout and shutdown
    # ------------------------------------------------------------------

    def logout(self, session_id: str) -> bool:
        return self.sessions.invalidate(session_id)

    def close(self) -> None:
        """Stop background work and release the engine."""
        self.sessions.destroy()
        self.credentials.close()
        self.db.close()

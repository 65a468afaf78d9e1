"""
auth/oauth.py -- OAuth2 authorization-code flow and provider configuration.

Flow (each failure raises its own error, see auth/errors.py):
  initiate()         INITIATED          state token stored, authorize URL built
  handle_callback()  CALLBACK_RECEIVED  state token consumed (single use)
                     TOKEN_EXCHANGED    code -> access_token (authlib)
                     PROFILE_FETCHED    provider user endpoint (requests)
                     RECONCILED         local User found or created
  The caller (AuthService) then creates the session -- SESSION_READY.

Supported providers:
  github -- token auth scheme, GitHub API version headers. A 401/403 from the
            user endpoint yields an offline placeholder profile instead of an
            error (logged as a warning). When the profile has no public email,
            the primary verified address from /user/emails is used if the
            token can read it.
  google -- Bearer scheme, userinfo v2 endpoint.

Security notes:
  [C1] State tokens are 256-bit random, expire after 10 minutes and are
       deleted the moment a callback presents them. A replayed callback finds
       nothing and fails with StateTokenInvalid.

  [C2] Only the first 10 characters of a state token are ever logged.
       Access tokens and client secrets are never logged.

  [S1] Client secrets are encrypted at rest with the injected SecretCipher.
       Without one they are stored in plaintext only when explicitly allowed
       (debug mode); otherwise enable_provider() raises
       SecretEncryptionError.

  Every outbound call carries an explicit timeout. Timeouts and transport
  errors fail closed; nothing is retried.

Layer rule: no imports from the HTTP layer. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from urllib.parse import urljoin, urlparse

import requests
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.requests_client import OAuth2Session

from auth.errors import (
    OAuthMissingClientId,
    OAuthProviderDisabled,
    ProfileFetchFailed,
    SecretEncryptionError,
    StateTokenExpired,
    StateTokenInvalid,
    StateTokenProviderMismatch,
    TokenExchangeFailed,
    ValidationError,
)
from auth.identity import IdentityRegistry
from auth.models import AuthorizationRequest, OAuthIdentity, OAuthProviderConfig, SessionProvider, StateToken
from auth.state_tokens import InMemoryStateTokenStore, StateTokenStore
from auth.store import AuthDatabase, from_millis, oauth_config, to_millis, utcnow
from core.encryption import DecryptionError, SecretCipher

logger = logging.getLogger("dispatch.auth.oauth")

STATE_TTL = timedelta(minutes=10)
STATE_BYTES = 32
STATE_LOG_PREFIX = 10
USER_AGENT = "dispatch-app"
DEFAULT_HTTP_TIMEOUT = 10.0


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderInfo:
    display_name: str
    authorize_url: str
    token_url: str
    user_url: str
    scope: str
    auth_scheme: str
    extra_headers: tuple[tuple[str, str], ...] = ()
    offline_fallback_statuses: frozenset[int] = frozenset()
    emails_url: str | None = None


class OAuthProvider(str, Enum):
    GITHUB = "github"
    GOOGLE = "google"

    @property
    def info(self) -> ProviderInfo:
        return PROVIDERS[self]

    @property
    def session_provider(self) -> SessionProvider:
        return SessionProvider(f"oauth_{self.value}")

    @classmethod
    def parse(cls, value: str | OAuthProvider) -> OAuthProvider:
        """Parse a provider name. Raises ValidationError for anything unsupported."""
        try:
            return cls(value.lower() if isinstance(value, str) else value)
        except ValueError:
            allowed = ", ".join(p.value for p in cls)
            raise ValidationError(f"Unsupported OAuth provider: {value!r}. Must be one of: {allowed}") from None


PROVIDERS: dict[OAuthProvider, ProviderInfo] = {
    OAuthProvider.GITHUB: ProviderInfo(
        display_name="GitHub",
        authorize_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        user_url="https://api.github.com/user",
        scope="read:user user:email",
        auth_scheme="token",
        extra_headers=(
            ("Accept", "application/vnd.github+json"),
            ("X-GitHub-Api-Version", "2022-11-28"),
        ),
        offline_fallback_statuses=frozenset({401, 403}),
        emails_url="https://api.github.com/user/emails",
    ),
    OAuthProvider.GOOGLE: ProviderInfo(
        display_name="Google",
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",  # noqa: S106 -- URL, not a password
        user_url="https://www.googleapis.com/oauth2/v2/userinfo",
        scope="openid email profile",
        auth_scheme="Bearer",
        extra_headers=(("Accept", "application/json"),),
    ),
}


def default_redirect_uri(provider: OAuthProvider) -> str:
    return f"/api/auth/callback?provider={provider.value}"


def _state_prefix(state: str | None) -> str:
    return f"{(state or '')[:STATE_LOG_PREFIX]}..."


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class OAuthCoordinator:
    """Drives the authorization-code flow and owns the oauth_config table.

    Usage:
        coordinator = OAuthCoordinator(db, cipher=FernetCipher(key))
        coordinator.enable_provider("github", client_id, client_secret)
        request = coordinator.initiate("github")      # redirect to request.url
        identity = coordinator.handle_callback(code, state, "github")
        identity.user                                  # reconciled local User
    """

    def __init__(
        self,
        db: AuthDatabase,
        registry: IdentityRegistry | None = None,
        state_store: StateTokenStore | None = None,
        cipher: SecretCipher | None = None,
        allow_plaintext_secrets: bool = False,
        base_url: str = "http://localhost:3030",
        http_timeout: float = DEFAULT_HTTP_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._registry = registry or IdentityRegistry(db, clock)
        self._state_store = state_store if state_store is not None else InMemoryStateTokenStore()
        self._cipher = cipher
        self._allow_plaintext_secrets = allow_plaintext_secrets
        self._base_url = base_url
        self._http_timeout = http_timeout
        self._clock = clock

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------

    def initiate(self, provider: str | OAuthProvider, redirect_uri: str | None = None) -> AuthorizationRequest:
        """Start a login: store a state token and return the provider authorize URL.

        Raises:
            ValidationError:       unsupported provider.
            OAuthProviderDisabled: provider not configured or disabled.
            OAuthMissingClientId:  provider enabled without a client id.
        """
        provider = OAuthProvider.parse(provider)
        row = self._get_row(provider)
        if row is None or not row.enabled:
            raise OAuthProviderDisabled(f"{provider.info.display_name} OAuth is not enabled")
        if not row.client_id:
            raise OAuthMissingClientId(f"{provider.info.display_name} OAuth client id is not configured")

        now = self._clock()
        self._state_store.purge_expired(now)

        resolved_redirect = self._resolve_redirect_uri(provider, redirect_uri or row.redirect_uri)
        state = secrets.token_urlsafe(STATE_BYTES)
        self._state_store.put(
            StateToken(
                state=state,
                provider=provider.value,
                created_at=now,
                expires_at=now + STATE_TTL,
                redirect_uri=resolved_redirect,
            )
        )

        client = OAuth2Session(client_id=row.client_id, scope=provider.info.scope, redirect_uri=resolved_redirect)
        try:
            url, _ = client.create_authorization_url(provider.info.authorize_url, state=state)
        finally:
            client.close()

        logger.info("OAuth flow initiated for %s (state %s)", provider.value, _state_prefix(state))
        return AuthorizationRequest(url=url, state=state)

    def handle_callback(self, code: str, state: str, provider: str | OAuthProvider) -> OAuthIdentity:
        """Complete a login. Returns the normalized identity with .user reconciled.

        The state token is consumed before anything else, so a failed
        callback cannot be retried with the same state.
        """
        provider = OAuthProvider.parse(provider)

        token = self._state_store.pop(state) if state else None
        if token is None:
            logger.warning("OAuth callback with unknown or reused state %s", _state_prefix(state))
            raise StateTokenInvalid("Invalid or already used OAuth state")
        if token.provider != provider.value:
            logger.warning(
                "OAuth state %s was issued for %s, presented to %s",
                _state_prefix(state),
                token.provider,
                provider.value,
            )
            raise StateTokenProviderMismatch("OAuth state was issued for a different provider")
        if token.expires_at < self._clock():
            logger.warning("OAuth state %s expired at %s", _state_prefix(state), token.expires_at.isoformat())
            raise StateTokenExpired("OAuth state has expired")
        logger.info("OAuth callback received for %s (state %s)", provider.value, _state_prefix(state))

        config = self.get_provider(provider)
        if config is None or not config.enabled:
            raise OAuthProviderDisabled(f"{provider.info.display_name} OAuth is not enabled")
        if not code:
            raise TokenExchangeFailed("Authorization code is missing")

        redirect_uri = token.redirect_uri or self._resolve_redirect_uri(provider, config.redirect_uri)
        access_token = self._exchange_code(provider, config, code, redirect_uri)
        logger.info("OAuth token exchanged for %s", provider.value)

        profile = self._fetch_profile(provider, access_token)
        identity = self._normalize(provider, profile)
        logger.info("OAuth profile fetched for %s (%s)", provider.value, identity.user_id)

        identity.user = self._registry.find_or_create_oauth_user(identity)
        logger.info("OAuth identity %s reconciled to user %s", identity.user_id, identity.user.id)
        return identity

    def _exchange_code(
        self,
        provider: OAuthProvider,
        config: OAuthProviderConfig,
        code: str,
        redirect_uri: str,
    ) -> str:
        client = OAuth2Session(
            client_id=config.client_id,
            client_secret=config.client_secret,
            scope=provider.info.scope,
            redirect_uri=redirect_uri,
            token_endpoint_auth_method="client_secret_post",
        )
        try:
            token = client.fetch_token(provider.info.token_url, code=code, timeout=self._http_timeout)
        except (AuthlibBaseError, requests.RequestException, ValueError) as exc:
            logger.error("%s token exchange failed: %s", provider.info.display_name, exc)
            raise TokenExchangeFailed(f"{provider.info.display_name} token exchange failed") from exc
        finally:
            client.close()

        access_token = token.get("access_token") if token else None
        if not access_token:
            logger.error("%s token response did not include an access_token", provider.info.display_name)
            raise TokenExchangeFailed(f"{provider.info.display_name} did not return an access token")
        return access_token

    def _fetch_profile(self, provider: OAuthProvider, access_token: str) -> dict[str, Any]:
        info = provider.info
        headers = {"Authorization": f"{info.auth_scheme} {access_token}", "User-Agent": USER_AGENT}
        headers.update(dict(info.extra_headers))

        try:
            resp = requests.get(info.user_url, headers=headers, timeout=self._http_timeout)
        except requests.RequestException as exc:
            logger.error("%s profile request failed: %s", info.display_name, exc)
            raise ProfileFetchFailed(f"{info.display_name} profile request failed", provider.value) from exc

        if not resp.ok:
            if resp.status_code in info.offline_fallback_statuses:
                logger.warning(
                    "%s user endpoint returned %d; continuing with an offline profile",
                    info.display_name,
                    resp.status_code,
                )
                return self._fallback_profile(provider)
            logger.error("%s user endpoint returned %d", info.display_name, resp.status_code)
            raise ProfileFetchFailed(
                f"{info.display_name} user endpoint returned {resp.status_code}",
                provider.value,
                status=resp.status_code,
                body=resp.text[:500],
            )

        try:
            profile = resp.json()
        except ValueError as exc:
            raise ProfileFetchFailed(
                f"{info.display_name} returned a malformed profile", provider.value, status=resp.status_code
            ) from exc
        if not isinstance(profile, dict) or profile.get("id") in (None, ""):
            raise ProfileFetchFailed(
                f"{info.display_name} profile has no id", provider.value, status=resp.status_code
            )

        if not profile.get("email") and info.emails_url:
            profile["email"] = self._primary_verified_email(info, headers)
        return profile

    def _primary_verified_email(self, info: ProviderInfo, headers: dict[str, str]) -> str | None:
        """Best effort: the primary verified address, or None if it cannot be read."""
        try:
            resp = requests.get(info.emails_url, headers=headers, timeout=self._http_timeout)
            resp.raise_for_status()
            entries = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.debug("%s email lookup unavailable: %s", info.display_name, exc)
            return None
        for entry in entries if isinstance(entries, list) else []:
            if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
                return entry.get("email")
        return None

    @staticmethod
    def _fallback_profile(provider: OAuthProvider) -> dict[str, Any]:
        return {"id": f"offline_{provider.value}", "email": None, "name": provider.info.display_name}

    @staticmethod
    def _normalize(provider: OAuthProvider, profile: dict[str, Any]) -> OAuthIdentity:
        profile_id = str(profile["id"])
        name = (
            profile.get("name")
            or profile.get("login")
            or profile.get("username")
            or profile.get("display_name")
            or profile_id
        )
        return OAuthIdentity(
            user_id=f"{provider.value}_{profile_id}",
            email=profile.get("email") or None,
            name=name,
            provider=provider.session_provider.value,
            raw_profile=profile,
        )

    def _resolve_redirect_uri(self, provider: OAuthProvider, redirect_uri: str | None) -> str:
        uri = redirect_uri or default_redirect_uri(provider)
        if urlparse(uri).scheme:
            return uri
        return urljoin(self._base_url.rstrip("/") + "/", uri.lstrip("/"))

    # ------------------------------------------------------------------
    # Provider configuration
    # ------------------------------------------------------------------

    def enable_provider(
        self,
        provider: str | OAuthProvider,
        client_id: str,
        client_secret: str,
        redirect_uri: str | None = None,
    ) -> OAuthProviderConfig:
        """Create or update a provider's configuration and mark it enabled.

        Raises SecretEncryptionError when no cipher is available and
        plaintext storage is not allowed.
        """
        provider = OAuthProvider.parse(provider)
        stored_secret, encrypted = self._protect_secret(provider, client_secret)
        redirect_uri = redirect_uri or default_redirect_uri(provider)
        now = self._clock()
        now_ms = to_millis(now)
        values = {
            "client_id": (client_id or "").strip(),
            "client_secret": stored_secret,
            "secret_encrypted": 1 if encrypted else 0,
            "redirect_uri": redirect_uri,
            "enabled": 1,
            "updated_at": now_ms,
        }

        with self._db.engine.begin() as conn:
            existing = conn.execute(
                oauth_config.select().where(oauth_config.c.provider == provider.value)
            ).fetchone()
            if existing is None:
                conn.execute(oauth_config.insert().values(provider=provider.value, created_at=now_ms, **values))
                created_at = now
            else:
                conn.execute(oauth_config.update().where(oauth_config.c.provider == provider.value).values(**values))
                created_at = from_millis(existing.created_at)

        logger.info("Enabled %s OAuth (secret encrypted: %s)", provider.value, encrypted)
        return OAuthProviderConfig(
            provider=provider.value,
            client_id=values["client_id"],
            client_secret=client_secret,
            redirect_uri=redirect_uri,
            enabled=True,
            secret_encrypted=encrypted,
            created_at=created_at,
            updated_at=now,
        )

    def _protect_secret(self, provider: OAuthProvider, client_secret: str) -> tuple[str, bool]:
        if not client_secret:
            return "", False
        if self._cipher is not None:
            return self._cipher.encrypt(client_secret), True
        if self._allow_plaintext_secrets:
            logger.warning(
                "Storing %s OAuth client secret in PLAINTEXT: no ENCRYPTION_KEY configured (development only)",
                provider.value,
            )
            return client_secret, False
        raise SecretEncryptionError(
            "Refusing to store an OAuth client secret without encryption. Set ENCRYPTION_KEY."
        )

    def disable_provider(self, provider: str | OAuthProvider) -> bool:
        """Stop new logins through provider. Existing sessions are unaffected."""
        provider = OAuthProvider.parse(provider)
        with self._db.engine.connect() as conn:
            result = conn.execute(
                oauth_config.update()
                .where(oauth_config.c.provider == provider.value)
                .values(enabled=0, updated_at=to_millis(self._clock()))
            )
            conn.commit()
        if result.rowcount > 0:
            logger.info("Disabled %s OAuth", provider.value)
            return True
        logger.warning("Cannot disable %s OAuth: provider is not configured", provider.value)
        return False

    def get_provider(self, provider: str | OAuthProvider) -> OAuthProviderConfig | None:
        """Return the configuration with the client secret decrypted. Server-side only."""
        provider = OAuthProvider.parse(provider)
        row = self._get_row(provider)
        if row is None:
            return None
        return _row_to_config(row, self._reveal_secret(provider, row))

    def list_providers(self) -> list[dict[str, Any]]:
        """Public metadata for every supported provider. Never includes secrets."""
        listing = []
        for provider in OAuthProvider:
            row = self._get_row(provider)
            listing.append(
                {
                    "provider": provider.value,
                    "display_name": provider.info.display_name,
                    "configured": row is not None,
                    "enabled": bool(row is not None and row.enabled),
                    "has_client_secret": bool(row is not None and row.client_secret),
                    "redirect_uri": self._resolve_redirect_uri(provider, row.redirect_uri if row else None),
                }
            )
        return listing

    def _get_row(self, provider: OAuthProvider):
        with self._db.engine.connect() as conn:
            return conn.execute(oauth_config.select().where(oauth_config.c.provider == provider.value)).fetchone()

    def _reveal_secret(self, provider: OAuthProvider, row) -> str | None:
        if not row.client_secret:
            return None
        if not row.secret_encrypted:
            return row.client_secret
        if self._cipher is None:
            raise SecretEncryptionError(f"{provider.value} client secret is encrypted but no ENCRYPTION_KEY is set")
        try:
            return self._cipher.decrypt(row.client_secret)
        except DecryptionError as exc:
            logger.error("Failed to decrypt %s OAuth client secret: %s", provider.value, exc)
            raise SecretEncryptionError(f"{provider.value} client secret could not be decrypted") from exc


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_config(row, client_secret: str | None) -> OAuthProviderConfig:
    return OAuthProviderConfig(
        provider=row.provider,
        client_id=row.client_id,
        client_secret=client_secret,
        redirect_uri=row.redirect_uri,
        enabled=bool(row.enabled),
        secret_encrypted=bool(row.secret_encrypted),
        created_at=from_millis(row.created_at),
        updated_at=from_millis(row.updated_at),
    )

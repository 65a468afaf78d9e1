"""
auth/errors.py -- Typed error kinds raised by the auth core.

Propagation policy:
  Credential verification (CredentialStore.verify, SessionManager.validate)
  never raises -- "not authenticated" is a normal outcome and returns None.

  Flow and configuration errors (bad provider config, replayed state token,
  malformed JWT) raise one of the classes below. Each carries a stable
  machine-readable `code` and the HTTP status the boundary should map it to;
  auth/dependencies.py does that mapping. Nothing here is retried.

  Database errors are not wrapped. Losing the store is fatal and bubbles up.
"""

from __future__ import annotations


class AuthError(Exception):
    code = "auth_error"
    status_code = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(AuthError):
    """Bad input: label length, unknown provider or session provider value."""

    code = "validation_error"
    status_code = 400


class InvalidCredential(AuthError):
    code = "invalid_credential"
    status_code = 401


class SessionNotFound(AuthError):
    code = "session_not_found"
    status_code = 401


class SessionExpired(AuthError):
    code = "session_expired"
    status_code = 401


class InvalidToken(AuthError):
    """JWT failed signature or expiry verification."""

    code = "invalid_token"
    status_code = 401


# ---------------------------------------------------------------------------
# OAuth flow
# ---------------------------------------------------------------------------


class StateTokenError(AuthError):
    status_code = 400


class StateTokenInvalid(StateTokenError):
    """Unknown or already-consumed state token (replay or forged callback)."""

    code = "state_token_invalid"


class StateTokenExpired(StateTokenError):
    code = "state_token_expired"


class StateTokenProviderMismatch(StateTokenError):
    code = "state_token_provider_mismatch"


class OAuthProviderDisabled(AuthError):
    code = "oauth_provider_disabled"
    status_code = 403


class OAuthMissingClientId(AuthError):
    code = "oauth_missing_client_id"
    status_code = 400


class TokenExchangeFailed(AuthError):
    code = "token_exchange_failed"
    status_code = 401


class ProfileFetchFailed(AuthError):
    """Provider user endpoint failed.

    status is the HTTP status from the provider, or None when the request
    never produced a response (timeout, connection error, bad JSON).
    """

    code = "profile_fetch_failed"
    status_code = 401

    def __init__(self, message: str, provider: str, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.provider = provider
        self.status = status
        self.body = body


class SecretEncryptionError(AuthError):
    """A client secret cannot be stored or read with the configured cipher."""

    code = "secret_encryption_error"
    status_code = 500

"""
auth/tokens.py -- JWT signing for the legacy auth path, and the legacy key check.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY. verify()
       raises InvalidToken on a bad signature, a malformed token or an expired
       one; the HTTP boundary maps that to 401.

  refresh(): verifies first, then strips the timing claims (exp, iat, nbf) and
       re-signs the remaining payload with a fresh expiry. An expired token
       cannot be refreshed.

  Legacy key: the single shared TERMINAL_KEY is compared with
       hmac.compare_digest so response time does not leak a matching prefix.

These tokens are independent of browser session cookies; only the legacy and
SSH-key logins issue them.

Layer rule: no imports from the HTTP layer. Import from core/ is allowed.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import InvalidToken
from core.config import Settings

logger = logging.getLogger("dispatch.auth.tokens")

_ALGORITHM = "HS256"
_TIMING_CLAIMS = ("exp", "iat", "nbf")
DEFAULT_EXPIRES_IN = timedelta(days=7)


class JWTSigner:
    """Stateless sign / verify / refresh.

    Usage:
        signer = JWTSigner(settings.secret_key)
        token = signer.sign({"sub": user.id, "method": "legacy_key"})
        claims = signer.verify(token)
    """

    def __init__(self, secret_key: str, expires_in: timedelta = DEFAULT_EXPIRES_IN) -> None:
        if not secret_key:
            raise ValueError("JWTSigner requires a secret key")
        self._secret_key = secret_key
        self._expires_in = expires_in

    @classmethod
    def from_settings(cls, settings: Settings) -> JWTSigner:
        return cls(settings.secret_key, timedelta(seconds=settings.jwt_expire_seconds))

    def sign(self, payload: dict[str, Any], expires_in: timedelta | int | None = None) -> str:
        """Encode payload with iat/exp claims.

        Args:
            payload:    Claims to sign. Not mutated.
            expires_in: timedelta or seconds. Defaults to the signer's lifetime.
        """
        if expires_in is None:
            lifetime = self._expires_in
        elif isinstance(expires_in, timedelta):
            lifetime = expires_in
        else:
            lifetime = timedelta(seconds=expires_in)
        now = datetime.now(timezone.utc)
        claims = dict(payload)
        claims["iat"] = now
        claims["exp"] = now + lifetime
        return jwt.encode(claims, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> dict[str, Any]:
        """Return the decoded claims. Raises InvalidToken on any failure."""
        if not token or not isinstance(token, str):
            raise InvalidToken("Token is empty")
        try:
            return jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise InvalidToken("Token has expired") from exc
        except JWTError as exc:
            logger.warning("Invalid token: %s", exc)
            raise InvalidToken("Token signature or format is invalid") from exc

    def refresh(self, token: str, expires_in: timedelta | int | None = None) -> str:
        claims = self.verify(token)
        for claim in _TIMING_CLAIMS:
            claims.pop(claim, None)
        return self.sign(claims, expires_in=expires_in)


def check_legacy_key(candidate: str, terminal_key: str) -> bool:
    """Constant-time comparison against the configured TERMINAL_KEY.

    An unset TERMINAL_KEY disables the legacy login entirely -- an empty
    candidate must never match an empty configuration.
    """
    if not terminal_key or not candidate or not isinstance(candidate, str):
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), terminal_key.encode("utf-8"))

"""
core/config.py -- Settings for the auth core, loaded once from the environment.

Every environment read goes through Settings. Modules take a Settings instance
(or call get_settings()) instead of touching os.environ themselves.

How it is built:
  pydantic-settings BaseSettings maps each field to the upper-cased env var
  of the same name (encryption_key -> ENCRYPTION_KEY), falls back to .env,
  and coerces types ("true" -> True, "2.5" -> 2.5).

  get_settings() is wrapped in lru_cache, so the environment is parsed the
  first time it is called and the same object is handed out afterwards.

  A model_validator(mode="after") applies the signing-key rules once every
  field is known.

Security notes:
  [M6] SECRET_KEY signs legacy JWTs. Anything under 32 characters is refused
       in every mode.

  [M7] Outside DEBUG, an unset SECRET_KEY stops the process at startup
       rather than silently running with a throwaway key.

  [S1] OAuth client secrets are only stored in plaintext when DEBUG=true and
       ENCRYPTION_KEY is unset. Production refuses to persist them unencrypted.

Layer rule: core/ is the kernel. This module may not import from auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("dispatch.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'dispatch_auth.db'}"


class Settings(BaseSettings):
    """Environment-backed configuration for the auth core.

    Every field has a default, so tests can build Settings(...) directly with
    keyword overrides and no .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    log_level: str = "INFO"

    # Public origin used to absolutize relative OAuth redirect URIs.
    base_url: str = "http://localhost:3030"

    # ------------------------------------------------------------------
    # Sessions and cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_cleanup_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    # bcrypt cost 12 is ~100-150ms per compare on current hardware.
    api_key_bcrypt_rounds: int = 12
    # Legacy shared secret (TERMINAL_KEY). Empty disables the legacy login.
    terminal_key: str = ""
    jwt_expire_seconds: int = 7 * 24 * 3600

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    # Empty means no cipher: secrets are refused in production, stored in
    # plaintext with a warning in debug mode [S1].
    encryption_key: str = ""
    oauth_http_timeout: float = 10.0

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Apply the signing-key rules [M6][M7] and bound the bcrypt cost.

        DEBUG with no key: a random 64-char key is generated and a warning
        logged. Legacy JWTs then die with the process.
        Otherwise a missing key is a startup error.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Legacy tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required when DEBUG is off. "
                    "Export it or add it to .env (DEBUG=true generates a throwaway key)."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if not 4 <= self.api_key_bcrypt_rounds <= 31:
            raise ValueError("API_KEY_BCRYPT_ROUNDS must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, parsing the environment on first use.

    Tests that change env vars must call get_settings.cache_clear().
    """
    return Settings()

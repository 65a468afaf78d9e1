"""
auth/credentials.py -- API key generation, hashing, and verification.

Security design decisions:
  Generation: secrets.token_bytes(32) gives 256 bits of entropy, encoded as
       base64url without padding (43 chars). The plaintext is returned ONCE by
       generate() and never persisted or logged.

  Hashing: bcrypt with a configurable cost (default 12, ~100-150ms per hash).
       A fast hash (SHA-256, HMAC) is never used for stored keys.

  Verification: verify() scans every non-disabled key and bcrypt-compares the
       candidate against each one. There is no index keyed on a fast hash of
       the plaintext -- such a lookup would reveal which stored key matched
       through timing and index access patterns. The cost is O(n) bcrypt
       compares per call, acceptable because active key counts are small.
       verify() is CPU-bound: call it from a worker thread (FastAPI runs sync
       dependencies in its threadpool), never directly on the event loop.

  last_used_at: updated fire-and-forget on a single background worker.
       Failures are logged and never surface to the caller -- it is telemetry,
       not part of the verification result.

  Ownership: every mutating call filters on (key_id, user_id). A user cannot
       touch another user's key even if they know its id [IDOR].

Layer rule: no imports from core/ or the HTTP layer.
"""

from __future__ import annotations

import base64
import logging
import secrets
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime

import bcrypt

from auth.errors import ValidationError
from auth.models import ApiKey, GeneratedApiKey
from auth.store import AuthDatabase, auth_api_keys, from_millis, to_millis, utcnow

logger = logging.getLogger("dispatch.auth.credentials")

KEY_BYTES = 32
DEFAULT_BCRYPT_ROUNDS = 12
MAX_LABEL_LENGTH = 100


def _encode_key(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _check_key(candidate: str, key_hash: str) -> bool:
    """bcrypt compare. Raises ValueError on a malformed stored hash."""
    return bcrypt.checkpw(candidate.encode("utf-8"), key_hash.encode("utf-8"))


class CredentialStore:
    """Repository + service for API keys.

    Usage:
        store = CredentialStore(db)
        created = store.generate("u1", "laptop")   # created.key shown once
        store.verify(created.key)                  # -> ApiKey(user_id="u1", ...)
        store.close()
    """

    def __init__(
        self,
        db: AuthDatabase,
        rounds: int = DEFAULT_BCRYPT_ROUNDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._rounds = rounds
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="api-key-touch")

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(self, user_id: str, label: str) -> GeneratedApiKey:
        """Create a key for user_id and return the plaintext exactly once.

        Raises ValidationError if the label is empty or longer than 100 chars
        after trimming.
        """
        if not isinstance(label, str) or not label.strip():
            raise ValidationError("API key label is required")
        label = label.strip()
        if len(label) > MAX_LABEL_LENGTH:
            raise ValidationError(f"API key label must be {MAX_LABEL_LENGTH} characters or less")

        plain_key = _encode_key(secrets.token_bytes(KEY_BYTES))
        key_hash = bcrypt.hashpw(plain_key.encode("utf-8"), bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")
        key_id = str(uuid.uuid4())

        with self._db.engine.connect() as conn:
            conn.execute(
                auth_api_keys.insert().values(
                    id=key_id,
                    user_id=user_id,
                    key_hash=key_hash,
                    label=label,
                    created_at=to_millis(self._clock()),
                    last_used_at=None,
                    disabled=0,
                )
            )
            conn.commit()

        logger.info("Generated API key %s for user %s (label: %s)", key_id, user_id, label)
        return GeneratedApiKey(id=key_id, key=plain_key, label=label)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, key: str) -> ApiKey | None:
        """Return the matching key's metadata, or None. Never raises for bad input.

        See the module docstring for why this is a linear bcrypt scan.
        """
        if not key or not isinstance(key, str):
            return None

        with self._db.engine.connect() as conn:
            rows = conn.execute(auth_api_keys.select().where(auth_api_keys.c.disabled == 0)).fetchall()

        for row in rows:
            try:
                matched = _check_key(key, row.key_hash)
            except ValueError as exc:
                logger.debug("bcrypt comparison error for key %s: %s", row.id, exc)
                continue
            if matched:
                self._schedule_touch(row.id)
                logger.debug("Valid API key: %s (label: %s)", row.id, row.label)
                return _row_to_api_key(row)

        logger.debug("Invalid API key provided (no match)")
        return None

    def _schedule_touch(self, key_id: str) -> None:
        try:
            future = self._executor.submit(self._touch_last_used, key_id, to_millis(self._clock()))
        except RuntimeError:
            # Executor already shut down; the stamp is best-effort.
            logger.warning("Skipped last_used_at update for key %s: store is closed", key_id)
            return
        future.add_done_callback(lambda f: _log_touch_failure(f, key_id))

    def _touch_last_used(self, key_id: str, timestamp: int) -> None:
        with self._db.engine.connect() as conn:
            conn.execute(auth_api_keys.update().where(auth_api_keys.c.id == key_id).values(last_used_at=timestamp))
            conn.commit()

    # ------------------------------------------------------------------
    # Management (ownership checked)
    # ------------------------------------------------------------------

    def list_keys(self, user_id: str) -> list[ApiKey]:
        """Return all keys for a user, newest first, including disabled ones."""
        with self._db.engine.connect() as conn:
            rows = conn.execute(
                auth_api_keys.select()
                .where(auth_api_keys.c.user_id == user_id)
                .order_by(auth_api_keys.c.created_at.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def disable_key(self, key_id: str, user_id: str) -> bool:
        return self._set_disabled(key_id, user_id, True)

    def enable_key(self, key_id: str, user_id: str) -> bool:
        return self._set_disabled(key_id, user_id, False)

    def _set_disabled(self, key_id: str, user_id: str, disabled: bool) -> bool:
        action = "disable" if disabled else "enable"
        with self._db.engine.connect() as conn:
            result = conn.execute(
                auth_api_keys.update()
                .where((auth_api_keys.c.id == key_id) & (auth_api_keys.c.user_id == user_id))
                .values(disabled=1 if disabled else 0)
            )
            conn.commit()
        if result.rowcount > 0:
            logger.info("%sd API key %s for user %s", action.capitalize(), key_id, user_id)
            return True
        logger.warning("Failed to %s key %s: not found or not owned by user %s", action, key_id, user_id)
        return False

    def delete_key(self, key_id: str, user_id: str) -> bool:
        """Hard delete. Returns False if the key does not exist or is not owned by user_id."""
        with self._db.engine.connect() as conn:
            result = conn.execute(
                auth_api_keys.delete().where((auth_api_keys.c.id == key_id) & (auth_api_keys.c.user_id == user_id))
            )
            conn.commit()
        if result.rowcount > 0:
            logger.info("Deleted API key %s for user %s", key_id, user_id)
            return True
        logger.warning("Failed to delete key %s: not found or not owned by user %s", key_id, user_id)
        return False

    def close(self) -> None:
        """Wait for pending last_used_at updates and stop the worker."""
        self._executor.shutdown(wait=True)


def _log_touch_failure(future: Future, key_id: str) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Failed to update last_used_at for key %s: %s", key_id, exc)


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        user_id=row.user_id,
        label=row.label,
        created_at=from_millis(row.created_at),
        last_used_at=from_millis(row.last_used_at),
        disabled=bool(row.disabled),
    )

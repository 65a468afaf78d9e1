"""
auth/identity.py -- User records, SSH keys, and first-run admin bootstrap.

Pattern: Repository + Data Mapper. IdentityRegistry owns the users and
ssh_keys tables; _row_to_user / _row_to_ssh_key are the mappers.

First-run bootstrap:
  The very first user ever created is admin, whichever login method created
  it. A read-then-write "are there users yet?" check would let two concurrent
  first logins both become admin, so the claim is an INSERT into the
  single-row admin_bootstrap table performed in the same transaction as the
  user INSERT. Exactly one transaction can succeed; the loser sees
  IntegrityError and is created as a regular user. See auth/store.py.

SSH fingerprints:
  SHA-256 of the trimmed public key, hex, truncated to 16 chars. One-way and
  short enough to display; used as the lookup key so the public key itself is
  never a query parameter. Syncing keys to authorized_keys is handled outside
  this package.

Layer rule: no imports from core/ or the HTTP layer.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from auth.models import OAuthIdentity, SSHKey, User
from auth.store import (
    AuthDatabase,
    admin_bootstrap,
    auth_api_keys,
    auth_sessions,
    from_millis,
    ssh_keys,
    to_millis,
    users,
    utcnow,
)

logger = logging.getLogger("dispatch.auth.identity")

FINGERPRINT_LENGTH = 16
FIRST_ADMIN_USERNAME = "admin"

# Only these columns may be changed through update_user().
_UPDATABLE_FIELDS = {"username", "email", "is_admin"}


def fingerprint(public_key: str) -> str:
    return hashlib.sha256(public_key.strip().encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


class IdentityRegistry:
    """Repository for User and SSHKey entities.

    Usage:
        registry = IdentityRegistry(db)
        admin = registry.create_user("alice", "alice@example.com")  # first user -> admin
        bob = registry.create_user("bob")                           # not admin
    """

    def __init__(self, db: AuthDatabase, clock: Callable[[], datetime] = utcnow) -> None:
        self._db = db
        self._clock = clock

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def is_first_user(self) -> bool:
        """True until the first user has been created.

        Informational only -- create_user() enforces the bootstrap rule
        atomically and never relies on this check.
        """
        return not self._bootstrap_claimed()

    def _bootstrap_claimed(self) -> bool:
        with self._db.engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(admin_bootstrap)).scalar()
        return (count or 0) > 0

    # ------------------------------------------------------------------
    # User CRUD
    # ------------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str | None = None,
        *,
        is_admin: bool = False,
        auth_methods: Iterable[str] = (),
        user_id: str | None = None,
    ) -> User:
        """Insert a user and return it.

        The first user ever created is admin regardless of is_admin. For every
        later user is_admin is honoured as given (admin CRUD override).

        Raises sqlalchemy.exc.IntegrityError if the username or id is taken.
        """
        now = to_millis(self._clock())
        methods = set(auth_methods)
        values = {
            "id": user_id or str(uuid.uuid4()),
            "username": username,
            "email": email,
            "auth_methods": json.dumps(sorted(methods)),
            "created_at": now,
            "updated_at": now,
        }

        if not self._bootstrap_claimed():
            try:
                with self._db.engine.begin() as conn:
                    conn.execute(admin_bootstrap.insert().values(id=1, user_id=values["id"], claimed_at=now))
                    conn.execute(users.insert().values(is_admin=1, **values))
            except IntegrityError:
                # Either another first login won the bootstrap row, or the
                # user insert itself conflicted. Only the former is retryable.
                if not self._bootstrap_claimed():
                    raise
                logger.info("Admin bootstrap already claimed; creating %s as a regular user", username)
            else:
                logger.info("Created first user %s (%s) with admin rights", username, values["id"])
                return _values_to_user(values, is_admin=True)

        with self._db.engine.connect() as conn:
            conn.execute(users.insert().values(is_admin=1 if is_admin else 0, **values))
            conn.commit()
        logger.info("Created user %s (%s, admin=%s)", username, values["id"], bool(is_admin))
        return _values_to_user(values, is_admin=bool(is_admin))

    def get_user(self, user_id: str) -> User | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up by exact email. Returns the oldest match if several exist."""
        if not email:
            return None
        with self._db.engine.connect() as conn:
            row = conn.execute(
                users.select().where(users.c.email == email).order_by(users.c.created_at).limit(1)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_all_users(self) -> list[User]:
        """Admin listing, oldest first, with last_login_at from session history."""
        last_login = (
            select(func.max(auth_sessions.c.created_at))
            .where(auth_sessions.c.user_id == users.c.id)
            .correlate(users)
            .scalar_subquery()
            .label("last_login_at")
        )
        with self._db.engine.connect() as conn:
            rows = conn.execute(select(users, last_login).order_by(users.c.created_at, users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: str, **fields) -> User | None:
        """Update username / email / is_admin. Returns the updated user, or None if not found.

        Unknown field names raise ValueError rather than being silently ignored.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_admin" in fields:
            fields["is_admin"] = 1 if fields["is_admin"] else 0
        fields["updated_at"] = to_millis(self._clock())
        with self._db.engine.connect() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
            conn.commit()
        if result.rowcount == 0:
            return None
        return self.get_user(user_id)

    def add_auth_method(self, user_id: str, method: str) -> bool:
        """Append method to the user's method set. Returns True if it was added."""
        with self._db.engine.begin() as conn:
            row = conn.execute(select(users.c.auth_methods).where(users.c.id == user_id)).fetchone()
            if row is None:
                return False
            methods = set(json.loads(row.auth_methods or "[]"))
            if method in methods:
                return False
            methods.add(method)
            conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(auth_methods=json.dumps(sorted(methods)), updated_at=to_millis(self._clock()))
            )
        logger.info("Added auth method %s to user %s", method, user_id)
        return True

    def delete_user(self, user_id: str) -> bool:
        """Delete a user together with their sessions, SSH keys and API keys.

        One transaction, so a crash cannot leave live sessions for a user that
        no longer exists. Returns False if the user was not found.
        """
        with self._db.engine.begin() as conn:
            conn.execute(ssh_keys.delete().where(ssh_keys.c.user_id == user_id))
            sessions = conn.execute(auth_sessions.delete().where(auth_sessions.c.user_id == user_id))
            conn.execute(auth_api_keys.delete().where(auth_api_keys.c.user_id == user_id))
            result = conn.execute(users.delete().where(users.c.id == user_id))
        if result.rowcount > 0:
            logger.info("Deleted user %s (%d session(s) revoked)", user_id, sessions.rowcount)
            return True
        return False

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def ensure_user(self, user_id: str, auth_method: str, username: str | None = None) -> User:
        """Return the user with this id, creating it on first login."""
        user = self.get_user(user_id)
        if user is None:
            return self.create_user(username or user_id, user_id=user_id, auth_methods=[auth_method])
        if self.add_auth_method(user.id, auth_method):
            user.auth_methods.add(auth_method)
        return user

    def ensure_named_user(self, username: str, auth_method: str) -> User:
        """Return the user with this username, creating it on first login."""
        user = self.get_by_username(username)
        if user is None:
            return self.create_user(username, auth_methods=[auth_method])
        if self.add_auth_method(user.id, auth_method):
            user.auth_methods.add(auth_method)
        return user

    def find_or_create_oauth_user(self, identity: OAuthIdentity) -> User:
        """Reconcile a normalized OAuth identity against local users.

        Lookup order: email (when the provider shared one), then the
        deterministic identity id. A new user takes the identity id as its
        primary key so later logins without an email still land on it.
        """
        user = self.get_by_email(identity.email) if identity.email else None
        if user is None:
            user = self.get_user(identity.user_id)

        if user is None:
            username = _username_candidate(identity)
            if self.get_by_username(username) is not None:
                username = identity.user_id
            user = self.create_user(
                username,
                identity.email,
                auth_methods=[identity.provider],
                user_id=identity.user_id,
            )
            logger.info("Created user %s from %s login", user.id, identity.provider)
            return user

        if self.add_auth_method(user.id, identity.provider):
            user.auth_methods.add(identity.provider)
        return user

    # ------------------------------------------------------------------
    # SSH keys
    # ------------------------------------------------------------------

    def add_ssh_key(self, user_id: str, public_key: str, name: str | None = None) -> SSHKey:
        """Register a public key. Raises IntegrityError if the fingerprint already exists."""
        key = SSHKey(
            id=str(uuid.uuid4()),
            user_id=user_id,
            public_key=public_key.strip(),
            fingerprint=fingerprint(public_key),
            name=name,
            created_at=self._clock(),
        )
        with self._db.engine.connect() as conn:
            conn.execute(
                ssh_keys.insert().values(
                    id=key.id,
                    user_id=key.user_id,
                    public_key=key.public_key,
                    fingerprint=key.fingerprint,
                    name=key.name,
                    created_at=to_millis(key.created_at),
                )
            )
            conn.commit()
        logger.info("Added SSH key %s (%s) for user %s", key.id, key.fingerprint, user_id)
        return key

    def list_ssh_keys(self, user_id: str) -> list[SSHKey]:
        with self._db.engine.connect() as conn:
            rows = conn.execute(
                ssh_keys.select().where(ssh_keys.c.user_id == user_id).order_by(ssh_keys.c.created_at.desc())
            ).fetchall()
        return [_row_to_ssh_key(r) for r in rows]

    def delete_ssh_key(self, user_id: str, key_id: str) -> bool:
        with self._db.engine.connect() as conn:
            result = conn.execute(
                ssh_keys.delete().where((ssh_keys.c.id == key_id) & (ssh_keys.c.user_id == user_id))
            )
            conn.commit()
        return result.rowcount > 0

    def find_by_ssh_key(self, public_key: str) -> tuple[User, SSHKey] | None:
        with self._db.engine.connect() as conn:
            key_row = conn.execute(
                ssh_keys.select().where(ssh_keys.c.fingerprint == fingerprint(public_key))
            ).fetchone()
            if key_row is None:
                return None
            user_row = conn.execute(users.select().where(users.c.id == key_row.user_id)).fetchone()
        if user_row is None:
            return None
        return _row_to_user(user_row), _row_to_ssh_key(key_row)

    def authenticate_ssh_key(self, public_key: str) -> User | None:
        """Resolve a public key to its user.

        On a fresh install the first key presented creates the admin user and
        is registered as "First Admin Key". Afterwards unknown keys return None.
        """
        if not public_key or not public_key.strip():
            return None
        found = self.find_by_ssh_key(public_key)
        if found is not None:
            user, _key = found
            if self.add_auth_method(user.id, "ssh_key"):
                user.auth_methods.add("ssh_key")
            return user

        if not self.is_first_user():
            return None
        try:
            user = self.create_user(FIRST_ADMIN_USERNAME, auth_methods=["ssh_key"])
        except IntegrityError:
            logger.warning("Concurrent first-user SSH login lost the bootstrap race")
            return None
        self.add_ssh_key(user.id, public_key, "First Admin Key")
        return user


# ---------------------------------------------------------------------------
# Helpers and row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _username_candidate(identity: OAuthIdentity) -> str:
    profile = identity.raw_profile or {}
    return profile.get("login") or profile.get("username") or identity.email or identity.user_id


def _values_to_user(values: dict, is_admin: bool) -> User:
    return User(
        id=values["id"],
        username=values["username"],
        email=values["email"],
        is_admin=is_admin,
        auth_methods=set(json.loads(values["auth_methods"])),
        created_at=from_millis(values["created_at"]),
        updated_at=from_millis(values["updated_at"]),
    )


def _row_to_user(row) -> User:
    # last_login_at is only present on rows from get_all_users().
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        is_admin=bool(row.is_admin),
        auth_methods=set(json.loads(row.auth_methods or "[]")),
        created_at=from_millis(row.created_at),
        updated_at=from_millis(row.updated_at),
        last_login_at=from_millis(getattr(row, "last_login_at", None)),
    )


def _row_to_ssh_key(row) -> SSHKey:
    return SSHKey(
        id=row.id,
        user_id=row.user_id,
        public_key=row.public_key,
        fingerprint=row.fingerprint,
        name=row.name,
        created_at=from_millis(row.created_at),
    )

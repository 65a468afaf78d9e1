"""
auth/store.py -- SQLAlchemy Core schema and engine for the auth core.

Pattern: one AuthDatabase owns the engine and the schema; the managers
(CredentialStore, SessionManager, IdentityRegistry, OAuthCoordinator,
SqlStateTokenStore) each take it and run their own queries against
`db.engine`. Row mappers live next to the manager that owns the table.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps:
  Stored as BIGINT epoch milliseconds. Integer comparison keeps
  `DELETE ... WHERE expires_at < :now` exact and index-friendly on every
  backend, with no timezone or string-format drift between writers.

First-run bootstrap:
  admin_bootstrap is a single-row table (id = 1 enforced by CHECK). Whoever
  inserts that row inside the same transaction as a user insert is the first
  user and becomes admin. A second concurrent inserter gets IntegrityError
  instead of silently becoming a second bootstrap admin. Databases that
  already hold users when this table is introduced are seeded on startup.

Layer rule: no imports from core/ or the HTTP layer.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

logger = logging.getLogger("dispatch.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), index=True),
    Column("is_admin", Integer, nullable=False, server_default="0"),
    Column("auth_methods", Text, nullable=False, server_default="[]"),  # JSON array
    Column("created_at", BigInteger, nullable=False),
    Column("updated_at", BigInteger, nullable=False),
)

auth_sessions = Table(
    "auth_sessions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("provider", String(32), nullable=False),
    Column("expires_at", BigInteger, nullable=False, index=True),
    Column("created_at", BigInteger, nullable=False),
    Column("last_active_at", BigInteger, nullable=False),
)

auth_api_keys = Table(
    "auth_api_keys",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("key_hash", String(60), nullable=False),  # bcrypt modular-crypt string
    Column("label", String(100), nullable=False),
    Column("created_at", BigInteger, nullable=False),
    Column("last_used_at", BigInteger),
    Column("disabled", Integer, nullable=False, server_default="0"),
)

ssh_keys = Table(
    "ssh_keys",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("public_key", Text, nullable=False),
    Column("fingerprint", String(16), nullable=False, unique=True),
    Column("name", String(255)),
    Column("created_at", BigInteger, nullable=False),
)

oauth_config = Table(
    "oauth_config",
    metadata,
    Column("provider", String(32), primary_key=True),
    Column("client_id", String(255), nullable=False),
    Column("client_secret", Text, nullable=False),
    Column("secret_encrypted", Integer, nullable=False, server_default="0"),
    Column("redirect_uri", Text, nullable=False),
    Column("enabled", Integer, nullable=False, server_default="1"),
    Column("created_at", BigInteger, nullable=False),
    Column("updated_at", BigInteger, nullable=False),
)

# Only used by SqlStateTokenStore (multi-instance deployments).
oauth_states = Table(
    "oauth_states",
    metadata,
    Column("state", String(64), primary_key=True),
    Column("provider", String(32), nullable=False),
    Column("redirect_uri", Text),
    Column("created_at", BigInteger, nullable=False),
    Column("expires_at", BigInteger, nullable=False, index=True),
)

admin_bootstrap = Table(
    "admin_bootstrap",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("user_id", String(64)),
    Column("claimed_at", BigInteger, nullable=False),
    CheckConstraint("id = 1", name="ck_admin_bootstrap_single_row"),
)


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(value: datetime) -> int:
    # Integer arithmetic; float timestamps lose the last millisecond.
    delta = value - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000


def from_millis(value: int | None) -> datetime | None:
    if value is None:
        return None
    return _EPOCH + timedelta(milliseconds=value)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _is_memory_url(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class AuthDatabase:
    """Owns the engine and schema shared by every auth manager.

    Usage:
        db = AuthDatabase("sqlite:///dispatch_auth.db")
        registry = IdentityRegistry(db)
        ...
        db.close()

    In-memory SQLite URLs use a StaticPool so the background threads (API key
    last-used updates, session cleanup) see the same database as the caller.
    """

    def __init__(self, db_url: str) -> None:
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if _is_memory_url(db_url):
                engine_kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)
        self._ensure_admin_bootstrap()

    def _ensure_admin_bootstrap(self) -> None:
        """Seed the bootstrap row for databases that already contain users.

        Without this, the first user created after an upgrade would claim the
        empty bootstrap slot and be promoted to admin. Idempotent.
        """
        with self.engine.connect() as conn:
            claimed = conn.execute(select(func.count()).select_from(admin_bootstrap)).scalar()
            if claimed:
                return
            first = conn.execute(
                select(users.c.id).order_by(users.c.is_admin.desc(), users.c.created_at).limit(1)
            ).fetchone()
            if first is None:
                return
            try:
                conn.execute(admin_bootstrap.insert().values(id=1, user_id=first.id, claimed_at=to_millis(utcnow())))
                conn.commit()
                logger.info("Seeded admin bootstrap record for existing user %s", first.id)
            except IntegrityError:
                # Another process seeded it between our check and insert.
                conn.rollback()

    def close(self) -> None:
        self.engine.dispose()

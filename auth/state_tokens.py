"""
auth/state_tokens.py -- Single-use TTL storage for OAuth CSRF state tokens.

A state token binds an authorization request to its callback. pop() removes
and returns a token in one step: the first caller gets it, every later caller
(including a replay of the same callback) gets None. pop() does not check
expiry -- the coordinator does, so it can report "expired" separately from
"unknown".

Two implementations:
  InMemoryStateTokenStore -- process-local dict under a lock. Correct only for
      a single-instance deployment: a callback that lands on a different
      process than the one that initiated the flow will not find its state.
  SqlStateTokenStore -- oauth_states table, for multi-instance deployments
      sharing one database. The DELETE's rowcount decides who consumed the
      token, so two concurrent callbacks cannot both succeed.

Layer rule: no imports from core/ or the HTTP layer.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Protocol

from auth.models import StateToken
from auth.store import AuthDatabase, from_millis, oauth_states, to_millis

logger = logging.getLogger("dispatch.auth.state_tokens")


class StateTokenStore(Protocol):
    def put(self, token: StateToken) -> None: ...

    def pop(self, state: str) -> StateToken | None: ...

    def purge_expired(self, now: datetime) -> int: ...


class InMemoryStateTokenStore:
    def __init__(self) -> None:
        self._tokens: dict[str, StateToken] = {}
        self._lock = threading.Lock()

    def put(self, token: StateToken) -> None:
        with self._lock:
            self._tokens[token.state] = token

    def pop(self, state: str) -> StateToken | None:
        with self._lock:
            return self._tokens.pop(state, None)

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [state for state, token in self._tokens.items() if token.expires_at < now]
            for state in expired:
                del self._tokens[state]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


class SqlStateTokenStore:
    def __init__(self, db: AuthDatabase) -> None:
        self._db = db

    def put(self, token: StateToken) -> None:
        with self._db.engine.connect() as conn:
            conn.execute(
                oauth_states.insert().values(
                    state=token.state,
                    provider=token.provider,
                    redirect_uri=token.redirect_uri,
                    created_at=to_millis(token.created_at),
                    expires_at=to_millis(token.expires_at),
                )
            )
            conn.commit()

    def pop(self, state: str) -> StateToken | None:
        with self._db.engine.begin() as conn:
            row = conn.execute(oauth_states.select().where(oauth_states.c.state == state)).fetchone()
            if row is None:
                return None
            result = conn.execute(oauth_states.delete().where(oauth_states.c.state == state))
        if result.rowcount == 0:
            # Consumed by a concurrent callback between our read and delete.
            return None
        return StateToken(
            state=row.state,
            provider=row.provider,
            created_at=from_millis(row.created_at),
            expires_at=from_millis(row.expires_at),
            redirect_uri=row.redirect_uri,
        )

    def purge_expired(self, now: datetime) -> int:
        with self._db.engine.connect() as conn:
            result = conn.execute(oauth_states.delete().where(oauth_states.c.expires_at < to_millis(now)))
            conn.commit()
        if result.rowcount:
            logger.debug("Purged %d expired OAuth state token(s)", result.rowcount)
        return result.rowcount

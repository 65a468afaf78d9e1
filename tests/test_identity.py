"""Unit tests for auth/identity.py -- users, SSH keys, first-run bootstrap.

Covers:
- the first user ever created is admin; later users are not unless overridden
- the bootstrap row is claimed exactly once, including under concurrency
- databases that already hold users are seeded so no second bootstrap happens
- update_user() whitelists fields; delete_user() cascades sessions, SSH keys, API keys
- get_all_users() derives last_login_at from session history
- SSH fingerprints and key lookup, including the first-admin SSH bootstrap
- OAuth reconciliation: by email, then by identity id; method appended once
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from auth.credentials import CredentialStore
from auth.identity import IdentityRegistry, fingerprint
from auth.models import OAuthIdentity
from auth.sessions import SessionManager
from auth.store import AuthDatabase, admin_bootstrap, to_millis, users

PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIKs0bXrZ5EexampleKeyMaterial alice@laptop"
OTHER_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIOtherKeyMaterialForBobxx bob@desktop"


class TestBootstrap:
    def test_first_user_is_admin_second_is_not(self, registry: IdentityRegistry) -> None:
        assert registry.is_first_user() is True
        first = registry.create_user("alice")
        second = registry.create_user("bob")
        assert first.is_admin is True
        assert second.is_admin is False
        assert registry.is_first_user() is False

    def test_first_user_admin_even_without_flag(self, registry: IdentityRegistry) -> None:
        assert registry.create_user("alice", is_admin=False).is_admin is True

    def test_admin_override_for_later_users(self, registry: IdentityRegistry) -> None:
        registry.create_user("alice")
        assert registry.create_user("carol", is_admin=True).is_admin is True

    def test_bootstrap_row_records_first_user(self, registry: IdentityRegistry, db: AuthDatabase) -> None:
        first = registry.create_user("alice")
        registry.create_user("bob")
        with db.engine.connect() as conn:
            rows = conn.execute(select(admin_bootstrap)).fetchall()
        assert len(rows) == 1
        assert rows[0].user_id == first.id

    def test_duplicate_username_on_first_insert_does_not_claim(self, registry: IdentityRegistry, db) -> None:
        """A failed user insert rolls back its bootstrap claim too."""
        with db.engine.connect() as conn:
            conn.execute(
                users.insert().values(id="pre", username="alice", auth_methods="[]", created_at=0, updated_at=0)
            )
            conn.commit()
        with pytest.raises(IntegrityError):
            registry.create_user("alice")
        assert registry.is_first_user() is True

    def test_concurrent_first_users_single_admin(self, tmp_path) -> None:
        """Two racing first logins: exactly one becomes admin."""
        db = AuthDatabase(f"sqlite:///{tmp_path / 'race.db'}")
        registry = IdentityRegistry(db)
        barrier = threading.Barrier(4)
        created = []

        def _create(name: str) -> None:
            barrier.wait()
            created.append(registry.create_user(name))

        threads = [threading.Thread(target=_create, args=(f"user{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        db.close()

        assert len(created) == 4
        assert sum(1 for u in created if u.is_admin) == 1

    def test_existing_users_seed_bootstrap(self, tmp_path) -> None:
        """A store that already has users must not promote the next new user."""
        url = f"sqlite:///{tmp_path / 'legacy.db'}"
        db = AuthDatabase(url)
        with db.engine.connect() as conn:
            conn.execute(
                users.insert().values(
                    id="old", username="old-admin", is_admin=1, auth_methods="[]", created_at=0, updated_at=0
                )
            )
            conn.execute(admin_bootstrap.delete())
            conn.commit()
        db.close()

        reopened = AuthDatabase(url)
        registry = IdentityRegistry(reopened)
        assert registry.is_first_user() is False
        assert registry.create_user("newcomer").is_admin is False
        reopened.close()


class TestUserCrud:
    def test_lookups(self, registry: IdentityRegistry) -> None:
        alice = registry.create_user("alice", "alice@example.com", auth_methods=["api_key"])
        assert registry.get_user(alice.id).username == "alice"
        assert registry.get_by_username("alice").id == alice.id
        assert registry.get_by_email("alice@example.com").id == alice.id
        assert registry.get_by_email("") is None
        assert registry.get_user("missing") is None
        assert registry.get_user(alice.id).auth_methods == {"api_key"}

    def test_update_user(self, registry: IdentityRegistry, clock) -> None:
        alice = registry.create_user("alice")
        clock.advance(minutes=5)
        updated = registry.update_user(alice.id, email="a@example.com", is_admin=False)
        assert updated.email == "a@example.com"
        assert updated.is_admin is False
        assert updated.updated_at == clock()

    def test_update_unknown_field_rejected(self, registry: IdentityRegistry) -> None:
        alice = registry.create_user("alice")
        with pytest.raises(ValueError):
            registry.update_user(alice.id, auth_methods="[]")

    def test_update_missing_user_returns_none(self, registry: IdentityRegistry) -> None:
        assert registry.update_user("missing", email="x@example.com") is None

    def test_add_auth_method_once(self, registry: IdentityRegistry) -> None:
        alice = registry.create_user("alice", auth_methods=["api_key"])
        assert registry.add_auth_method(alice.id, "oauth_github") is True
        assert registry.add_auth_method(alice.id, "oauth_github") is False
        assert registry.get_user(alice.id).auth_methods == {"api_key", "oauth_github"}
        assert registry.add_auth_method("missing", "api_key") is False

    def test_delete_cascades(self, registry: IdentityRegistry, db, clock) -> None:
        alice = registry.create_user("alice")
        bob = registry.create_user("bob")
        registry.add_ssh_key(alice.id, PUBLIC_KEY, "laptop")
        with SessionManager(db, clock=clock, autostart=False) as sessions:
            session = sessions.create(alice.id, "api_key")
            bob_session = sessions.create(bob.id, "api_key")
            keys = CredentialStore(db, rounds=4, clock=clock)
            created = keys.generate(alice.id, "ci")

            assert registry.delete_user(alice.id) is True

            assert registry.get_user(alice.id) is None
            assert sessions.validate(session.id) is None
            assert sessions.validate(bob_session.id) is not None
            assert registry.list_ssh_keys(alice.id) == []
            assert keys.verify(created.key) is None
            keys.close()

        assert registry.delete_user(alice.id) is False

    def test_get_all_users_last_login(self, registry: IdentityRegistry, db, clock) -> None:
        alice = registry.create_user("alice")
        clock.advance(minutes=1)
        registry.create_user("bob")
        with SessionManager(db, clock=clock, autostart=False) as sessions:
            sessions.create(alice.id, "api_key")
            clock.advance(hours=2)
            sessions.create(alice.id, "oauth_github")

        listing = registry.get_all_users()
        assert [u.username for u in listing] == ["alice", "bob"]
        assert listing[0].last_login_at == clock()
        assert listing[1].last_login_at is None


class TestReconciliation:
    def test_ensure_user_creates_then_reuses(self, registry: IdentityRegistry) -> None:
        created = registry.ensure_user("u1", "api_key")
        again = registry.ensure_user("u1", "api_key")
        assert created.id == again.id == "u1"
        assert again.auth_methods == {"api_key"}

    def test_ensure_named_user(self, registry: IdentityRegistry) -> None:
        first = registry.ensure_named_user("admin", "legacy_key")
        assert first.is_admin is True
        assert registry.ensure_named_user("admin", "ssh_key").id == first.id
        assert registry.get_user(first.id).auth_methods == {"legacy_key", "ssh_key"}

    def test_oauth_new_user_uses_identity_id(self, registry: IdentityRegistry) -> None:
        identity = OAuthIdentity(
            user_id="github_42",
            email="octo@example.com",
            name="Octo Cat",
            provider="oauth_github",
            raw_profile={"id": 42, "login": "octocat"},
        )
        user = registry.find_or_create_oauth_user(identity)
        assert user.id == "github_42"
        assert user.username == "octocat"
        assert user.is_admin is True
        assert user.auth_methods == {"oauth_github"}

    def test_oauth_matches_existing_user_by_email(self, registry: IdentityRegistry) -> None:
        existing = registry.create_user("alice", "alice@example.com", auth_methods=["api_key"])
        identity = OAuthIdentity("google_7", "alice@example.com", "Alice", "oauth_google", {"id": "7"})
        user = registry.find_or_create_oauth_user(identity)
        assert user.id == existing.id
        assert user.auth_methods == {"api_key", "oauth_google"}

    def test_oauth_without_email_matches_by_identity_id(self, registry: IdentityRegistry) -> None:
        identity = OAuthIdentity("github_offline_github", None, "GitHub", "oauth_github", {"id": "offline_github"})
        first = registry.find_or_create_oauth_user(identity)
        second = registry.find_or_create_oauth_user(identity)
        assert first.id == second.id
        assert len(registry.get_all_users()) == 1

    def test_oauth_username_collision_falls_back_to_id(self, registry: IdentityRegistry) -> None:
        registry.create_user("octocat")
        identity = OAuthIdentity("github_42", None, "Octo", "oauth_github", {"id": 42, "login": "octocat"})
        user = registry.find_or_create_oauth_user(identity)
        assert user.username == "github_42"
        assert user.is_admin is False


class TestSshKeys:
    def test_fingerprint_is_16_hex_chars_and_trim_insensitive(self) -> None:
        fp = fingerprint(PUBLIC_KEY)
        assert len(fp) == 16
        int(fp, 16)
        assert fingerprint(f"  {PUBLIC_KEY}\n") == fp
        assert fingerprint(OTHER_KEY) != fp

    def test_add_list_find_delete(self, registry: IdentityRegistry, clock) -> None:
        alice = registry.create_user("alice")
        key = registry.add_ssh_key(alice.id, PUBLIC_KEY, "laptop")
        assert key.fingerprint == fingerprint(PUBLIC_KEY)
        assert [k.id for k in registry.list_ssh_keys(alice.id)] == [key.id]

        found = registry.find_by_ssh_key(PUBLIC_KEY)
        assert found is not None
        user, ssh_key = found
        assert (user.id, ssh_key.id) == (alice.id, key.id)

        assert registry.delete_ssh_key("someone-else", key.id) is False
        assert registry.delete_ssh_key(alice.id, key.id) is True
        assert registry.find_by_ssh_key(PUBLIC_KEY) is None

    def test_duplicate_key_rejected(self, registry: IdentityRegistry) -> None:
        alice = registry.create_user("alice")
        registry.add_ssh_key(alice.id, PUBLIC_KEY)
        with pytest.raises(IntegrityError):
            registry.add_ssh_key(alice.id, PUBLIC_KEY)

    def test_first_ssh_login_creates_admin(self, registry: IdentityRegistry) -> None:
        user = registry.authenticate_ssh_key(PUBLIC_KEY)
        assert user is not None
        assert user.username == "admin"
        assert user.is_admin is True
        (key,) = registry.list_ssh_keys(user.id)
        assert key.name == "First Admin Key"

    def test_known_key_authenticates(self, registry: IdentityRegistry) -> None:
        alice = registry.create_user("alice")
        registry.add_ssh_key(alice.id, PUBLIC_KEY)
        user = registry.authenticate_ssh_key(PUBLIC_KEY)
        assert user.id == alice.id
        assert "ssh_key" in user.auth_methods

    def test_unknown_key_after_bootstrap_rejected(self, registry: IdentityRegistry) -> None:
        registry.create_user("alice")
        assert registry.authenticate_ssh_key(OTHER_KEY) is None
        assert registry.authenticate_ssh_key("   ") is None


def test_timestamps_round_trip_in_milliseconds(registry: IdentityRegistry, clock) -> None:
    clock.advance(milliseconds=123)
    user = registry.create_user("alice")
    stored = registry.get_user(user.id)
    assert to_millis(stored.created_at) == to_millis(clock())
    assert stored.created_at - clock() < timedelta(milliseconds=1)

#!/usr/bin/env python3
"""
Dispatch auth -- operator commands for API keys, users, sessions and OAuth.

Usage:
  python main.py keys create USER_ID "CI runner"
  python main.py keys list USER_ID
  python main.py keys disable USER_ID KEY_ID
  python main.py keys enable USER_ID KEY_ID
  python main.py keys delete USER_ID KEY_ID
  python main.py users list
  python main.py users delete USER_ID
  python main.py sessions list USER_ID
  python main.py sessions cleanup
  python main.py oauth enable github --client-id ID --client-secret SECRET
  python main.py oauth disable github
  python main.py oauth list
  python main.py --db sqlite:///other.db users list

Environment variables:
  SECRET_KEY      Required unless DEBUG=true.
  DATABASE_URL    SQLAlchemy URL of the auth store (overridden by --db).
  ENCRYPTION_KEY  Encrypts OAuth client secrets at rest. Without it secrets
                  are only accepted in DEBUG mode.
  LOG_LEVEL       Log level for this command (default INFO, -v forces DEBUG).
"""

from __future__ import annotations

import argparse
import logging
import sys

from pydantic import ValidationError as SettingsError

from auth.errors import AuthError
from auth.login import AuthService
from core.config import get_settings

logger = logging.getLogger("dispatch.cli")


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dispatch-auth",
        description="Manage API keys, users, sessions and OAuth providers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", metavar="URL", help="Database URL (default: DATABASE_URL setting)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    groups = parser.add_subparsers(dest="group", required=True)

    keys = groups.add_parser("keys", help="API key management").add_subparsers(dest="action", required=True)
    create = keys.add_parser("create", help="Generate a key (shown once)")
    create.add_argument("user_id")
    create.add_argument("label")
    keys.add_parser("list", help="List a user's keys").add_argument("user_id")
    for action in ("disable", "enable", "delete"):
        sub = keys.add_parser(action, help=f"{action.capitalize()} a key")
        sub.add_argument("user_id")
        sub.add_argument("key_id")

    users = groups.add_parser("users", help="User management").add_subparsers(dest="action", required=True)
    users.add_parser("list", help="List all users")
    users.add_parser("delete", help="Delete a user and everything they own").add_argument("user_id")

    sessions = groups.add_parser("sessions", help="Session management").add_subparsers(dest="action", required=True)
    sessions.add_parser("list", help="List a user's sessions").add_argument("user_id")
    sessions.add_parser("cleanup", help="Delete expired sessions now")

    oauth = groups.add_parser("oauth", help="OAuth provider configuration").add_subparsers(
        dest="action", required=True
    )
    enable = oauth.add_parser("enable", help="Configure and enable a provider")
    enable.add_argument("provider", choices=["github", "google"])
    enable.add_argument("--client-id", required=True)
    enable.add_argument("--client-secret", required=True)
    enable.add_argument("--redirect-uri", default=None)
    oauth.add_parser("disable", help="Disable a provider").add_argument("provider", choices=["github", "google"])
    oauth.add_parser("list", help="Show provider status")
    return parser


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _keys(auth: AuthService, args: argparse.Namespace) -> int:
    if args.action == "create":
        created = auth.credentials.generate(args.user_id, args.label)
        print(f"  Key id: {created.id}")
        print(f"  Label:  {created.label}")
        print(f"  Key:    {created.key}")
        print("\n  Store this key now. It cannot be shown again.")
        return 0
    if args.action == "list":
        keys = auth.credentials.list_keys(args.user_id)
        if not keys:
            print(f"  No API keys for {args.user_id}.")
        for key in keys:
            status = "disabled" if key.disabled else "active"
            print(f"  {key.id}  {key.label:<30} {status:<8} last used {_fmt_time(key.last_used_at)}")
        return 0

    handler = {
        "disable": auth.credentials.disable_key,
        "enable": auth.credentials.enable_key,
        "delete": auth.credentials.delete_key,
    }[args.action]
    if handler(args.key_id, args.user_id):
        print(f"  Key {args.key_id}: {args.action}d.")
        return 0
    print(f"  [!] Key {args.key_id} not found for user {args.user_id}.")
    return 1


def _users(auth: AuthService, args: argparse.Namespace) -> int:
    if args.action == "list":
        for user in auth.identities.get_all_users():
            role = "admin" if user.is_admin else "user"
            methods = ",".join(sorted(user.auth_methods)) or "-"
            print(f"  {user.id:<36} {user.username:<20} {role:<5} {methods:<30} last login {_fmt_time(user.last_login_at)}")
        return 0
    if auth.identities.delete_user(args.user_id):
        print(f"  User {args.user_id} deleted.")
        return 0
    print(f"  [!] User {args.user_id} not found.")
    return 1


def _sessions(auth: AuthService, args: argparse.Namespace) -> int:
    if args.action == "cleanup":
        removed = auth.sessions.cleanup_expired()
        print(f"  Removed {removed} expired session(s).")
        return 0
    sessions = auth.sessions.list_user_sessions(args.user_id)
    if not sessions:
        print(f"  No sessions for {args.user_id}.")
    for session in sessions:
        print(
            f"  {session.id[:12]}...  {session.provider.value:<13} "
            f"created {_fmt_time(session.created_at)}  expires {_fmt_time(session.expires_at)}"
        )
    return 0


def _oauth(auth: AuthService, args: argparse.Namespace) -> int:
    if args.action == "enable":
        config = auth.oauth.enable_provider(args.provider, args.client_id, args.client_secret, args.redirect_uri)
        note = "encrypted" if config.secret_encrypted else "PLAINTEXT"
        print(f"  {args.provider} enabled (client secret stored {note}).")
        return 0
    if args.action == "disable":
        if auth.oauth.disable_provider(args.provider):
            print(f"  {args.provider} disabled. Existing sessions remain valid.")
            return 0
        print(f"  [!] {args.provider} is not configured.")
        return 1
    for entry in auth.oauth.list_providers():
        status = "enabled" if entry["enabled"] else ("disabled" if entry["configured"] else "not configured")
        secret = "yes" if entry["has_client_secret"] else "no"
        print(f"  {entry['display_name']:<8} {status:<15} secret: {secret:<4} redirect: {entry['redirect_uri']}")
    return 0


_HANDLERS = {"keys": _keys, "users": _users, "sessions": _sessions, "oauth": _oauth}


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except SettingsError as exc:
        print(f"  [!] Invalid configuration: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if args.db:
        settings = settings.model_copy(update={"database_url": args.db})
    logger.debug("Using auth database %s", settings.database_url)

    auth = AuthService.from_settings(settings, autostart_cleanup=False)
    try:
        return _HANDLERS[args.group](auth, args)
    except AuthError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 1
    finally:
        auth.close()


if __name__ == "__main__":
    sys.exit(main())

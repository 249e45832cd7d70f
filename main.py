#!/usr/bin/env python3
"""
CaseGate -- operator command line for the authentication store.

Usage:
  python main.py create-admin admin@example.com
  python main.py purge
  python main.py unlock user@example.com
  python main.py revoke-sessions user@example.com

Passwords are read interactively (getpass) or from stdin with
--password-stdin, never from argv, so they do not land in shell history.

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth store (default: casegate_auth.db beside the code)
  SECRET_KEY    Required unless DEBUG=true. See core/config.py.
"""

import argparse
import getpass
import logging
import sys

from auth.errors import AuthError
from auth.service import AuthService
from auth.store import AuthStore
from core.config import get_settings

logger = logging.getLogger("casegate.cli")


def _read_password(from_stdin: bool) -> str:
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(2)
    return first


def _account_or_exit(service: AuthService, email: str):
    account = service.store.get_by_email(email)
    if account is None:
        print(f"  [!] No account for '{email}'.")
        sys.exit(1)
    return account


def cmd_create_admin(service: AuthService, args: argparse.Namespace) -> None:
    """Bootstrap the first super_admin. Later accounts come in through invitations."""
    account = service.bootstrap_admin(args.email, _read_password(args.password_stdin))
    print(f"  Created super_admin {account.email} ({account.id}).")


def cmd_purge(service: AuthService, args: argparse.Namespace) -> None:
    removed = service.purge_expired_sessions()
    print(f"  Purged {removed} expired session(s).")


def cmd_unlock(service: AuthService, args: argparse.Namespace) -> None:
    account = _account_or_exit(service, args.email)
    service.lockout.clear(account.id)
    print(f"  Lockout cleared for {account.email}.")


def cmd_revoke_sessions(service: AuthService, args: argparse.Namespace) -> None:
    account = _account_or_exit(service, args.email)
    removed = service.logout_all(account.id)
    print(f"  Revoked {removed} session(s) for {account.email}; outstanding tokens invalidated.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="casegate",
        description="Operator tasks for the CaseGate authentication store.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-admin", help="Create the first super_admin (only when no accounts exist)")
    p.add_argument("email")
    p.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")
    p.set_defaults(func=cmd_create_admin)

    p = sub.add_parser("purge", help="Delete expired sessions")
    p.set_defaults(func=cmd_purge)

    p = sub.add_parser("unlock", help="Clear the lockout for an account")
    p.add_argument("email")
    p.set_defaults(func=cmd_unlock)

    p = sub.add_parser("revoke-sessions", help="Sign an account out everywhere")
    p.add_argument("email")
    p.set_defaults(func=cmd_revoke_sessions)

    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    args = build_parser().parse_args(argv)
    settings = get_settings()
    store = AuthStore(settings.database_url)
    try:
        args.func(AuthService(store, settings), args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        for err in exc.detail.get("errors", []):
            print(f"      - {err}")
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Service Portal -- operator command line.

Account and permission provisioning lives outside the web API: there is no
self-registration and no HTTP endpoint that creates staff accounts.

Usage:
  python main.py create-account admin --role admin --email admin@example.com
  python main.py create-account jdoe --role editor --first-name Jane --last-name Doe
  python main.py set-active jdoe --disable
  python main.py seed-permissions
  python main.py seed-permissions --db sqlite:///other.db

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the portal database (default: serviceportal.db)
  BCRYPT_ROUNDS  bcrypt cost factor for new password hashes (default: 12)
"""

import argparse
import getpass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import ROLES, Account
from auth.permissions import seed_default_grants
from auth.store import AccountStore
from auth.tokens import hash_password
from core.config import get_settings
from core.database import create_db_engine

_MIN_PASSWORD_LENGTH = 8
_MAX_PASSWORD_LENGTH = 72  # bcrypt input limit in bytes


def _prompt_password() -> Optional[str]:
    password = getpass.getpass("  Password: ")
    if len(password) < _MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters.")
        return None
    if len(password.encode("utf-8")) > _MAX_PASSWORD_LENGTH:
        print(f"  [!] Password must be at most {_MAX_PASSWORD_LENGTH} bytes.")
        return None
    if getpass.getpass("  Repeat password: ") != password:
        print("  [!] Passwords do not match.")
        return None
    return password


def create_account(args: argparse.Namespace, store: AccountStore) -> int:
    password = _prompt_password()
    if password is None:
        return 1
    account = Account(
        username=args.username,
        role=args.role,
        email=args.email,
        first_name=args.first_name,
        last_name=args.last_name,
        password_hash=hash_password(password),
    )
    try:
        account_id = store.create_account(account)
    except IntegrityError:
        print(f"  [!] Username '{args.username}' or e-mail '{args.email}' is already taken.")
        return 1
    print(f"  Account '{args.username}' created (id={account_id}, role={args.role}).")
    return 0


def seed_permissions(args: argparse.Namespace, store: AccountStore) -> int:
    written = seed_default_grants(store)
    print(f"  {written} permission grants written.")
    return 0


def set_active(args: argparse.Namespace, store: AccountStore) -> int:
    account = store.find_by_username(args.username)
    if account is None:
        print(f"  [!] No account named '{args.username}'.")
        return 1
    store.set_active(account.id, args.enable)
    state = "enabled" if args.enable else "disabled"
    print(f"  Account '{args.username}' {state}.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="serviceportal",
        description="Provision accounts and permission grants for the service portal.",
    )
    parser.add_argument(
        "--db",
        metavar="URL",
        help="SQLAlchemy database URL (default: DATABASE_URL setting)",
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = commands.add_parser("create-account", help="Create a staff account (password is prompted)")
    create.add_argument("username")
    create.add_argument("--role", choices=ROLES, default="viewer", help="Role (default: viewer)")
    create.add_argument("--email", help="Alternate login handle")
    create.add_argument("--first-name", dest="first_name")
    create.add_argument("--last-name", dest="last_name")
    create.set_defaults(handler=create_account)

    seed = commands.add_parser("seed-permissions", help="Write the default role -> permission table")
    seed.set_defaults(handler=seed_permissions)

    toggle = commands.add_parser("set-active", help="Enable or disable an existing account")
    toggle.add_argument("username")
    state = toggle.add_mutually_exclusive_group(required=True)
    state.add_argument("--enable", dest="enable", action="store_true")
    state.add_argument("--disable", dest="enable", action="store_false")
    toggle.set_defaults(handler=set_active)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    store = AccountStore(create_db_engine(args.db or get_settings().database_url))
    try:
        return args.handler(args, store)
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())

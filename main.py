#!/usr/bin/env python3
"""
BankDVWA -- Deliberately vulnerable banking application for security training.

Usage:
  python main.py serve [--host 127.0.0.1] [--port 8000] [--reload]
  python main.py init-db
  python main.py create-admin USERNAME [--email EMAIL]
  python main.py seed
  python main.py levels show
  python main.py levels set sql_injection high
  python main.py levels reset
  python main.py purge-sessions

Environment variables (or .env):
  SECRET_KEY     Required unless DEBUG=true. At least 32 characters.
  DATABASE_URL   SQLAlchemy URL. Defaults to sqlite:///bankdvwa.db next to this file.
  DEBUG          true = auto-generate SECRET_KEY (sessions reset on restart).
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.passwords import hash_password
from auth.store import UserStore
from bank.sample_data import seed_sample_data
from bank.store import BankStore
from core.config import get_settings
from core.errors import SecurityError
from security.demos import DEMO_TITLES
from security.levels import SecurityLevelStore
from sessions.store import SessionStore


def _levels_store() -> SecurityLevelStore:
    settings = get_settings()
    return SecurityLevelStore(
        settings.database_url,
        default_level=settings.default_security_level,
        vulnerabilities=tuple(settings.vulnerabilities),
    )


def cmd_init_db(args: argparse.Namespace) -> int:
    settings = get_settings()
    UserStore(settings.database_url).close()
    BankStore(settings.database_url).close()
    levels = _levels_store()
    print(f"  Database ready: {settings.database_url}")
    print(f"  {len(levels.get_all_settings())} security levels configured.")
    levels.close()
    return 0


def cmd_create_admin(args: argparse.Namespace) -> int:
    store = UserStore(get_settings().database_url)
    try:
        password = getpass.getpass("  Password: ")
        if len(password) < 8:
            print("  [!] Password must be at least 8 characters.")
            return 1
        if password != getpass.getpass("  Confirm password: "):
            print("  [!] Passwords do not match.")
            return 1
        try:
            user_id = store.create_user(
                User(username=args.username, role="admin", email=args.email, password_hash=hash_password(password))
            )
        except IntegrityError:
            print(f"  [!] User '{args.username}' already exists.")
            return 1
        print(f"  Admin '{args.username}' created (id {user_id}).")
        return 0
    finally:
        store.close()


def cmd_seed(args: argparse.Namespace) -> int:
    settings = get_settings()
    users = UserStore(settings.database_url)
    bank = BankStore(settings.database_url)
    try:
        created = seed_sample_data(users, bank)
    finally:
        users.close()
        bank.close()
    print(f"  {created} sample customer(s) created.")
    return 0


def cmd_levels(args: argparse.Namespace) -> int:
    levels = _levels_store()
    try:
        if args.action == "set":
            if not args.vulnerability or not args.level:
                print("  [!] Usage: levels set VULNERABILITY LEVEL")
                return 2
            try:
                levels.set_level(args.vulnerability, args.level, None)
            except SecurityError as exc:
                print(f"  [!] {exc.message}")
                return 1
        elif args.action == "reset":
            try:
                count = levels.reset_all(None)
            except SecurityError as exc:
                print(f"  [!] {exc.message}")
                return 1
            print(f"  {count} level(s) reset to {levels.default_level.value}.")
        for setting in levels.get_all_settings():
            title = DEMO_TITLES.get(setting.vulnerability_id, setting.vulnerability_id)
            print(f"  {title:<36} {setting.level.value}")
        return 0
    finally:
        levels.close()


def cmd_purge_sessions(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = SessionStore(settings.secret_key, db_path=settings.session_db_path, ttl=settings.session_store_ttl)
    try:
        print(f"  {store.purge_expired()} idle session(s) removed.")
    finally:
        store.close()
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="bankdvwa",
        description="Deliberately vulnerable banking application with switchable security levels.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the web application with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    serve.set_defaults(func=cmd_serve)

    sub.add_parser("init-db", help="Create tables and default security levels").set_defaults(func=cmd_init_db)

    admin = sub.add_parser("create-admin", help="Create an administrator account")
    admin.add_argument("username")
    admin.add_argument("--email", default=None)
    admin.set_defaults(func=cmd_create_admin)

    sub.add_parser("seed", help="Load sample customers, accounts and transactions").set_defaults(func=cmd_seed)

    levels = sub.add_parser("levels", help="Show or change vulnerability security levels")
    levels.add_argument("action", choices=["show", "set", "reset"])
    levels.add_argument("vulnerability", nargs="?")
    levels.add_argument("level", nargs="?", help="low, medium, high or impossible")
    levels.set_defaults(func=cmd_levels)

    sub.add_parser("purge-sessions", help="Delete idle session rows").set_defaults(func=cmd_purge_sessions)

    args = parser.parse_args()
    if not hasattr(args, "func"):
        parser.print_help()
        return
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()

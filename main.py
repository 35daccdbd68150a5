#!/usr/bin/env python3
"""
Marquee -- session command-line front end.
Stands in for the app's UI layer: every command is one SessionManager call.

Usage:
  python main.py signup --name "Jane Doe" --email jane@x.com
  python main.py login --email jane@x.com
  python main.py status
  python main.py whoami
  python main.py refresh
  python main.py sessions
  python main.py revoke 42
  python main.py cleanup
  python main.py passwd
  python main.py delete-account
  python main.py logout
  python main.py watch

Environment variables (or .env):
  PROVIDER_ENDPOINT     Identity provider base URL (https required unless DEBUG=true)
  PROVIDER_PROJECT_ID   Identity provider project id
  DATABASE_URL          SQLAlchemy URL for the user directory and session records
  LOCAL_CACHE_PATH      Device-local cache file
  DEBUG                 true to allow a local http emulator
"""

import argparse
import asyncio
import getpass
import logging
import sys
from typing import Optional

from pydantic import ValidationError

from auth.context import SessionContext, SessionSnapshot
from auth.manager import SessionManager
from auth.models import AuthResult, SessionRecord
from core.config import get_settings


def _print_result(result: AuthResult, success_message: str) -> int:
    if result.success:
        print(f"  {success_message}")
        return 0
    print(f"  [!] {result.error}")
    return 1


def _format_session(record: SessionRecord, current_token: Optional[str]) -> str:
    marker = "*" if record.session_token == current_token else " "
    created = record.created_at.strftime("%Y-%m-%d %H:%M") if record.created_at else "?"
    expires = record.expires_at.strftime("%Y-%m-%d %H:%M")
    return f"  {marker} {record.id:>6}  created {created}  expires {expires}"


def _print_snapshot(snapshot: SessionSnapshot) -> None:
    who = snapshot.user.email if snapshot.user else "-"
    print(f"  [{snapshot.state.value}] user={who} sessions={len(snapshot.sessions)}", flush=True)


async def _watch(manager: SessionManager) -> int:
    """Run a SessionContext until interrupted, printing every state change."""
    context = SessionContext(manager)
    context.subscribe(_print_snapshot)
    async with context:
        print(f"  Watching session (validation every {context.validation_interval:.0f}s). Ctrl+C to stop.")
        try:
            while True:
                await asyncio.sleep(3600)
        except asyncio.CancelledError:
            pass
    return 0


async def _run(args: argparse.Namespace, manager: SessionManager) -> int:
    command = args.command

    if command == "signup":
        name = args.name or input("Full name: ")
        email = args.email or input("Email: ")
        password = getpass.getpass("Password: ")
        if getpass.getpass("Confirm password: ") != password:
            print("  [!] Passwords do not match.")
            return 1
        result = await manager.sign_up(name, email, password)
        return _print_result(result, f"Account created for {email}. You can now log in.")

    if command == "login":
        email = args.email or input("Email: ")
        password = getpass.getpass("Password: ")
        result = await manager.sign_in(email, password)
        name = result.user.full_name if result.user else ""
        return _print_result(result, f"Welcome, {name}.")

    if command == "logout":
        await manager.sign_out()
        print("  Logged out.")
        return 0

    if command == "status":
        if await manager.is_authenticated():
            user = await manager.get_current_user()
            print(f"  Logged in as {user.email if user else '?'}.")
            return 0
        print("  Not logged in.")
        return 1

    if command == "whoami":
        user = await manager.get_current_user()
        if user is None:
            print("  Not logged in.")
            return 1
        print(f"  {user.full_name} <{user.email}> (id {user.id})")
        return 0

    if command == "refresh":
        result = await manager.refresh_auth()
        return _print_result(result, "Session refreshed.")

    if command == "sessions":
        sessions = await manager.get_user_sessions()
        if not sessions:
            print("  No active sessions.")
            return 0
        current = manager.cache.read_entry()
        current_token = current.session_token if current else None
        print(f"  {len(sessions)} active session(s) (* = this device):")
        for record in sessions:
            print(_format_session(record, current_token))
        return 0

    if command == "revoke":
        if await manager.revoke_session(args.session_id):
            print(f"  Session {args.session_id} revoked.")
            return 0
        print(f"  [!] Could not revoke session {args.session_id}.")
        return 1

    if command == "cleanup":
        user = await manager.get_current_user()
        removed = await manager.cleanup_expired_sessions(None if args.all_users else (user.id if user else None))
        print(f"  Removed {removed} expired session(s).")
        return 0

    if command == "passwd":
        current = getpass.getpass("Current password: ")
        new = getpass.getpass("New password: ")
        if getpass.getpass("Confirm new password: ") != new:
            print("  [!] Passwords do not match.")
            return 1
        result = await manager.change_password(current, new)
        return _print_result(result, "Password changed.")

    if command == "delete-account":
        if not args.yes and input("Type DELETE to remove your account: ") != "DELETE":
            print("  Cancelled.")
            return 1
        result = await manager.delete_account()
        return _print_result(result, "Account deleted.")

    if command == "watch":
        return await _watch(manager)

    return 1


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="marquee",
        description="Sign in, inspect and manage Marquee sessions from the terminal.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py signup --name "Jane Doe" --email jane@x.com
  python main.py login --email jane@x.com
  python main.py sessions
  python main.py revoke 42
  DEBUG=true PROVIDER_ENDPOINT=http://localhost/v1 python main.py status
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("signup", help="Create an account (does not log in)")
    p.add_argument("--name", help="Full name")
    p.add_argument("--email", help="Email address")

    p = sub.add_parser("login", help="Sign in and cache the session on this device")
    p.add_argument("--email", help="Email address")

    sub.add_parser("logout", help="Sign out this device")
    sub.add_parser("status", help="Validate the cached session (exit 1 if not logged in)")
    sub.add_parser("whoami", help="Show the cached user without contacting the server")
    sub.add_parser("refresh", help="Re-validate the session and refresh the cached user")
    sub.add_parser("sessions", help="List active sessions for the current user")

    p = sub.add_parser("revoke", help="Revoke one of your sessions by id")
    p.add_argument("session_id", type=int, metavar="ID")

    p = sub.add_parser("cleanup", help="Delete expired session records")
    p.add_argument("--all-users", action="store_true", help="Purge expired records of every user")

    sub.add_parser("passwd", help="Change your password")

    p = sub.add_parser("delete-account", help="Delete your account record and sessions")
    p.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")

    sub.add_parser("watch", help="Keep a session context running and print state changes")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    try:
        settings = get_settings()
    except (ValidationError, ValueError) as e:
        print(f"  [!] Configuration error: {e}")
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    manager = SessionManager.from_settings(settings)
    try:
        code = asyncio.run(_run(args, manager))
    except KeyboardInterrupt:
        code = 0
    finally:
        manager.close()
    sys.exit(code)


if __name__ == "__main__":
    main()

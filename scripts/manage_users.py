#!/usr/bin/env python3
"""Inspect and manage portal bridge users from the command line.

Usage:
    python scripts/manage_users.py list
    python scripts/manage_users.py set-default parent@example.com
    python scripts/manage_users.py clear-credentials parent@example.com
    python scripts/manage_users.py remove parent@example.com

Environment Variables:
    REDIS_URL: Redis connection string for the shared store
    USE_MEMORY_STORE: use the file-backed in-process store under STATE_DIR
    ENCRYPTION_MASTER_KEY: master key for stored sessions
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def list_users() -> int:
    from portalbridge.service.runtime import get_runtime

    runtime = get_runtime()
    records = await runtime.users.list_users()
    if not records:
        print("No users configured.")
        return 0
    for record in records:
        marker = "*" if record.is_default else " "
        has_session = await runtime.credentials.exists(record.email)
        last_used = record.last_used_at.isoformat() if record.last_used_at else "never"
        session_state = "stored session" if has_session else "no session"
        print(f"{marker} {record.email:<40} last used {last_used:<32} {session_state}")
    return 0


async def set_default(email: str, dry_run: bool = False) -> int:
    from portalbridge.service.runtime import get_runtime

    runtime = get_runtime()
    if dry_run:
        print(f"[DRY RUN] Would make {email} the default user")
        return 0
    record = await runtime.users.set_default_user(email)
    print(f"{record.email} is now the default user")
    return 0


async def clear_credentials(email: str, dry_run: bool = False) -> int:
    from portalbridge.service.runtime import get_runtime
    from portalbridge.storage.common import user_handle

    runtime = get_runtime()
    if dry_run:
        print(f"[DRY RUN] Would clear the stored session and cache for {email}")
        return 0
    removed = await runtime.sessions.clear_stored_credentials(email)
    purged = await runtime.cache.invalidate(user_handle(email))
    if removed:
        print(f"Cleared stored session for {email} ({purged} cached results dropped)")
    else:
        print(f"No stored session for {email} ({purged} cached results dropped)")
    return 0


async def remove_user(email: str, dry_run: bool = False) -> int:
    from portalbridge.service.runtime import get_runtime
    from portalbridge.storage.common import user_handle

    runtime = get_runtime()
    record = await runtime.users.get_user(email)
    if record is None:
        print(f"Error: unknown user {email}")
        return 1
    if dry_run:
        print(f"[DRY RUN] Would remove {email} with its stored session and cache")
        return 0
    await runtime.sessions.clear_stored_credentials(email)
    await runtime.cache.invalidate(user_handle(email))
    await runtime.users.remove_user(email)
    print(f"Removed user {email}")
    return 0


async def _run(args: argparse.Namespace) -> int:
    from portalbridge.service.runtime import get_runtime

    try:
        if args.command == "list":
            return await list_users()
        if args.command == "set-default":
            return await set_default(args.email, args.dry_run)
        if args.command == "clear-credentials":
            return await clear_credentials(args.email, args.dry_run)
        return await remove_user(args.email, args.dry_run)
    finally:
        await get_runtime().aclose()


def main():
    parser = argparse.ArgumentParser(
        description="Manage portal bridge users",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("list", help="List users; * marks the default")
    for name, help_text in (
        ("set-default", "Make a user the default"),
        ("clear-credentials", "Delete a user's stored session and cached results"),
        ("remove", "Remove a user entirely"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("email", help="User email")

    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(_run(args)))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Ban, unban, deactivate or reactivate a user account.

Usage:
    python scripts/moderate_user.py ban someone@example.com --reason "spam"
    python scripts/moderate_user.py unban someone_42
    python scripts/moderate_user.py deactivate someone@example.com
    python scripts/moderate_user.py activate 7d1c0c0e-...

The user is looked up by id, email or username. Banning or deactivating
revokes every refresh token of the account, so existing sessions end when
their access token expires.

Environment Variables:
    DATABASE_URL / USE_MEMORY_STORE: which store to operate on
    SHARED_FS_ROOT: location of the in-memory store state file
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ACTIONS = ("ban", "unban", "deactivate", "activate")


def moderate(
    action: str,
    identifier: str,
    *,
    reason: Optional[str] = None,
    dry_run: bool = False,
    runtime=None,
) -> dict:
    """Apply ``action`` to the account named by ``identifier``.

    Returns a dict with user_id, action and status ('applied', 'dry_run'
    or 'not_found').
    """
    # imported late so env vars are read after argument parsing
    from muxic.service.runtime import get_runtime

    runtime = runtime or get_runtime()
    user = runtime.store.get_user(identifier) or runtime.auth.find_by_identifier(
        identifier.lower() if "@" in identifier else identifier
    )
    if not user:
        print(f"No user matches {identifier!r}")
        return {"user_id": None, "action": action, "status": "not_found"}

    if dry_run:
        print(f"[DRY RUN] Would {action} {user.username} (id: {user.id})")
        return {"user_id": user.id, "action": action, "status": "dry_run"}

    if action == "ban":
        runtime.auth.set_ban(user.id, True, reason)
    elif action == "unban":
        runtime.auth.set_ban(user.id, False)
    elif action == "deactivate":
        runtime.auth.set_active(user.id, False)
    elif action == "activate":
        runtime.auth.set_active(user.id, True)
    else:
        raise ValueError(f"unknown action: {action}")

    print(f"Applied {action} to {user.username} (id: {user.id})")
    return {"user_id": user.id, "action": action, "status": "applied"}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Moderate a Muxic user account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("action", choices=ACTIONS)
    parser.add_argument("identifier", help="User id, email or username")
    parser.add_argument("--reason", help="Ban reason shown to the user at login")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if args.reason and args.action != "ban":
        parser.error("--reason only applies to ban")

    result = moderate(
        args.action, args.identifier, reason=args.reason, dry_run=args.dry_run
    )
    return 1 if result["status"] == "not_found" else 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""Session maintenance from the command line.

Usage:
    # Delete expired sessions and stale rate-limit counters:
    python scripts/sweep_sessions.py

    # Also revoke every session of one actor (e.g. after a credential leak):
    python scripts/sweep_sessions.py --revoke-actor user-123 --reason compromise

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: set to true to run against the local JSON state store
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

_REVOKE_REASONS = ("admin_revoke", "suspension", "compromise")


def run(revoke_actor: str | None = None, reason: str = "admin_revoke") -> dict:
    # Import here to avoid loading config before env vars are set
    from intelgate.service.runtime import get_runtime
    from intelgate.storage.models import RevocationReason

    runtime = get_runtime()
    result = dict(runtime.sweep())
    if revoke_actor:
        result["revoked"] = runtime.sessions.revoke_all_sessions(
            revoke_actor, RevocationReason(reason), performed_by="maintenance"
        )
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Sweep expired intelgate sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--revoke-actor",
        default=None,
        help="Revoke all sessions belonging to this actor id",
    )
    parser.add_argument(
        "--reason",
        choices=_REVOKE_REASONS,
        default="admin_revoke",
        help="Revocation reason recorded in the audit log",
    )
    args = parser.parse_args()

    try:
        result = run(args.revoke_actor, args.reason)
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    print(json.dumps(result))


if __name__ == "__main__":
    main()

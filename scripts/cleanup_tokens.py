#!/usr/bin/env python3
"""Delete session tokens that can no longer be used, across all accounts.

Login only tidies up the account signing in; run this periodically (cron,
systemd timer) so rows of accounts that never return are reclaimed too.

Usage:
    python scripts/cleanup_tokens.py
    python scripts/cleanup_tokens.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE / AUTH_STATE_ROOT: operate on a persisted memory store instead
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def cleanup(dry_run: bool = False) -> dict:
    """Remove stale token rows.

    Returns:
        dict with status ('deleted' or 'dry_run') and the number of rows
    """
    # Import here so env vars set by the caller are honoured
    from clinicauth.logging import set_correlation_id
    from clinicauth.service.runtime import get_runtime

    set_correlation_id()
    runtime = get_runtime()

    if dry_run:
        count = runtime.sessions.count_all_expired_tokens()
        print(f"[DRY RUN] Would delete {count} unusable token(s)")
        return {"status": "dry_run", "count": count}

    count = runtime.sessions.cleanup_all_expired_tokens()
    print(f"Deleted {count} unusable token(s)")
    return {"status": "deleted", "count": count}


def main():
    parser = argparse.ArgumentParser(
        description="Purge revoked and fully expired session tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only count the rows that would be deleted",
    )

    args = parser.parse_args()

    try:
        cleanup(args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Administratively unlock an account locked by repeated failed logins.

Usage:
    python scripts/unlock_account.py --email doctor@clinic.example
    python scripts/unlock_account.py --account-id 0b6c1c1e-... --dry-run

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


def unlock(email: str | None, account_id: str | None, dry_run: bool = False) -> dict:
    """Clear the failed-attempt counter and lock of one account.

    Returns:
        dict with account_id, status ('unlocked', 'dry_run' or 'not_found')
        and the security status observed before the change
    """
    # Import here so env vars set by the caller are honoured
    from clinicauth.logging import set_correlation_id
    from clinicauth.service.runtime import get_runtime

    set_correlation_id()
    runtime = get_runtime()

    account = (
        runtime.store.find_by_id(account_id)
        if account_id
        else runtime.store.find_by_email(email)
    )
    if account is None:
        print("Account not found")
        return {"account_id": account_id, "status": "not_found"}

    before = runtime.lockout.get_account_security_status(account.email)
    print(
        f"Account {account.id}: failed_attempts={before.failed_attempts} "
        f"locked={before.is_locked}"
        + (f" until {before.lock_until.isoformat()}" if before.lock_until else "")
    )

    if dry_run:
        print(f"[DRY RUN] Would unlock account {account.id}")
        return {"account_id": account.id, "status": "dry_run", "before": before}

    runtime.lockout.unlock_account(account.id)
    print(f"Unlocked account {account.id}")
    return {"account_id": account.id, "status": "unlocked", "before": before}


def main():
    parser = argparse.ArgumentParser(
        description="Unlock an account after brute-force lockout",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--email", help="Email of the account to unlock")
    target.add_argument("--account-id", help="Id of the account to unlock")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the current lock status without changing it",
    )

    args = parser.parse_args()

    email = args.email.strip() if args.email else None
    try:
        result = unlock(email, args.account_id, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "not_found":
        sys.exit(2)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Create or promote the root account and optionally pre-bind its wallet.

Usage:
    # Using environment variables:
    ROOT_USERNAME=root ROOT_PASSWORD=SecurePassword123! python scripts/bootstrap_root.py

    # Or with command line args:
    python scripts/bootstrap_root.py --username root --password SecurePassword123! \
        --wallet 0x52908400098527886E0F7030069857D2E4169EE7

Environment Variables:
    ROOT_USERNAME: Username for the root account
    ROOT_PASSWORD: Password for the root account (must meet complexity requirements)
    ROOT_WALLET_ADDRESS: Wallet address to bind to the root account (optional)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_root(
    username: str, password: str, wallet_address: str | None, dry_run: bool = False
) -> dict:
    # Import here to avoid loading config before env vars are set
    from walletgate.service.runtime import get_runtime
    from walletgate.service.signature import is_valid_address

    if wallet_address and not is_valid_address(wallet_address):
        raise ValueError(f"invalid wallet address: {wallet_address}")

    runtime = get_runtime()
    if dry_run:
        existing = runtime.store.get_root_user()
        print(
            f"[DRY RUN] Root account: {existing.username if existing else 'none'}; "
            f"would ensure {username}"
        )
        return {"user_id": existing.id if existing else None, "status": "dry_run"}

    user, status = runtime.accounts.ensure_root(
        username, password, wallet_address=wallet_address
    )
    return {
        "user_id": user.id,
        "username": user.username,
        "wallet_address": user.wallet_address,
        "status": status,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the walletgate root account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ROOT_USERNAME", "root"),
        help="Root username (or set ROOT_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ROOT_PASSWORD"),
        help="Root password (or set ROOT_PASSWORD env var)",
    )
    parser.add_argument(
        "--wallet",
        default=os.environ.get("ROOT_WALLET_ADDRESS"),
        help="Wallet address to bind (or set ROOT_WALLET_ADDRESS env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.password:
        print("Error: --password or ROOT_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/walletgate-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_root(args.username, args.password, args.wallet, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nRoot account created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to root!")
    elif result["status"] == "already_root":
        print("\nNo changes needed - user is already root.")
    if result.get("wallet_address"):
        print(f"  Wallet: {result['wallet_address']}")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Create a customer account for local testing and initial setup.

Usage:
    # Using environment variables:
    ACCOUNT_USERNAME=shopper ACCOUNT_EMAIL=shopper@example.com ACCOUNT_PASSWORD=Secret123 \
        python scripts/create_account.py

    # Or with command line args:
    python scripts/create_account.py --username shopper --email shopper@example.com --password Secret123

Environment Variables:
    ACCOUNT_USERNAME, ACCOUNT_EMAIL, ACCOUNT_PASSWORD: account fields
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    JWT_SECRET: signing secret; a throwaway one is generated when unset
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_account(username: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Validate the input and register the account.

    Returns:
        dict with status ('created', 'invalid', 'rejected' or 'dry_run') and a message
    """
    # Import here to avoid loading config before env vars are set
    from pydantic import ValidationError

    from commerce_auth.api.schemas import RegisterRequest
    from commerce_auth.service.runtime import get_runtime

    try:
        request = RegisterRequest(
            username=username, email=email, password=password, confirm_password=password
        )
    except ValidationError as exc:
        errors = "; ".join(err["msg"] for err in exc.errors())
        return {"status": "invalid", "message": errors}

    if dry_run:
        return {"status": "dry_run", "message": f"Would create account {request.username}"}

    runtime = get_runtime()
    result = runtime.auth.register(request.username, request.email, request.password)
    if not result.success:
        return {"status": "rejected", "message": result.message}
    return {
        "status": "created",
        "message": result.message,
        "account_id": result.account.id if result.account else None,
        "access_token": result.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Create a customer account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ACCOUNT_USERNAME"),
        help="Username (or set ACCOUNT_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ACCOUNT_EMAIL"),
        help="Email (or set ACCOUNT_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ACCOUNT_PASSWORD"),
        help="Password (or set ACCOUNT_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate the input without creating the account",
    )

    args = parser.parse_args()

    for name in ("username", "email", "password"):
        if not getattr(args, name):
            print(f"Error: --{name} or ACCOUNT_{name.upper()} environment variable required")
            sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    result = create_account(args.username, args.email, args.password, args.dry_run)

    if result["status"] == "created":
        print(f"\n{result['message']}")
        print(f"  Account ID: {result['account_id']}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "dry_run":
        print(f"[DRY RUN] {result['message']}")
    else:
        print(f"Error: {result['message']}")
        sys.exit(1)


if __name__ == "__main__":
    main()

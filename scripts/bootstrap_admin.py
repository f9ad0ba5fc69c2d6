#!/usr/bin/env python3
"""Bootstrap an administrator account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD=Str0ngPassword python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email ops@example.com --password Str0ngPassword \
        --first-name Ops --last-name Team --role staff

Environment Variables:
    ADMIN_EMAIL: Email for the administrator
    ADMIN_PASSWORD: Password for the administrator
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)

The super admin is configured through SUPER_ADMIN_EMAIL and
SUPER_ADMIN_PASSWORD and is never created here.
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from typing import Any, Dict


def bootstrap_admin(
    store: Any,
    hasher: Any,
    *,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    role: str = "admin",
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Create an administrator with the role's default permission matrix.

    Returns:
        dict with account_id, email and status ('created', 'already_admin'
        or 'dry_run')

    Raises:
        ValueError: if the password is too weak, the role is not
            administrative, or the email belongs to a customer account
    """
    from storefront_auth.service.permissions import get_default_permissions
    from storefront_auth.storage.models import Role

    admin_role = Role(role)
    if admin_role not in (Role.STAFF, Role.ADMIN):
        raise ValueError("role must be staff or admin")
    check = hasher.validate(password)
    if not check.valid:
        raise ValueError(check.message)

    normalized = email.strip().lower()
    existing = store.get_account_by_email(normalized)
    if existing is not None:
        if existing.role.is_administrative:
            print(f"Account {normalized} already exists as {existing.role.value} (id: {existing.id})")
            return {"account_id": existing.id, "email": normalized, "status": "already_admin"}
        raise ValueError(f"{normalized} belongs to a customer account")

    if dry_run:
        print(f"[DRY RUN] Would create {admin_role.value} account: {normalized}")
        return {"account_id": None, "email": normalized, "status": "dry_run"}

    account = store.create_account(
        normalized,
        first_name=first_name,
        last_name=last_name,
        role=admin_role,
        permissions=get_default_permissions(admin_role),
        is_email_verified=True,
    )
    store.save_password(account.id, hasher.hash(password), hasher.algorithm)
    print(f"Created {admin_role.value} account: {normalized} (id: {account.id})")
    return {"account_id": account.id, "email": normalized, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account for Storefront",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Administrator email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Administrator password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--first-name", default="Store")
    parser.add_argument("--last-name", default="Admin")
    parser.add_argument("--role", choices=["admin", "staff"], default="admin")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/storefront-bootstrap"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    # Imported late so the environment above is in place before settings load
    from storefront_auth.service.runtime import get_runtime
    from storefront_auth.storage.errors import ConstraintViolation

    runtime = get_runtime()
    try:
        result = bootstrap_admin(
            runtime.store,
            runtime.hasher,
            email=args.email,
            password=args.password,
            first_name=args.first_name,
            last_name=args.last_name,
            role=args.role,
            dry_run=args.dry_run,
        )
    except (ValueError, ConstraintViolation) as exc:
        print(f"Error: {exc}")
        return 1

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an administrator.")
    return 0


if __name__ == "__main__":
    sys.exit(main())

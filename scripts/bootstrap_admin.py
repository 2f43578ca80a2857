#!/usr/bin/env python3
"""Bootstrap the first super administrator.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Passw0rd!' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure-Passw0rd!'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet the password policy)
    SHARED_FS_ROOT: Where the store persists its state (default /srv/bastion)

The global ``super_admin`` assignment is made with no assigner, which the RBAC
engine reserves for system bootstrap.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

SUPER_ADMIN_ROLE = "super_admin"


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create the account if needed and give it a global super_admin assignment.

    Returns:
        dict with user_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from bastion.service.runtime import get_runtime

    runtime = get_runtime()
    role = runtime.rbac.role_for_name(SUPER_ADMIN_ROLE)
    if role is None:
        raise RuntimeError(f"role catalog has no {SUPER_ADMIN_ROLE} role")

    existing = runtime.store.get_principal_by_email(email)
    if existing and runtime.rbac.is_super_admin(existing.id):
        print(f"User {email} is already a super administrator (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "already_admin"}

    if dry_run:
        action = "promote existing user" if existing else "create admin user"
        print(f"[DRY RUN] Would {action}: {email}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    status = "promoted"
    principal = existing
    if principal is None:
        principal = await runtime.auth.register(email, password, role=SUPER_ADMIN_ROLE)
        status = "created"
    await runtime.rbac.assign_role_to_user(principal.id, role.id, None, None)

    print(f"{status.capitalize()} super administrator: {email} (id: {principal.id})")
    return {"user_id": principal.id, "email": email, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the first Bastion super administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    from bastion.service.auth import password_policy_violations

    missing = password_policy_violations(args.password)
    if missing:
        print("Error: password must contain " + ", ".join(missing))
        sys.exit(1)

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] in {"created", "promoted"}:
        print(f"\n  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print("  Log in through POST /v1/auth/login to obtain tokens.")
    elif result["status"] == "already_admin":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Create the first admin account, or promote an existing customer.

    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD='Secure#Pass1' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email ops@example.com --password 'Secure#Pass1' --dry-run

Flags fall back to ADMIN_EMAIL, ADMIN_NAME and ADMIN_PASSWORD. Without
DATABASE_URL the in-memory store under DATA_ROOT is used; token secrets are
generated for the run when they are not set.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

OUTCOMES = {
    "created": "Admin account created",
    "promoted": "Existing account promoted to admin",
    "already_admin": "Nothing to do: account is already an admin",
    "dry_run": "Dry run: no changes written",
}


async def bootstrap_admin(email: str, name: str, password: str, dry_run: bool = False) -> dict:
    """Return ``{"user_id", "email", "status"}`` where status is a key of OUTCOMES."""
    # settings are read on first use, after _prepare_environment ran
    from binpickup.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start()
    try:
        account = await runtime.store.get_account_by_email(email)
        if account is not None and account.role == "admin":
            status = "already_admin"
        elif dry_run:
            status = "dry_run"
        elif account is not None:
            await runtime.users.change_role(account.id, "admin")
            status = "promoted"
        else:
            account = await runtime.auth.admin_create_user(
                name=name, email=email, password=password, role="admin"
            )
            status = "created"
        return {"user_id": account.id if account else None, "email": email, "status": status}
    finally:
        await runtime.stop()


def _prepare_environment() -> None:
    for var in ("ACCESS_TOKEN_SECRET", "REFRESH_TOKEN_SECRET"):
        if not os.environ.get(var):
            os.environ[var] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("DATA_ROOT", "/tmp/binpickup-bootstrap")
        print("Note: DATABASE_URL unset, writing to the in-memory store")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for binpickup",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Administrator"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true", help="report without writing")
    args = parser.parse_args(argv)

    if not args.email or not args.password:
        parser.error("an email and a password are required (flags or ADMIN_* variables)")

    from binpickup.api.schemas import AdminCreateUserRequest

    try:
        request = AdminCreateUserRequest(
            name=args.name, email=args.email, password=args.password, role="admin"
        )
    except ValueError as exc:
        parser.error(str(exc))

    _prepare_environment()
    try:
        result = asyncio.run(
            bootstrap_admin(request.email, request.name, request.password, args.dry_run)
        )
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    print(f"{OUTCOMES[result['status']]}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()

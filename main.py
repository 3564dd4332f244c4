#!/usr/bin/env python3
"""
idcore -- administrative command line.

Usage:
  python main.py seed-roles
  python main.py create-admin admin@example.com 'S3cure!pass'
  python main.py create-admin admin@example.com 'S3cure!pass' --first-name Ada --last-name Lovelace

seed-roles creates every role in ALLOWED_ROLES that does not exist yet and
grants the system roles their default permissions. create-admin bootstraps
the first administrator: a confirmed account holding the Admin role, so it
can log in without a confirmation mail.

Environment variables (or .env):
  DATABASE_URL  SQLAlchemy URL of the identity database (default: sqlite:///idcore.db)
  SECRET_KEY    Required unless DEBUG=true
"""

import argparse
import sys
from typing import Optional

from auth import errors
from auth.errors import Result
from auth.models import User
from auth.passwords import hash_password, password_policy_errors
from auth.permissions import SystemRole
from auth.registry import PermissionRegistry
from auth.store import IdentityStore, new_security_stamp
from core.config import get_settings


def create_admin(
    store: IdentityStore,
    registry: PermissionRegistry,
    email: str,
    password: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> Result[User]:
    """Create a confirmed user holding the Admin role.

    System roles are seeded first, so this works against an empty database.
    """
    email = email.strip()
    if store.get_by_email(email) is not None:
        return Result.fail(errors.duplicate_email(email))
    reasons = password_policy_errors(password)
    if reasons:
        return Result.fail(errors.password_rejected(reasons))

    registry.seed_system_roles()
    admin_role = registry.find_role(SystemRole.ADMIN.value)
    if admin_role is None:
        return Result.fail(errors.role_not_found(SystemRole.ADMIN.value))

    user = User(
        email=email,
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        email_confirmed=True,
        security_stamp=new_security_stamp(),
    )
    user.id = store.create_user(user)
    assigned = registry.assign_user_to_role(user.id, admin_role.name)
    if not assigned.is_ok:
        return Result.fail(assigned.error)
    return Result.ok(user)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="idcore",
        description="Administrative tasks for the idcore identity database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed-roles
  python main.py create-admin admin@example.com 'S3cure!pass'
  DATABASE_URL=sqlite:///prod.db python main.py create-admin ops@example.com 'S3cure!pass'
        """,
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.add_parser("seed-roles", help="Create missing system roles and their default permissions")
    admin = commands.add_parser("create-admin", help="Create a confirmed user holding the Admin role")
    admin.add_argument("email", metavar="EMAIL", help="Login email of the new administrator")
    admin.add_argument("password", metavar="PASSWORD", help="Initial password (must pass the password policy)")
    admin.add_argument("--first-name", default=None, metavar="NAME", help="Optional first name")
    admin.add_argument("--last-name", default=None, metavar="NAME", help="Optional last name")
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    settings = get_settings()
    store = IdentityStore(settings.database_url)
    registry = PermissionRegistry(store, store, settings)
    try:
        if args.command == "seed-roles":
            registry.seed_system_roles()
            names = ", ".join(r.name for r in store.list_roles())
            print(f"Roles ready: {names}")
            return 0

        result = create_admin(store, registry, args.email, args.password, args.first_name, args.last_name)
        if not result.is_ok:
            print(f"  [!] {result.error.message}", file=sys.stderr)
            for reason in result.error.detail.get("reasons", []):
                print(f"      - {reason}", file=sys.stderr)
            return 1
        print(f"Administrator created: {result.value.email} ({result.value.id})")
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())

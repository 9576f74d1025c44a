#!/usr/bin/env python3
"""
Realm Admin -- operator CLI for first-run setup.

Usage:
  python main.py seed-roles
  python main.py create-admin --email root@example.com --name "Root" --password '...'
  python main.py create-admin --email ops@example.com --name "Ops" --password '...' --role admin

seed-roles is idempotent: existing roles keep their id and get their
permission list reset to the defaults from auth/permissions.py.

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the admin database (default: SQLite under auth/).
  SECRET_KEY    Not needed by the CLI itself, but read by the shared settings.
                Set DEBUG=true to run without one.
"""

import argparse
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import Role, User
from auth.permissions import SUPERADMIN_ROLE, default_roles
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings


def seed_roles(store: UserStore) -> list[str]:
    """Create or reset the default roles. Returns the role names touched."""
    touched: list[str] = []
    for name, permissions in default_roles().items():
        existing = store.get_role_by_name(name)
        if existing is None:
            store.create_role(Role(name=name, description=f"Default {name} role", permissions=permissions))
            print(f"  Created role '{name}' ({len(permissions)} permissions)")
        else:
            store.update_role_permissions(existing.id, permissions)
            print(f"  Reset role '{name}' ({len(permissions)} permissions)")
        touched.append(name)
    return touched


def create_admin(store: UserStore, email: str, name: str, password: str, role: str = SUPERADMIN_ROLE) -> Optional[str]:
    """Create a password user with the given role. Returns the new id, or None on failure."""
    role_row = store.get_role_by_name(role)
    if role_row is None:
        print(f"  [!] Role '{role}' does not exist. Run `python main.py seed-roles` first.")
        return None
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return None
    try:
        user_id = store.create_user(
            User(email=email, name=name, role_id=role_row.id, hashed_password=hash_password(password))
        )
    except IntegrityError:
        print(f"  [!] A user with email '{email}' already exists.")
        return None
    print(f"  Created {role} '{email}' ({user_id})")
    return user_id


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Realm Admin -- operator setup commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--database-url",
        help="Override DATABASE_URL for this command",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed-roles", help="Create or reset the default superadmin and admin roles")

    create = sub.add_parser("create-admin", help="Create a password-login admin account")
    create.add_argument("--email", required=True)
    create.add_argument("--name", required=True)
    create.add_argument("--password", required=True)
    create.add_argument("--role", default=SUPERADMIN_ROLE, help=f"Role name (default: {SUPERADMIN_ROLE})")

    args = parser.parse_args(argv)
    store = UserStore(args.database_url or get_settings().database_url)
    try:
        if args.command == "seed-roles":
            seed_roles(store)
            return 0
        user_id = create_admin(store, args.email, args.name, args.password, role=args.role)
        return 0 if user_id else 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())

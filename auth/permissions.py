"""
auth/permissions.py -- Permission catalogue and default role definitions.

Permission strings follow the <resource>.<action> convention, e.g.
"audit.read" or "admins.delete". The catalogue is the single place new
resources are declared; role seeding derives everything from it.
"""

from __future__ import annotations

PERMISSIONS: dict[str, list[str]] = {
    "admins": ["read", "create", "update", "delete"],
    "roles": ["read", "create", "update", "delete"],
    "audit": ["read", "update"],
}

SUPERADMIN_ROLE = "superadmin"
ADMIN_ROLE = "admin"


def all_permission_strings() -> list[str]:
    """Every permission in the catalogue, in declaration order."""
    return [f"{resource}.{action}" for resource, actions in PERMISSIONS.items() for action in actions]


def superadmin_permissions() -> list[str]:
    return all_permission_strings()


def admin_permissions() -> list[str]:
    return ["admins.read", "admins.create", "audit.read"]


def default_roles() -> dict[str, list[str]]:
    """Role name -> permission list for the roles created by `main.py seed-roles`."""
    return {
        SUPERADMIN_ROLE: superadmin_permissions(),
        ADMIN_ROLE: admin_permissions(),
    }

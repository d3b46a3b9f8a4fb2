from __future__ import annotations

from typing import Dict, List, Tuple

from warden.logging import get_logger
from warden.service.policy import EMPLOYEE_ROLE, OWNER_ROLE, SUPER_ADMIN_ROLE
from warden.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# name -> (level, description, assignable)
DEFAULT_ROLES: Dict[str, Tuple[int, str, bool]] = {
    SUPER_ADMIN_ROLE: (0, "Platform administrator with unrestricted access", False),
    OWNER_ROLE: (1, "Owner of an organization", True),
    EMPLOYEE_ROLE: (2, "Member of an organization", True),
}

DEFAULT_PERMISSIONS: Dict[str, Tuple[str, ...]] = {
    "users": ("create", "read", "update", "delete"),
    "companies": ("create", "read", "update", "delete", "assign_users"),
    "modules": ("activate", "deactivate", "grant_access", "revoke_access"),
    "invitations": ("send", "revoke"),
    "roles": ("create", "read", "update", "delete", "assign"),
}

OWNER_PERMISSIONS = (
    "users.read",
    "companies.read",
    "companies.update",
    "modules.activate",
    "modules.deactivate",
    "modules.grant_access",
    "modules.revoke_access",
    "invitations.send",
    "invitations.revoke",
)

DEFAULT_MODULES: Dict[str, str] = {
    "invoices": "Invoices",
    "expenses": "Expenses",
    "clients": "Clients",
    "reports": "Reports",
    "dashboard": "Dashboard",
    "settings": "Settings",
}


def permission_name(resource: str, action: str) -> str:
    return f"{resource}.{action}"


def seed_defaults(store) -> Dict[str, List[str]]:
    """Install the default role, permission and module catalog.

    Safe to run repeatedly: existing rows are left untouched and only missing
    entries are created. Returns the names created on this run.
    """
    created: Dict[str, List[str]] = {"roles": [], "permissions": [], "modules": []}

    roles = {}
    for name, (level, description, assignable) in DEFAULT_ROLES.items():
        role = store.get_role_by_name(name)
        if role is None:
            try:
                role = store.create_role(
                    name,
                    level=level,
                    description=description,
                    is_system=True,
                    is_assignable=assignable,
                )
                created["roles"].append(name)
            except ConstraintViolation:
                role = store.get_role_by_name(name)
        roles[name] = role

    permissions = {}
    for resource, actions in DEFAULT_PERMISSIONS.items():
        for action in actions:
            name = permission_name(resource, action)
            permission = store.get_permission_by_name(name)
            if permission is None:
                try:
                    permission = store.create_permission(
                        name, resource, action, description=f"{action} {resource}"
                    )
                    created["permissions"].append(name)
                except ConstraintViolation:
                    permission = store.get_permission_by_name(name)
            permissions[name] = permission

    for permission in permissions.values():
        store.attach_permission(roles[SUPER_ADMIN_ROLE].id, permission.id)
    for name in OWNER_PERMISSIONS:
        store.attach_permission(roles[OWNER_ROLE].id, permissions[name].id)

    for name, display_name in DEFAULT_MODULES.items():
        if store.get_module_by_name(name) is not None:
            continue
        try:
            store.create_module(name, display_name=display_name, is_core=True)
            created["modules"].append(name)
        except ConstraintViolation:
            continue

    logger.info(
        "catalog_seeded",
        roles_created=len(created["roles"]),
        permissions_created=len(created["permissions"]),
        modules_created=len(created["modules"]),
    )
    return created


__all__ = [
    "DEFAULT_MODULES",
    "DEFAULT_PERMISSIONS",
    "DEFAULT_ROLES",
    "OWNER_PERMISSIONS",
    "permission_name",
    "seed_defaults",
]

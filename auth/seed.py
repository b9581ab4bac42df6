"""
auth/seed.py -- Default roles, permissions and the MANAGER grant set.

Idempotent: rows that already exist are left untouched, so the seed can run
on every deploy. Role default permissions are only written for a role that
has none yet; an administrator's later edits are never overwritten.
"""

from __future__ import annotations

import logging

from auth.models import Permission, Role
from auth.store import AuthStore

logger = logging.getLogger("tenantauth.auth.seed")

DEFAULT_ROLES: tuple[tuple[str, str, str], ...] = (
    ("SUPER_ADMIN", "Super Administrator", "Full system access"),
    ("FRANCHISE_OWNER", "Franchise Owner", "Full franchise management"),
    ("MANAGER", "Manager", "Day-to-day operations"),
    ("CASHIER", "Cashier", "Sales and payments"),
    ("INVENTORY_CLERK", "Inventory Clerk", "Stock management"),
    ("VIEWER", "Viewer", "Read-only access"),
)

# (code, name, description, module)
DEFAULT_PERMISSIONS: tuple[tuple[str, str, str, str], ...] = (
    ("USER_VIEW", "View Users", "View user list and details", "user_management"),
    ("USER_CREATE", "Create Users", "Add new users", "user_management"),
    ("USER_EDIT", "Edit Users", "Modify user details", "user_management"),
    ("USER_DELETE", "Delete Users", "Remove users", "user_management"),
    ("USER_ASSIGN_ROLES", "Assign Roles", "Manage user roles", "user_management"),
    ("SALE_VIEW", "View Sales", "View sale transactions", "sales"),
    ("SALE_CREATE", "Create Sales", "Process sales", "sales"),
    ("SALE_VOID", "Void Sales", "Cancel sales", "sales"),
    ("SALE_REFUND", "Refund Sales", "Process refunds", "sales"),
    ("INVENTORY_VIEW", "View Inventory", "View stock levels", "inventory"),
    ("INVENTORY_ADJUST", "Adjust Inventory", "Modify stock levels", "inventory"),
    ("INVENTORY_TRANSFER", "Transfer Inventory", "Move stock between locations", "inventory"),
    ("REPORT_SALES", "Sales Reports", "View sales reports", "reports"),
    ("REPORT_INVENTORY", "Inventory Reports", "View inventory reports", "reports"),
    ("REPORT_FINANCIAL", "Financial Reports", "View financial reports", "reports"),
    ("SETTINGS_VIEW", "View Settings", "View system settings", "settings"),
    ("SETTINGS_EDIT", "Edit Settings", "Modify system settings", "settings"),
)

DEFAULT_ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "MANAGER": (
        "USER_VIEW",
        "SALE_VIEW",
        "SALE_CREATE",
        "SALE_VOID",
        "INVENTORY_VIEW",
        "REPORT_SALES",
        "REPORT_INVENTORY",
        "SETTINGS_VIEW",
    ),
}


def seed_defaults(store: AuthStore) -> dict[str, int]:
    """Insert missing default reference data. Returns counts of rows added."""
    added = {"roles": 0, "permissions": 0, "role_grants": 0}

    for code, name, description in DEFAULT_ROLES:
        if store.get_role(code) is None:
            store.create_role(Role(code=code, name=name, description=description, is_system=True))
            added["roles"] += 1

    for code, name, description, module in DEFAULT_PERMISSIONS:
        if store.get_permission(code) is None:
            store.create_permission(Permission(code=code, name=name, description=description, module=module))
            added["permissions"] += 1

    for role_code, codes in DEFAULT_ROLE_PERMISSIONS.items():
        if store.get_role_permission_codes(role_code):
            continue
        store.set_role_permissions(role_code, codes)
        added["role_grants"] += len(codes)

    logger.info(
        "Seed complete: %d roles, %d permissions, %d role grants added",
        added["roles"],
        added["permissions"],
        added["role_grants"],
    )
    return added

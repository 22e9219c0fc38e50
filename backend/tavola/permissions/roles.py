# Overview: Built-in roles and their default permission sets.

from .definitions import PERMISSION_DEFINITIONS


class UserRole:
    SUPER_ADMIN = "SUPER_ADMIN"
    BRANCH_MANAGER = "BRANCH_MANAGER"
    CASHIER = "CASHIER"
    KITCHEN_STAFF = "KITCHEN_STAFF"
    CALL_CENTER = "CALL_CENTER"
    CUSTOM = "CUSTOM"

    ALL = (SUPER_ADMIN, BRANCH_MANAGER, CASHIER, KITCHEN_STAFF, CALL_CENTER, CUSTOM)


DEFAULT_ROLE_PERMISSIONS = {
    UserRole.SUPER_ADMIN: [perm[0] for perm in PERMISSION_DEFINITIONS],
    UserRole.BRANCH_MANAGER: [
        "NAV_DASHBOARD",
        "NAV_POS",
        "NAV_KDS",
        "NAV_INVENTORY",
        "NAV_REPORTS",
        "NAV_MENU_MANAGER",
        "DATA_VIEW_REVENUE",
        "DATA_VIEW_COSTS",
        "DATA_VIEW_STOCK_LEVELS",
        "OP_PLACE_ORDER",
        "OP_VOID_ORDER",
        "OP_APPLY_DISCOUNT",
        "OP_TRANSFER_STOCK",
        "OP_ADJUST_STOCK",
    ],
    UserRole.CASHIER: [
        "NAV_POS",
        "OP_PLACE_ORDER",
    ],
    UserRole.KITCHEN_STAFF: [
        "NAV_KDS",
    ],
    UserRole.CALL_CENTER: [
        "NAV_CALL_CENTER",
        "NAV_CRM",
        "OP_PLACE_ORDER",
        "DATA_VIEW_CUSTOMER_SENSITIVE",
    ],
    UserRole.CUSTOM: [],
}

# Roles allowed to run assistant actions, whatever their per-user grants.
AI_ACTION_ROLES = {UserRole.SUPER_ADMIN, UserRole.BRANCH_MANAGER}

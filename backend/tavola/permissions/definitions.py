# Overview: All permission definitions organized by category.
# Each permission is defined as: (code, name, description, category)

from __future__ import annotations

from .categories import PermissionCategory


# -- NAVIGATION & VIEW ACCESS --

NAVIGATION_PERMISSIONS = [
    ("NAV_DASHBOARD", "Dashboard", "Open the branch dashboard", PermissionCategory.NAVIGATION),
    ("NAV_ADMIN_DASHBOARD", "Admin Dashboard", "Open the cross-branch admin dashboard", PermissionCategory.NAVIGATION),
    ("NAV_POS", "Point of Sale", "Open the POS screen", PermissionCategory.NAVIGATION),
    ("NAV_KDS", "Kitchen Display", "Open the kitchen display", PermissionCategory.NAVIGATION),
    ("NAV_CALL_CENTER", "Call Center", "Open the call center", PermissionCategory.NAVIGATION),
    ("NAV_INVENTORY", "Inventory", "View inventory items and movements", PermissionCategory.NAVIGATION),
    ("NAV_FINANCE", "Finance", "View the chart of accounts and journal", PermissionCategory.NAVIGATION),
    ("NAV_REPORTS", "Reports", "Open reports and analysis", PermissionCategory.NAVIGATION),
    ("NAV_CRM", "CRM", "View and create customers", PermissionCategory.NAVIGATION),
    ("NAV_MENU_MANAGER", "Menu Manager", "View menu items and recipes", PermissionCategory.NAVIGATION),
    ("NAV_AI_ASSISTANT", "AI Assistant", "Preview assistant-proposed actions", PermissionCategory.NAVIGATION),
    ("NAV_SETTINGS", "Settings", "Open settings and sync status", PermissionCategory.NAVIGATION),
    ("NAV_SECURITY", "Security", "Open the audit and forensics view", PermissionCategory.NAVIGATION),
]


# -- DATA & FINANCIAL VISIBILITY --

DATA_PERMISSIONS = [
    ("DATA_VIEW_REVENUE", "View Revenue", "See revenue figures", PermissionCategory.DATA),
    ("DATA_VIEW_COSTS", "View Costs", "See unit costs and COGS", PermissionCategory.DATA),
    ("DATA_VIEW_PROFITS", "View Profits", "See margins and profit", PermissionCategory.DATA),
    ("DATA_VIEW_CUSTOMER_SENSITIVE", "View Customer Contact", "See customer phone and address", PermissionCategory.DATA),
    ("DATA_VIEW_STOCK_LEVELS", "View Stock Levels", "See per-warehouse quantities", PermissionCategory.DATA),
]


# -- OPERATIONAL ACTIONS --

OPERATION_PERMISSIONS = [
    ("OP_VOID_ORDER", "Void Order", "Cancel a placed order", PermissionCategory.OPERATIONS),
    ("OP_APPLY_DISCOUNT", "Apply Discount", "Place orders with a discount", PermissionCategory.OPERATIONS),
    ("OP_PROCESS_REFUND", "Process Refund", "Refund a paid order", PermissionCategory.OPERATIONS),
    ("OP_TRANSFER_STOCK", "Transfer Stock", "Move stock between warehouses", PermissionCategory.OPERATIONS),
    ("OP_ADJUST_STOCK", "Adjust Stock", "Adjust, receive and waste stock", PermissionCategory.OPERATIONS),
    ("OP_PLACE_ORDER", "Place Order", "Place POS and call center orders", PermissionCategory.OPERATIONS),
    ("OP_CLOSE_DAY", "Close Day", "Close financial periods and post adjustments", PermissionCategory.OPERATIONS),
]


# -- CONFIGURATION --

CONFIGURATION_PERMISSIONS = [
    ("CFG_MANAGE_USERS", "Manage Users", "Create users and change overrides", PermissionCategory.CONFIGURATION),
    ("CFG_MANAGE_ROLES", "Manage Roles", "Change role permission sets", PermissionCategory.CONFIGURATION),
    ("CFG_EDIT_MENU_PRICING", "Edit Menu & Pricing", "Create and edit menu items, prices and recipes", PermissionCategory.CONFIGURATION),
    ("CFG_EDIT_FLOOR_PLAN", "Edit Floor Plan", "Edit tables and zones", PermissionCategory.CONFIGURATION),
    ("CFG_MANAGE_BRANCHES", "Manage Branches", "Create branches and warehouses", PermissionCategory.CONFIGURATION),
]


PERMISSION_DEFINITIONS = (
    NAVIGATION_PERMISSIONS
    + DATA_PERMISSIONS
    + OPERATION_PERMISSIONS
    + CONFIGURATION_PERMISSIONS
)

ALL_PERMISSION_CODES = frozenset(perm[0] for perm in PERMISSION_DEFINITIONS)


def get_permission_definition(code: str) -> dict | None:
    for perm in PERMISSION_DEFINITIONS:
        if perm[0] == code:
            return {"code": perm[0], "name": perm[1], "description": perm[2], "category": perm[3]}
    return None

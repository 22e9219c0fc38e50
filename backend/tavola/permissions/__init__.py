# Overview: Permission system package (closed AppPermission set and role defaults).

from .categories import PermissionCategory
from .definitions import (
    ALL_PERMISSION_CODES,
    PERMISSION_DEFINITIONS,
    NAVIGATION_PERMISSIONS,
    DATA_PERMISSIONS,
    OPERATION_PERMISSIONS,
    CONFIGURATION_PERMISSIONS,
    get_permission_definition,
)
from .roles import DEFAULT_ROLE_PERMISSIONS, AI_ACTION_ROLES, UserRole

__all__ = [
    "PermissionCategory",
    "ALL_PERMISSION_CODES",
    "PERMISSION_DEFINITIONS",
    "NAVIGATION_PERMISSIONS",
    "DATA_PERMISSIONS",
    "OPERATION_PERMISSIONS",
    "CONFIGURATION_PERMISSIONS",
    "get_permission_definition",
    "DEFAULT_ROLE_PERMISSIONS",
    "AI_ACTION_ROLES",
    "UserRole",
]

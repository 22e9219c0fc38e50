# Overview: Effective permission resolution and the explicit actor context.

"""
Permission Checking

Effective permissions = role defaults + active GRANT overrides - active DENY
overrides.

DESIGN PRINCIPLES:
- Fail closed: deny by default, require an explicit grant
- Resolve once per request into an ActorContext and pass it explicitly;
  services never read ambient session state
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..extensions import db
from ..models import User, UserPermissionOverride
from ..permissions import ALL_PERMISSION_CODES, DEFAULT_ROLE_PERMISSIONS, UserRole


class PermissionDeniedError(Exception):
    """Raised when the actor lacks a required permission."""
    def __init__(self, permission_code: str, message: str | None = None):
        self.permission_code = permission_code
        super().__init__(message or f"Permission denied: {permission_code}")


class BranchScopeError(PermissionDeniedError):
    """Raised when a branch-scoped actor touches another branch's data."""
    def __init__(self, message: str = "Forbidden: resource belongs to another branch"):
        super().__init__("BRANCH_SCOPE", message)


@dataclass(frozen=True)
class ActorContext:
    """
    Who is doing something, from where, with which rights.

    Built once per request by @require_auth (or by the CLI / sync replay for
    system work) and passed into every service that guards or audits.
    """
    user_id: int | None
    name: str
    role: str
    branch_id: int | None
    device_id: str | None = None
    permissions: frozenset = field(default_factory=frozenset)

    @property
    def is_super_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "role": self.role,
            "branch_id": self.branch_id,
            "device_id": self.device_id,
            "permissions": sorted(self.permissions),
        }


def get_user_permissions(user: User) -> set[str]:
    """Role defaults plus active per-user overrides."""
    permission_codes: set[str] = set(DEFAULT_ROLE_PERMISSIONS.get(user.role, ()))

    overrides = db.session.query(UserPermissionOverride).filter_by(
        user_id=user.id,
        is_active=True,
    ).order_by(UserPermissionOverride.id.asc()).all()

    for override in overrides:
        if override.override_type == "GRANT":
            permission_codes.add(override.permission_code)
        elif override.override_type == "DENY":
            permission_codes.discard(override.permission_code)

    return permission_codes


def build_actor(user: User, *, device_id: str | None = None, branch_id: int | None = None) -> ActorContext:
    """
    Resolve a user into an ActorContext.

    branch_id selects the working branch for users without a home branch
    (SUPER_ADMIN); branch-scoped users always act in their own branch.
    """
    effective_branch = user.branch_id
    if user.role == UserRole.SUPER_ADMIN and branch_id is not None:
        effective_branch = branch_id

    return ActorContext(
        user_id=user.id,
        name=user.name,
        role=user.role,
        branch_id=effective_branch,
        device_id=device_id,
        permissions=frozenset(get_user_permissions(user)),
    )


def has_permission(actor: ActorContext, permission_code: str) -> bool:
    return permission_code in actor.permissions


def require_permission(actor: ActorContext, permission_code: str) -> None:
    if not has_permission(actor, permission_code):
        raise PermissionDeniedError(permission_code)


def require_branch_scope(actor: ActorContext, branch_id: int | None) -> None:
    """SUPER_ADMIN may act on any branch; everyone else only on their own."""
    if actor.is_super_admin:
        return
    if actor.branch_id is not None and branch_id is not None and actor.branch_id != branch_id:
        raise BranchScopeError()


def set_permission_override(
    *,
    user_id: int,
    permission_code: str,
    override_type: str,
    actor: ActorContext,
) -> UserPermissionOverride:
    """
    GRANT or DENY one permission for a user, replacing any active override
    for the same code. Caller commits.
    """
    if permission_code not in ALL_PERMISSION_CODES:
        raise ValueError(f"Unknown permission: {permission_code}")
    if override_type not in {"GRANT", "DENY"}:
        raise ValueError("override_type must be GRANT or DENY")

    user = db.session.query(User).filter_by(id=user_id).first()
    if not user:
        raise ValueError("User not found")

    existing = db.session.query(UserPermissionOverride).filter_by(
        user_id=user_id,
        permission_code=permission_code,
        is_active=True,
    ).all()
    for row in existing:
        row.is_active = False

    override = UserPermissionOverride(
        user_id=user_id,
        permission_code=permission_code,
        override_type=override_type,
        is_active=True,
        created_by_user_id=actor.user_id,
    )
    db.session.add(override)
    db.session.flush()
    return override


def clear_permission_override(*, user_id: int, permission_code: str) -> int:
    """Deactivate active overrides for a code. Returns how many. Caller commits."""
    rows = db.session.query(UserPermissionOverride).filter_by(
        user_id=user_id,
        permission_code=permission_code,
        is_active=True,
    ).all()
    for row in rows:
        row.is_active = False
    db.session.flush()
    return len(rows)

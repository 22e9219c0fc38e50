# Overview: Staff accounts: password hashing, user creation and login.

"""
Authentication Service

Every mutation in the node is attributed to a user, so the login path is the
root of the audit trail.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost from BCRYPT_ROUNDS, default 12)
- Minimum 8 characters, upper/lower/digit/special required
- Session tokens managed separately (see session_service.py)
"""

import bcrypt
import re
from flask import current_app

from ..extensions import db
from ..models import Branch, User
from ..permissions import UserRole
from . import audit_service
from .audit_service import AuditEventType
from tavola.time_utils import utcnow


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


class UserError(Exception):
    """Raised when a user cannot be created or updated."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """Validate strength, then bcrypt-hash with the configured cost."""
    validate_password_strength(password)
    rounds = int(current_app.config.get("BCRYPT_ROUNDS", 12))
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    # bcrypt.checkpw raises ValueError on a malformed stored hash
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(
    *,
    username: str,
    name: str,
    password: str,
    role: str,
    branch_id: int | None = None,
    email: str | None = None,
    actor=None,
) -> User:
    """
    Create a staff user.

    Non-SUPER_ADMIN users must belong to a branch; the branch scopes which
    orders they may touch. With an actor (a request, not the CLI) the new
    account is audited as a security change in the same commit.

    Raises:
        UserError: duplicate username, unknown role or branch
        PasswordValidationError: weak password
    """
    username = (username or "").strip()
    if not username:
        raise UserError("username is required")
    if role not in UserRole.ALL:
        raise UserError(f"Unknown role: {role}")

    if db.session.query(User).filter_by(username=username).first():
        raise UserError("Username already exists")

    if branch_id is not None:
        if not db.session.query(Branch).filter_by(id=branch_id).first():
            raise UserError("Branch not found")
    elif role != UserRole.SUPER_ADMIN:
        raise UserError("branch_id is required for branch-scoped roles")

    user = User(
        username=username,
        name=(name or username).strip(),
        email=email,
        password_hash=hash_password(password),
        role=role,
        branch_id=branch_id,
    )

    db.session.add(user)
    if actor is not None:
        db.session.flush()
        audit_service.record(
            AuditEventType.SECURITY_PERMISSION_CHANGE,
            actor=actor,
            after={"user": user.to_dict()},
            reason="User created",
            branch_id=branch_id,
        )
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> User | None:
    """
    Return the active user for valid credentials, else None.
    Updates last_login_at on success.
    """
    user = db.session.query(User).filter(
        User.username == username,
        User.is_active.is_(True),
    ).first()

    if not user:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None

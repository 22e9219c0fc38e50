# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

"""
Authentication API routes

- Bearer session tokens (see session_service); the device id given at login
  is bound to the session and stamped on audit records.
- Every successful login is recorded as SECURITY_LOGIN.
- Per-user permission overrides are recorded as SECURITY_PERMISSION_CHANGE.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..extensions import db
from ..services import audit_service
from ..services import auth_service
from ..services import session_service
from ..services import permission_service
from ..services.audit_service import AuditEventType
from ..decorators import require_auth, require_permission
from .errors import json_error


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Body: {"username", "password", "device_id"?}. X-Device-Id is used when
    device_id is absent.
    """
    try:
        data = request.get_json(silent=True) or {}
        username = (data.get("username") or "").strip()
        password = data.get("password")

        if not all([username, password]):
            return jsonify({"error": "username and password required"}), 400

        user = auth_service.authenticate(username, password)
        if not user:
            current_app.logger.info("Failed login for %s from %s", username, request.remote_addr)
            return jsonify({"error": "Invalid credentials"}), 401

        device_id = (data.get("device_id") or request.headers.get("X-Device-Id") or "").strip() or None
        session, token = session_service.create_session(user_id=user.id, device_id=device_id)

        actor = permission_service.build_actor(user, device_id=device_id)
        audit_service.record(
            AuditEventType.SECURITY_LOGIN,
            actor=actor,
            metadata={"ip_address": request.remote_addr, "user_agent": request.headers.get("User-Agent")},
        )
        db.session.commit()

        return jsonify({
            "user": user.to_dict(),
            "permissions": sorted(actor.permissions),
            "token": token,
            "session": session.to_dict(),
            "message": "Login successful"
        }), 200

    except Exception as e:
        return json_error(e, action="login user")


@auth_bp.post("/logout")
def logout_route():
    """Revoke the bearer token."""
    try:
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authorization header required"}), 401

        token = auth_header.split(" ", 1)[1]

        if not session_service.revoke_session(token):
            return jsonify({"error": "Invalid or expired token"}), 401

        return jsonify({"message": "Logout successful"}), 200

    except Exception as e:
        return json_error(e, action="logout user")


@auth_bp.get("/me")
@require_auth
def me_route():
    """Current user plus the resolved actor context (branch, device, permissions)."""
    return jsonify({
        "user": g.current_user.to_dict(),
        "actor": g.actor.to_dict(),
    }), 200


@auth_bp.put("/users/<int:user_id>/permissions/<permission_code>")
@require_auth
@require_permission("CFG_MANAGE_ROLES")
def set_permission_override_route(user_id: int, permission_code: str):
    """
    Body: {"override_type": "GRANT" | "DENY" | "CLEAR", "reason"?}.
    """
    try:
        data = request.get_json(silent=True) or {}
        override_type = str(data.get("override_type") or "").upper()

        if override_type == "CLEAR":
            cleared = permission_service.clear_permission_override(
                user_id=user_id, permission_code=permission_code
            )
            after = {"user_id": user_id, "permission_code": permission_code, "override_type": None}
            body = {"cleared": cleared}
        else:
            override = permission_service.set_permission_override(
                user_id=user_id,
                permission_code=permission_code,
                override_type=override_type,
                actor=g.actor,
            )
            after = override.to_dict()
            body = {"override": after}

        audit_service.record(
            AuditEventType.SECURITY_PERMISSION_CHANGE,
            actor=g.actor,
            after=after,
            reason=data.get("reason"),
        )
        db.session.commit()
        return jsonify(body), 200

    except ValueError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        return json_error(e, action="change permission override")

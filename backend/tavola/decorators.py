# Overview: Request and permission decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services import session_service, permission_service


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user') and hasattr(g, 'actor')


def require_auth(f):
    """
    Require a bearer session and establish the actor context.

    Sets on flask.g:
    - g.current_user: the authenticated User
    - g.session_context: the SessionContext
    - g.actor: ActorContext (user, role, branch, device, effective permissions)

    The device id comes from the session, or from X-Device-Id when the session
    has none. SUPER_ADMIN may select a working branch with X-Branch-Id.

    Returns 401 when the header is missing or the token is invalid, expired,
    revoked or belongs to a deactivated user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]

        context = session_service.validate_session(token)

        if not context:
            return jsonify({"error": "Invalid or expired token"}), 401

        branch_header = (request.headers.get("X-Branch-Id") or "").strip()
        branch_id = None
        if branch_header:
            if not branch_header.isdigit():
                return jsonify({"error": "X-Branch-Id must be an integer"}), 400
            branch_id = int(branch_header)

        device_id = context.device_id or (request.headers.get("X-Device-Id") or "").strip() or None

        g.current_user = context.user
        g.session_context = context
        g.actor = permission_service.build_actor(context.user, device_id=device_id, branch_id=branch_id)

        return f(*args, **kwargs)

    return decorated_function


def require_permission(permission_code: str):
    """Require a specific permission on g.actor. Use below @require_auth."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if not permission_service.has_permission(g.actor, permission_code):
                return jsonify({
                    "error": "Permission denied",
                    "required_permission": permission_code,
                    "message": f"Missing permission: {permission_code}"
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def require_any_permission(*permission_codes):
    """Require any of the specified permissions."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if not any(permission_service.has_permission(g.actor, code) for code in permission_codes):
                return jsonify({
                    "error": "Permission denied",
                    "required_permissions": list(permission_codes),
                    "message": f"Requires any of: {', '.join(permission_codes)}"
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator

# Overview: Maps service exceptions to JSON error responses for every blueprint.

from flask import current_app, jsonify

from ..extensions import db
from ..validation import ConflictError, NotFoundError, ValidationError
from ..services.backend_client import UpstreamError
from ..services.permission_service import PermissionDeniedError


def json_error(exc: Exception, *, action: str):
    """
    Roll back the request's transaction and map `exc` to (body, status).

    ValidationError 400, PermissionDeniedError 403, NotFoundError 404,
    ConflictError 409, upstream failures 502; anything else is logged and
    reported as 500.
    """
    db.session.rollback()

    if isinstance(exc, PermissionDeniedError):
        return jsonify({
            "error": "Permission denied",
            "required_permission": exc.permission_code,
            "message": str(exc),
        }), 403
    if isinstance(exc, NotFoundError):
        return jsonify({"error": str(exc.args[0]) if exc.args else "Not found"}), 404
    if isinstance(exc, ConflictError):
        body = {"error": str(exc)}
        details = getattr(exc, "details", None)
        if details:
            body["details"] = details
        return jsonify(body), 409
    if isinstance(exc, ValidationError):
        body = {"error": str(exc)}
        details = getattr(exc, "details", None)
        if details:
            body["details"] = details
        return jsonify(body), 400
    if isinstance(exc, UpstreamError):
        current_app.logger.warning("Upstream failure during %s: %s", action, exc)
        return jsonify({"error": "Upstream backend error", "details": str(exc)}), 502

    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "Internal server error"}), 500

# Overview: Flask API routes for the audit trail and signature verification.

from flask import Blueprint, request, jsonify, g

from ..services import audit_service
from ..validation import ValidationError
from ..decorators import require_auth, require_permission
from tavola.time_utils import parse_iso_datetime
from .errors import json_error


audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit-logs")


@audit_bp.get("")
@require_auth
@require_permission("NAV_SECURITY")
def list_logs_route():
    """
    Most recent first. Filters: event_type, user_id, start, end (ISO-8601),
    branch_id (SUPER_ADMIN only; others always see their own branch).
    Each record carries "tampered" when its signature no longer matches.
    """
    try:
        branch_id = request.args.get("branch_id", type=int)
        if not g.actor.is_super_admin:
            branch_id = g.actor.branch_id
        try:
            start = parse_iso_datetime(request.args.get("start"))
            end = parse_iso_datetime(request.args.get("end"))
        except ValueError:
            raise ValidationError("start/end must be ISO-8601")

        logs = audit_service.list_logs(
            branch_id=branch_id,
            event_type=request.args.get("event_type"),
            user_id=request.args.get("user_id", type=int),
            start=start,
            end=end,
            limit=request.args.get("limit", default=100, type=int),
            offset=request.args.get("offset", default=0, type=int),
        )
        return jsonify({"logs": logs, "count": len(logs)}), 200

    except Exception as e:
        return json_error(e, action="list audit logs")


@audit_bp.get("/<log_id>/verify")
@require_auth
@require_permission("NAV_SECURITY")
def verify_log_route(log_id: str):
    """Re-compute the signature of one record (row id or uuid)."""
    try:
        log = audit_service.get_log(log_id)
        if log is None:
            return jsonify({"error": "Audit log not found"}), 404
        if not g.actor.is_super_admin and log.branch_id != g.actor.branch_id:
            return jsonify({"error": "Audit log not found"}), 404
        return jsonify({"id": log.log_uid, "seq": log.id, "valid": audit_service.verify(log)}), 200

    except Exception as e:
        return json_error(e, action="verify audit log")

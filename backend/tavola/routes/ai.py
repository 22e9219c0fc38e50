# Overview: Flask API routes for previewing and executing assistant actions.

from flask import Blueprint, request, jsonify, g

from ..extensions import db
from ..services import ai_action_service
from ..services.ai_action_service import ActionBlockedError
from ..decorators import require_auth, require_permission
from .errors import json_error


ai_bp = Blueprint("ai", __name__, url_prefix="/api/ai")


@ai_bp.post("/actions/preview")
@require_auth
@require_permission("NAV_AI_ASSISTANT")
def preview_route():
    """
    Guard an action against live data. Nothing is changed.

    Body: the action, e.g. {"type": "UPDATE_MENU_PRICE", "item_id": 3,
    "price_cents": 2500}, or {"actionType": ..., "parameters": {...}}.
    """
    try:
        guarded = ai_action_service.preview_action(request.get_json(silent=True) or {}, actor=g.actor)
        return jsonify({"guarded": guarded.to_dict(), "allowed": guarded.can_execute}), 200

    except Exception as e:
        return json_error(e, action="preview AI action")


@ai_bp.post("/actions/execute")
@require_auth
@require_permission("NAV_AI_ASSISTANT")
def execute_route():
    """
    Re-guard and apply. 400 when the guard blocks it, 403 without the
    permission the guard names.
    """
    try:
        data = request.get_json(silent=True) or {}
        action = data.get("action") if isinstance(data.get("action"), dict) else data
        guarded, result = ai_action_service.execute_action(
            action,
            actor=g.actor,
            explanation=data.get("explanation"),
        )
        return jsonify({
            "success": True,
            "message": "Action executed and logged",
            "guarded": guarded.to_dict(),
            "result": result,
        }), 200

    except ActionBlockedError as e:
        db.session.rollback()
        return jsonify({
            "error": "ACTION_GUARD_BLOCKED",
            "message": str(e),
            "guarded": e.guarded.to_dict(),
        }), 400
    except Exception as e:
        return json_error(e, action="execute AI action")

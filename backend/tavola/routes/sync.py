# Overview: Flask API routes for the offline replication queue.

from flask import Blueprint, request, jsonify

from ..extensions import db
from ..services import sync_service
from ..services.sync_service import SyncError
from ..decorators import require_auth, require_permission
from .errors import json_error


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.get("/stats")
@require_auth
def stats_route():
    try:
        return jsonify(sync_service.get_queue_stats()), 200

    except Exception as e:
        return json_error(e, action="read sync stats")


@sync_bp.get("/items")
@require_auth
@require_permission("NAV_SETTINGS")
def list_items_route():
    try:
        items = sync_service.list_items(
            status=(request.args.get("status") or "").upper() or None,
            limit=request.args.get("limit", default=100, type=int),
        )
        return jsonify({"items": [i.to_dict() for i in items], "count": len(items)}), 200

    except Exception as e:
        return json_error(e, action="list sync items")


@sync_bp.post("/drain")
@require_auth
def drain_route():
    """Replay what is due now. Safe to call repeatedly."""
    try:
        result = sync_service.drain_queue()
        return jsonify({"result": result, "stats": sync_service.get_queue_stats()}), 200

    except Exception as e:
        return json_error(e, action="drain sync queue")


@sync_bp.post("/items/<int:item_id>/retry")
@require_auth
@require_permission("NAV_SETTINGS")
def retry_route(item_id: int):
    """Move a FAILED item back to the queue and drain."""
    try:
        item = sync_service.retry_item(item_id)
        result = sync_service.drain_queue()
        db.session.refresh(item)
        return jsonify({"item": item.to_dict(), "result": result}), 200

    except SyncError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        return json_error(e, action="retry sync item")

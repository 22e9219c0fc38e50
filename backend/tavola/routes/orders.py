# Overview: Flask API routes for POS orders; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g

from ..services import order_service
from ..services.permission_service import require_branch_scope
from ..decorators import require_auth, require_permission, require_any_permission
from .errors import json_error


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@require_auth
@require_permission("OP_PLACE_ORDER")
def place_order_route():
    """
    Place an order.

    Idempotency-Key (header or body "idempotency_key") makes retries safe:
    the same key and body return the original order with 200; the same key
    with a different body is a 409.

    Returns 201 with the order. sync_status tells whether the upstream has
    accepted it yet (SYNCED) or it is still queued (PENDING).
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "Invalid JSON payload"}), 400

        idempotency_key = request.headers.get("Idempotency-Key") or data.get("idempotency_key")
        if idempotency_key:
            existing = order_service.find_by_idempotency_key(idempotency_key)
        else:
            existing = None

        order = order_service.place_order(data, actor=g.actor, idempotency_key=idempotency_key)

        status = 200 if existing is not None and existing.id == order.id else 201
        return jsonify({"order": order.to_dict()}), status

    except Exception as e:
        return json_error(e, action="place order")


@orders_bp.get("")
@require_auth
@require_any_permission("NAV_POS", "NAV_KDS", "NAV_CALL_CENTER")
def list_orders_route():
    """Orders of the actor's branch (SUPER_ADMIN: ?branch_id=, or all)."""
    try:
        branch_id = request.args.get("branch_id", type=int)
        if not g.actor.is_super_admin:
            branch_id = g.actor.branch_id

        orders = order_service.list_orders(
            branch_id=branch_id,
            status=request.args.get("status"),
            sync_status=request.args.get("sync_status"),
            limit=request.args.get("limit", default=100, type=int),
        )
        return jsonify({"orders": [o.to_dict() for o in orders], "count": len(orders)}), 200

    except Exception as e:
        return json_error(e, action="list orders")


@orders_bp.get("/<int:order_id>")
@require_auth
@require_any_permission("NAV_POS", "NAV_KDS", "NAV_CALL_CENTER")
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        if order is None:
            return jsonify({"error": "Order not found"}), 404
        require_branch_scope(g.actor, order.branch_id)
        return jsonify({"order": order.to_dict()}), 200

    except Exception as e:
        return json_error(e, action="get order")


@orders_bp.post("/<int:order_id>/status")
@require_auth
@require_any_permission("NAV_POS", "NAV_KDS")
def update_status_route(order_id: int):
    """
    Body: {"status": "...", "notes"?}. Cancelling needs OP_VOID_ORDER (or a
    manager role) and a reason in notes.
    """
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.update_order_status(
            order_id,
            data.get("status"),
            actor=g.actor,
            notes=data.get("notes") or data.get("reason"),
        )
        return jsonify({"order": order.to_dict()}), 200

    except Exception as e:
        return json_error(e, action="update order status")

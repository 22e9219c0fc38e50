# Overview: Flask API routes for stock levels and movements; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g

from ..services import stock_service
from ..validation import ValidationError
from ..decorators import require_auth, require_permission
from .errors import json_error


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _int_field(data: dict, key: str, *, required: bool = True) -> int | None:
    value = data.get(key)
    if value is None or value == "":
        if required:
            raise ValidationError(f"Missing required field: {key}")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


def _scope_branch() -> int | None:
    """SUPER_ADMIN sees every branch unless ?branch_id= narrows it."""
    if g.actor.is_super_admin:
        return request.args.get("branch_id", type=int)
    return g.actor.branch_id


@inventory_bp.get("/items")
@require_auth
@require_permission("NAV_INVENTORY")
def list_items_route():
    """Active items with per-warehouse levels. ?warehouse_id= narrows to one warehouse."""
    try:
        items = stock_service.get_item_levels(
            branch_id=_scope_branch(),
            warehouse_id=request.args.get("warehouse_id", type=int),
        )
        return jsonify({"items": items, "count": len(items)}), 200

    except Exception as e:
        return json_error(e, action="list inventory items")


@inventory_bp.post("/items")
@require_auth
@require_permission("OP_ADJUST_STOCK")
def create_item_route():
    try:
        item = stock_service.create_item(payload=request.get_json(silent=True), actor=g.actor)
        return jsonify({"item": item.to_dict()}), 201

    except Exception as e:
        return json_error(e, action="create inventory item")


@inventory_bp.patch("/items/<int:item_id>")
@require_auth
@require_permission("OP_ADJUST_STOCK")
def update_item_route(item_id: int):
    """Attributes only; quantities change through /adjust and /movements."""
    try:
        item = stock_service.update_item(item_id=item_id, payload=request.get_json(silent=True), actor=g.actor)
        return jsonify({"item": item.to_dict()}), 200

    except Exception as e:
        return json_error(e, action="update inventory item")


@inventory_bp.get("/items/<int:item_id>/movements")
@require_auth
@require_permission("NAV_INVENTORY")
def list_movements_route(item_id: int):
    """Movement history, most recent first."""
    try:
        movements = stock_service.list_movements(
            item_id=item_id,
            warehouse_id=request.args.get("warehouse_id", type=int),
            kind=request.args.get("kind"),
            limit=request.args.get("limit", default=100, type=int),
        )
        return jsonify({"movements": [m.to_dict() for m in movements], "count": len(movements)}), 200

    except Exception as e:
        return json_error(e, action="list stock movements")


@inventory_bp.get("/low-stock")
@require_auth
@require_permission("NAV_INVENTORY")
def low_stock_route():
    try:
        rows = stock_service.low_stock_items(
            branch_id=_scope_branch(),
            warehouse_id=request.args.get("warehouse_id", type=int),
        )
        return jsonify({"items": rows, "count": len(rows)}), 200

    except Exception as e:
        return json_error(e, action="list low stock")


@inventory_bp.post("/movements")
@require_auth
@require_permission("OP_ADJUST_STOCK")
def record_movement_route():
    """
    Manual stock movement.

    Body: {"item_id", "warehouse_id", "reason", and one of
    "quantity" (absolute level; below zero lands on zero) or "delta"}.
    Returns 200 with "movement": null when the level already matches.
    """
    try:
        data = request.get_json(silent=True) or {}
        item_id = _int_field(data, "item_id")
        warehouse_id = _int_field(data, "warehouse_id")

        if data.get("quantity") is not None:
            movement = stock_service.set_stock_level(
                item_id=item_id,
                warehouse_id=warehouse_id,
                quantity=data["quantity"],
                reason=data.get("reason"),
                actor=g.actor,
            )
        elif data.get("delta") is not None:
            movement = stock_service.adjust_stock(
                item_id=item_id,
                warehouse_id=warehouse_id,
                delta=data["delta"],
                reason=data.get("reason"),
                actor=g.actor,
            )
        else:
            return jsonify({"error": "quantity or delta is required"}), 400

        if movement is None:
            return jsonify({"movement": None}), 200
        return jsonify({"movement": movement.to_dict()}), 201

    except Exception as e:
        return json_error(e, action="record stock movement")


@inventory_bp.post("/adjust")
@require_auth
@require_permission("OP_ADJUST_STOCK")
def adjust_route():
    """Body: {"item_id", "warehouse_id", "delta", "reason"}."""
    try:
        data = request.get_json(silent=True) or {}
        movement = stock_service.adjust_stock(
            item_id=_int_field(data, "item_id"),
            warehouse_id=_int_field(data, "warehouse_id"),
            delta=data.get("delta"),
            reason=data.get("reason"),
            actor=g.actor,
        )
        return jsonify({"movement": movement.to_dict()}), 201

    except Exception as e:
        return json_error(e, action="adjust stock")


@inventory_bp.post("/transfer")
@require_auth
@require_permission("OP_TRANSFER_STOCK")
def transfer_route():
    """Body: {"item_id", "from_warehouse_id", "to_warehouse_id", "quantity", "reason"?}."""
    try:
        data = request.get_json(silent=True) or {}
        transfer = stock_service.transfer_stock(
            item_id=_int_field(data, "item_id"),
            from_warehouse_id=_int_field(data, "from_warehouse_id"),
            to_warehouse_id=_int_field(data, "to_warehouse_id"),
            quantity=data.get("quantity"),
            reason=data.get("reason"),
            actor=g.actor,
        )
        return jsonify({"transfer": transfer.to_dict()}), 201

    except Exception as e:
        return json_error(e, action="transfer stock")


@inventory_bp.post("/receive")
@require_auth
@require_permission("OP_ADJUST_STOCK")
def receive_route():
    """Body: {"item_id", "warehouse_id", "quantity", "unit_cost_cents", "reference"?}."""
    try:
        data = request.get_json(silent=True) or {}
        movement = stock_service.receive_purchase(
            item_id=_int_field(data, "item_id"),
            warehouse_id=_int_field(data, "warehouse_id"),
            quantity=data.get("quantity"),
            unit_cost_cents=_int_field(data, "unit_cost_cents"),
            reference=data.get("reference"),
            actor=g.actor,
        )
        return jsonify({"movement": movement.to_dict()}), 201

    except Exception as e:
        return json_error(e, action="receive stock")


@inventory_bp.post("/waste")
@require_auth
@require_permission("OP_ADJUST_STOCK")
def waste_route():
    """Body: {"item_id", "warehouse_id", "quantity", "reason"}."""
    try:
        data = request.get_json(silent=True) or {}
        movement = stock_service.record_waste(
            item_id=_int_field(data, "item_id"),
            warehouse_id=_int_field(data, "warehouse_id"),
            quantity=data.get("quantity"),
            reason=data.get("reason"),
            actor=g.actor,
        )
        return jsonify({"movement": movement.to_dict()}), 201

    except Exception as e:
        return json_error(e, action="record waste")

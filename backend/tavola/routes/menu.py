# Overview: Flask API routes for the menu catalog and recipes; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g

from ..models import RecipeOwner
from ..services import menu_service, recipe_service
from ..validation import ValidationError
from ..decorators import require_auth, require_permission, require_any_permission
from .errors import json_error


menu_bp = Blueprint("menu", __name__, url_prefix="/api/menu")


@menu_bp.get("/items")
@require_auth
@require_any_permission("NAV_POS", "NAV_MENU_MANAGER", "NAV_CALL_CENTER")
def list_items_route():
    """?include_inactive=1, ?category_id=, ?include_modifiers=1"""
    try:
        items = menu_service.list_menu_items(
            active_only=not request.args.get("include_inactive"),
            category_id=request.args.get("category_id", type=int),
        )
        with_modifiers = bool(request.args.get("include_modifiers"))
        return jsonify({
            "items": [i.to_dict(include_modifiers=with_modifiers) for i in items],
            "count": len(items),
        }), 200

    except Exception as e:
        return json_error(e, action="list menu items")


@menu_bp.post("/items")
@require_auth
@require_permission("CFG_EDIT_MENU_PRICING")
def create_item_route():
    """Body: {"name", "price_cents", "category_id"?, "description"?, "is_active"?, "category"?}."""
    try:
        data = dict(request.get_json(silent=True) or {})
        category_name = data.pop("category", None)
        item = menu_service.create_menu_item(payload=data, actor=g.actor, category_name=category_name)
        return jsonify({"item": item.to_dict()}), 201

    except Exception as e:
        return json_error(e, action="create menu item")


@menu_bp.patch("/items/<int:item_id>")
@require_auth
@require_permission("CFG_EDIT_MENU_PRICING")
def update_item_route(item_id: int):
    try:
        item = menu_service.update_menu_item(item_id=item_id, payload=request.get_json(silent=True), actor=g.actor)
        return jsonify({"item": item.to_dict()}), 200

    except Exception as e:
        return json_error(e, action="update menu item")


@menu_bp.get("/categories")
@require_auth
@require_any_permission("NAV_POS", "NAV_MENU_MANAGER", "NAV_CALL_CENTER")
def list_categories_route():
    categories = menu_service.list_categories()
    return jsonify({"categories": [c.to_dict() for c in categories], "count": len(categories)}), 200


@menu_bp.post("/categories")
@require_auth
@require_permission("CFG_EDIT_MENU_PRICING")
def create_category_route():
    try:
        data = request.get_json(silent=True) or {}
        sort_order = data.get("sort_order", 0)
        if isinstance(sort_order, bool) or not isinstance(sort_order, int):
            raise ValidationError("sort_order must be an integer")
        category = menu_service.create_category(name=str(data.get("name") or ""), sort_order=sort_order, actor=g.actor)
        return jsonify({"category": category.to_dict()}), 201

    except Exception as e:
        return json_error(e, action="create menu category")


@menu_bp.patch("/categories/<int:category_id>")
@require_auth
@require_permission("CFG_EDIT_MENU_PRICING")
def update_category_route(category_id: int):
    """Body: any of {"name", "sort_order", "is_active"}."""
    try:
        category = menu_service.update_category(
            category_id=category_id, payload=request.get_json(silent=True), actor=g.actor
        )
        return jsonify({"category": category.to_dict()}), 200

    except Exception as e:
        return json_error(e, action="update menu category")


@menu_bp.post("/items/<int:item_id>/modifier-groups")
@require_auth
@require_permission("CFG_EDIT_MENU_PRICING")
def add_modifier_group_route(item_id: int):
    """Body: {"name", "min_selection"?, "max_selection"?, "options": [{"name", "price_cents"}]}."""
    try:
        data = request.get_json(silent=True) or {}
        bounds = {}
        for key, default in (("min_selection", 0), ("max_selection", 1)):
            value = data.get(key, default)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{key} must be an integer")
            bounds[key] = value
        options = data.get("options") or []
        if not isinstance(options, list) or not all(isinstance(o, dict) for o in options):
            raise ValidationError("options must be a list of objects")

        group = menu_service.add_modifier_group(
            menu_item_id=item_id,
            name=str(data.get("name") or ""),
            options=options,
            actor=g.actor,
            **bounds,
        )
        return jsonify({"modifier_group": group.to_dict()}), 201

    except Exception as e:
        return json_error(e, action="add modifier group")


def _set_recipe(owner_type: str, owner_id: int):
    data = request.get_json(silent=True) or {}
    lines = recipe_service.set_recipe(
        owner_type=owner_type,
        owner_id=owner_id,
        lines=data.get("lines"),
        actor=g.actor,
    )
    return jsonify({"lines": [line.to_dict() for line in lines], "count": len(lines)}), 200


@menu_bp.put("/items/<int:item_id>/recipe")
@require_auth
@require_permission("CFG_EDIT_MENU_PRICING")
def set_item_recipe_route(item_id: int):
    """Replace the item's base recipe. Body: {"lines": [{"ingredient_item_id", "quantity", "unit"?}]}."""
    try:
        return _set_recipe(RecipeOwner.MENU_ITEM, item_id)

    except Exception as e:
        return json_error(e, action="set menu item recipe")


@menu_bp.put("/options/<int:option_id>/recipe")
@require_auth
@require_permission("CFG_EDIT_MENU_PRICING")
def set_option_recipe_route(option_id: int):
    try:
        return _set_recipe(RecipeOwner.MODIFIER_OPTION, option_id)

    except Exception as e:
        return json_error(e, action="set modifier option recipe")


@menu_bp.put("/ingredients/<int:item_id>/recipe")
@require_auth
@require_permission("CFG_EDIT_MENU_PRICING")
def set_composite_recipe_route(item_id: int):
    """Components of a prepared (composite) inventory item."""
    try:
        return _set_recipe(RecipeOwner.INVENTORY_ITEM, item_id)

    except Exception as e:
        return json_error(e, action="set composite recipe")


@menu_bp.get("/items/<int:item_id>/bom-check")
@require_auth
@require_permission("NAV_MENU_MANAGER")
def bom_check_route(item_id: int):
    try:
        item = menu_service.get_menu_item(item_id)
        if item is None:
            return jsonify({"error": "Menu item not found"}), 404
        report = recipe_service.validate_bom(item)
        report["recipe_cost_cents"] = recipe_service.recipe_cost_cents(item)
        return jsonify(report), 200

    except Exception as e:
        return json_error(e, action="check bill of materials")

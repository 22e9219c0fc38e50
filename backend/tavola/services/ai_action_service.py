# Overview: Preview and execution of assistant actions against live data, gated by ai_guard.

from __future__ import annotations

from dataclasses import replace

from flask import current_app

from ..extensions import db
from ..models import Branch
from ..numbers import qty_to_json
from ..permissions import AI_ACTION_ROLES
from ..validation import ValidationError, coerce_int
from . import audit_service, auth_service, customer_service, ledger_service, menu_service, recipe_service, stock_service
from .ai_guard import (
    AnalyzeInventory,
    AnalyzeMenu,
    CreateCustomer,
    CreateMenuCategory,
    CreateMenuItem,
    CreateUser,
    GuardedAction,
    ShowReport,
    UpdateInventory,
    UpdateMenuCategory,
    UpdateMenuItem,
    UpdateMenuPrice,
    guard_action,
    parse_action,
)
from .audit_service import AuditEventType
from .permission_service import ActorContext, PermissionDeniedError, has_permission, require_branch_scope

# Read-only kinds; their insight record is the only audit row they produce.
_INSIGHT_KINDS = (AnalyzeMenu, AnalyzeInventory, ShowReport)


class ActionBlockedError(ValidationError):
    def __init__(self, guarded: GuardedAction):
        self.guarded = guarded
        super().__init__(guarded.reason or "Action blocked by guard")


def _consumption_warehouse_id(actor: ActorContext) -> int | None:
    if actor.branch_id is None:
        return None
    branch = db.session.get(Branch, actor.branch_id)
    return branch.consumption_warehouse_id if branch else None


def build_context(actor: ActorContext) -> dict:
    """Snapshot of the entities an assistant action can target."""
    warehouse_id = _consumption_warehouse_id(actor)
    inventory = []
    for row in stock_service.get_item_levels(branch_id=actor.branch_id, warehouse_id=warehouse_id):
        inventory.append({
            "id": row["id"],
            "name": row["name"],
            "unit": row["unit"],
            "category": row["category"],
            "threshold": row["threshold"],
            "unit_cost_cents": row["unit_cost_cents"],
            "is_active": row["is_active"],
            "warehouse_id": warehouse_id,
            "quantity": row["total_quantity"],
        })
    return {
        "inventory": inventory,
        "menu_items": [m.to_dict() for m in menu_service.list_menu_items(active_only=False)],
        "categories": [c.to_dict() for c in menu_service.list_categories()],
        "customers": [c.to_dict(include_sensitive=False) for c in customer_service.list_customers(limit=500)],
    }


def preview_action(payload, *, actor: ActorContext) -> GuardedAction:
    guarded = guard_action(parse_action(payload), build_context(actor))
    if not guarded.can_execute:
        return guarded
    if actor.role not in AI_ACTION_ROLES:
        return replace(guarded, can_execute=False, reason="Role not allowed to run assistant actions")
    if guarded.permission and not has_permission(actor, guarded.permission):
        return replace(guarded, can_execute=False, reason="Missing required permission")
    return guarded


def _apply_inventory(action: UpdateInventory, guarded: GuardedAction, actor: ActorContext) -> dict:
    data = dict(action.data)
    quantity = data.pop("quantity", None)
    warehouse_id = data.pop("warehouse_id", None) or guarded.before.get("warehouse_id")
    if warehouse_id is not None:
        warehouse_id = coerce_int(warehouse_id, field="warehouse_id")
    item_id = int(guarded.before["id"])

    item, movement = stock_service.update_item_and_level(
        item_id=item_id,
        payload=data,
        warehouse_id=warehouse_id,
        quantity=quantity,
        reason=f"AI action {guarded.id}",
        actor=actor,
    )
    result: dict = {"entity": "inventory_item", "id": item_id}
    if data:
        result["updated"] = item.to_dict()
    if quantity is not None:
        result["movement"] = movement.to_dict() if movement else None
        result["quantity"] = qty_to_json(stock_service.get_quantity(item_id, warehouse_id))
    return result


def _apply_menu_item(action: UpdateMenuItem, guarded: GuardedAction, actor: ActorContext) -> dict:
    item = menu_service.update_menu_item(item_id=int(guarded.before["id"]), payload=dict(action.data), actor=actor)
    return {"entity": "menu_item", "id": item.id, "updated": item.to_dict()}


def _apply_menu_price(action: UpdateMenuPrice, guarded: GuardedAction, actor: ActorContext) -> dict:
    item = menu_service.update_menu_item(
        item_id=int(guarded.before["id"]),
        payload={"price_cents": action.price_cents},
        actor=actor,
    )
    return {"entity": "menu_item", "id": item.id, "updated": item.to_dict()}


def _apply_create_menu_item(action: CreateMenuItem, guarded: GuardedAction, actor: ActorContext) -> dict:
    payload = dict(action.data)
    if action.category_id is not None:
        payload["category_id"] = action.category_id
    item = menu_service.create_menu_item(payload=payload, actor=actor)
    return {"entity": "menu_item", "id": item.id, "created": item.to_dict()}


def _apply_create_category(action: CreateMenuCategory, guarded: GuardedAction, actor: ActorContext) -> dict:
    sort_order = action.data.get("sort_order")
    category = menu_service.create_category(
        name=guarded.after["name"],
        sort_order=coerce_int(sort_order, field="sort_order") if sort_order is not None else 0,
        actor=actor,
    )
    return {"entity": "menu_category", "id": category.id, "created": category.to_dict()}


def _apply_update_category(action: UpdateMenuCategory, guarded: GuardedAction, actor: ActorContext) -> dict:
    category = menu_service.update_category(
        category_id=int(guarded.before["id"]),
        payload=dict(action.data),
        actor=actor,
    )
    return {"entity": "menu_category", "id": category.id, "updated": category.to_dict()}


def _apply_create_customer(action: CreateCustomer, guarded: GuardedAction, actor: ActorContext) -> dict:
    customer = customer_service.create_customer(payload=dict(action.data), actor=actor)
    return {"entity": "customer", "id": customer.id, "created": customer.to_dict()}


def _apply_create_user(action: CreateUser, guarded: GuardedAction, actor: ActorContext) -> dict:
    role = guarded.after["role"]
    if role == "SUPER_ADMIN" and not actor.is_super_admin:
        raise PermissionDeniedError("CFG_MANAGE_USERS")

    branch_id = action.data.get("branch_id")
    branch_id = coerce_int(branch_id, field="branch_id") if branch_id is not None else actor.branch_id
    require_branch_scope(actor, branch_id)

    try:
        user = auth_service.create_user(
            username=guarded.after["username"],
            name=str(action.data.get("name") or guarded.after["username"]),
            password=str(action.data["password"]),
            role=role,
            branch_id=branch_id,
            email=action.data.get("email"),
            actor=actor,
        )
    except (auth_service.UserError, auth_service.PasswordValidationError) as e:
        raise ValidationError(str(e)) from e
    return {"entity": "user", "id": user.id, "created": user.to_dict()}


def _analyze_menu(action, guarded: GuardedAction, actor: ActorContext) -> dict:
    rows = []
    for item in menu_service.list_menu_items(active_only=True):
        cost = recipe_service.recipe_cost_cents(item)
        margin = item.price_cents - cost
        rows.append({
            "menu_item_id": item.id,
            "name": item.name,
            "price_cents": item.price_cents,
            "recipe_cost_cents": cost,
            "margin_cents": margin,
            "margin_rate": round(margin / item.price_cents, 4) if item.price_cents else None,
        })
    rows.sort(key=lambda r: r["margin_cents"])
    return {"insight": "menu_margins", "items": rows}


def _analyze_inventory(action, guarded: GuardedAction, actor: ActorContext) -> dict:
    return {"insight": "low_stock", "items": stock_service.low_stock_items(branch_id=actor.branch_id)}


def _show_report(action: ShowReport, guarded: GuardedAction, actor: ActorContext) -> dict:
    return {"insight": "trial_balance", "report": ledger_service.trial_balance()}


_EXECUTORS = {
    UpdateInventory: _apply_inventory,
    UpdateMenuItem: _apply_menu_item,
    UpdateMenuPrice: _apply_menu_price,
    CreateMenuItem: _apply_create_menu_item,
    CreateMenuCategory: _apply_create_category,
    UpdateMenuCategory: _apply_update_category,
    CreateCustomer: _apply_create_customer,
    CreateUser: _apply_create_user,
    AnalyzeMenu: _analyze_menu,
    AnalyzeInventory: _analyze_inventory,
    ShowReport: _show_report,
}


def execute_action(payload, *, actor: ActorContext, explanation: str | None = None) -> tuple[GuardedAction, dict]:
    """
    Re-guard against current state, then apply through the owning service.
    Returns (guarded, result).

    The owning service writes the mutation's own audit record (the guard's
    audit_type); this adds one AI_ACTION_EXECUTED record linking the action
    id and the explanation to it. Insight kinds write one
    AI_INSIGHT_GENERATED record instead.
    """
    guarded = guard_action(parse_action(payload), build_context(actor))
    if not guarded.can_execute:
        raise ActionBlockedError(guarded)
    if actor.role not in AI_ACTION_ROLES:
        raise PermissionDeniedError("NAV_AI_ASSISTANT")
    if guarded.permission and not has_permission(actor, guarded.permission):
        raise PermissionDeniedError(guarded.permission)

    executor = _EXECUTORS.get(type(guarded.action))
    if executor is None:
        raise ActionBlockedError(guarded)

    result = executor(guarded.action, guarded, actor)

    insight = isinstance(guarded.action, _INSIGHT_KINDS)
    audit_service.record(
        AuditEventType.AI_INSIGHT_GENERATED if insight else AuditEventType.AI_ACTION_EXECUTED,
        actor=actor,
        before=None if insight else guarded.before,
        after=None if insight else guarded.after,
        reason=explanation,
        metadata={
            "ai_action_id": guarded.id,
            "action": guarded.action.kind,
            "mutation_audit_type": None if insight else guarded.audit_type,
            "result": result,
        },
    )
    db.session.commit()
    current_app.logger.info("AI action %s (%s) executed by user %s", guarded.id, guarded.action.kind, actor.user_id)
    return guarded, result

# Overview: Preview/validation of assistant-proposed actions. Pure: no DB, no session, no mutation.

from __future__ import annotations

import copy
import hashlib
import json
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional

from ..permissions import UserRole
from .audit_service import AuditEventType
"""
AI Action Guard Invariants (authoritative)

- guard_action() never mutates its inputs and never calls a service; the same
  (action, context) always yields the same result, id included.
- before/after are deep copies; callers may mutate them freely.
- Every action kind has exactly one handler; anything else is an
  UnknownAction that cannot execute.
- The guard reports the permission and audit type; enforcing them is the
  executor's job.
"""


@dataclass(frozen=True)
class UpdateInventory:
    item_id: Any
    data: dict = field(default_factory=dict)
    kind = "UPDATE_INVENTORY"


@dataclass(frozen=True)
class UpdateMenuItem:
    item_id: Any
    data: dict = field(default_factory=dict)
    kind = "UPDATE_MENU_ITEM"


@dataclass(frozen=True)
class UpdateMenuPrice:
    item_id: Any
    price_cents: Any
    kind = "UPDATE_MENU_PRICE"


@dataclass(frozen=True)
class CreateMenuItem:
    category_id: Any = None
    data: dict = field(default_factory=dict)
    kind = "CREATE_MENU_ITEM"


@dataclass(frozen=True)
class CreateMenuCategory:
    data: dict = field(default_factory=dict)
    kind = "CREATE_MENU_CATEGORY"


@dataclass(frozen=True)
class UpdateMenuCategory:
    category_id: Any
    data: dict = field(default_factory=dict)
    kind = "UPDATE_MENU_CATEGORY"


@dataclass(frozen=True)
class CreateCustomer:
    data: dict = field(default_factory=dict)
    kind = "CREATE_CUSTOMER"


@dataclass(frozen=True)
class CreateUser:
    data: dict = field(default_factory=dict)
    kind = "CREATE_USER"


@dataclass(frozen=True)
class AnalyzeMenu:
    kind = "ANALYZE_MENU"


@dataclass(frozen=True)
class AnalyzeInventory:
    kind = "ANALYZE_INVENTORY"


@dataclass(frozen=True)
class ShowReport:
    report: Optional[str] = None
    kind = "SHOW_REPORT"


@dataclass(frozen=True)
class UnknownAction:
    type: str
    params: dict = field(default_factory=dict)
    kind = "UNKNOWN"


AIAction = (
    UpdateInventory | UpdateMenuItem | UpdateMenuPrice | CreateMenuItem
    | CreateMenuCategory | UpdateMenuCategory | CreateCustomer | CreateUser
    | AnalyzeMenu | AnalyzeInventory | ShowReport | UnknownAction
)


@dataclass(frozen=True)
class GuardedAction:
    id: str
    action: AIAction
    label: str
    permission: Optional[str]
    can_execute: bool
    audit_type: str
    reason: Optional[str] = None
    before: Any = None
    after: Any = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": action_to_dict(self.action),
            "label": self.label,
            "permission": self.permission,
            "can_execute": self.can_execute,
            "reason": self.reason,
            "before": copy.deepcopy(self.before),
            "after": copy.deepcopy(self.after),
            "audit_type": self.audit_type,
        }


def _raw_dict(action: AIAction) -> dict:
    if isinstance(action, UnknownAction):
        return {"type": action.type, **copy.deepcopy(action.params)}
    return {"type": action.kind, **asdict(action)}


def action_to_dict(action: AIAction) -> dict:
    """JSON form with passwords masked."""
    raw = _raw_dict(action)
    for holder in (raw, raw.get("data")):
        if isinstance(holder, dict) and holder.get("password"):
            holder["password"] = "******"
    return raw


def _first(raw: dict, *keys):
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _dict_or_empty(value) -> dict:
    return copy.deepcopy(value) if isinstance(value, dict) else {}


# Names assistants use for the supported kinds.
ACTION_ALIASES = {
    "UPDATE_THRESHOLD": "UPDATE_INVENTORY",
    "UPDATE_STOCK": "UPDATE_INVENTORY",
    "EDIT_INVENTORY": "UPDATE_INVENTORY",
    "ADD_MENU_ITEM": "CREATE_MENU_ITEM",
    "CREATE_ITEM": "CREATE_MENU_ITEM",
    "ADD_ITEM": "CREATE_MENU_ITEM",
    "EDIT_MENU_ITEM": "UPDATE_MENU_ITEM",
    "MODIFY_MENU_ITEM": "UPDATE_MENU_ITEM",
    "UPDATE_ITEM": "UPDATE_MENU_ITEM",
    "UPDATE_PRICE": "UPDATE_MENU_PRICE",
    "ADD_CATEGORY": "CREATE_MENU_CATEGORY",
    "CREATE_CATEGORY": "CREATE_MENU_CATEGORY",
    "ADD_SECTION": "CREATE_MENU_CATEGORY",
    "CREATE_SECTION": "CREATE_MENU_CATEGORY",
    "EDIT_CATEGORY": "UPDATE_MENU_CATEGORY",
    "MODIFY_CATEGORY": "UPDATE_MENU_CATEGORY",
    "UPDATE_CATEGORY": "UPDATE_MENU_CATEGORY",
    "ADD_CUSTOMER": "CREATE_CUSTOMER",
    "CREATE_CLIENT": "CREATE_CUSTOMER",
    "ADD_USER": "CREATE_USER",
    "CREATE_STAFF": "CREATE_USER",
    "CREATE_EMPLOYEE": "CREATE_USER",
    "OPEN_REPORT": "SHOW_REPORT",
    "GET_REPORT": "SHOW_REPORT",
}

# Top-level fields folded into `data` when the assistant leaves them outside it.
_DATA_FIELDS = {
    "UPDATE_MENU_ITEM": ("name", "description", "price_cents", "is_active"),
    "CREATE_MENU_ITEM": ("name", "description", "price_cents", "is_active"),
    "CREATE_MENU_CATEGORY": ("name", "sort_order"),
    "UPDATE_MENU_CATEGORY": ("name", "sort_order", "is_active"),
    "CREATE_CUSTOMER": ("name", "phone", "email", "address"),
    "CREATE_USER": ("username", "name", "email", "role", "password", "branch_id"),
}


def normalize_action_type(value) -> str:
    normalized = re.sub(r"[\s-]+", "_", str(value or "").strip().upper())
    return ACTION_ALIASES.get(normalized, normalized)


def parse_action(raw) -> AIAction:
    """
    Build an action from JSON. Accepts the flat form
    {"type": "UPDATE_MENU_PRICE", "item_id": 3, "price_cents": 2500} and the
    assistant form {"actionType": ..., "parameters": {...}}; camelCase keys
    are accepted for item/category ids and aliases such as ADD_CATEGORY map
    to their kind.
    """
    if not isinstance(raw, dict):
        return UnknownAction(type=str(raw))

    params = raw
    action_type = raw.get("type")
    if not action_type and raw.get("actionType"):
        action_type = raw.get("actionType")
        params = raw.get("parameters") if isinstance(raw.get("parameters"), dict) else {}
    action_type = normalize_action_type(action_type)

    item_id = _first(params, "item_id", "itemId", "id")
    data = _dict_or_empty(params.get("data"))
    for key in _DATA_FIELDS.get(action_type, ()):
        if key not in data and params.get(key) is not None:
            data[key] = copy.deepcopy(params[key])

    if action_type == UpdateInventory.kind:
        return UpdateInventory(item_id=item_id, data=data)
    if action_type == UpdateMenuItem.kind:
        return UpdateMenuItem(item_id=item_id, data=data)
    if action_type == UpdateMenuPrice.kind:
        return UpdateMenuPrice(item_id=item_id, price_cents=_first(params, "price_cents", "priceCents", "price"))
    if action_type == CreateMenuItem.kind:
        return CreateMenuItem(category_id=_first(params, "category_id", "categoryId"), data=data)
    if action_type == CreateMenuCategory.kind:
        return CreateMenuCategory(data=data)
    if action_type == UpdateMenuCategory.kind:
        return UpdateMenuCategory(category_id=_first(params, "category_id", "categoryId", "id"), data=data)
    if action_type == CreateCustomer.kind:
        return CreateCustomer(data=data)
    if action_type == CreateUser.kind:
        return CreateUser(data=data)
    if action_type == AnalyzeMenu.kind:
        return AnalyzeMenu()
    if action_type == AnalyzeInventory.kind:
        return AnalyzeInventory()
    if action_type == ShowReport.kind:
        return ShowReport(report=params.get("report"))

    extra = {k: copy.deepcopy(v) for k, v in params.items() if k not in ("type", "actionType")}
    return UnknownAction(type=action_type or "UNKNOWN", params=extra)


def _action_id(action: AIAction) -> str:
    encoded = json.dumps(_raw_dict(action), sort_keys=True, separators=(",", ":"), default=str)
    return "AI-" + hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:10].upper()


def _find(rows, target_id) -> Optional[dict]:
    if target_id is None:
        return None
    wanted = str(target_id)
    for row in rows or ():
        if isinstance(row, dict) and str(row.get("id")) == wanted:
            return row
    return None


def _result(action, *, label, permission, audit_type, can_execute=True, reason=None, before=None, after=None):
    return GuardedAction(
        id=_action_id(action),
        action=action,
        label=label,
        permission=permission,
        can_execute=can_execute,
        reason=reason,
        before=copy.deepcopy(before),
        after=copy.deepcopy(after),
        audit_type=audit_type,
    )


def _not_found(action, label, permission, audit_type) -> GuardedAction:
    return _result(
        action,
        label=label,
        permission=permission,
        audit_type=audit_type,
        can_execute=False,
        reason="Item not found",
    )


def _guard_update_inventory(action: UpdateInventory, context: dict) -> GuardedAction:
    permission, audit = "OP_ADJUST_STOCK", AuditEventType.INVENTORY_ADJUSTMENT
    item = _find(context.get("inventory"), action.item_id)
    if item is None:
        return _not_found(action, f"Update inventory item {action.item_id}", permission, audit)
    return _result(
        action,
        label=f"Update inventory: {item.get('name') or action.item_id}",
        permission=permission,
        audit_type=audit,
        before=item,
        after={**item, **action.data},
    )


def _guard_update_menu_item(action: UpdateMenuItem, context: dict) -> GuardedAction:
    permission, audit = "CFG_EDIT_MENU_PRICING", AuditEventType.SETTINGS_CHANGE
    item = _find(context.get("menu_items"), action.item_id)
    if item is None:
        return _not_found(action, f"Update menu item {action.item_id}", permission, audit)
    return _result(
        action,
        label=f"Update menu item: {item.get('name') or action.item_id}",
        permission=permission,
        audit_type=audit,
        before=item,
        after={**item, **action.data},
    )


def _guard_update_menu_price(action: UpdateMenuPrice, context: dict) -> GuardedAction:
    permission, audit = "CFG_EDIT_MENU_PRICING", AuditEventType.SETTINGS_CHANGE
    item = _find(context.get("menu_items"), action.item_id)
    if item is None:
        return _not_found(action, f"Update price for {action.item_id}", permission, audit)
    return _result(
        action,
        label=f"Update price: {item.get('name') or action.item_id}",
        permission=permission,
        audit_type=audit,
        before=item,
        after={**item, "price_cents": action.price_cents},
    )


def _guard_create_menu_item(action: CreateMenuItem, context: dict) -> GuardedAction:
    permission, audit = "CFG_EDIT_MENU_PRICING", AuditEventType.SETTINGS_CHANGE
    label = f"Create menu item: {action.data.get('name') or 'New item'}"
    if action.category_id is not None and _find(context.get("categories"), action.category_id) is None:
        return _result(
            action,
            label=label,
            permission=permission,
            audit_type=audit,
            can_execute=False,
            reason="Category not found",
        )
    return _result(
        action,
        label=label,
        permission=permission,
        audit_type=audit,
        after={**action.data, "category_id": action.category_id},
    )


def _guard_create_menu_category(action: CreateMenuCategory, context: dict) -> GuardedAction:
    permission, audit = "CFG_EDIT_MENU_PRICING", AuditEventType.SETTINGS_CHANGE
    name = str(action.data.get("name") or "").strip()
    label = f"Create menu category: {name or 'New category'}"
    reason = None
    if not name:
        reason = "Category name is required"
    elif any(str(c.get("name") or "").lower() == name.lower() for c in context.get("categories") or ()):
        reason = "Category already exists"
    if reason:
        return _result(action, label=label, permission=permission, audit_type=audit, can_execute=False, reason=reason)
    return _result(action, label=label, permission=permission, audit_type=audit, after={**action.data, "name": name})


def _guard_update_menu_category(action: UpdateMenuCategory, context: dict) -> GuardedAction:
    permission, audit = "CFG_EDIT_MENU_PRICING", AuditEventType.SETTINGS_CHANGE
    category = _find(context.get("categories"), action.category_id)
    if category is None:
        return _result(
            action,
            label=f"Update menu category {action.category_id}",
            permission=permission,
            audit_type=audit,
            can_execute=False,
            reason="Category not found",
        )
    return _result(
        action,
        label=f"Update menu category: {category.get('name') or action.category_id}",
        permission=permission,
        audit_type=audit,
        before=category,
        after={**category, **action.data},
    )


def _guard_create_customer(action: CreateCustomer, context: dict) -> GuardedAction:
    return _result(
        action,
        label=f"Create customer: {action.data.get('name') or 'New customer'}",
        permission="NAV_CRM",
        audit_type=AuditEventType.CUSTOMER_CREATED,
        after=action.data,
    )


def _guard_create_user(action: CreateUser, context: dict) -> GuardedAction:
    permission, audit = "CFG_MANAGE_USERS", AuditEventType.SECURITY_PERMISSION_CHANGE
    username = str(_first(action.data, "username", "email") or "").strip()
    role = str(action.data.get("role") or "").strip().upper()
    label = f"Create user: {username or 'New user'}"

    reason = None
    if not username:
        reason = "Username is required"
    elif role not in UserRole.ALL:
        reason = "Unknown role"
    elif not action.data.get("password"):
        reason = "Password is required"
    if reason:
        return _result(action, label=label, permission=permission, audit_type=audit, can_execute=False, reason=reason)

    # never echo the password back
    after = {**action.data, "username": username, "role": role, "password": "******"}
    return _result(action, label=label, permission=permission, audit_type=audit, after=after)


def _guard_analyze_menu(action: AnalyzeMenu, context: dict) -> GuardedAction:
    return _result(
        action,
        label="Analyze menu performance",
        permission="NAV_REPORTS",
        audit_type=AuditEventType.AI_INSIGHT_GENERATED,
    )


def _guard_analyze_inventory(action: AnalyzeInventory, context: dict) -> GuardedAction:
    return _result(
        action,
        label="Analyze inventory levels",
        permission="NAV_REPORTS",
        audit_type=AuditEventType.AI_INSIGHT_GENERATED,
    )


def _guard_show_report(action: ShowReport, context: dict) -> GuardedAction:
    return _result(
        action,
        label=f"Open report: {action.report}" if action.report else "Open reports view",
        permission="NAV_REPORTS",
        audit_type=AuditEventType.AI_INSIGHT_GENERATED,
    )


def _guard_unknown(action: UnknownAction, context: dict) -> GuardedAction:
    return _result(
        action,
        label=f"Unknown action: {action.type}",
        permission=None,
        audit_type=AuditEventType.SETTINGS_CHANGE,
        can_execute=False,
        reason="Unsupported action type",
    )


_HANDLERS: dict[type, Callable[[Any, dict], GuardedAction]] = {
    UpdateInventory: _guard_update_inventory,
    UpdateMenuItem: _guard_update_menu_item,
    UpdateMenuPrice: _guard_update_menu_price,
    CreateMenuItem: _guard_create_menu_item,
    CreateMenuCategory: _guard_create_menu_category,
    UpdateMenuCategory: _guard_update_menu_category,
    CreateCustomer: _guard_create_customer,
    CreateUser: _guard_create_user,
    AnalyzeMenu: _guard_analyze_menu,
    AnalyzeInventory: _guard_analyze_inventory,
    ShowReport: _guard_show_report,
    UnknownAction: _guard_unknown,
}


def guard_action(action, context: dict | None) -> GuardedAction:
    """
    Resolve the action's target in `context` ({inventory, menu_items,
    categories, customers}) and describe what executing it would change.
    `action` may be an action dataclass or its JSON form.
    """
    if not isinstance(action, tuple(_HANDLERS)):
        action = parse_action(action)
    return _HANDLERS[type(action)](action, context or {})

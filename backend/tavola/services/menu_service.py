# Overview: Menu catalog: categories, items, modifier groups and modifier resolution.

from __future__ import annotations

from ..extensions import db
from ..models import MenuCategory, MenuItem, ModifierGroup, ModifierOption
from ..validation import (
    ValidationError,
    NotFoundError,
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_menu_item,
)
from . import audit_service, sync_service
from .audit_service import AuditEventType
from .concurrency import run_atomic
from .permission_service import ActorContext


class MenuError(ValidationError):
    pass


MENU_ITEM_POLICY = ModelValidationPolicy(
    writable_fields={"name", "description", "price_cents", "category_id", "is_active"},
    required_on_create={"name", "price_cents"},
)


def get_menu_item(item_id: int) -> MenuItem | None:
    return db.session.get(MenuItem, item_id)


def list_menu_items(*, active_only: bool = True, category_id: int | None = None) -> list[MenuItem]:
    query = db.session.query(MenuItem)
    if active_only:
        query = query.filter(MenuItem.is_active.is_(True))
    if category_id is not None:
        query = query.filter(MenuItem.category_id == category_id)
    return query.order_by(MenuItem.name.asc(), MenuItem.id.asc()).all()


def list_categories() -> list[MenuCategory]:
    return db.session.query(MenuCategory).order_by(MenuCategory.sort_order.asc(), MenuCategory.name.asc()).all()


def _find_or_create_category(name: str) -> MenuCategory:
    name = name.strip()
    category = db.session.query(MenuCategory).filter(db.func.lower(MenuCategory.name) == name.lower()).first()
    if category is None:
        category = MenuCategory(name=name)
        db.session.add(category)
        db.session.flush()
    return category


def create_category(*, name: str, actor: ActorContext, sort_order: int = 0) -> MenuCategory:
    if not (name or "").strip():
        raise MenuError("name is required")

    def _op() -> MenuCategory:
        if db.session.query(MenuCategory).filter(db.func.lower(MenuCategory.name) == name.strip().lower()).first():
            raise MenuError(f"Category {name!r} already exists")
        category = MenuCategory(name=name.strip(), sort_order=sort_order)
        db.session.add(category)
        db.session.flush()
        audit_service.record(AuditEventType.SETTINGS_CHANGE, actor=actor, after={"category": category.to_dict()})
        db.session.commit()
        return category

    return run_atomic(_op)


CATEGORY_POLICY = ModelValidationPolicy(writable_fields={"name", "sort_order", "is_active"})


def update_category(*, category_id: int, payload: dict, actor: ActorContext) -> MenuCategory:
    patch = validate_payload(model=MenuCategory, payload=payload, policy=CATEGORY_POLICY, partial=True)

    def _op() -> MenuCategory:
        category = db.session.get(MenuCategory, category_id)
        if category is None:
            raise NotFoundError("Category not found")
        if "name" in patch:
            clash = db.session.query(MenuCategory).filter(
                db.func.lower(MenuCategory.name) == patch["name"].lower(),
                MenuCategory.id != category_id,
            ).first()
            if clash:
                raise MenuError(f"Category {patch['name']!r} already exists")

        before = category.to_dict()
        for key, value in patch.items():
            setattr(category, key, value)
        db.session.flush()
        audit_service.record(
            AuditEventType.SETTINGS_CHANGE,
            actor=actor,
            before={"category": before},
            after={"category": category.to_dict()},
        )
        db.session.commit()
        return category

    return run_atomic(_op)


def create_menu_item(
    *,
    payload: dict,
    actor: ActorContext,
    category_name: str | None = None,
) -> MenuItem:
    """
    Create a menu item from a validated payload. category_name, when given,
    selects (or creates) the category by name.
    """
    patch = validate_payload(model=MenuItem, payload=payload, policy=MENU_ITEM_POLICY, partial=False)
    enforce_rules_menu_item(patch)

    def _op() -> MenuItem:
        if patch.get("category_id") is not None and not db.session.get(MenuCategory, patch["category_id"]):
            raise NotFoundError("Category not found")
        item = MenuItem(**patch)
        if category_name and (category_name or "").strip():
            item.category_id = _find_or_create_category(category_name).id
        db.session.add(item)
        db.session.flush()

        data = item.to_dict()
        sync_service.enqueue("menu_item", "CREATE", data)
        audit_service.record(AuditEventType.SETTINGS_CHANGE, actor=actor, after={"menu_item": data})
        db.session.commit()
        return item

    return run_atomic(_op)


def update_menu_item(*, item_id: int, payload: dict, actor: ActorContext) -> MenuItem:
    patch = validate_payload(model=MenuItem, payload=payload, policy=MENU_ITEM_POLICY, partial=True)
    enforce_rules_menu_item(patch)

    def _op() -> MenuItem:
        item = db.session.get(MenuItem, item_id)
        if item is None:
            raise NotFoundError("Menu item not found")
        if patch.get("category_id") is not None and not db.session.get(MenuCategory, patch["category_id"]):
            raise NotFoundError("Category not found")

        before = item.to_dict()
        for key, value in patch.items():
            setattr(item, key, value)
        db.session.flush()

        after = item.to_dict()
        sync_service.enqueue("menu_item", "UPDATE", after)
        audit_service.record(
            AuditEventType.SETTINGS_CHANGE,
            actor=actor,
            before={"menu_item": before},
            after={"menu_item": after},
        )
        db.session.commit()
        return item

    return run_atomic(_op)


def add_modifier_group(
    *,
    menu_item_id: int,
    name: str,
    actor: ActorContext,
    min_selection: int = 0,
    max_selection: int = 1,
    options: list[dict] | None = None,
) -> ModifierGroup:
    """options: [{name, price_cents}]"""
    if not (name or "").strip():
        raise MenuError("name is required")
    if min_selection < 0 or max_selection < 1 or min_selection > max_selection:
        raise MenuError("Require 0 <= min_selection <= max_selection and max_selection >= 1")

    def _op() -> ModifierGroup:
        item = db.session.get(MenuItem, menu_item_id)
        if item is None:
            raise NotFoundError("Menu item not found")
        if any(g.name == name.strip() for g in item.modifier_groups):
            raise MenuError(f"Modifier group {name!r} already exists on this item")

        group = ModifierGroup(
            menu_item_id=menu_item_id,
            name=name.strip(),
            min_selection=min_selection,
            max_selection=max_selection,
        )
        seen = set()
        for opt in options or []:
            opt_name = str(opt.get("name") or "").strip()
            price = opt.get("price_cents", 0)
            if not opt_name:
                raise MenuError("option name is required")
            if opt_name in seen:
                raise MenuError(f"Duplicate option {opt_name!r}")
            if isinstance(price, bool) or not isinstance(price, int) or price < 0:
                raise MenuError("option price_cents must be an integer >= 0")
            seen.add(opt_name)
            group.options.append(ModifierOption(name=opt_name, price_cents=price))

        db.session.add(group)
        db.session.flush()
        audit_service.record(
            AuditEventType.SETTINGS_CHANGE,
            actor=actor,
            after={"modifier_group": group.to_dict()},
            metadata={"menu_item_id": menu_item_id},
        )
        db.session.commit()
        return group

    return run_atomic(_op)


def resolve_modifier_selections(menu_item: MenuItem, selections: list | None) -> list[ModifierOption]:
    """
    Match [{group_name, option_name}] against the item's modifier groups and
    enforce each group's min/max selection counts.
    """
    selections = selections or []
    if not isinstance(selections, list):
        raise MenuError("modifiers must be a list")

    groups = {g.name: g for g in menu_item.modifier_groups}
    chosen: list[ModifierOption] = []
    per_group: dict[str, int] = {}
    seen: set[int] = set()

    for idx, sel in enumerate(selections):
        if not isinstance(sel, dict):
            raise MenuError(f"modifiers[{idx}] must be an object")
        group_name = str(sel.get("group_name") or "").strip()
        option_name = str(sel.get("option_name") or "").strip()
        group = groups.get(group_name)
        if group is None:
            raise MenuError(f"Unknown modifier group {group_name!r} for {menu_item.name}")
        option = next((o for o in group.options if o.name == option_name), None)
        if option is None:
            raise MenuError(f"Unknown option {option_name!r} in group {group_name!r}")
        if option.id in seen:
            raise MenuError(f"Option {option_name!r} selected twice")
        seen.add(option.id)
        per_group[group_name] = per_group.get(group_name, 0) + 1
        chosen.append(option)

    for group in menu_item.modifier_groups:
        count = per_group.get(group.name, 0)
        if count < group.min_selection:
            raise MenuError(f"Group {group.name!r} requires at least {group.min_selection} selection(s)")
        if count > group.max_selection:
            raise MenuError(f"Group {group.name!r} allows at most {group.max_selection} selection(s)")

    return chosen
